"""Stage 5: completeness checks, quality scoring, review and final assembly."""

import json
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from app.chains._stage_call import (
    ProgressCallback,
    build_system_message,
    call_and_parse,
    report,
    to_prompt_json,
)
from app.chains.analyze_idea import AnalysisResult
from app.chains.generate_coding_prompts import CodingPromptsResult
from app.chains.generate_visualizations import VisualizationResult
from app.chains.plan_layers import PlanningResult
from app.core.llm_gateway import LLMGateway
from app.core.logging import get_logger
from app.core.quality_scoring import QualityScorer, quality_level
from app.core.recovery_parser import RecoveryParser

logger = get_logger(__name__)

STAGE = "aggregation"

SYSTEM_PROMPT = build_system_message("principal engineer reviewing delivery plans", "15 years")

REVIEW_PROMPT = """Review this development plan before it is handed to the team.

## Analysis
{analysis}

## Key plan fields
{plan}

## Coding tasks
{tasks}

Return ONLY this JSON object:
{{
  "summary": "two or three sentence verdict on the plan",
  "risks": ["the most important delivery risks"],
  "recommendations": ["concrete improvements, most valuable first"]
}}"""

FALLBACK_REVIEW: dict[str, Any] = {
    "summary": "Automated review unavailable",
    "risks": [],
    "recommendations": [],
}


class QualityReport(BaseModel):
    analysis_completeness: bool
    planning_completeness: bool
    visualization_validity: bool
    prompts_quality: bool

    def passed(self) -> int:
        return sum(1 for v in self.model_dump().values() if v)

    def score(self) -> int:
        checks = self.model_dump()
        return round(100 * self.passed() / len(checks))


class PlanReview(BaseModel):
    model_config = ConfigDict(extra="allow")

    summary: Any = ""
    risks: Any = Field(default_factory=list)
    recommendations: Any = Field(default_factory=list)


class PlanMetadata(BaseModel):
    generated_at: str
    processing_time: float
    quality_score: int
    result_quality_score: float
    quality_level: str
    accepted: bool
    version: str


class PlanDeliverable(BaseModel):
    """Final assembled plan returned to the caller."""

    metadata: PlanMetadata
    analysis: dict[str, Any]
    planning: dict[str, Any]
    visualizations: dict[str, Any]
    coding_prompts: dict[str, Any]
    quality_report: QualityReport
    review: PlanReview
    execution_summary: str
    optimization_metrics: dict[str, Any] = Field(default_factory=dict)


def run_quality_checks(
    analysis: AnalysisResult,
    plan: PlanningResult,
    visualizations: VisualizationResult,
    coding_prompts: CodingPromptsResult,
    min_prompt_count: int,
) -> QualityReport:
    return QualityReport(
        analysis_completeness=analysis.is_complete(),
        planning_completeness=plan.is_complete(),
        visualization_validity=visualizations.is_complete(),
        prompts_quality=coding_prompts.meets_minimum(min_prompt_count),
    )


def build_execution_summary(analysis: AnalysisResult, coding_prompts: CodingPromptsResult) -> str:
    total = coding_prompts.total_estimated_time or "to be estimated"
    return (
        f"Generated a complete development plan with {analysis.feature_count} core features "
        f"and {len(coding_prompts.prompts)} coding tasks; estimated development time: {total}."
    )


def build_review_prompt(
    analysis: AnalysisResult, plan: PlanningResult, coding_prompts: CodingPromptsResult
) -> str:
    key_fields = {
        k: getattr(plan, k) for k in ("product_name", "tech_stack", "development_plan", "business_model")
    }
    tasks = [f"{p.id}: {p.title}" for p in coding_prompts.prompts]
    return REVIEW_PROMPT.format(
        analysis=to_prompt_json(analysis.model_dump(exclude_none=True), max_chars=4000),
        plan=to_prompt_json(key_fields, max_chars=4000),
        tasks="\n".join(tasks) or "(none)",
    )


async def assemble_plan(
    analysis: AnalysisResult,
    plan: PlanningResult,
    visualizations: VisualizationResult,
    coding_prompts: CodingPromptsResult,
    *,
    gateway: LLMGateway,
    parser: RecoveryParser,
    scorer: QualityScorer,
    min_prompt_count: int,
    acceptance_threshold: float,
    version: str,
    processing_time: float,
    on_progress: ProgressCallback | None = None,
) -> PlanDeliverable:
    """
    Validate the stage outputs and assemble the deliverable.

    ``quality_score`` is the percentage of completeness checks passed;
    ``result_quality_score`` comes from ``scorer`` over the serialized
    deliverable, and ``accepted`` compares it to ``acceptance_threshold``.
    A plan below the threshold is still returned.
    """
    report(on_progress, 20)
    checks = run_quality_checks(analysis, plan, visualizations, coding_prompts, min_prompt_count)
    report(on_progress, 40)

    review_data = await call_and_parse(
        gateway=gateway,
        parser=parser,
        prompt=build_review_prompt(analysis, plan, coding_prompts),
        system_message=SYSTEM_PROMPT,
        context=STAGE,
        fallback=FALLBACK_REVIEW,
    )
    review = PlanReview.model_validate(review_data)
    report(on_progress, 80)

    content = {
        "analysis": analysis.model_dump(),
        "planning": plan.model_dump(),
        "visualizations": visualizations.model_dump(),
        "coding_prompts": coding_prompts.model_dump(),
    }
    result_quality_score = float(scorer.score(json.dumps(content, ensure_ascii=False, default=str)))
    accepted = result_quality_score >= acceptance_threshold

    deliverable = PlanDeliverable(
        metadata=PlanMetadata(
            generated_at=datetime.now(UTC).isoformat(),
            processing_time=round(processing_time, 3),
            quality_score=checks.score(),
            result_quality_score=result_quality_score,
            quality_level=quality_level(result_quality_score),
            accepted=accepted,
            version=version,
        ),
        quality_report=checks,
        review=review,
        execution_summary=build_execution_summary(analysis, coding_prompts),
        **content,
    )

    log = logger.info if accepted else logger.warning
    log(
        f"Plan assembled: checks {checks.passed()}/4, result quality {result_quality_score:.1f} "
        f"({'accepted' if accepted else 'below threshold'})",
        extra={"stage": STAGE},
    )
    return deliverable
