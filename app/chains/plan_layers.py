"""Stage 2: layered development plan built on the analysis."""

import json
from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator

from app.chains._stage_call import (
    ProgressCallback,
    build_system_message,
    call_and_parse,
    report,
    to_prompt_json,
)
from app.chains.analyze_idea import AnalysisResult
from app.core.llm_gateway import LLMGateway
from app.core.logging import get_logger
from app.core.recovery_parser import RecoveryParser

logger = get_logger(__name__)

STAGE = "planning"

# Plan fields grouped by layer, in presentation order
PLAN_LAYERS: dict[str, list[str]] = {
    "discovery": ["pain_points", "new_terms", "success_cases"],
    "branding": ["product_name", "domain_name", "branding_concept"],
    "build": ["tech_stack", "deployment", "development_plan", "design_system"],
    "launch_infrastructure": [
        "hosting_platform",
        "domain_setup",
        "ssl_certificate",
        "performance_optimization",
    ],
    "growth": ["social_media_strategy", "product_launch", "content_marketing", "community_building"],
    "measurement": [
        "analytics_setup",
        "kpi_definition",
        "user_behavior_analysis",
        "performance_metrics",
    ],
    "iteration": ["user_feedback", "product_iteration", "marketing_optimization", "business_model"],
}

PLAN_FIELD_IDS: list[str] = [field for fields in PLAN_LAYERS.values() for field in fields]

SYSTEM_PROMPT = build_system_message("chief technical architect and product manager", "15 years")

PLANNING_PROMPT = """Design a layered development plan for the product analyzed below.

## Product analysis
{analysis}

Think in layers:
1. System architecture: architecture style, scalability, data flow and interfaces.
2. Technology: frontend, backend, storage and infrastructure choices with reasons.
3. Delivery: phases, tasks per phase, resourcing, risk control.
4. Quality: code quality, testing, performance, security.

Return ONLY a flat JSON object with exactly these keys:
{field_ids}

Every value must be a string with concrete choices, steps, time estimates and risks."""


class PlanningResult(BaseModel):
    """Flat map over every plan field. Unknown keys from the model are kept."""

    model_config = ConfigDict(extra="allow")

    pain_points: str = ""
    new_terms: str = ""
    success_cases: str = ""
    product_name: str = ""
    domain_name: str = ""
    branding_concept: str = ""
    tech_stack: str = ""
    deployment: str = ""
    development_plan: str = ""
    design_system: str = ""
    hosting_platform: str = ""
    domain_setup: str = ""
    ssl_certificate: str = ""
    performance_optimization: str = ""
    social_media_strategy: str = ""
    product_launch: str = ""
    content_marketing: str = ""
    community_building: str = ""
    analytics_setup: str = ""
    kpi_definition: str = ""
    user_behavior_analysis: str = ""
    performance_metrics: str = ""
    user_feedback: str = ""
    product_iteration: str = ""
    marketing_optimization: str = ""
    business_model: str = ""

    @field_validator(*PLAN_FIELD_IDS, mode="before")
    @classmethod
    def _flatten(cls, value: Any) -> str:
        if value is None:
            return ""
        if isinstance(value, str):
            return value
        if isinstance(value, list):
            return "\n".join(v if isinstance(v, str) else json.dumps(v, ensure_ascii=False) for v in value)
        if isinstance(value, dict):
            return json.dumps(value, ensure_ascii=False)
        return str(value)

    def missing_fields(self) -> list[str]:
        return [f for f in PLAN_FIELD_IDS if not getattr(self, f).strip()]

    def is_complete(self) -> bool:
        return not self.missing_fields()

    def by_layer(self) -> dict[str, dict[str, str]]:
        return {layer: {f: getattr(self, f) for f in fields} for layer, fields in PLAN_LAYERS.items()}


def build_planning_prompt(analysis: AnalysisResult) -> str:
    return PLANNING_PROMPT.format(
        analysis=to_prompt_json(analysis.model_dump(exclude_none=True)),
        field_ids=", ".join(PLAN_FIELD_IDS),
    )


def placeholder_for(field_id: str, domain: str | None) -> str:
    return f"Based on {domain or 'project'} requirements, detail {field_id.replace('_', ' ')}"


def fill_missing_fields(plan: PlanningResult, domain: str | None) -> list[str]:
    """Fill empty plan fields with a placeholder. Returns the filled field ids."""
    missing = plan.missing_fields()
    for field_id in missing:
        setattr(plan, field_id, placeholder_for(field_id, domain))
    return missing


async def plan_layers(
    analysis: AnalysisResult,
    *,
    gateway: LLMGateway,
    parser: RecoveryParser,
    on_progress: ProgressCallback | None = None,
) -> PlanningResult:
    """
    Run the planning stage.

    Fields the model left out are filled with a placeholder naming the
    domain, so the result always covers every plan field.
    """
    prompt = build_planning_prompt(analysis)
    report(on_progress, 50)

    parsed = await call_and_parse(
        gateway=gateway,
        parser=parser,
        prompt=prompt,
        system_message=SYSTEM_PROMPT,
        context=STAGE,
        fallback={},
    )
    plan = PlanningResult.model_validate(parsed)
    filled = fill_missing_fields(plan, analysis.domain_classification)

    if filled:
        logger.warning(
            f"Planning reply missed {len(filled)} of {len(PLAN_FIELD_IDS)} fields, filled with placeholders",
            extra={"stage": STAGE, "missing_fields": filled[:10]},
        )
    else:
        logger.info(f"Planning covered all {len(PLAN_FIELD_IDS)} fields", extra={"stage": STAGE})
    return plan
