"""Stage 4: task prompts for an AI coding assistant."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.chains._stage_call import (
    ProgressCallback,
    build_system_message,
    call_and_parse,
    report,
    to_prompt_json,
)
from app.chains.plan_layers import PlanningResult
from app.core.llm_gateway import LLMGateway
from app.core.logging import get_logger
from app.core.recovery_parser import RecoveryParser

logger = get_logger(__name__)

STAGE = "coding_prompts"

PROMPT_CATEGORIES = (
    "project_setup",
    "core_feature",
    "data_layer",
    "api",
    "frontend",
    "testing",
    "deployment",
)

SYSTEM_PROMPT = build_system_message("AI prompt engineer for programming tasks", "10 years")

CODING_PROMPTS_PROMPT = """Break the project below into self-contained tasks for an AI coding assistant.

## Project plan
{plan}

## Target language
{language}

1. Identify the core features, components and dependencies between tasks.
2. Order them: infrastructure first, then core features, then enhancements.
3. For each task give the goal, technical requirements, deliverables and how to verify it.
4. Write each prompt so an assistant can execute it without further context.

Return ONLY this JSON object with 8 to 12 prompts:
{{
  "prompts": [
    {{
      "id": "task_1",
      "title": "task title",
      "category": "{categories}",
      "priority": "high|medium|low",
      "prompt": "detailed instruction: background, goal, requirements, steps, verification",
      "technical_requirements": "technical constraints",
      "deliverables": "concrete deliverables",
      "quality_standards": "code quality and performance bar",
      "estimated_time": "time estimate",
      "dependencies": "ids of tasks this depends on"
    }}
  ],
  "execution_order": "order in which to run the tasks",
  "dependencies": "dependency graph between tasks",
  "total_estimated_time": "total estimate",
  "risk_assessment": "risks and mitigations"
}}"""


class CodingPrompt(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str = ""
    title: str = ""
    category: str = ""
    priority: str = "medium"
    prompt: str = ""
    technical_requirements: str = ""
    deliverables: str = ""
    quality_standards: str = ""
    estimated_time: str = ""

    @field_validator(
        "id",
        "title",
        "category",
        "priority",
        "prompt",
        "technical_requirements",
        "deliverables",
        "quality_standards",
        "estimated_time",
        mode="before",
    )
    @classmethod
    def _as_text(cls, value: Any) -> str:
        if value is None:
            return ""
        if isinstance(value, list):
            return "; ".join(str(v) for v in value)
        return value if isinstance(value, str) else str(value)


class CodingPromptsResult(BaseModel):
    model_config = ConfigDict(extra="allow")

    language: str = "typescript"
    prompts: list[CodingPrompt] = Field(default_factory=list)
    execution_order: Any = None
    dependencies: Any = None
    total_estimated_time: Any = None

    def meets_minimum(self, min_count: int) -> bool:
        return len(self.prompts) >= min_count


FALLBACK_PROMPTS: dict[str, Any] = {
    "prompts": [
        {
            "id": "task_1",
            "title": "Project setup",
            "category": "project_setup",
            "prompt": "Create the base project structure",
            "technical_requirements": "Basic development environment",
            "deliverables": "Complete project skeleton",
            "quality_standards": "Consistent code style",
            "estimated_time": "1-2 days",
        }
    ],
    "execution_order": "Sequential",
    "dependencies": "None",
    "total_estimated_time": "To be estimated",
}


def build_coding_prompts_prompt(plan: PlanningResult, language: str) -> str:
    return CODING_PROMPTS_PROMPT.format(
        plan=to_prompt_json(plan.by_layer()),
        language=language,
        categories="|".join(PROMPT_CATEGORIES),
    )


def _coerce(parsed: dict[str, Any], language: str) -> CodingPromptsResult:
    raw_prompts = parsed.get("prompts")
    if isinstance(parsed.get("tasks"), list) and not isinstance(raw_prompts, list):
        raw_prompts = parsed["tasks"]
    if not isinstance(raw_prompts, list):
        raw_prompts = []

    prompts = []
    for index, item in enumerate(raw_prompts, start=1):
        if isinstance(item, str):
            item = {"title": item[:80], "prompt": item}
        if not isinstance(item, dict):
            continue
        item.setdefault("id", f"task_{index}")
        prompts.append(item)

    data = {k: v for k, v in parsed.items() if k not in ("prompts", "tasks", "language")}
    return CodingPromptsResult.model_validate({**data, "prompts": prompts, "language": language})


async def generate_coding_prompts(
    plan: PlanningResult,
    language: str,
    *,
    gateway: LLMGateway,
    parser: RecoveryParser,
    on_progress: ProgressCallback | None = None,
) -> CodingPromptsResult:
    """Run the coding-prompt stage for the given target language."""
    prompt = build_coding_prompts_prompt(plan, language)
    report(on_progress, 50)

    parsed = await call_and_parse(
        gateway=gateway,
        parser=parser,
        prompt=prompt,
        system_message=SYSTEM_PROMPT,
        context=STAGE,
        fallback=FALLBACK_PROMPTS,
    )
    result = _coerce(parsed, language)

    logger.info(
        f"Generated {len(result.prompts)} coding prompts for {language}",
        extra={"stage": STAGE},
    )
    return result
