"""Stage 1: deep analysis of a product idea."""

from typing import Any

from pydantic import BaseModel, ConfigDict

from app.chains._stage_call import ProgressCallback, build_system_message, call_and_parse, report
from app.core.llm_gateway import LLMGateway
from app.core.logging import get_logger
from app.core.recovery_parser import RecoveryParser

logger = get_logger(__name__)

STAGE = "analysis"

SYSTEM_PROMPT = build_system_message("senior product analyst and technical architect", "20 years")

ANALYSIS_PROMPT = """Analyze the following product idea step by step.

Idea: "{idea}"

Work through:
1. The core problem: what it really solves, why existing solutions fall short, where users hurt.
2. The users: who they are, their scenarios, whether they would pay.
3. Technical feasibility: complexity, core technologies, risks.
4. Business value: market size, competitors, revenue model.
5. Implementation path: MVP scope, priorities, milestones.

Return ONLY this JSON object:
{{
  "core_problems": "the core problems, how severe and how common",
  "target_users": "user groups, their traits, scenarios and willingness to pay",
  "market_pain_points": "pain points and where current solutions fall short",
  "technical_complexity": {{
    "level": "difficulty from 1 to 10",
    "main_challenges": "main technical challenges",
    "recommended_stack": "recommended stack with reasons"
  }},
  "business_viability": {{
    "market_potential": "market size and growth",
    "competitors": "competitor strengths and weaknesses",
    "monetization_model": "revenue sources and pricing"
  }},
  "implementation_path": {{
    "mvp_features": "MVP feature list",
    "development_priority": "ordered priorities with reasons",
    "milestones": "milestones with deliverables"
  }},
  "domain_classification": "industry or domain",
  "key_features": ["5-7 core features, most important first"],
  "user_personas": "user personas: needs, habits, technical level",
  "competitive_landscape": "competitive landscape and positioning advice"
}}"""

# Used when the reply cannot be parsed at all
FALLBACK_ANALYSIS: dict[str, Any] = {
    "core_problems": "Needs further analysis",
    "target_users": "To be defined",
    "market_pain_points": "To be identified",
    "technical_complexity": {
        "level": "5",
        "main_challenges": "To be assessed",
        "recommended_stack": "To be decided",
    },
    "business_viability": {
        "market_potential": "To be assessed",
        "competitors": "To be analyzed",
        "monetization_model": "To be designed",
    },
    "implementation_path": {
        "mvp_features": "To be defined",
        "development_priority": "To be ordered",
        "milestones": "To be planned",
    },
    "domain_classification": "General software",
    "key_features": [],
    "user_personas": "To be detailed",
    "competitive_landscape": "To be analyzed",
}

REQUIRED_ANALYSIS_KEYS = ("core_problems", "target_users", "technical_complexity", "business_viability")


class AnalysisResult(BaseModel):
    """Structured analysis of an idea. Unknown keys from the model are kept."""

    model_config = ConfigDict(extra="allow")

    core_problems: Any = None
    target_users: Any = None
    market_pain_points: Any = None
    technical_complexity: dict[str, Any] | None = None
    business_viability: dict[str, Any] | None = None
    implementation_path: dict[str, Any] | None = None
    domain_classification: str | None = None
    key_features: Any = None
    user_personas: Any = None
    competitive_landscape: Any = None

    def is_complete(self) -> bool:
        """True when every required key carries a value."""
        return all(getattr(self, key) for key in REQUIRED_ANALYSIS_KEYS)

    @property
    def feature_count(self) -> int:
        return len(self.key_features) if isinstance(self.key_features, list) else 0


def build_analysis_prompt(idea: str) -> str:
    return ANALYSIS_PROMPT.format(idea=idea.strip())


def _coerce(parsed: dict[str, Any]) -> AnalysisResult:
    # Nested sections sometimes come back as prose
    for key in ("technical_complexity", "business_viability", "implementation_path"):
        if key in parsed and not isinstance(parsed[key], dict):
            parsed[key] = {"summary": parsed[key]} if parsed[key] else None
    if "domain_classification" in parsed and not isinstance(parsed["domain_classification"], str):
        parsed["domain_classification"] = str(parsed["domain_classification"])
    return AnalysisResult.model_validate(parsed)


async def analyze_idea(
    idea: str,
    *,
    gateway: LLMGateway,
    parser: RecoveryParser,
    on_progress: ProgressCallback | None = None,
) -> AnalysisResult:
    """
    Run the analysis stage.

    Args:
        idea: Raw product idea
        gateway: Completion gateway
        parser: Recovery parser for the reply
        on_progress: Receives intermediate stage progress (percent)

    Returns:
        AnalysisResult (fallback content when the reply is unusable)
    """
    prompt = build_analysis_prompt(idea)
    report(on_progress, 50)

    parsed = await call_and_parse(
        gateway=gateway,
        parser=parser,
        prompt=prompt,
        system_message=SYSTEM_PROMPT,
        context=STAGE,
        fallback=FALLBACK_ANALYSIS,
    )
    result = _coerce(parsed)

    logger.info(
        f"Analysis done: domain={result.domain_classification}, {result.feature_count} key features",
        extra={"stage": STAGE},
    )
    return result
