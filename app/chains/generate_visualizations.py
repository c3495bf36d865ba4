"""Stage 3: Mermaid diagrams for the planned system."""

import re
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

STAGE = "visualizations"

DIAGRAM_KEYS = ("system_architecture", "data_flow", "deployment_architecture")

SYSTEM_PROMPT = build_system_message("technical diagram designer specialised in Mermaid.js", "10 years")

VISUALIZATION_PROMPT = """Draw three Mermaid diagrams for the technical plan below.

## Technical plan
{plan}

1. System architecture: main components, their relationships and layers.
2. Data flow: entry and exit points, processing nodes, transformations.
3. Deployment architecture: environments, services, scaling, monitoring and backups.

Return ONLY this JSON object:
{{
  "system_architecture": {{
    "title": "System architecture",
    "mermaid_code": "complete Mermaid code using graph TB",
    "description": "what the diagram shows"
  }},
  "data_flow": {{
    "title": "Data flow",
    "mermaid_code": "complete Mermaid code showing the data flow",
    "description": "what the diagram shows"
  }},
  "deployment_architecture": {{
    "title": "Deployment architecture",
    "mermaid_code": "complete Mermaid code showing the deployment",
    "description": "what the diagram shows"
  }}
}}

Use valid Mermaid syntax, label every node, and avoid < and > characters in labels."""

VALID_DIAGRAM_TYPES = (
    "graph",
    "flowchart",
    "sequencediagram",
    "classdiagram",
    "statediagram",
    "erdiagram",
    "gitgraph",
)
GRAPH_DIRECTIONS = ("TB", "TD", "BT", "RL", "LR")

# An edge may leave a bare id or a labelled node: A --> B, A[User] --> B
_EDGE_SOURCE = r"[\w\]\)\}]"
_CONNECTION_PATTERNS = [
    re.compile(_EDGE_SOURCE + r"\s*-->\s*\w"),
    re.compile(_EDGE_SOURCE + r"\s*---\s*\w"),
    re.compile(_EDGE_SOURCE + r"\s*-\.\s*\w"),
    re.compile(_EDGE_SOURCE + r"\s*==>\s*\w"),
    re.compile(_EDGE_SOURCE + r"\s*-+>>\s*\w"),
]
# Arrow tokens (-->, ==>, -.->, ->>, <-->) legitimately contain < and >
_ARROW = re.compile(r"<?[-=.]{1,3}>{1,2}")
_LABEL_PATTERNS = [
    re.compile(r"\w+\[.+?\]"),
    re.compile(r"\w+\(.+?\)"),
    re.compile(r"\w+\{.+?\}"),
]


class Diagram(BaseModel):
    model_config = ConfigDict(extra="allow")

    title: str = ""
    mermaid_code: str = ""
    description: str = ""

    @field_validator("title", "mermaid_code", "description", mode="before")
    @classmethod
    def _as_text(cls, value: Any) -> str:
        if value is None:
            return ""
        if isinstance(value, list):
            return "\n".join(str(v) for v in value)
        return value if isinstance(value, str) else str(value)


DEFAULT_DIAGRAMS: dict[str, Diagram] = {
    "system_architecture": Diagram(
        title="System architecture",
        mermaid_code="graph TB\n    A[User] --> B[Application]\n    B --> C[Database]",
        description="Baseline system architecture",
    ),
    "data_flow": Diagram(
        title="Data flow",
        mermaid_code="graph LR\n    A[Input] --> B[Processing]\n    B --> C[Output]",
        description="Baseline data flow",
    ),
    "deployment_architecture": Diagram(
        title="Deployment architecture",
        mermaid_code="graph TB\n    A[Frontend] --> B[Backend]\n    B --> C[Database]",
        description="Baseline deployment architecture",
    ),
}


class VisualizationResult(BaseModel):
    """The three plan diagrams plus any Mermaid warnings found while validating them."""

    model_config = ConfigDict(extra="allow")

    system_architecture: Diagram = Field(default_factory=Diagram)
    data_flow: Diagram = Field(default_factory=Diagram)
    deployment_architecture: Diagram = Field(default_factory=Diagram)
    warnings: dict[str, list[str]] = Field(default_factory=dict)
    defaulted: list[str] = Field(default_factory=list)

    def diagrams(self) -> dict[str, Diagram]:
        return {key: getattr(self, key) for key in DIAGRAM_KEYS}

    def is_complete(self) -> bool:
        return all(d.mermaid_code.strip() for d in self.diagrams().values())


def validate_mermaid_code(code: str) -> list[str]:
    """
    Lint a Mermaid snippet.

    Returns:
        Human-readable warnings; empty when nothing looks wrong
    """
    trimmed = code.strip()
    if not trimmed:
        return ["empty Mermaid code"]

    warnings: list[str] = []
    lowered = trimmed.lower()

    if not lowered.startswith(VALID_DIAGRAM_TYPES):
        warnings.append("missing a known diagram type declaration")

    if lowered.startswith("graph"):
        first_line = trimmed.splitlines()[0]
        if not any(re.search(rf"\b{d}\b", first_line) for d in GRAPH_DIRECTIONS):
            warnings.append("graph has no direction (TB, LR, ...)")

    if not any(p.search(trimmed) for p in _CONNECTION_PATTERNS):
        warnings.append("no node connections found")

    if not any(p.search(trimmed) for p in _LABEL_PATTERNS):
        warnings.append("nodes have no labels")

    for opener, closer in (("[", "]"), ("(", ")"), ("{", "}")):
        if trimmed.count(opener) != trimmed.count(closer):
            warnings.append(f"unbalanced brackets: {opener}{closer}")

    bad_chars = sorted(set(re.findall(r"[<>]", _ARROW.sub(" ", trimmed))))
    if bad_chars:
        warnings.append(f"contains characters that may break rendering: {', '.join(bad_chars)}")

    return warnings


def build_visualization_prompt(plan: PlanningResult) -> str:
    relevant = {
        key: getattr(plan, key)
        for key in ("product_name", "tech_stack", "deployment", "development_plan", "hosting_platform")
    }
    return VISUALIZATION_PROMPT.format(plan=to_prompt_json(relevant))


def _normalize(parsed: dict[str, Any]) -> VisualizationResult:
    """Coerce model output into diagrams, substituting defaults for missing ones."""
    diagrams: dict[str, Any] = {}
    defaulted: list[str] = []

    for key in DIAGRAM_KEYS:
        raw = parsed.get(key)
        if isinstance(raw, str):
            raw = {"mermaid_code": raw}
        diagram = Diagram.model_validate(raw) if isinstance(raw, dict) else None
        if diagram is None or not diagram.mermaid_code.strip():
            diagram = DEFAULT_DIAGRAMS[key].model_copy(deep=True)
            defaulted.append(key)
        diagrams[key] = diagram

    warnings = {key: w for key, d in diagrams.items() if (w := validate_mermaid_code(d.mermaid_code))}
    return VisualizationResult(**diagrams, warnings=warnings, defaulted=defaulted)


async def generate_visualizations(
    plan: PlanningResult,
    *,
    gateway: LLMGateway,
    parser: RecoveryParser,
    on_progress: ProgressCallback | None = None,
) -> VisualizationResult:
    """Run the visualization stage. Missing diagrams are replaced by defaults."""
    prompt = build_visualization_prompt(plan)
    report(on_progress, 33)

    parsed = await call_and_parse(
        gateway=gateway,
        parser=parser,
        prompt=prompt,
        system_message=SYSTEM_PROMPT,
        context=STAGE,
        fallback={key: d.model_dump() for key, d in DEFAULT_DIAGRAMS.items()},
    )
    report(on_progress, 66)

    result = _normalize(parsed)
    for key, issues in result.warnings.items():
        logger.warning(f"{key} Mermaid warnings: {'; '.join(issues)}", extra={"stage": STAGE})
    if result.defaulted:
        logger.warning(
            f"Replaced missing diagrams with defaults: {', '.join(result.defaulted)}",
            extra={"stage": STAGE},
        )
    return result
