"""Shared call-and-parse step for the plan pipeline chains.

Every stage sends one prompt through the gateway and parses the reply with
the recovery parser, falling back to a stage-specific default when nothing
usable comes back.
"""

import copy
import json
from collections.abc import Callable
from typing import Any

from app.core.llm_gateway import LLMGateway
from app.core.logging import get_logger
from app.core.recovery_parser import RecoveryParser

logger = get_logger(__name__)

ProgressCallback = Callable[[int], None]

# Cap on serialized upstream results embedded in a prompt
MAX_CONTEXT_CHARS = 12000


def build_system_message(role: str, expertise: str) -> str:
    return (
        f"You are a {role} with {expertise} of professional experience. "
        "Reason step by step, ground every recommendation in the material you are given, "
        "and keep the output concrete and actionable.\n\n"
        "Respond with ONLY a JSON value matching the requested structure. "
        "Do not add commentary before or after it."
    )


def to_prompt_json(data: Any, max_chars: int = MAX_CONTEXT_CHARS) -> str:
    """Serialize an upstream result for embedding in a prompt."""
    text = json.dumps(data, ensure_ascii=False, indent=2, default=str)
    if len(text) > max_chars:
        return text[:max_chars] + "\n... (truncated)"
    return text


async def call_and_parse(
    *,
    gateway: LLMGateway,
    parser: RecoveryParser,
    prompt: str,
    system_message: str,
    context: str,
    fallback: dict[str, Any],
    use_cache: bool = True,
) -> dict[str, Any]:
    """
    Send one stage prompt and parse the reply into a dict.

    Gateway errors propagate so the orchestrator can fail the stage. A reply
    that parses to something other than an object yields ``fallback``.
    """
    raw = await gateway.call(prompt, system_message, use_cache=use_cache, context=context)
    parsed = parser.parse(raw, fallback=fallback, context=context)
    if not isinstance(parsed, dict):
        logger.warning(
            f"{context} reply parsed to {type(parsed).__name__}, using fallback",
            extra={"stage": context},
        )
        return copy.deepcopy(fallback)
    return parsed


def report(on_progress: ProgressCallback | None, progress: int) -> None:
    if on_progress is not None:
        on_progress(progress)
