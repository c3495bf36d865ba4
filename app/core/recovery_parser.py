"""Best-effort extraction of JSON values from model output.

Model output is supposed to be JSON but often arrives wrapped in markdown
fences, followed by commentary, truncated, or written with Python/JS
literal syntax. ``RecoveryParser.parse`` runs an ordered cascade of
strategies and returns the first value that passes structural validation,
falling back to a caller-supplied value (or an error marker) when none do.
It never raises.

Strict strategies see the text with curly quotes intact, so valid JSON whose
string values contain typographic quotes round-trips unchanged. The repair
strategies normalize quotes and hand the candidate to ``json_repair``.
"""

import copy
import json
import re
import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from json_repair import repair_json

from app.core.logging import get_logger
from app.core.metrics import MetricsRecorder

logger = get_logger(__name__)

Strategy = Callable[[str], tuple[Any, bool]]

_ZERO_WIDTH = re.compile("[\u200b-\u200d\ufeff]")
_FENCE = re.compile(r"```(?:[\w+-]*)?\s*\n?(.*?)```", re.DOTALL)
_KEY_VALUE = re.compile(
    r"""["']?([A-Za-z_][\w-]*)["']?\s*[:：]\s*("[^"\n]*"|'[^'\n]*'|[^,\n}\]]+)""",
)
_INTEGER = re.compile(r"-?\d+")
_FLOAT = re.compile(r"-?\d+(?:\.\d+)?(?:[eE][+-]?\d+)?")

_CURLY_QUOTES = str.maketrans({"\u201c": '"', "\u201d": '"', "\u2018": "'", "\u2019": "'"})
_CLOSERS = {"{": "}", "[": "]"}


def preprocess(text: str) -> str:
    """Strip invisible characters, normalize line endings and tabs, trim."""
    text = _ZERO_WIDTH.sub("", text)
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = text.replace("\t", "  ")
    return text.strip()


def normalize_quotes(text: str) -> str:
    """Curly double and single quotes to their straight forms."""
    return text.translate(_CURLY_QUOTES)


def is_valid_structure(value: Any) -> bool:
    """A usable result is a non-empty dict or a non-empty list."""
    return isinstance(value, (dict, list)) and len(value) > 0


def _loads(text: str) -> tuple[Any, bool]:
    try:
        return json.loads(text), True
    except (json.JSONDecodeError, RecursionError):
        return None, False


def _span(text: str, opener: str, closer: str) -> str | None:
    start = text.find(opener)
    end = text.rfind(closer)
    if start == -1 or end <= start:
        return None
    return text[start : end + 1]


def _first_opener(text: str) -> int | None:
    starts = [i for i in (text.find("{"), text.find("[")) if i != -1]
    return min(starts) if starts else None


def _repair(candidate: str) -> tuple[Any, bool]:
    return _loads(repair_json(candidate, ensure_ascii=False))


def trim_to_container(text: str) -> str | None:
    """
    Cut the text down to its first JSON container.

    Walks from the first opening bracket, tracking string state and a
    bracket stack, and stops at the matching closer. A truncated container
    runs to the end of the text. Returns None when there is no opener.
    """
    start = _first_opener(text)
    if start is None:
        return None
    text = text[start:]

    stack: list[str] = []
    in_string = False
    escaped = False
    for i, ch in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in _CLOSERS:
            stack.append(_CLOSERS[ch])
        elif ch in "}]":
            if stack and stack[-1] == ch:
                stack.pop()
            if not stack:
                return text[: i + 1]
    return text


# Strategies. Each takes preprocessed text and returns (value, ok).


def parse_strict(text: str) -> tuple[Any, bool]:
    return _loads(text)


def parse_fenced_block(text: str) -> tuple[Any, bool]:
    """First ```fenced``` block whose content starts with { or [."""
    for match in _FENCE.finditer(text):
        content = match.group(1).strip()
        if content.startswith(("{", "[")):
            value, ok = _loads(content)
            if ok:
                return value, True
    return None, False


def parse_bracket_span(text: str) -> tuple[Any, bool]:
    """First { to last }, then first [ to last ]."""
    for opener, closer in (("{", "}"), ("[", "]")):
        span = _span(text, opener, closer)
        if span is not None:
            value, ok = _loads(span)
            if ok and is_valid_structure(value):
                return value, True
    return None, False


def parse_fuzzy_repair(text: str) -> tuple[Any, bool]:
    """Repair the first-opener-to-last-closer span (trailing commas, bare keys, single quotes)."""
    text = normalize_quotes(text)
    start = _first_opener(text)
    if start is None:
        return None, False
    end = max(text.rfind("}"), text.rfind("]"))
    return _repair(text[start : end + 1] if end > start else text[start:])


def parse_smart_repair(text: str) -> tuple[Any, bool]:
    """Trim prose around the first container, then close whatever was left open."""
    candidate = trim_to_container(normalize_quotes(text))
    if candidate is None:
        return None, False
    return _repair(candidate)


def _infer_scalar(raw: str) -> Any:
    value = raw.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
        return value[1:-1]
    lowered = value.lower()
    if lowered in ("true", "false"):
        return lowered == "true"
    if lowered in ("null", "none"):
        return None
    if _INTEGER.fullmatch(value):
        return int(value)
    if _FLOAT.fullmatch(value):
        return float(value)
    return value.strip("\"'")


def parse_key_values(text: str) -> tuple[Any, bool]:
    """Rebuild a flat object from ``key: value`` lines."""
    result: dict[str, Any] = {}
    for match in _KEY_VALUE.finditer(normalize_quotes(text)):
        key = match.group(1)
        if key.lower() in ("http", "https"):
            continue
        result[key] = _infer_scalar(match.group(2))
    return (result, True) if result else (None, False)


DEFAULT_STRATEGIES: list[tuple[str, Strategy]] = [
    ("strict", parse_strict),
    ("fenced_block", parse_fenced_block),
    ("bracket_span", parse_bracket_span),
    ("fuzzy_repair", parse_fuzzy_repair),
    ("smart_repair", parse_smart_repair),
    ("key_value", parse_key_values),
]


def fallback_marker(context: str | None) -> dict[str, Any]:
    return {
        "error": "JSON parsing failed",
        "context": context or "unknown",
        "fallback": True,
        "generated_at": datetime.now(UTC).isoformat(),
    }


class RecoveryParser:
    """
    Cascade parser with per-strategy statistics.

    Statistics live on the instance; the gateway and the pipeline share one
    parser so ``stats()`` reflects every parse done during a run.
    """

    def __init__(
        self,
        strategies: list[tuple[str, Strategy]] | None = None,
        metrics: MetricsRecorder | None = None,
    ):
        self._strategies = list(strategies or DEFAULT_STRATEGIES)
        self._metrics = metrics
        self._lock = threading.Lock()
        self._stats: dict[str, dict[str, float]] = {}

    def _record_strategy(self, name: str, success: bool, duration_ms: float) -> None:
        with self._lock:
            entry = self._stats.setdefault(
                name, {"success": 0, "failure": 0, "count": 0, "total_duration_ms": 0.0}
            )
            entry["success" if success else "failure"] += 1
            entry["count"] += 1
            entry["total_duration_ms"] += duration_ms

    def parse(self, raw_text: str | None, fallback: Any = None, context: str | None = None) -> Any:
        """
        Extract a structured value from raw model output.

        Args:
            raw_text: Model output
            fallback: Value returned (deep-copied) when every strategy fails
            context: Label for logs and the error marker

        Returns:
            Parsed dict/list, a copy of ``fallback``, or an error-marker dict
        """
        start = time.perf_counter()
        text = preprocess(raw_text or "")

        if text:
            for name, strategy in self._strategies:
                t0 = time.perf_counter()
                try:
                    value, ok = strategy(text)
                except Exception as e:
                    logger.warning(
                        f"Parse strategy {name} raised: {e}",
                        extra={"context": context or "unknown"},
                    )
                    value, ok = None, False
                success = ok and is_valid_structure(value)
                self._record_strategy(name, success, (time.perf_counter() - t0) * 1000)
                if success:
                    logger.debug(
                        f"Parsed model output with {name} "
                        f"in {(time.perf_counter() - start) * 1000:.1f}ms",
                        extra={"context": context or "unknown"},
                    )
                    if self._metrics:
                        self._metrics.record_event("json_parse_success", strategy=name)
                    return value

        self._record_strategy("fallback", True, (time.perf_counter() - start) * 1000)
        if self._metrics:
            self._metrics.record_event("json_parse_fallback", context=context or "unknown")
        logger.warning(
            f"All parse strategies failed, using fallback (raw length {len(raw_text or '')})",
            extra={"context": context or "unknown"},
        )
        if fallback is not None:
            return copy.deepcopy(fallback)
        return fallback_marker(context)

    def stats(self) -> dict[str, dict[str, float]]:
        """Success/failure counts and cumulative time per strategy."""
        with self._lock:
            return {name: dict(entry) for name, entry in self._stats.items()}

    def reset_stats(self) -> None:
        with self._lock:
            self._stats.clear()
