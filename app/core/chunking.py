"""Prompt windowing for oversized completion requests."""

from dataclasses import dataclass

# How far back from a hard cut to look for a line/word break
_BREAK_LOOKBACK = 200


@dataclass(frozen=True)
class PromptWindow:
    """One overlapping slice of a prompt."""

    index: int
    content: str
    start_char: int
    end_char: int
    total: int = 0


def _soft_end(text: str, start: int, hard_end: int, min_end: int) -> int:
    """Move a cut back to the nearest newline or space, never before ``min_end``."""
    if hard_end >= len(text):
        return len(text)
    floor = max(min_end, hard_end - _BREAK_LOOKBACK)
    for sep in ("\n", " "):
        cut = text.rfind(sep, floor, hard_end)
        if cut > start:
            return cut + 1
    return hard_end


def split_prompt(text: str, max_chars: int = 8192, overlap: int = 200) -> list[PromptWindow]:
    """
    Split a prompt into overlapping windows.

    Each window holds at most ``max_chars`` characters and repeats the last
    ``overlap`` characters of the previous one so that sentences cut at a
    boundary are seen whole by at least one call. Cuts prefer line and word
    breaks close to the limit.

    Args:
        text: Prompt text
        max_chars: Maximum characters per window
        overlap: Characters shared by consecutive windows

    Returns:
        Windows in order, each carrying the total window count

    Raises:
        ValueError: If max_chars <= overlap
    """
    if max_chars <= overlap:
        raise ValueError(f"max_chars ({max_chars}) must be greater than overlap ({overlap})")

    if not text:
        return []

    bounds: list[tuple[int, int]] = []
    start = 0
    text_length = len(text)

    while start < text_length:
        hard_end = min(start + max_chars, text_length)
        end = _soft_end(text, start, hard_end, min_end=start + overlap + 1)
        bounds.append((start, end))
        if end >= text_length:
            break
        start = end - overlap

    return [
        PromptWindow(index=i, content=text[s:e], start_char=s, end_char=e, total=len(bounds))
        for i, (s, e) in enumerate(bounds)
    ]
