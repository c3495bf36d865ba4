"""Result quality scoring for assembled plans.

The pipeline treats the scorer as an opaque ``score(text) -> float`` in
[0, 100]. The default heuristic looks only at surface features of the
serialized deliverable and makes no claim of calibration.
"""

import re
from typing import Protocol

_WORD = re.compile(r"[A-Za-z][A-Za-z'-]+|[\u4e00-\u9fff]")
_KEY = re.compile(r'"([^"\\]{1,80})"\s*:')

# Character count at which the length component saturates
LENGTH_SATURATION = 12000
# Distinct JSON keys at which the structure component saturates
STRUCTURE_SATURATION = 60


class QualityScorer(Protocol):
    def score(self, text: str) -> float: ...


class HeuristicQualityScorer:
    """
    Deterministic score from length, structure and vocabulary diversity.

    Components (max points):
        length (30): grows linearly with size up to LENGTH_SATURATION chars
        structure (35): distinct keys, up to STRUCTURE_SATURATION
        vocabulary (35): type/token ratio of the words, scaled so that
            a ratio of 0.5 or above earns full marks
    """

    def score(self, text: str) -> float:
        if not text or not text.strip():
            return 0.0

        length_points = 30 * min(len(text) / LENGTH_SATURATION, 1.0)

        keys = {k.lower() for k in _KEY.findall(text)}
        structure_points = 35 * min(len(keys) / STRUCTURE_SATURATION, 1.0)

        words = [w.lower() for w in _WORD.findall(text)]
        if words:
            ratio = len(set(words)) / len(words)
            vocabulary_points = 35 * min(ratio / 0.5, 1.0)
            # Very short texts trivially have a high ratio
            vocabulary_points *= min(len(words) / 200, 1.0)
        else:
            vocabulary_points = 0.0

        return round(min(length_points + structure_points + vocabulary_points, 100.0), 1)


def quality_level(score: float) -> str:
    if score >= 85:
        return "excellent"
    if score >= 70:
        return "good"
    if score >= 55:
        return "fair"
    return "poor"
