"""Time-to-completion estimates from historical stage durations."""

import math
import threading
import time
from collections import deque
from collections.abc import Callable
from datetime import UTC, datetime

from app.core.logging import get_logger
from app.core.metrics import MetricsRecorder
from app.core.schemas_pipeline import (
    PipelineRun,
    StageStatus,
    StageTimeStats,
    TimeEstimate,
)

logger = get_logger(__name__)

# Fallback durations (seconds) for stages with no history yet
BASE_STAGE_SECONDS: dict[str, float] = {
    "analysis": 8.0,
    "planning": 12.0,
    "visualizations": 10.0,
    "coding_prompts": 15.0,
    "aggregation": 5.0,
}
UNKNOWN_STAGE_SECONDS = 10.0

# Stage progress (percent) above which the live projection replaces the average
LIVE_PROJECTION_MIN_PROGRESS = 10


class StageDurationHistory:
    """Bounded per-stage ring buffers of completed durations. In memory only."""

    def __init__(self, capacity: int = 50, metrics: MetricsRecorder | None = None):
        if capacity < 1:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self.capacity = capacity
        self._metrics = metrics
        self._lock = threading.Lock()
        self._durations: dict[str, deque[float]] = {}

    def record(self, stage: str, duration: float) -> None:
        with self._lock:
            samples = self._durations.setdefault(stage, deque(maxlen=self.capacity))
            samples.append(duration)
            count = len(samples)
        if self._metrics:
            self._metrics.record_event(
                "stage_completion_time", duration, stage=stage, sample_count=count
            )

    def samples(self, stage: str) -> list[float]:
        with self._lock:
            return list(self._durations.get(stage, ()))

    def sample_count(self, stage: str) -> int:
        with self._lock:
            return len(self._durations.get(stage, ()))

    def average(self, stage: str) -> float:
        samples = self.samples(stage)
        if not samples:
            return BASE_STAGE_SECONDS.get(stage, UNKNOWN_STAGE_SECONDS)
        return sum(samples) / len(samples)

    def stats(self, stage: str) -> StageTimeStats:
        samples = self.samples(stage)
        if not samples:
            base = BASE_STAGE_SECONDS.get(stage, UNKNOWN_STAGE_SECONDS)
            return StageTimeStats(stage=stage, average_time=base, min_time=base, max_time=base)

        mean = sum(samples) / len(samples)
        variance = sum((s - mean) ** 2 for s in samples) / len(samples)
        return StageTimeStats(
            stage=stage,
            average_time=mean,
            min_time=min(samples),
            max_time=max(samples),
            sample_count=len(samples),
            standard_deviation=math.sqrt(variance),
        )

    def clear(self) -> None:
        with self._lock:
            self._durations.clear()


class ProgressEstimator:
    """
    Projects remaining run time.

    Remaining time is the sum of the historical average of every stage that
    has not finished. A processing stage past 10% progress is projected from
    its own elapsed time instead. Confidence starts at 0.5, grows with the
    number of historical samples (and a live projection), and shrinks when
    the remaining time dominates the time already spent.
    """

    def __init__(
        self,
        history: StageDurationHistory | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.history = history or StageDurationHistory()
        self._clock = clock

    def estimate(self, run: PipelineRun) -> TimeEstimate:
        now = self._clock()
        total = 0.0
        remaining = 0.0
        sample_confidence = 0.0
        live_projection = False

        for stage in run.stages:
            average = self.history.average(stage.key)
            sample_confidence += min(self.history.sample_count(stage.key) / 10, 1.0)

            if stage.is_terminal:
                total += stage.duration if stage.duration is not None else average
            elif stage.status == StageStatus.PROCESSING and stage.start_time is not None:
                stage_elapsed = max(now - stage.start_time, 0.0)
                if stage.progress > LIVE_PROJECTION_MIN_PROGRESS:
                    projected = stage_elapsed / (stage.progress / 100)
                    live_projection = True
                else:
                    projected = max(average, stage_elapsed)
                total += projected
                remaining += max(projected - stage_elapsed, 0.0)
            else:
                total += average
                remaining += average

        elapsed = max(now - run.started_at, 0.0) if run.started_at is not None else 0.0

        confidence = 0.5 + 0.1 * sample_confidence
        if live_projection:
            confidence += 0.2
        if remaining + elapsed > 0:
            confidence -= 0.3 * remaining / (remaining + elapsed)
        confidence = round(min(max(confidence, 0.1), 0.95), 2)

        return TimeEstimate(
            estimated_total=round(total, 1),
            estimated_remaining=round(remaining, 1),
            confidence=confidence,
            completion_time=datetime.fromtimestamp(now + remaining, UTC),
            is_reliable=confidence > 0.6 and remaining > 0,
        )
