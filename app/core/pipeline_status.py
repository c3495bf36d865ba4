"""Per-run stage bookkeeping for the plan pipeline.

``PipelineStatusTracker`` owns one ``PipelineRun``. Every stage mutation goes
through ``update_stage``, which recomputes progress, records completed
durations, refreshes the time estimate and emits a snapshot.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from pydantic import BaseModel

from app.core.errors import user_facing_message
from app.core.logging import get_logger
from app.core.progress_estimator import ProgressEstimator
from app.core.schemas_pipeline import (
    PerformanceMetrics,
    PipelineEvent,
    PipelineRun,
    StageStatus,
)

logger = get_logger(__name__)

T = TypeVar("T", bound=BaseModel)

StatusCallback = Callable[[PipelineRun], None]


class PipelineStatusTracker:
    """Mutates one run's stages and publishes snapshots of it."""

    def __init__(
        self,
        run: PipelineRun,
        estimator: ProgressEstimator,
        on_status: StatusCallback | None = None,
        queue: asyncio.Queue | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.run = run
        self.estimator = estimator
        self._on_status = on_status
        self._queue = queue
        self._clock = clock

    def now(self) -> float:
        return self._clock()

    def start(self) -> None:
        self.run.started_at = self.now()
        self.run.refresh()
        self.run.time_estimate = self.estimator.estimate(self.run)

    def update_stage(self, key: str, **changes: Any) -> None:
        """
        Apply changes to one stage and publish the new run state.

        Raises:
            ValueError: If the status change would move the stage backwards
        """
        stage = self.run.stage(key)
        new_status = changes.get("status")
        if new_status is not None and not stage.can_transition(new_status):
            raise ValueError(f"Illegal transition for {key}: {stage.status.value} -> {new_status.value}")

        for name, value in changes.items():
            setattr(stage, name, value)

        self.run.current_stage_index = max(self.run.current_stage_index, self.run.stage_index(key))
        self.run.refresh()

        if new_status == StageStatus.COMPLETED and stage.duration is not None:
            self.estimator.history.record(key, stage.duration)

        self.run.time_estimate = self.estimator.estimate(self.run)
        self.run.performance_metrics = self._performance_metrics()
        self._emit()

    def _performance_metrics(self) -> PerformanceMetrics:
        durations = [
            s.duration for s in self.run.stages if s.status == StageStatus.COMPLETED and s.duration is not None
        ]
        total = sum(durations)
        return PerformanceMetrics(
            average_stage_time=round(total / len(durations), 3) if durations else 0,
            total_elapsed_time=round(total, 3),
            estimated_remaining_time=self.run.time_estimate.estimated_remaining if self.run.time_estimate else 0,
        )

    def _emit(self) -> None:
        snapshot = self.run.model_copy(deep=True)
        if self._on_status is not None:
            try:
                self._on_status(snapshot)
            except Exception:
                logger.warning(
                    "Status callback raised, continuing run",
                    exc_info=True,
                    extra={"run_id": self.run.id},
                )
        if self._queue is not None:
            self._queue.put_nowait(PipelineEvent(type="status", run=snapshot))

    async def run_stage(
        self,
        key: str,
        work: Callable[[Callable[[int], None]], Awaitable[T]],
    ) -> tuple[T | None, str | None]:
        """
        Execute one stage's work with status tracking.

        Args:
            key: Stage key
            work: Receives a progress reporter and returns the stage result

        Returns:
            (result, None) on success, (None, user-facing error) on failure
        """
        stage = self.run.stage(key)
        self.update_stage(key, status=StageStatus.PROCESSING, progress=0, start_time=self.now())

        def on_progress(progress: int) -> None:
            self.update_stage(key, progress=progress)

        try:
            result = await work(on_progress)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            message = user_facing_message(e, stage.name)
            logger.error(
                f"Stage {key} failed: {e}",
                extra={"run_id": self.run.id, "stage": key, "error_type": type(e).__name__},
            )
            self.update_stage(
                key, status=StageStatus.FAILED, progress=0, error=message, end_time=self.now()
            )
            return None, message

        dumped = result.model_dump(mode="json")
        self.run.results[key] = dumped
        self.update_stage(
            key, status=StageStatus.COMPLETED, progress=100, result=dumped, end_time=self.now()
        )
        logger.info(
            f"Stage {key} completed in {stage.duration:.2f}s",
            extra={"run_id": self.run.id, "stage": key},
        )
        return result, None

    def fail_processing_stages(self, message: str) -> list[str]:
        """Mark every stage still processing as failed. Returns their keys."""
        failed = []
        for stage in self.run.stages:
            if stage.status == StageStatus.PROCESSING:
                self.update_stage(
                    stage.key,
                    status=StageStatus.FAILED,
                    progress=0,
                    error=message,
                    end_time=self.now(),
                )
                failed.append(stage.key)
        return failed

    def snapshot(self) -> PipelineRun:
        return self.run.model_copy(deep=True)
