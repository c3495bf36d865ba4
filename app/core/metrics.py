"""Performance metrics and timing instrumentation.

Utilities for tracking pipeline events (cache hits, retries, circuit trips,
parse outcomes) and logging operation performance.
"""

import threading
import time
from collections import defaultdict
from contextlib import contextmanager
from typing import Any, Optional

from app.core.logging import get_logger

logger = get_logger(__name__)


@contextmanager
def timer(operation_name: str, run_id: Optional[str] = None, log_level: str = "info"):
    """
    Context manager for timing operations.

    Logs operation duration on completion.

    Args:
        operation_name: Name of the operation being timed
        run_id: Optional pipeline run id for context
        log_level: Log level ("debug", "info", "warning")

    Usage:
        with timer("Parallel generation", run_id):
            await asyncio.gather(...)

    Logs:
        INFO: ⏱️ Parallel generation took 245.3ms
    """
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed_ms = (time.perf_counter() - start) * 1000

        extra = {
            "operation": operation_name,
            "duration_ms": round(elapsed_ms, 1),
        }
        if run_id:
            extra["run_id"] = run_id

        log_msg = f"⏱️ {operation_name} took {elapsed_ms:.1f}ms"

        if log_level == "debug":
            logger.debug(log_msg, extra=extra)
        elif log_level == "warning":
            logger.warning(log_msg, extra=extra)
        else:
            logger.info(log_msg, extra=extra)


class MetricsRecorder:
    """
    In-process event counters shared by the cache, retry wrapper, parser and gateway.

    Every event increments a counter and accumulates its value, so
    durations (``stage_completion_time``) and counts (``retry_attempts``)
    use the same call. Safe to call from concurrent stages.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counts: dict[str, int] = defaultdict(int)
        self._totals: dict[str, float] = defaultdict(float)
        self._last: dict[str, dict[str, Any]] = {}

    def record_event(self, name: str, value: float = 1, **metadata: Any) -> None:
        """
        Record one occurrence of an event.

        Args:
            name: Event name (e.g. "cache_hits", "circuit_opened")
            value: Value to accumulate (1 for counters, seconds for durations)
            **metadata: Context logged with the event and kept as the last sample
        """
        with self._lock:
            self._counts[name] += 1
            self._totals[name] += value
            self._last[name] = dict(metadata)

        logger.debug(f"event {name}={value}", extra={"extra_data": {"event": name, **metadata}})

    def count(self, name: str) -> int:
        """Number of times an event was recorded."""
        with self._lock:
            return self._counts.get(name, 0)

    def total(self, name: str) -> float:
        """Sum of recorded values for an event."""
        with self._lock:
            return self._totals.get(name, 0.0)

    def snapshot(self) -> dict[str, dict[str, Any]]:
        """Counters, totals and the last metadata for every event."""
        with self._lock:
            return {
                name: {
                    "count": self._counts[name],
                    "total": round(self._totals[name], 4),
                    "last": self._last.get(name, {}),
                }
                for name in sorted(self._counts)
            }

    def reset(self) -> None:
        """Drop all counters."""
        with self._lock:
            self._counts.clear()
            self._totals.clear()
            self._last.clear()
