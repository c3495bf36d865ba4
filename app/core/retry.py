"""Retry with exponential backoff and a per-context circuit breaker.

Every outbound completion call goes through ``RetryExecutor``. Retries use
exponential backoff with up to 10% jitter; repeated failures for one
context open that context's circuit so later calls fail fast until the
recovery timeout has passed.
"""

import asyncio
import json
import random
import threading
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, TypeVar

import httpx

from app.core.errors import (
    CircuitOpenError,
    EmptyResponseError,
    RetryFailedError,
    status_code_of,
)
from app.core.logging import get_logger
from app.core.metrics import MetricsRecorder

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY = 1.0
DEFAULT_MAX_DELAY = 30.0
JITTER_FACTOR = 0.1

DEFAULT_FAILURE_THRESHOLD = 5
DEFAULT_RECOVERY_TIMEOUT = 60.0

RETRYABLE_STATUS_CODES = frozenset({408, 429, 502, 503, 504})

_RETRYABLE_MESSAGE_MARKERS = ("json", "parse", "unexpected token", "timeout", "timed out")

# socket.gaierror errno for a temporary DNS failure
_EAI_AGAIN = -3


def compute_backoff_delay(
    retry_number: int,
    base_delay: float,
    max_delay: float,
    jitter: float | None = None,
) -> float:
    """
    Delay before the given retry (1-based).

    ``min(base * 2**(n-1) * (1 + jitter), max_delay)`` with jitter drawn
    from [0, 0.1) unless supplied.
    """
    if jitter is None:
        jitter = random.random() * JITTER_FACTOR
    exponential = base_delay * (2 ** (retry_number - 1))
    return min(exponential * (1 + jitter), max_delay)


def default_retry_condition(error: BaseException) -> bool:
    """Return True when an error looks transient and the call is worth repeating."""
    if isinstance(error, (httpx.TransportError, httpx.TimeoutException)):
        return True
    if isinstance(error, (ConnectionError, TimeoutError, asyncio.TimeoutError)):
        return True
    if isinstance(error, OSError) and error.errno == _EAI_AGAIN:
        return True
    if isinstance(error, (json.JSONDecodeError, EmptyResponseError)):
        return True

    status = status_code_of(error)
    if status is not None:
        return status in RETRYABLE_STATUS_CODES or 500 <= status < 600

    message = str(error).lower()
    return any(marker in message for marker in _RETRYABLE_MESSAGE_MARKERS)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitRecord:
    """Failure bookkeeping for one context. Absent from the map means closed."""

    failures: int = 0
    state: CircuitState = CircuitState.CLOSED
    last_failure_time: float = 0.0


class RetryExecutor:
    """
    Runs async operations with retries, tracking one circuit per context.

    Each executor owns its circuit map, so separate instances (e.g. one per
    test) never share breaker state.
    """

    def __init__(
        self,
        metrics: MetricsRecorder | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.metrics = metrics
        self._sleep = sleep
        self._clock = clock
        self._lock = threading.Lock()
        self._circuits: dict[str, CircuitRecord] = {}

    def _record(self, name: str, **metadata: Any) -> None:
        if self.metrics:
            self.metrics.record_event(name, **metadata)

    async def execute_with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        max_retries: int = DEFAULT_MAX_RETRIES,
        base_delay: float = DEFAULT_BASE_DELAY,
        max_delay: float = DEFAULT_MAX_DELAY,
        retry_condition: Callable[[BaseException], bool] = default_retry_condition,
        context: str = "unknown",
        on_retry: Callable[[int, BaseException], None] | None = None,
    ) -> T:
        """
        Call ``operation`` until it succeeds or retries run out.

        Args:
            operation: Zero-argument coroutine factory
            max_retries: Retries after the first attempt
            base_delay: Backoff base in seconds
            max_delay: Backoff ceiling in seconds
            retry_condition: Decides whether an error is transient
            context: Label used in logs, errors and circuit keys
            on_retry: Called with (retry_number, error) before each wait

        Returns:
            The operation's result

        Raises:
            RetryFailedError: retry_count=0 for a non-retryable error,
                retry_count=max_retries when every attempt failed
        """
        start = self._clock()
        attempts = 0

        while True:
            attempts += 1
            try:
                result = await operation()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if attempts > max_retries:
                    self._record("retry_exhausted", context=context, attempts=attempts)
                    logger.warning(
                        f"[{context}] all {attempts} attempts failed "
                        f"in {(self._clock() - start) * 1000:.0f}ms: {e}",
                        extra={"context": context},
                    )
                    raise RetryFailedError(
                        e, context=context, retry_count=max_retries, attempts=attempts
                    ) from e

                if not retry_condition(e):
                    logger.info(
                        f"[{context}] error is not retryable: {e}",
                        extra={"context": context},
                    )
                    raise RetryFailedError(e, context=context, retry_count=0, attempts=attempts) from e

                delay = compute_backoff_delay(attempts, base_delay, max_delay)
                self._record("retry_attempts", context=context, attempt=attempts)
                logger.info(
                    f"[{context}] attempt {attempts} failed, retrying in {delay:.2f}s: {e}",
                    extra={"context": context},
                )
                if on_retry:
                    on_retry(attempts, e)
                await self._sleep(delay)
                continue

            if attempts > 1:
                logger.info(
                    f"[{context}] succeeded on attempt {attempts} "
                    f"after {(self._clock() - start) * 1000:.0f}ms",
                    extra={"context": context},
                )
            return result

    def _admit(self, context: str, recovery_timeout: float) -> None:
        """Raise CircuitOpenError while the circuit is cooling down, else allow the call."""
        with self._lock:
            circuit = self._circuits.get(context)
            if circuit is None or circuit.state != CircuitState.OPEN:
                return

            elapsed = self._clock() - circuit.last_failure_time
            if elapsed < recovery_timeout:
                rejected = True
                retry_after = recovery_timeout - elapsed
            else:
                circuit.state = CircuitState.HALF_OPEN
                rejected = False

        if rejected:
            self._record("circuit_rejected", context=context)
            raise CircuitOpenError(context, retry_after=retry_after)

        self._record("circuit_half_open", context=context)
        logger.info(f"[{context}] circuit half-open, probing", extra={"context": context})

    def _on_success(self, context: str) -> None:
        with self._lock:
            circuit = self._circuits.pop(context, None)
        if circuit is not None:
            self._record("circuit_closed", context=context)
            logger.info(f"[{context}] circuit closed", extra={"context": context})

    def _on_failure(self, context: str, failure_threshold: int) -> None:
        with self._lock:
            circuit = self._circuits.setdefault(context, CircuitRecord())
            was_half_open = circuit.state == CircuitState.HALF_OPEN
            circuit.failures += 1
            circuit.last_failure_time = self._clock()
            opened = circuit.state != CircuitState.OPEN and (
                was_half_open or circuit.failures >= failure_threshold
            )
            if was_half_open or circuit.failures >= failure_threshold:
                circuit.state = CircuitState.OPEN
            failures = circuit.failures

        if opened:
            self._record("circuit_opened", context=context, failures=failures)
            logger.warning(
                f"[{context}] circuit opened after {failures} failures",
                extra={"context": context},
            )

    async def execute_with_circuit_breaker(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        context: str = "unknown",
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        recovery_timeout: float = DEFAULT_RECOVERY_TIMEOUT,
        **retry_options: Any,
    ) -> T:
        """
        Run ``operation`` with retries behind the circuit for ``context``.

        A failed retry sequence counts as one failure. A success deletes the
        circuit entry.

        Raises:
            CircuitOpenError: circuit is open and still within recovery_timeout
            RetryFailedError: the retried operation failed
        """
        self._admit(context, recovery_timeout)
        try:
            result = await self.execute_with_retry(operation, context=context, **retry_options)
        except RetryFailedError:
            self._on_failure(context, failure_threshold)
            raise
        self._on_success(context)
        return result

    def circuit_state(self, context: str) -> CircuitState:
        """Current state for a context (CLOSED when no failures are recorded)."""
        with self._lock:
            circuit = self._circuits.get(context)
            return circuit.state if circuit else CircuitState.CLOSED

    def circuit_failures(self, context: str) -> int:
        with self._lock:
            circuit = self._circuits.get(context)
            return circuit.failures if circuit else 0

    def reset(self) -> None:
        """Forget every circuit."""
        with self._lock:
            self._circuits.clear()
