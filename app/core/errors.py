"""Error taxonomy for the plan pipeline and user-facing error messages."""

import asyncio
import json
import socket

import httpx


class PlanEngineError(Exception):
    """Base class for pipeline errors."""


class ConfigurationError(PlanEngineError, ValueError):
    """Required configuration (e.g. the API key) is missing. Never retried."""


class RemoteServiceError(PlanEngineError):
    """The completion service answered with a non-2xx status."""

    def __init__(self, status_code: int, message: str = ""):
        self.status_code = status_code
        super().__init__(message or f"Completion API call failed: HTTP {status_code}")


class EmptyResponseError(PlanEngineError):
    """The completion service returned no content."""


class RetryFailedError(PlanEngineError):
    """
    An operation failed after the retry wrapper gave up.

    Wraps the last underlying error (also available as ``__cause__``).
    ``retry_count`` is 0 when the error was not retryable.
    """

    def __init__(self, last_error: BaseException, *, context: str, retry_count: int, attempts: int):
        self.last_error = last_error
        self.context = context
        self.retry_count = retry_count
        self.attempts = attempts
        super().__init__(
            f"[{context}] operation failed after {retry_count} retries "
            f"({attempts} attempts): {last_error}"
        )


class CircuitOpenError(PlanEngineError):
    """Fast-fail: the circuit for this context is open."""

    def __init__(self, context: str, retry_after: float | None = None):
        self.context = context
        self.retry_after = retry_after
        detail = f", retry in {retry_after:.0f}s" if retry_after is not None else ""
        super().__init__(f"[{context}] service circuit is open{detail}")


class PipelineTimeoutError(PlanEngineError):
    """The whole run exceeded its time ceiling."""


ERROR_MESSAGES = {
    "NETWORK_ERROR": "Network connection problem, please check the network and retry",
    "API_RATE_LIMIT": "The AI service is rate limiting requests, please try again shortly",
    "SERVER_ERROR": "The AI service is temporarily unavailable, please try again later",
    "CIRCUIT_OPEN": "The AI service is failing repeatedly and has been paused, please retry in a minute",
    "JSON_PARSE_ERROR": "The AI response could not be parsed, a fallback was used",
    "TIMEOUT_ERROR": "Processing took too long, try simplifying the idea",
    "VALIDATION_ERROR": "Input validation failed, please check the input format",
    "CONFIGURATION_ERROR": "The service is not configured: missing API key",
    "UNKNOWN_ERROR": "An unexpected error occurred, please contact support",
}

_NETWORK_ERRORS = (
    httpx.TransportError,
    ConnectionError,
    socket.gaierror,
)


def _root_error(error: BaseException) -> BaseException:
    """Unwrap RetryFailedError chains down to the error that actually happened."""
    while isinstance(error, RetryFailedError):
        error = error.last_error
    return error


def status_code_of(error: BaseException) -> int | None:
    """HTTP status carried by an error, if any."""
    if isinstance(error, RemoteServiceError):
        return error.status_code
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    return None


def classify_error(error: BaseException) -> str:
    """Map an error to one of the ERROR_MESSAGES keys."""
    error = _root_error(error)
    message = str(error).lower()

    if isinstance(error, ConfigurationError):
        return "CONFIGURATION_ERROR"
    if isinstance(error, CircuitOpenError):
        return "CIRCUIT_OPEN"
    if isinstance(error, (PipelineTimeoutError, asyncio.TimeoutError, httpx.TimeoutException)):
        return "TIMEOUT_ERROR"
    status = status_code_of(error)
    if status == 429:
        return "API_RATE_LIMIT"
    if status is not None and status >= 500:
        return "SERVER_ERROR"
    if isinstance(error, _NETWORK_ERRORS):
        return "NETWORK_ERROR"
    if isinstance(error, json.JSONDecodeError) or "json" in message:
        return "JSON_PARSE_ERROR"
    if "timeout" in message or "timed out" in message:
        return "TIMEOUT_ERROR"
    if "validation" in message or isinstance(error, ValueError):
        return "VALIDATION_ERROR"
    return "UNKNOWN_ERROR"


def user_facing_message(error: BaseException, stage_name: str | None = None) -> str:
    """Human-readable message for a failed stage or request."""
    text = ERROR_MESSAGES[classify_error(error)]
    if stage_name:
        return f"{stage_name} failed: {text}"
    return text
