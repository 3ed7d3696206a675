"""
Error taxonomy for ChartRAG.

Every component raises one of these typed errors so callers can pick a
fallback strategy by branching on ``ErrorKind`` instead of on message text.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Generic, TypeVar

import httpx

T = TypeVar("T")


class ErrorKind(str, Enum):
    TRANSIENT = "transient"
    VALIDATION = "validation"
    CIRCUIT_OPEN = "circuit_open"
    DEPENDENCY = "dependency"


# ============================================
# Exceptions
# ============================================


class RetrievalError(Exception):
    """Base class for all ChartRAG errors."""

    kind: ErrorKind = ErrorKind.DEPENDENCY

    def __init__(
        self,
        message: str,
        *,
        dependency: str | None = None,
        attempts: int = 0,
        last_error: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.dependency = dependency
        self.attempts = attempts
        self.last_error = last_error

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "dependency": self.dependency,
            "attempts": self.attempts,
            "last_error": str(self.last_error) if self.last_error else None,
        }


class QueryValidationError(RetrievalError):
    """Malformed filter, invalid date range, empty query. Never retried."""

    kind = ErrorKind.VALIDATION

    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class TransientDependencyError(RetrievalError):
    """Timeout, connection reset or rate limit from an external dependency."""

    kind = ErrorKind.TRANSIENT


class DependencyError(RetrievalError):
    """Non-transient failure of an external dependency."""

    kind = ErrorKind.DEPENDENCY


class CircuitOpenError(RetrievalError):
    """Call rejected without invoking the dependency because its circuit is open."""

    kind = ErrorKind.CIRCUIT_OPEN

    def __init__(self, dependency: str, retry_after_seconds: float = 0.0) -> None:
        super().__init__(
            f"Circuit breaker for '{dependency}' is OPEN; failing fast",
            dependency=dependency,
        )
        self.retry_after_seconds = retry_after_seconds


def annotate_exhausted(
    error: BaseException,
    errors: list[BaseException],
    dependency: str | None = None,
) -> BaseException:
    """Attach the retry history to the last error before it is re-raised.

    ``retry_errors`` holds every error seen, oldest first.
    """
    error.retry_errors = list(errors)  # type: ignore[attr-defined]
    error.retry_attempts = len(errors)  # type: ignore[attr-defined]
    error.retry_dependency = dependency  # type: ignore[attr-defined]
    error.add_note(f"'{dependency or 'operation'}' failed after {len(errors)} attempts")
    return error


# ============================================
# Classification
# ============================================

TRANSIENT_ERROR_PATTERNS: tuple[str, ...] = (
    "econnreset",
    "etimedout",
    "enotfound",
    "timeout",
    "timed out",
    "connection reset",
    "rate_limit",
    "rate limit",
    "too many requests",
)

TRANSIENT_STATUS_CODES = frozenset({429, 502, 503, 504})


def classify_error(
    error: BaseException,
    extra_patterns: tuple[str, ...] | list[str] = (),
) -> ErrorKind:
    """Map any exception onto an ErrorKind.

    ``extra_patterns`` can promote an untyped error, or a typed
    DEPENDENCY error, to TRANSIENT when its message or code matches.
    """
    if getattr(error, "retry_errors", None):
        # Only transient errors are retried until attempts run out
        return ErrorKind.TRANSIENT
    if isinstance(error, RetrievalError):
        if error.kind is ErrorKind.DEPENDENCY and _matches_any(error, extra_patterns):
            return ErrorKind.TRANSIENT
        return error.kind
    if isinstance(error, (TimeoutError, asyncio.TimeoutError, ConnectionError)):
        return ErrorKind.TRANSIENT
    if isinstance(error, (httpx.TimeoutException, httpx.NetworkError)):
        return ErrorKind.TRANSIENT
    if isinstance(error, httpx.HTTPStatusError):
        if error.response.status_code in TRANSIENT_STATUS_CODES:
            return ErrorKind.TRANSIENT
        return ErrorKind.DEPENDENCY

    if _matches_any(error, (*TRANSIENT_ERROR_PATTERNS, *extra_patterns)):
        return ErrorKind.TRANSIENT
    return ErrorKind.DEPENDENCY


def _matches_any(error: BaseException, patterns: tuple[str, ...] | list[str]) -> bool:
    message = f"{type(error).__name__} {error}".lower()
    code = str(getattr(error, "code", "") or "").lower()
    for pattern in patterns:
        p = pattern.lower()
        if p in message or (code and p == code):
            return True
    return False


# ============================================
# Outcome
# ============================================


@dataclass
class Outcome(Generic[T]):
    """Explicit value-or-error result of a guarded call."""

    value: T | None = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def kind(self) -> ErrorKind | None:
        if self.error is None:
            return None
        return classify_error(self.error)


async def capture(awaitable: Awaitable[T]) -> Outcome[T]:
    """Await ``awaitable`` and wrap its value or exception in an Outcome.

    Cancellation is not captured; it propagates to the caller.
    """
    try:
        return Outcome(value=await awaitable)
    except Exception as e:
        return Outcome(error=e)
