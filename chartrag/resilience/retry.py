"""
Retry with exponential backoff.

Attempt 1 runs immediately; attempt n waits
``base_backoff_ms * backoff_multiplier ** (n - 2)`` first, giving the
schedule [0, 1000, 2000, 4000, ...] with the defaults. Only transient
errors are retried; anything else fails on the spot.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Generic, TypeVar

from chartrag.config import (
    RETRY_BACKOFF_MULTIPLIER,
    RETRY_BASE_BACKOFF_MS,
    RETRY_MAX_ATTEMPTS,
)
from chartrag.resilience.errors import (
    CircuitOpenError,
    ErrorKind,
    annotate_exhausted,
    classify_error,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryOptions:
    max_attempts: int = RETRY_MAX_ATTEMPTS
    base_backoff_ms: float = RETRY_BASE_BACKOFF_MS
    backoff_multiplier: float = RETRY_BACKOFF_MULTIPLIER
    retryable_error_patterns: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_backoff_ms < 0 or self.backoff_multiplier < 1:
            raise ValueError("backoff must be non-negative and multiplier >= 1")


@dataclass
class RetryResult(Generic[T]):
    result: T
    attempts_used: int
    total_elapsed_ms: float
    errors_seen: list[BaseException] = field(default_factory=list)


def backoff_delay_ms(attempt: int, options: RetryOptions) -> float:
    """Delay before the given 1-based attempt. Attempt 1 never waits."""
    if attempt <= 1:
        return 0.0
    return options.base_backoff_ms * options.backoff_multiplier ** (attempt - 2)


def is_retryable(error: BaseException, options: RetryOptions) -> bool:
    if isinstance(error, CircuitOpenError):
        return False
    kind = classify_error(error, options.retryable_error_patterns)
    return kind is ErrorKind.TRANSIENT


class Retry:
    """Bounded retry executor for a single named dependency."""

    def __init__(
        self,
        options: RetryOptions | None = None,
        dependency: str | None = None,
        sleep: SleepFn = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.options = options or RetryOptions()
        self.dependency = dependency
        self._sleep = sleep
        self._clock = clock

    async def run(self, operation: Callable[[], Awaitable[T]]) -> RetryResult[T]:
        """Execute ``operation`` until it succeeds or attempts run out.

        Raises the non-retryable error unchanged. Once ``max_attempts`` is
        reached the last error is re-raised with ``retry_errors`` holding
        every error seen.
        """
        opts = self.options
        errors: list[BaseException] = []
        start = self._clock()

        for attempt in range(1, opts.max_attempts + 1):
            delay = backoff_delay_ms(attempt, opts)
            if delay > 0:
                logger.info(
                    "Retrying %s in %.0fms (attempt %d/%d)",
                    self.dependency or "operation",
                    delay,
                    attempt,
                    opts.max_attempts,
                )
                await self._sleep(delay / 1000.0)

            try:
                result = await operation()
            except Exception as e:
                errors.append(e)
                if not is_retryable(e, opts):
                    raise
                logger.warning(
                    "%s failed (attempt %d/%d): %s",
                    self.dependency or "operation",
                    attempt,
                    opts.max_attempts,
                    e,
                )
                continue

            return RetryResult(
                result=result,
                attempts_used=attempt,
                total_elapsed_ms=(self._clock() - start) * 1000,
                errors_seen=errors,
            )

        logger.error(
            "%s failed after %d attempts",
            self.dependency or "operation",
            opts.max_attempts,
        )
        raise annotate_exhausted(errors[-1], errors, self.dependency)


async def retry(
    operation: Callable[[], Awaitable[T]],
    options: RetryOptions | None = None,
    dependency: str | None = None,
    sleep: SleepFn = asyncio.sleep,
) -> RetryResult[T]:
    """Functional shorthand for ``Retry(options, dependency, sleep).run(operation)``."""
    return await Retry(options, dependency=dependency, sleep=sleep).run(operation)
