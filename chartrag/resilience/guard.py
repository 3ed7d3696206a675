"""
Breaker + retry composition for a named dependency.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

from chartrag.resilience.circuit_breaker import CircuitBreaker, CircuitBreakerRegistry
from chartrag.resilience.retry import Retry, RetryOptions, RetryResult, SleepFn

T = TypeVar("T")


class DependencyGuard:
    """Wraps calls to one external dependency.

    Each attempt passes through the breaker, so an open circuit stops the
    retry loop at once (CircuitOpenError is never retried).
    """

    def __init__(
        self,
        breaker: CircuitBreaker,
        retry_options: RetryOptions | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self.breaker = breaker
        self.name = breaker.name
        self._retry = Retry(retry_options, dependency=breaker.name, sleep=sleep)

    @classmethod
    def from_registry(
        cls,
        registry: CircuitBreakerRegistry,
        name: str,
        retry_options: RetryOptions | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> "DependencyGuard":
        return cls(registry.get(name), retry_options, sleep=sleep)

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        result = await self.call_with_stats(operation)
        return result.result

    async def call_with_stats(self, operation: Callable[[], Awaitable[T]]) -> RetryResult[T]:
        return await self._retry.run(lambda: self.breaker.execute(operation))
