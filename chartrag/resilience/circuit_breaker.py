"""
Circuit Breaker for external dependencies

Three states:
- CLOSED: calls pass through; consecutive failures are counted
- OPEN: calls fail fast without invoking the dependency
- HALF_OPEN: a bounded number of probe calls test recovery

CLOSED -> OPEN when failure_count reaches failure_threshold.
OPEN -> HALF_OPEN on the first call at or after opened_at + reset_timeout.
HALF_OPEN -> CLOSED after success_threshold probe successes.
HALF_OPEN -> OPEN on any probe failure.

All transitions happen under an asyncio.Lock so that concurrent callers
never both believe they hold the same probe slot.
"""

import asyncio
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, TypeVar

from chartrag.config import (
    CB_FAILURE_THRESHOLD,
    CB_HALF_OPEN_MAX_CALLS,
    CB_RESET_TIMEOUT_SECONDS,
    CB_SUCCESS_THRESHOLD,
)
from chartrag.observability.metrics import record_circuit_rejection
from chartrag.resilience.errors import CircuitOpenError, ErrorKind, classify_error

logger = logging.getLogger(__name__)

T = TypeVar("T")

ROLLING_WINDOW_SIZE = 100


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerStats:
    name: str
    state: CircuitState
    failure_count: int
    success_count: int
    total_calls: int
    total_successes: int
    total_failures: int
    rejected_calls: int
    success_rate: float
    failure_rate: float
    opened_at: float | None
    last_failure_at: float | None
    last_success_at: float | None
    time_until_reset: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "success_count": self.success_count,
            "total_calls": self.total_calls,
            "total_successes": self.total_successes,
            "total_failures": self.total_failures,
            "rejected_calls": self.rejected_calls,
            "success_rate": round(self.success_rate, 4),
            "failure_rate": round(self.failure_rate, 4),
            "time_until_reset": round(self.time_until_reset, 3),
        }


class CircuitBreaker:
    """Per-dependency circuit breaker."""

    def __init__(
        self,
        name: str,
        failure_threshold: int = CB_FAILURE_THRESHOLD,
        success_threshold: int = CB_SUCCESS_THRESHOLD,
        reset_timeout: float = CB_RESET_TIMEOUT_SECONDS,
        half_open_max_calls: int = CB_HALF_OPEN_MAX_CALLS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if failure_threshold < 1 or success_threshold < 1:
            raise ValueError("failure_threshold and success_threshold must be >= 1")
        if half_open_max_calls < 1:
            raise ValueError("half_open_max_calls must be >= 1")
        self.name = name
        self.failure_threshold = failure_threshold
        self.success_threshold = success_threshold
        self.reset_timeout = reset_timeout
        self.half_open_max_calls = half_open_max_calls
        self._clock = clock
        self._lock = asyncio.Lock()
        self._reset_state()

    def _reset_state(self) -> None:
        self._state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.opened_at: float | None = None
        self._probes_in_flight = 0
        self.total_calls = 0
        self.total_successes = 0
        self.total_failures = 0
        self.rejected_calls = 0
        self.last_failure_at: float | None = None
        self.last_success_at: float | None = None
        self._window: deque[bool] = deque(maxlen=ROLLING_WINDOW_SIZE)

    # ============================================
    # Execution
    # ============================================

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation`` under the breaker.

        Raises CircuitOpenError without invoking ``operation`` while open.
        """
        is_probe = await self._acquire()
        try:
            result = await operation()
        except Exception as e:
            # Validation errors leave the failure count untouched
            if classify_error(e) is ErrorKind.VALIDATION:
                await self._release(is_probe)
            else:
                await self._on_failure(is_probe)
            raise
        except BaseException:
            # CancelledError lands here: cancellation is not a success
            await self._on_failure(is_probe)
            raise
        await self._on_success(is_probe)
        return result

    async def _acquire(self) -> bool:
        async with self._lock:
            self.total_calls += 1
            now = self._clock()

            if self._state is CircuitState.OPEN:
                if self.opened_at is not None and now - self.opened_at >= self.reset_timeout:
                    self._transition(CircuitState.HALF_OPEN)
                else:
                    self._reject()

            if self._state is CircuitState.HALF_OPEN:
                if self._probes_in_flight >= self.half_open_max_calls:
                    self._reject()
                self._probes_in_flight += 1
                return True

            return False

    def _reject(self) -> None:
        self.rejected_calls += 1
        record_circuit_rejection(self.name)
        raise CircuitOpenError(self.name, retry_after_seconds=self.time_until_reset())

    async def _release(self, is_probe: bool) -> None:
        if is_probe:
            async with self._lock:
                self._probes_in_flight = max(0, self._probes_in_flight - 1)

    async def _on_success(self, is_probe: bool) -> None:
        async with self._lock:
            now = self._clock()
            self.total_successes += 1
            self.last_success_at = now
            self._window.append(True)

            if is_probe:
                self._probes_in_flight = max(0, self._probes_in_flight - 1)
                if self._state is CircuitState.HALF_OPEN:
                    self.success_count += 1
                    if self.success_count >= self.success_threshold:
                        self._transition(CircuitState.CLOSED)
            elif self._state is CircuitState.CLOSED:
                self.failure_count = 0

    async def _on_failure(self, is_probe: bool) -> None:
        async with self._lock:
            now = self._clock()
            self.total_failures += 1
            self.last_failure_at = now
            self._window.append(False)

            if is_probe:
                self._probes_in_flight = max(0, self._probes_in_flight - 1)
                if self._state is CircuitState.HALF_OPEN:
                    self._transition(CircuitState.OPEN)
            elif self._state is CircuitState.CLOSED:
                self.failure_count += 1
                if self.failure_count >= self.failure_threshold:
                    self._transition(CircuitState.OPEN)

    def _transition(self, new_state: CircuitState) -> None:
        old_state = self._state
        self._state = new_state
        if new_state is CircuitState.OPEN:
            self.opened_at = self._clock()
            self.success_count = 0
            logger.warning(
                "Circuit '%s' OPEN (%s -> open, %d consecutive failures)",
                self.name,
                old_state.value,
                self.failure_count,
            )
        elif new_state is CircuitState.HALF_OPEN:
            self.success_count = 0
            self._probes_in_flight = 0
            logger.info("Circuit '%s' HALF_OPEN (probing recovery)", self.name)
        else:
            self.failure_count = 0
            self.success_count = 0
            self.opened_at = None
            self._probes_in_flight = 0
            logger.info("Circuit '%s' CLOSED (%s -> closed)", self.name, old_state.value)

    # ============================================
    # Inspection & Manual Override
    # ============================================

    def get_state(self) -> CircuitState:
        return self._state

    @property
    def state(self) -> CircuitState:
        return self._state

    def force_open(self) -> None:
        """Operator override: open the circuit now."""
        self._transition(CircuitState.OPEN)

    def force_close(self) -> None:
        """Operator override: close the circuit and clear failure counts."""
        self._transition(CircuitState.CLOSED)

    def reset(self) -> None:
        """Close the circuit and clear every counter and statistic."""
        self._reset_state()
        logger.info("Circuit '%s' reset", self.name)

    def time_until_reset(self) -> float:
        if self._state is not CircuitState.OPEN or self.opened_at is None:
            return 0.0
        return max(0.0, self.reset_timeout - (self._clock() - self.opened_at))

    def success_rate(self) -> float:
        if not self._window:
            return 0.0
        return sum(1 for ok in self._window if ok) / len(self._window)

    def failure_rate(self) -> float:
        if not self._window:
            return 0.0
        return sum(1 for ok in self._window if not ok) / len(self._window)

    def get_stats(self) -> CircuitBreakerStats:
        return CircuitBreakerStats(
            name=self.name,
            state=self._state,
            failure_count=self.failure_count,
            success_count=self.success_count,
            total_calls=self.total_calls,
            total_successes=self.total_successes,
            total_failures=self.total_failures,
            rejected_calls=self.rejected_calls,
            success_rate=self.success_rate(),
            failure_rate=self.failure_rate(),
            opened_at=self.opened_at,
            last_failure_at=self.last_failure_at,
            last_success_at=self.last_success_at,
            time_until_reset=self.time_until_reset(),
        )


# ============================================
# Registry
# ============================================


class CircuitBreakerRegistry:
    """Owns one CircuitBreaker per dependency name."""

    def __init__(
        self,
        failure_threshold: int = CB_FAILURE_THRESHOLD,
        success_threshold: int = CB_SUCCESS_THRESHOLD,
        reset_timeout: float = CB_RESET_TIMEOUT_SECONDS,
        half_open_max_calls: int = CB_HALF_OPEN_MAX_CALLS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._defaults = {
            "failure_threshold": failure_threshold,
            "success_threshold": success_threshold,
            "reset_timeout": reset_timeout,
            "half_open_max_calls": half_open_max_calls,
        }
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}

    def get(self, name: str, **overrides: Any) -> CircuitBreaker:
        if name not in self._breakers:
            settings = {**self._defaults, **overrides}
            self._breakers[name] = CircuitBreaker(name, clock=self._clock, **settings)
        return self._breakers[name]

    def __contains__(self, name: str) -> bool:
        return name in self._breakers

    async def execute(self, name: str, operation: Callable[[], Awaitable[T]]) -> T:
        return await self.get(name).execute(operation)

    def all_stats(self) -> dict[str, CircuitBreakerStats]:
        return {name: b.get_stats() for name, b in self._breakers.items()}

    def reset_all(self) -> None:
        for breaker in self._breakers.values():
            breaker.reset()

    def __len__(self) -> int:
        return len(self._breakers)
