"""
Tests for the Circuit Breaker

Tests cover:
- CLOSED -> OPEN after consecutive failures
- Fail-fast while OPEN (operation never invoked)
- HALF_OPEN probing and recovery
- Probe limit under concurrency
- Cancellation recorded as failure
- Manual override, statistics and the registry
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from chartrag.observability.metrics import get_metrics_text
from chartrag.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitState,
)
from chartrag.resilience.errors import CircuitOpenError, QueryValidationError
from chartrag.resilience.guard import DependencyGuard
from chartrag.resilience.retry import RetryOptions


@pytest.fixture
def breaker(fake_clock):
    return CircuitBreaker(
        "vector_index",
        failure_threshold=3,
        success_threshold=2,
        reset_timeout=30.0,
        half_open_max_calls=1,
        clock=fake_clock,
    )


async def fail():
    raise ConnectionError("connection reset")


async def succeed():
    return "ok"


async def trip(breaker: CircuitBreaker, times: int) -> None:
    for _ in range(times):
        with pytest.raises(ConnectionError):
            await breaker.execute(fail)


# ============================================
# State Transitions
# ============================================


class TestTransitions:
    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_three_failures_open_the_circuit(self, breaker):
        await trip(breaker, 2)
        assert breaker.get_state() is CircuitState.CLOSED
        await trip(breaker, 1)
        assert breaker.get_state() is CircuitState.OPEN
        assert breaker.opened_at is not None

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_success_resets_failure_count(self, breaker):
        await trip(breaker, 2)
        await breaker.execute(succeed)
        assert breaker.failure_count == 0
        await trip(breaker, 2)
        assert breaker.get_state() is CircuitState.CLOSED

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_open_fails_fast_without_invoking(self, breaker, fake_clock):
        await trip(breaker, 3)
        fake_clock.advance(29.9)

        operation = AsyncMock(return_value="ok")
        with pytest.raises(CircuitOpenError) as exc_info:
            await breaker.execute(operation)

        assert operation.await_count == 0
        assert exc_info.value.retry_after_seconds == pytest.approx(0.1)
        assert breaker.rejected_calls == 1

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_after_timeout_probe_invoked_once(self, breaker, fake_clock):
        await trip(breaker, 3)
        fake_clock.advance(30.0)

        operation = AsyncMock(return_value="ok")
        assert await breaker.execute(operation) == "ok"

        assert operation.await_count == 1
        assert breaker.get_state() is CircuitState.HALF_OPEN
        assert breaker.success_count == 1

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_half_open_closes_after_success_threshold(self, breaker, fake_clock):
        await trip(breaker, 3)
        fake_clock.advance(30.0)

        await breaker.execute(succeed)
        await breaker.execute(succeed)

        assert breaker.get_state() is CircuitState.CLOSED
        assert breaker.failure_count == 0
        assert breaker.success_count == 0
        assert breaker.opened_at is None

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_half_open_failure_reopens(self, breaker, fake_clock):
        await trip(breaker, 3)
        first_opened = breaker.opened_at
        fake_clock.advance(31.0)

        await trip(breaker, 1)

        assert breaker.get_state() is CircuitState.OPEN
        assert breaker.opened_at == first_opened + 31.0

        operation = AsyncMock()
        with pytest.raises(CircuitOpenError):
            await breaker.execute(operation)
        operation.assert_not_awaited()

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_validation_errors_do_not_open_the_circuit(self, breaker):
        async def malformed():
            raise QueryValidationError("bad embedding", field="query_embedding")

        for _ in range(5):
            with pytest.raises(QueryValidationError):
                await breaker.execute(malformed)

        assert breaker.get_state() is CircuitState.CLOSED
        assert breaker.failure_count == 0
        assert breaker.total_failures == 0

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_validation_error_frees_probe_slot(self, breaker, fake_clock):
        await trip(breaker, 3)
        fake_clock.advance(30.0)

        async def malformed():
            raise QueryValidationError("bad embedding")

        with pytest.raises(QueryValidationError):
            await breaker.execute(malformed)

        assert breaker.get_state() is CircuitState.HALF_OPEN
        assert await breaker.execute(succeed) == "ok"

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_rejections_are_counted_in_metrics(self, breaker):
        await trip(breaker, 3)
        with pytest.raises(CircuitOpenError):
            await breaker.execute(succeed)
        assert 'circuit_rejections_total{dependency="vector_index"} 1' in get_metrics_text()


# ============================================
# Concurrency & Cancellation
# ============================================


class TestConcurrency:
    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_only_one_probe_in_half_open(self, breaker, fake_clock):
        await trip(breaker, 3)
        fake_clock.advance(30.0)

        release = asyncio.Event()

        async def slow_probe():
            await release.wait()
            return "probe"

        probe = asyncio.create_task(breaker.execute(slow_probe))
        await asyncio.sleep(0)

        second = AsyncMock(return_value="second")
        with pytest.raises(CircuitOpenError):
            await breaker.execute(second)
        second.assert_not_awaited()

        release.set()
        assert await probe == "probe"

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_cancellation_counts_as_failure(self, fake_clock):
        breaker = CircuitBreaker("generation", failure_threshold=1, clock=fake_clock)
        never = asyncio.Event()

        async def hang():
            await never.wait()

        task = asyncio.create_task(breaker.execute(hang))
        await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert breaker.total_failures == 1
        assert breaker.total_successes == 0
        assert breaker.get_state() is CircuitState.OPEN


# ============================================
# Override & Statistics
# ============================================


class TestOverrideAndStats:
    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_force_open_and_close(self, breaker):
        breaker.force_open()
        with pytest.raises(CircuitOpenError):
            await breaker.execute(succeed)

        breaker.force_close()
        assert await breaker.execute(succeed) == "ok"
        assert breaker.state is CircuitState.CLOSED

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_rolling_rates(self, breaker):
        await breaker.execute(succeed)
        await breaker.execute(succeed)
        await trip(breaker, 2)

        stats = breaker.get_stats()
        assert stats.total_calls == 4
        assert stats.success_rate == pytest.approx(0.5)
        assert stats.failure_rate == pytest.approx(0.5)
        assert stats.to_dict()["state"] == "closed"

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_reset_clears_everything(self, breaker):
        await trip(breaker, 3)
        breaker.reset()
        stats = breaker.get_stats()
        assert stats.state is CircuitState.CLOSED
        assert stats.total_calls == 0
        assert stats.total_failures == 0
        assert stats.success_rate == 0.0

    @pytest.mark.unit
    def test_invalid_thresholds(self):
        with pytest.raises(ValueError):
            CircuitBreaker("x", failure_threshold=0)
        with pytest.raises(ValueError):
            CircuitBreaker("x", half_open_max_calls=0)


# ============================================
# Registry & Guard
# ============================================


class TestRegistry:
    @pytest.mark.unit
    def test_one_breaker_per_name(self, registry):
        assert registry.get("vector_index") is registry.get("vector_index")
        assert registry.get("vector_index") is not registry.get("generation")
        assert len(registry) == 2
        assert "vector_index" in registry

    @pytest.mark.unit
    def test_overrides_apply_to_new_breaker(self, registry):
        breaker = registry.get("slow_service", failure_threshold=10)
        assert breaker.failure_threshold == 10
        assert breaker.reset_timeout == 30.0

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_fresh_registries_are_isolated(self, fake_clock):
        first = CircuitBreakerRegistry(failure_threshold=1, clock=fake_clock)
        second = CircuitBreakerRegistry(failure_threshold=1, clock=fake_clock)
        with pytest.raises(ConnectionError):
            await first.execute("vector_index", fail)
        assert first.get("vector_index").state is CircuitState.OPEN
        assert second.get("vector_index").state is CircuitState.CLOSED

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_reset_all(self, registry):
        registry.get("a").force_open()
        registry.get("b").force_open()
        registry.reset_all()
        assert all(s.state is CircuitState.CLOSED for s in registry.all_stats().values())


class TestDependencyGuard:
    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_retries_through_breaker(self, registry, recording_sleep):
        guard = DependencyGuard.from_registry(
            registry, "vector_index", RetryOptions(max_attempts=3), sleep=recording_sleep
        )
        operation = AsyncMock(side_effect=[ConnectionError("reset"), "ok"])

        result = await guard.call_with_stats(operation)

        assert result.result == "ok"
        assert result.attempts_used == 2
        assert registry.get("vector_index").total_failures == 1

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_open_circuit_stops_retrying(self, fake_clock, recording_sleep):
        breaker = CircuitBreaker("vector_index", failure_threshold=2, clock=fake_clock)
        guard = DependencyGuard(breaker, RetryOptions(max_attempts=5), sleep=recording_sleep)
        operation = AsyncMock(side_effect=ConnectionError("reset"))

        with pytest.raises(CircuitOpenError):
            await guard.call(operation)

        # two real attempts trip the breaker, the third is rejected
        assert operation.await_count == 2
        assert recording_sleep.delays == [1.0, 2.0]
