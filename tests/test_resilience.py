#!/usr/bin/env python3
"""Tests for resilience patterns.

Tests cover:
    - Circuit breaker state transitions (CLOSED -> OPEN -> HALF_OPEN -> CLOSED)
    - HALF_OPEN trial admission under concurrency
    - Retry with capped exponential backoff and jitter
    - ResilientExecutor composition (one breaker failure per exhausted call)

Time is driven by an injected clock, so no test waits for a real timeout.
"""
import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from agentmem.config import CircuitBreakerConfig, RetryConfig
from agentmem.exceptions import (
    CircuitOpenError,
    ConnectionPoolError,
    DimensionMismatchError,
    IntegrityError,
    StoreError,
    ValidationError,
)
from agentmem.resilience import (
    CircuitBreaker,
    CircuitState,
    ResilientExecutor,
    RetryPolicy,
)


# ============================================
# Helpers
# ============================================

class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


async def failing_func():
    raise ConnectionPoolError("connection refused")


async def ok_func():
    return "ok"


def make_breaker(threshold=3, reset_timeout=60.0, half_open_max=3):
    clock = FakeClock()
    breaker = CircuitBreaker(
        failure_threshold=threshold,
        reset_timeout=reset_timeout,
        half_open_max_attempts=half_open_max,
        clock=clock,
    )
    return breaker, clock


async def trip(breaker: CircuitBreaker, times: int):
    for _ in range(times):
        with pytest.raises(ConnectionPoolError):
            await breaker.call(failing_func)


# ============================================
# Circuit Breaker State Transition Tests
# ============================================

class TestCircuitBreakerStateTransitions:
    """Test circuit breaker state machine transitions."""

    def test_initial_state_is_closed(self):
        breaker, _ = make_breaker()
        assert breaker.state == CircuitState.CLOSED
        assert not breaker.is_open
        assert breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_closed_to_open_after_failures(self):
        """Circuit should open once the failure threshold is reached."""
        breaker, _ = make_breaker(threshold=3)

        for i in range(2):
            with pytest.raises(ConnectionPoolError):
                await breaker.call(failing_func)
            assert breaker.state == CircuitState.CLOSED
            assert breaker.failure_count == i + 1

        with pytest.raises(ConnectionPoolError):
            await breaker.call(failing_func)

        assert breaker.state == CircuitState.OPEN
        assert breaker.is_open
        assert breaker.failure_count == 3

    @pytest.mark.asyncio
    async def test_open_rejects_without_calling(self):
        breaker, _ = make_breaker(threshold=1)
        await trip(breaker, 1)

        func = AsyncMock(return_value="ok")
        with pytest.raises(CircuitOpenError) as exc_info:
            await breaker.call(func)

        func.assert_not_called()
        assert exc_info.value.failure_count == 1
        assert exc_info.value.reset_at is not None

    @pytest.mark.asyncio
    async def test_open_until_reset_timeout_elapses(self):
        breaker, clock = make_breaker(threshold=1, reset_timeout=60.0)
        await trip(breaker, 1)

        clock.advance(59.9)
        with pytest.raises(CircuitOpenError):
            await breaker.call(ok_func)
        assert breaker.state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_half_open_success_closes(self):
        """A successful trial call closes the circuit and resets the count."""
        breaker, clock = make_breaker(threshold=2)
        await trip(breaker, 2)

        clock.advance(60.0)
        result = await breaker.call(ok_func)

        assert result == "ok"
        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_half_open_failure_reopens_and_restarts_timer(self):
        breaker, clock = make_breaker(threshold=1)
        await trip(breaker, 1)

        clock.advance(61.0)
        with pytest.raises(ConnectionPoolError):
            await breaker.call(failing_func)
        assert breaker.state == CircuitState.OPEN

        # Timer restarted at the trial failure
        clock.advance(30.0)
        with pytest.raises(CircuitOpenError):
            await breaker.call(ok_func)

        clock.advance(30.0)
        assert await breaker.call(ok_func) == "ok"
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_non_retryable_errors_are_not_counted(self):
        breaker, _ = make_breaker(threshold=1)

        async def bad_input():
            raise ValidationError("type is required", field="type")

        with pytest.raises(ValidationError):
            await breaker.call(bad_input)

        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_manual_reset(self):
        breaker, _ = make_breaker(threshold=1)
        await trip(breaker, 1)
        assert breaker.is_open

        breaker.reset()

        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 0
        assert await breaker.call(ok_func) == "ok"

    @pytest.mark.asyncio
    async def test_get_status(self):
        breaker, _ = make_breaker(threshold=1)
        await trip(breaker, 1)

        status = breaker.get_status()

        assert status["name"] == "database"
        assert status["state"] == "open"
        assert status["failure_count"] == 1
        assert status["failure_threshold"] == 1
        assert status["last_failure_at"] is not None

    def test_from_config(self):
        breaker = CircuitBreaker.from_config(
            CircuitBreakerConfig(failure_threshold=7, reset_timeout=15.0, half_open_max_attempts=2),
            name="knowledge",
        )
        assert breaker.failure_threshold == 7
        assert breaker.reset_timeout == 15.0
        assert breaker.half_open_max_attempts == 2
        assert breaker.name == "knowledge"


# ============================================
# HALF_OPEN Admission Tests
# ============================================

class TestHalfOpenAdmission:
    """Trial calls admitted while the circuit is HALF_OPEN."""

    @pytest.mark.asyncio
    async def test_admits_at_most_max_attempts_concurrently(self):
        breaker, clock = make_breaker(threshold=1, half_open_max=3)
        await trip(breaker, 1)
        clock.advance(60.0)

        release = asyncio.Event()
        started = 0

        async def slow_trial():
            nonlocal started
            started += 1
            await release.wait()
            return "ok"

        trials = [asyncio.create_task(breaker.call(slow_trial)) for _ in range(3)]
        await asyncio.sleep(0)
        await asyncio.sleep(0)

        assert breaker.state == CircuitState.HALF_OPEN
        assert breaker.half_open_attempts == 3

        with pytest.raises(CircuitOpenError):
            await breaker.call(ok_func)

        release.set()
        results = await asyncio.gather(*trials)

        assert results == ["ok", "ok", "ok"]
        assert started == 3
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_cancelled_trial_releases_its_slot(self):
        breaker, clock = make_breaker(threshold=1, half_open_max=1)
        await trip(breaker, 1)
        clock.advance(60.0)

        never = asyncio.Event()

        async def hanging_trial():
            await never.wait()

        task = asyncio.create_task(breaker.call(hanging_trial))
        await asyncio.sleep(0)
        assert breaker.half_open_attempts == 1

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert breaker.state == CircuitState.HALF_OPEN
        assert breaker.half_open_attempts == 0
        assert await breaker.call(ok_func) == "ok"


# ============================================
# Retry Policy Tests
# ============================================

class TestRetryPolicy:
    """Exponential backoff with jitter."""

    def test_backoff_doubles_and_caps(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=10.0)
        assert [policy.backoff(n) for n in range(1, 7)] == [1.0, 2.0, 4.0, 8.0, 10.0, 10.0]

    def test_delay_within_jitter_bounds(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=10.0, jitter_max=1.0)
        for attempt in range(1, 8):
            for _ in range(50):
                delay = policy.compute_delay(attempt)
                assert policy.backoff(attempt) <= delay <= policy.backoff(attempt) + 1.0
                assert delay <= 11.0

    def test_no_jitter(self):
        policy = RetryPolicy(base_delay=0.5, max_delay=10.0, jitter_max=0.0)
        assert policy.compute_delay(3) == 2.0

    def test_from_config(self):
        policy = RetryPolicy.from_config(RetryConfig(max_retries=5, base_delay=0.2, max_delay=3.0, jitter_max=0.1))
        assert policy == RetryPolicy(max_retries=5, base_delay=0.2, max_delay=3.0, jitter_max=0.1)

    @pytest.mark.asyncio
    async def test_succeeds_after_transient_failures(self):
        policy = RetryPolicy(max_retries=3, base_delay=1.0, max_delay=10.0, jitter_max=0.0)
        operation = AsyncMock(side_effect=[ConnectionPoolError("down"), ConnectionPoolError("down"), "ok"])

        with patch("agentmem.resilience.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            result = await policy.run(operation, "health_check")

        assert result == "ok"
        assert operation.call_count == 3
        assert [c.args[0] for c in mock_sleep.call_args_list] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_exhaustion_reraises_last_error(self):
        policy = RetryPolicy(max_retries=3, base_delay=0.0, max_delay=0.0, jitter_max=0.0)
        errors = [StoreError("first"), StoreError("second"), StoreError("third")]
        operation = AsyncMock(side_effect=errors)

        with pytest.raises(StoreError) as exc_info:
            await policy.run(operation, "health_check")

        assert exc_info.value is errors[-1]
        assert operation.call_count == 3

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [
        ValidationError("bad", field="type"),
        DimensionMismatchError(expected=384, actual=3),
        IntegrityError("duplicate", constraint="unique"),
        CircuitOpenError(),
    ])
    async def test_non_retryable_errors_raise_immediately(self, error):
        policy = RetryPolicy(max_retries=3, base_delay=0.0, jitter_max=0.0)
        operation = AsyncMock(side_effect=error)

        with pytest.raises(type(error)):
            await policy.run(operation, "health_check")

        assert operation.call_count == 1


# ============================================
# Resilient Executor Tests
# ============================================

class TestResilientExecutor:
    """Retry inside the circuit breaker."""

    def make_executor(self, threshold=2, max_retries=3):
        breaker, clock = make_breaker(threshold=threshold)
        policy = RetryPolicy(max_retries=max_retries, base_delay=0.0, max_delay=0.0, jitter_max=0.0)
        return ResilientExecutor(breaker, policy), clock

    @pytest.mark.asyncio
    async def test_returns_result(self):
        executor, _ = self.make_executor()
        assert await executor.execute(ok_func, "health_check") == "ok"

    @pytest.mark.asyncio
    async def test_exhausted_retries_count_one_failure(self):
        executor, _ = self.make_executor(threshold=2, max_retries=3)
        operation = AsyncMock(side_effect=ConnectionPoolError("down"))

        with pytest.raises(ConnectionPoolError):
            await executor.execute(operation, "health_check")

        assert operation.call_count == 3
        assert executor.breaker.failure_count == 1
        assert executor.breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_opens_after_threshold_calls_then_rejects(self):
        executor, _ = self.make_executor(threshold=2, max_retries=2)
        operation = AsyncMock(side_effect=ConnectionPoolError("down"))

        for _ in range(2):
            with pytest.raises(ConnectionPoolError):
                await executor.execute(operation, "health_check")

        assert executor.breaker.is_open
        calls_before = operation.call_count

        with pytest.raises(CircuitOpenError):
            await executor.execute(operation, "health_check")
        assert operation.call_count == calls_before

    @pytest.mark.asyncio
    async def test_foreign_errors_are_wrapped(self):
        executor, _ = self.make_executor(max_retries=1)
        original = OSError("socket closed")

        async def driver_failure():
            raise original

        with pytest.raises(StoreError) as exc_info:
            await executor.execute(driver_failure, "get_memories")

        assert exc_info.value.operation == "get_memories"
        assert exc_info.value.cause is original
        assert exc_info.value.recoverable

    @pytest.mark.asyncio
    async def test_validation_error_is_not_retried_or_counted(self):
        executor, _ = self.make_executor(threshold=1)
        operation = AsyncMock(side_effect=ValidationError("count must be positive", field="count"))

        with pytest.raises(ValidationError):
            await executor.execute(operation, "health_check")

        assert operation.call_count == 1
        assert executor.breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failure(self):
        executor, _ = self.make_executor(threshold=1, max_retries=3)
        operation = AsyncMock(side_effect=[ConnectionPoolError("blip"), "ok"])

        assert await executor.execute(operation, "health_check") == "ok"
        assert executor.breaker.failure_count == 0

    def test_from_config(self):
        executor = ResilientExecutor.from_config(CircuitBreakerConfig(), RetryConfig())
        assert executor.breaker.failure_threshold == 5
        assert executor.retry_policy.max_retries == 3
        assert executor.get_status()["state"] == "closed"
