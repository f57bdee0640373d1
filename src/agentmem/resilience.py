#!/usr/bin/env python3
"""Resilience Patterns for the agentmem memory store.

Every store operation runs through a ResilientExecutor, which wraps a
retry-with-backoff policy inside a circuit breaker:

    - RetryPolicy: exponential backoff with additive jitter
    - CircuitBreaker: CLOSED -> OPEN -> HALF_OPEN -> CLOSED state machine
    - ResilientExecutor: the two composed, one instance per backing store

Circuit state lives on the breaker instance and is only mutated under its
lock, so independent stores (and test doubles) never share state.

Example:
    executor = ResilientExecutor(
        CircuitBreaker(failure_threshold=5, reset_timeout=60),
        RetryPolicy(max_retries=3),
    )
    rows = await executor.execute(lambda: conn.fetch("SELECT 1"), "health_check")

Author: agentmem Team
"""
import asyncio
import logging
import random
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

from .config import CircuitBreakerConfig, RetryConfig
from .exceptions import (
    NON_RETRYABLE_ERRORS,
    CircuitOpenError,
    MemoryStoreError,
    StoreError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

Operation = Callable[[], Awaitable[T]]


# ============================================
# Retry with Exponential Backoff
# ============================================

@dataclass(frozen=True)
class RetryPolicy:
    """Retry an async operation with capped exponential backoff plus jitter.

    The delay before retry ``n`` (1 for the first retry) is::

        min(base_delay * 2 ** (n - 1), max_delay) + uniform(0, jitter_max)

    so it never exceeds ``max_delay + jitter_max``.

    Attributes:
        max_retries: Total attempts, including the first one
        base_delay: Delay in seconds before the first retry
        max_delay: Ceiling for the exponential part of the delay
        jitter_max: Upper bound of the uniform jitter added to each delay
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    jitter_max: float = 1.0

    @classmethod
    def from_config(cls, config: RetryConfig) -> "RetryPolicy":
        return cls(
            max_retries=config.max_retries,
            base_delay=config.base_delay,
            max_delay=config.max_delay,
            jitter_max=config.jitter_max,
        )

    def backoff(self, attempt: int) -> float:
        """Exponential part of the delay before retry ``attempt``."""
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)

    def compute_delay(self, attempt: int) -> float:
        """Full delay before retry ``attempt``, jitter included."""
        jitter = random.uniform(0, self.jitter_max) if self.jitter_max > 0 else 0.0
        return self.backoff(attempt) + jitter

    async def run(self, operation: Operation, context: str = "operation") -> T:
        """Run ``operation`` until it succeeds or attempts are exhausted.

        Args:
            operation: Zero-argument coroutine function
            context: Operation name for logs

        Returns:
            Result from operation

        Raises:
            The last error once all attempts have failed. Errors listed in
            NON_RETRYABLE_ERRORS are raised immediately.
        """
        for attempt in range(1, self.max_retries + 1):
            try:
                return await operation()

            except NON_RETRYABLE_ERRORS:
                raise

            except Exception as e:
                if attempt >= self.max_retries:
                    logger.error(
                        f"Max retry attempts reached for {context}: {e} "
                        f"(total_attempts={attempt})"
                    )
                    raise

                delay = self.compute_delay(attempt)
                logger.warning(
                    f"Database operation {context} failed "
                    f"(attempt {attempt}/{self.max_retries}): {e}. "
                    f"Retrying in {delay:.1f}s"
                )
                await asyncio.sleep(delay)

        # max_retries >= 1 is enforced by RetryConfig, so the loop always returns or raises
        raise RuntimeError("Retry logic error")


# ============================================
# Circuit Breaker
# ============================================

class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"        # Normal operation, requests pass through
    OPEN = "open"            # Failing, requests rejected immediately
    HALF_OPEN = "half_open"  # Testing if the store recovered


class CircuitBreaker:
    """Circuit breaker that stops calling a persistently failing store.

    State Transitions:
        CLOSED -> OPEN: When failure_count >= failure_threshold
        OPEN -> HALF_OPEN: When reset_timeout has elapsed since the last failure
        HALF_OPEN -> CLOSED: When a trial call succeeds
        HALF_OPEN -> OPEN: When a trial call fails (timer restarts)

    While HALF_OPEN, at most ``half_open_max_attempts`` trial calls are in
    flight at once; any further call is rejected like in OPEN.

    Errors in NON_RETRYABLE_ERRORS (bad input, schema problems) say nothing
    about store health and are not counted as failures.

    Example:
        circuit = CircuitBreaker(failure_threshold=5, reset_timeout=60)

        try:
            result = await circuit.call(fetch_rows)
        except CircuitOpenError:
            result = []
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        half_open_max_attempts: int = 3,
        name: str = "database",
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize circuit breaker.

        Args:
            failure_threshold: Failures before opening circuit
            reset_timeout: Seconds in OPEN before a trial call is admitted
            half_open_max_attempts: Concurrent trial calls allowed in HALF_OPEN
            name: Circuit breaker name for logging
            clock: Monotonic time source, injectable for tests
        """
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.half_open_max_attempts = half_open_max_attempts
        self.name = name
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._half_open_attempts = 0
        self._last_failure_time: Optional[float] = None
        self._last_failure_at: Optional[datetime] = None
        self._lock = asyncio.Lock()

    @classmethod
    def from_config(cls, config: CircuitBreakerConfig, name: str = "database") -> "CircuitBreaker":
        return cls(
            failure_threshold=config.failure_threshold,
            reset_timeout=config.reset_timeout,
            half_open_max_attempts=config.half_open_max_attempts,
            name=name,
        )

    @property
    def state(self) -> CircuitState:
        """Get current circuit state."""
        return self._state

    @property
    def is_open(self) -> bool:
        """Check if circuit is open (rejecting requests)."""
        return self._state == CircuitState.OPEN

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def half_open_attempts(self) -> int:
        return self._half_open_attempts

    def _timeout_elapsed(self) -> bool:
        if self._last_failure_time is None:
            return True
        return self._clock() - self._last_failure_time >= self.reset_timeout

    def _reset_at(self) -> Optional[datetime]:
        if self._last_failure_at is None:
            return None
        return self._last_failure_at + timedelta(seconds=self.reset_timeout)

    def _reject(self) -> CircuitOpenError:
        return CircuitOpenError(
            f"Circuit breaker '{self.name}' is open",
            reset_at=self._reset_at(),
            failure_count=self._failure_count,
        )

    async def _admit(self) -> bool:
        """Decide whether a call may proceed.

        Returns:
            True if the call was admitted as a HALF_OPEN trial

        Raises:
            CircuitOpenError: If the call must be rejected
        """
        async with self._lock:
            if self._state == CircuitState.OPEN:
                if not self._timeout_elapsed():
                    raise self._reject()
                logger.info(f"Circuit '{self.name}' transitioning to HALF_OPEN")
                self._state = CircuitState.HALF_OPEN
                self._half_open_attempts = 0

            if self._state == CircuitState.HALF_OPEN:
                if self._half_open_attempts >= self.half_open_max_attempts:
                    raise self._reject()
                self._half_open_attempts += 1
                return True

            return False

    async def call(
        self,
        func: Callable[..., Awaitable[T]],
        *args,
        **kwargs,
    ) -> T:
        """Execute function through the circuit breaker.

        Raises:
            CircuitOpenError: If the circuit is open; func is not called
            Any exception from func (after updating circuit state)
        """
        trial = await self._admit()

        # Execute the function outside the lock
        try:
            result = await func(*args, **kwargs)
        except NON_RETRYABLE_ERRORS:
            await self._release(trial)
            raise
        except Exception as e:
            await self._on_failure(e)
            raise
        except BaseException:
            # Cancellation: no verdict on store health
            await self._release(trial)
            raise

        await self._on_success()
        return result

    async def _release(self, trial: bool):
        if not trial:
            return
        async with self._lock:
            if self._state == CircuitState.HALF_OPEN and self._half_open_attempts > 0:
                self._half_open_attempts -= 1

    async def _on_success(self):
        async with self._lock:
            if self._state == CircuitState.OPEN:
                # A call admitted before the circuit opened; it does not close it
                return
            if self._state == CircuitState.HALF_OPEN:
                logger.info(f"Circuit '{self.name}' closing after successful trial call")
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._half_open_attempts = 0

    async def _on_failure(self, exception: Exception):
        async with self._lock:
            self._failure_count += 1
            self._last_failure_time = self._clock()
            self._last_failure_at = datetime.utcnow()

            if self._state == CircuitState.HALF_OPEN:
                logger.warning(
                    f"Circuit '{self.name}' reopening after trial failure: {exception}"
                )
                self._state = CircuitState.OPEN
                self._half_open_attempts = 0

            elif self._state == CircuitState.CLOSED:
                if self._failure_count >= self.failure_threshold:
                    logger.warning(
                        f"Circuit '{self.name}' opening after "
                        f"{self._failure_count} failures"
                    )
                    self._state = CircuitState.OPEN

    def reset(self):
        """Manually reset the circuit breaker to closed state."""
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._half_open_attempts = 0
        self._last_failure_time = None
        self._last_failure_at = None
        logger.info(f"Circuit '{self.name}' manually reset")

    def get_status(self) -> dict[str, Any]:
        """Get circuit breaker status for monitoring."""
        return {
            "name": self.name,
            "state": self._state.value,
            "failure_count": self._failure_count,
            "half_open_attempts": self._half_open_attempts,
            "failure_threshold": self.failure_threshold,
            "reset_timeout_seconds": self.reset_timeout,
            "last_failure_at": (
                self._last_failure_at.isoformat()
                if self._last_failure_at
                else None
            ),
        }


# ============================================
# Resilient Executor
# ============================================

class ResilientExecutor:
    """Run store operations under retry, inside a circuit breaker.

    An operation that exhausts its retries counts as one breaker failure.
    Errors that are not already part of the store taxonomy are wrapped in
    StoreError before they reach the caller.
    """

    def __init__(
        self,
        breaker: Optional[CircuitBreaker] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.breaker = breaker or CircuitBreaker()
        self.retry_policy = retry_policy or RetryPolicy()

    @classmethod
    def from_config(
        cls,
        circuit: CircuitBreakerConfig,
        retry: RetryConfig,
        name: str = "database",
    ) -> "ResilientExecutor":
        return cls(
            CircuitBreaker.from_config(circuit, name=name),
            RetryPolicy.from_config(retry),
        )

    async def execute(self, operation: Operation, context: str) -> T:
        """Execute ``operation`` with circuit breaker and retry.

        Args:
            operation: Zero-argument coroutine function doing the store work
            context: Operation name, used in logs and wrapped errors

        Returns:
            Result from operation

        Raises:
            CircuitOpenError: Circuit is open; nothing was attempted
            StoreError: Store failure after retries were exhausted
            ValidationError: Invalid input detected inside the operation
        """
        async def attempt_all():
            try:
                return await self.retry_policy.run(operation, context)
            except MemoryStoreError:
                raise
            except Exception as e:
                raise StoreError(
                    f"Database operation {context} failed: {e}",
                    operation=context,
                    cause=e,
                ) from e

        return await self.breaker.call(attempt_all)

    def get_status(self) -> dict[str, Any]:
        return self.breaker.get_status()


__all__ = [
    "RetryPolicy",
    "CircuitBreaker",
    "CircuitState",
    "ResilientExecutor",
]
