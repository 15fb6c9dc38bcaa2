#!/usr/bin/env python3
"""Resilience Patterns for reconciliation I/O.

This module provides resilience patterns to handle transient failures at the
engine's I/O boundaries (Source Provider, Live State Provider, Executor backend):
    - Retry with exponential backoff
    - Circuit breaker, one per destination

Example:
    # Retry an apply call that may fail transiently
    outcome = await retry_async(
        apply_once,
        manifest,
        max_attempts=policy.retry_limit + 1,
        retryable_exceptions=(RetryableApplyFailure,),
    )

    # Fail fast on a destination that keeps timing out
    breaker = breakers.get(destination.server)
    resources = await breaker.call(live_provider.list_resources, destination, selector)
"""
import asyncio
import logging
import random
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

from .exceptions import CircuitOpenError, RetryableApplyFailure

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ============================================
# Retry with Exponential Backoff
# ============================================

DEFAULT_RETRYABLE_EXCEPTIONS = (
    RetryableApplyFailure,
    asyncio.TimeoutError,
    ConnectionResetError,
)


async def retry_async(
    func: Callable[..., Awaitable[T]],
    *args,
    max_attempts: int = 3,
    backoff_factor: float = 2.0,
    initial_delay: float = 1.0,
    max_delay: float = 60.0,
    jitter: bool = True,
    retryable_exceptions: tuple = DEFAULT_RETRYABLE_EXCEPTIONS,
    on_retry: Optional[Callable[[Exception, int], None]] = None,
    **kwargs,
) -> T:
    """Retry an async function call with exponential backoff.

    Non-retryable exceptions propagate immediately. When every attempt fails
    with a retryable exception, the last one is re-raised.

    Args:
        func: Async function to call
        *args: Arguments to pass to func
        max_attempts: Maximum attempts (including the first try)
        backoff_factor: Delay multiplier
        initial_delay: Initial delay in seconds
        max_delay: Maximum delay in seconds
        jitter: Randomize each delay between 50% and 150%
        retryable_exceptions: Exceptions to retry on
        on_retry: Optional callback called before each retry with (exception, attempt)
        **kwargs: Keyword arguments to pass to func

    Returns:
        Result from func
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    last_exception: Optional[Exception] = None
    delay = initial_delay

    for attempt in range(1, max_attempts + 1):
        try:
            return await func(*args, **kwargs)

        except retryable_exceptions as e:
            last_exception = e

            if attempt < max_attempts:
                actual_delay = min(delay, max_delay)
                if jitter:
                    actual_delay = actual_delay * (0.5 + random.random())

                if on_retry:
                    on_retry(e, attempt)

                logger.warning(
                    f"Attempt {attempt}/{max_attempts} failed: {e}. "
                    f"Retrying in {actual_delay:.1f}s"
                )
                await asyncio.sleep(actual_delay)
                delay = min(delay * backoff_factor, max_delay)
            else:
                logger.error(f"All {max_attempts} attempts failed. Last error: {e}")
                raise

    if last_exception:
        raise last_exception
    raise RuntimeError("Retry logic error")


# ============================================
# Circuit Breaker
# ============================================

class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"      # Normal operation, requests pass through
    OPEN = "open"          # Failing, requests rejected immediately
    HALF_OPEN = "half_open"  # Testing if service recovered


class CircuitBreaker:
    """Circuit breaker to stop hammering an unreachable destination.

    State Transitions:
        CLOSED -> OPEN: When failure_count >= failure_threshold
        OPEN -> HALF_OPEN: When timeout expires
        HALF_OPEN -> CLOSED: When test request succeeds
        HALF_OPEN -> OPEN: When test request fails

    Only exceptions listed in ``tracked_exceptions`` count as failures, so a
    destination that answers with a bad manifest error stays closed.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: float = 60.0,
        success_threshold: int = 1,
        name: str = "default",
        tracked_exceptions: tuple = (Exception,),
    ):
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.name = name
        self.tracked_exceptions = tracked_exceptions

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._last_failure_time: Optional[datetime] = None
        self._lock = asyncio.Lock()

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
        """Get current failure count."""
        return self._failure_count

    def _should_attempt(self) -> bool:
        if self._state == CircuitState.CLOSED:
            return True

        if self._state == CircuitState.OPEN:
            if self._last_failure_time:
                elapsed = (datetime.now(timezone.utc) - self._last_failure_time).total_seconds()
                if elapsed >= self.timeout:
                    return True
            return False

        return True

    async def call(
        self,
        func: Callable[..., Awaitable[T]],
        *args,
        **kwargs,
    ) -> T:
        """Execute function through the circuit breaker.

        Raises:
            CircuitOpenError: If circuit is open and timeout hasn't passed
            Any exception from func (after updating circuit state)
        """
        async with self._lock:
            if not self._should_attempt():
                reset_at = None
                if self._last_failure_time:
                    reset_at = self._last_failure_time + timedelta(seconds=self.timeout)

                raise CircuitOpenError(
                    f"Circuit breaker '{self.name}' is open",
                    reset_at=reset_at,
                    failure_count=self._failure_count,
                )

            if self._state == CircuitState.OPEN:
                logger.info(f"Circuit '{self.name}' transitioning to HALF_OPEN")
                self._state = CircuitState.HALF_OPEN
                self._success_count = 0

        try:
            result = await func(*args, **kwargs)
        except self.tracked_exceptions as e:
            await self._on_failure(e)
            raise

        await self._on_success()
        return result

    async def _on_success(self):
        async with self._lock:
            self._failure_count = 0

            if self._state == CircuitState.HALF_OPEN:
                self._success_count += 1
                if self._success_count >= self.success_threshold:
                    logger.info(
                        f"Circuit '{self.name}' closing after "
                        f"{self._success_count} successes"
                    )
                    self._state = CircuitState.CLOSED
                    self._success_count = 0

    async def _on_failure(self, exception: Exception):
        async with self._lock:
            self._failure_count += 1
            self._last_failure_time = datetime.now(timezone.utc)

            if self._state == CircuitState.HALF_OPEN:
                logger.warning(
                    f"Circuit '{self.name}' reopening after test failure: {exception}"
                )
                self._state = CircuitState.OPEN

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
        self._success_count = 0
        self._last_failure_time = None
        logger.info(f"Circuit '{self.name}' manually reset")

    def get_status(self) -> dict[str, Any]:
        """Get circuit breaker status for monitoring."""
        return {
            "name": self.name,
            "state": self._state.value,
            "failure_count": self._failure_count,
            "success_count": self._success_count,
            "failure_threshold": self.failure_threshold,
            "timeout_seconds": self.timeout,
            "last_failure_at": (
                self._last_failure_time.isoformat()
                if self._last_failure_time
                else None
            ),
        }


class CircuitBreakerRegistry:
    """Lazily creates one CircuitBreaker per key (destination server)."""

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: float = 60.0,
        tracked_exceptions: tuple = (Exception,),
    ):
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.tracked_exceptions = tracked_exceptions
        self._breakers: dict[str, CircuitBreaker] = {}

    def get(self, key: str) -> CircuitBreaker:
        breaker = self._breakers.get(key)
        if breaker is None:
            breaker = CircuitBreaker(
                failure_threshold=self.failure_threshold,
                timeout=self.timeout,
                name=key,
                tracked_exceptions=self.tracked_exceptions,
            )
            self._breakers[key] = breaker
        return breaker

    def get_status(self) -> list[dict[str, Any]]:
        return [b.get_status() for b in self._breakers.values()]
