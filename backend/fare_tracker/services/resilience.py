"""
Resilience primitives for provider calls: retry with exponential backoff,
circuit breaker, and a per-call timeout.

ResilientCaller composes them per underlying network call in this order:

    retry( circuit_breaker( timeout( call ) ) )

Only TransientProviderError (and timeouts, which are converted to it) is
retried and counted by the breaker. Anything else passes straight through.
"""
from __future__ import annotations

import asyncio
import enum
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, TypeVar

from fare_tracker.services.errors import CircuitOpenError, TransientProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, enum.Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class RetryPolicy:
    """Bounded retries; delay for attempt n is base * 2^(n-1) plus optional jitter."""
    max_retries: int = 3
    backoff_base_seconds: float = 2.0
    jitter_seconds: float = 0.0
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep

    def delay_for(self, attempt: int) -> float:
        delay = self.backoff_base_seconds * (2 ** (attempt - 1))
        if self.jitter_seconds:
            delay += random.uniform(0, self.jitter_seconds)
        return delay


@dataclass
class CircuitBreaker:
    """
    Stops calling a failing dependency for a cooldown window.

    States:
    - CLOSED: calls pass through; consecutive failures are counted.
    - OPEN: calls are rejected with CircuitOpenError until the cooldown elapses.
    - HALF_OPEN: a single trial call is let through. Success closes the
      circuit, failure re-opens it for another cooldown.
    """
    name: str
    failure_threshold: int = 5
    cooldown_seconds: float = 30.0
    clock: Callable[[], float] = time.monotonic
    _state: CircuitState = field(default=CircuitState.CLOSED, init=False, repr=False)
    _failure_count: int = field(default=0, init=False, repr=False)
    _opened_at: Optional[float] = field(default=None, init=False, repr=False)
    _trial_in_flight: bool = field(default=False, init=False, repr=False)
    _last_error: Optional[str] = field(default=None, init=False, repr=False)

    @property
    def state(self) -> CircuitState:
        if self._state == CircuitState.OPEN and self._opened_at is not None:
            if self.clock() - self._opened_at >= self.cooldown_seconds:
                self._state = CircuitState.HALF_OPEN
                self._trial_in_flight = False
                logger.info(f"{self.name} circuit breaker is half-open, testing connection")
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    def before_call(self) -> None:
        """Raise CircuitOpenError if the call must not go out."""
        state = self.state
        if state == CircuitState.OPEN:
            raise CircuitOpenError(f"{self.name} circuit breaker is open: {self._last_error}")
        if state == CircuitState.HALF_OPEN:
            if self._trial_in_flight:
                raise CircuitOpenError(f"{self.name} circuit breaker is half-open, trial call in flight")
            self._trial_in_flight = True

    def record_success(self) -> None:
        # A call that started before the circuit opened must not end the cooldown
        if self.state == CircuitState.OPEN:
            return
        if self._state != CircuitState.CLOSED:
            logger.info(f"{self.name} circuit breaker reset (closed)")
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at = None
        self._trial_in_flight = False
        self._last_error = None

    def record_failure(self, error: str) -> None:
        self._last_error = error[:500]
        if self.state == CircuitState.OPEN:
            return
        self._failure_count += 1
        if self._state == CircuitState.HALF_OPEN or self._failure_count >= self.failure_threshold:
            self._trip()

    def release_trial(self) -> None:
        """A trial call ended without a verdict (cancelled, non-transient error)."""
        self._trial_in_flight = False

    def reset(self) -> None:
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at = None
        self._trial_in_flight = False
        self._last_error = None

    def snapshot(self) -> dict:
        return {
            "name": self.name,
            "state": self.state.value,
            "consecutive_failures": self._failure_count,
            "last_error": self._last_error,
        }

    def _trip(self) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = self.clock()
        self._trial_in_flight = False
        logger.error(
            f"{self.name} circuit breaker opened for {self.cooldown_seconds:.0f}s "
            f"after {self._failure_count} failures: {self._last_error}"
        )


class ResilientCaller:
    """Runs one network call under retry, circuit breaker and timeout."""

    def __init__(
        self,
        name: str,
        retry: RetryPolicy,
        breaker: CircuitBreaker,
        timeout_seconds: float,
    ):
        self.name = name
        self.retry = retry
        self.breaker = breaker
        self.timeout_seconds = timeout_seconds

    async def call(self, func: Callable[[], Awaitable[T]]) -> T:
        attempt = 0
        while True:
            try:
                return await self._call_once(func)
            except TransientProviderError as e:
                if attempt >= self.retry.max_retries:
                    logger.warning(f"{self.name}: giving up after {attempt + 1} attempts: {e}")
                    raise
                attempt += 1
                delay = self.retry.delay_for(attempt)
                logger.warning(
                    f"{self.name} retry attempt {attempt}/{self.retry.max_retries} "
                    f"after {delay:.1f}s: {e}"
                )
                await self.retry.sleep(delay)

    async def _call_once(self, func: Callable[[], Awaitable[T]]) -> T:
        self.breaker.before_call()
        try:
            result = await asyncio.wait_for(func(), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as e:
            error = TransientProviderError(f"timed out after {self.timeout_seconds:.0f}s")
            self.breaker.record_failure(str(error))
            raise error from e
        except TransientProviderError as e:
            self.breaker.record_failure(str(e))
            raise
        except BaseException:
            self.breaker.release_trial()
            raise

        self.breaker.record_success()
        return result
