"""
Circuit breaker for calls to the AI generation endpoint.

One instance is shared by every job running in a worker process, so state
changes happen under a lock. The lock is only held while reading or
updating state, never across the awaited call.

    breaker = CircuitBreaker("gemini-staging", failure_threshold=5, recovery_timeout=60)
    result = await breaker.call(lambda: client.generate(...))
"""
from __future__ import annotations

import logging
import threading
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

from services.errors import CircuitOpenError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


class CircuitBreaker:
    """
    closed -> open after ``failure_threshold`` consecutive failures.
    open -> half-open once ``recovery_timeout`` seconds have passed since the last failure.
    half-open lets exactly one trial call through: success closes, failure reopens.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        *,
        clock: Callable[[], float] = time.monotonic,
        counts_as_failure: Optional[Callable[[BaseException], bool]] = None,
    ) -> None:
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock
        self._counts_as_failure = counts_as_failure
        self._lock = threading.Lock()
        self._state: BreakerState = BreakerState.CLOSED
        self._failures: int = 0
        self._last_failure_time: Optional[float] = None
        self._trial_in_flight: bool = False

    @property
    def state(self) -> BreakerState:
        with self._lock:
            return self._state

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "name": self.name,
                "state": self._state.value,
                "failures": self._failures,
                "last_failure_time": self._last_failure_time,
            }

    def _acquire(self) -> bool:
        """Decide whether a call may proceed. Returns True if it is the half-open trial."""
        with self._lock:
            if self._state == BreakerState.OPEN:
                elapsed = self._clock() - (self._last_failure_time or 0.0)
                if elapsed > self.recovery_timeout:
                    self._state = BreakerState.HALF_OPEN
                    logger.info("[Breaker] %s half-open after %.1fs", self.name, elapsed)
                else:
                    raise CircuitOpenError(
                        f"Circuit breaker '{self.name}' is open",
                        context={"retry_after": max(self.recovery_timeout - elapsed, 0.0)},
                    )
            if self._state == BreakerState.HALF_OPEN:
                if self._trial_in_flight:
                    raise CircuitOpenError(f"Circuit breaker '{self.name}' is half-open, trial in flight")
                self._trial_in_flight = True
                return True
            return False

    def _on_success(self, was_trial: bool) -> None:
        with self._lock:
            if was_trial:
                self._trial_in_flight = False
                logger.info("[Breaker] %s closed after successful trial", self.name)
            self._state = BreakerState.CLOSED
            self._failures = 0

    def _on_failure(self, was_trial: bool) -> None:
        with self._lock:
            self._failures += 1
            self._last_failure_time = self._clock()
            if was_trial:
                self._trial_in_flight = False
                self._state = BreakerState.OPEN
                logger.warning("[Breaker] %s trial failed, reopening", self.name)
            elif self._state == BreakerState.CLOSED and self._failures >= self.failure_threshold:
                self._state = BreakerState.OPEN
                logger.warning(
                    "[Breaker] %s opened after %d consecutive failures",
                    self.name, self._failures,
                )

    def _release_trial(self) -> None:
        with self._lock:
            self._trial_in_flight = False

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation`` through the breaker, raising CircuitOpenError when rejected."""
        was_trial = self._acquire()
        try:
            result = await operation()
        except Exception as exc:
            if self._counts_as_failure is None or self._counts_as_failure(exc):
                self._on_failure(was_trial)
            elif was_trial:
                # Caller-side error: says nothing about the endpoint, let the next call try
                self._release_trial()
            raise
        except BaseException:
            # Cancellation must not leave the half-open trial slot taken
            if was_trial:
                self._release_trial()
            raise
        self._on_success(was_trial)
        return result
