"""Circuit breaker for the prediction service.

Pure in-memory state machine with no I/O. Every mutation happens under
a single lock so concurrent callers (coroutines or threads) never race
on a read-modify-write of the counters.

Transitions:
    CLOSED    -> OPEN       after failure_threshold consecutive failures
    OPEN      -> HALF_OPEN  on the first allow() at or after opened_until
    HALF_OPEN -> CLOSED     after success_threshold consecutive successes
    HALF_OPEN -> OPEN       on any failure
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreaker:
    """Tracks the health of one outbound dependency.

    Args:
        failure_threshold: Consecutive failures that open the circuit.
        success_threshold: Consecutive half-open successes that close it.
        cooldown_seconds: How long the circuit stays open before a trial.
        clock: Monotonic time source in seconds (injectable for tests).
        name: Dependency name used in log messages.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        success_threshold: int = 2,
        cooldown_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        name: str = "prediction-service",
    ) -> None:
        if failure_threshold < 1 or success_threshold < 1:
            raise ValueError("Circuit breaker thresholds must be >= 1")
        self.failure_threshold = failure_threshold
        self.success_threshold = success_threshold
        self.cooldown_seconds = cooldown_seconds
        self.name = name
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._opened_until: float | None = None

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def success_count(self) -> int:
        return self._success_count

    @property
    def opened_until(self) -> float | None:
        return self._opened_until

    def is_rejecting(self) -> bool:
        """True while OPEN and the cooldown has not elapsed. No side effects."""
        with self._lock:
            return (
                self._state is CircuitState.OPEN
                and self._opened_until is not None
                and self._clock() < self._opened_until
            )

    def allow(self) -> bool:
        """Decide whether a call may be attempted.

        An OPEN circuit whose cooldown has elapsed moves to HALF_OPEN
        here, before the trial call is made.
        """
        with self._lock:
            if self._state is CircuitState.CLOSED:
                return True
            if self._state is CircuitState.HALF_OPEN:
                return True
            if self._opened_until is not None and self._clock() >= self._opened_until:
                self._transition(CircuitState.HALF_OPEN)
                return True
            return False

    def on_success(self) -> None:
        with self._lock:
            if self._state is CircuitState.CLOSED:
                self._failure_count = 0
            elif self._state is CircuitState.HALF_OPEN:
                self._success_count += 1
                if self._success_count >= self.success_threshold:
                    self._transition(CircuitState.CLOSED)

    def on_failure(self) -> None:
        with self._lock:
            if self._state is CircuitState.CLOSED:
                self._failure_count += 1
                if self._failure_count >= self.failure_threshold:
                    self._transition(CircuitState.OPEN)
            elif self._state is CircuitState.HALF_OPEN:
                self._transition(CircuitState.OPEN)
            # OPEN: late result of a call admitted before the trip, ignored

    def seconds_until_trial(self) -> float:
        with self._lock:
            if self._state is not CircuitState.OPEN or self._opened_until is None:
                return 0.0
            return max(0.0, self._opened_until - self._clock())

    def snapshot(self) -> dict[str, Any]:
        """Point-in-time view for status reporting."""
        with self._lock:
            remaining = 0.0
            if self._state is CircuitState.OPEN and self._opened_until is not None:
                remaining = max(0.0, self._opened_until - self._clock())
            return {
                "name": self.name,
                "state": self._state.value,
                "failure_count": self._failure_count,
                "success_count": self._success_count,
                "failure_threshold": self.failure_threshold,
                "success_threshold": self.success_threshold,
                "opened_until": self._opened_until,
                "seconds_until_trial": remaining,
            }

    def _transition(self, target: CircuitState) -> None:
        """Switch state and reset counters. Caller holds the lock."""
        self._state = target
        self._failure_count = 0
        self._success_count = 0
        if target is CircuitState.OPEN:
            self._opened_until = self._clock() + self.cooldown_seconds
            logger.warning(
                "Circuit breaker '%s' OPENED for %.0fs",
                self.name,
                self.cooldown_seconds,
            )
        elif target is CircuitState.HALF_OPEN:
            logger.info("Circuit breaker '%s' HALF-OPEN, testing service", self.name)
        else:
            self._opened_until = None
            logger.info("Circuit breaker '%s' CLOSED, service restored", self.name)
