"""Circuit breaker guarding the push gateway.

States:
- CLOSED: Normal operation, attempts pass through
- OPEN: Gateway judged unhealthy, attempts are skipped
- HALF_OPEN: Reset timeout elapsed, one probing attempt is allowed

State transitions:
    CLOSED -> OPEN: consecutive failures reach the threshold
    OPEN -> HALF_OPEN: reset timeout elapsed, checked when consulted
    HALF_OPEN -> CLOSED: trial succeeded
    HALF_OPEN -> OPEN: trial failed
"""

import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

import structlog

from pushretry.services.retry.types import Clock, utc_now

logger = structlog.get_logger()


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Rejecting attempts
    HALF_OPEN = "half_open"  # Testing recovery


@dataclass(frozen=True)
class CircuitBreakerState:
    """Point-in-time copy of the breaker state."""

    status: CircuitState
    consecutive_failures: int
    opened_at: datetime | None

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "consecutive_failures": self.consecutive_failures,
            "opened_at": self.opened_at.isoformat() if self.opened_at else None,
        }


class CircuitBreaker:
    """
    Consecutive-failure circuit breaker for a single delivery channel.

    Thread-safe: every read-modify-write happens under one lock, so failures
    recorded by concurrently processed records are never lost.
    """

    def __init__(
        self,
        threshold: int,
        reset_timeout: float,
        name: str = "push_gateway",
        clock: Clock = utc_now,
        on_state_change: Callable[[CircuitState, CircuitState], None] | None = None,
    ):
        self.name = name
        self.threshold = threshold
        self.reset_timeout = reset_timeout
        self.on_state_change = on_state_change
        self._clock = clock

        self._status = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._opened_at: datetime | None = None
        self._trial_in_flight = False
        self._lock = threading.Lock()

    @property
    def state(self) -> CircuitBreakerState:
        """Copy of the current state. Reading it never triggers a transition."""
        with self._lock:
            return CircuitBreakerState(
                status=self._status,
                consecutive_failures=self._consecutive_failures,
                opened_at=self._opened_at,
            )

    @property
    def status(self) -> CircuitState:
        return self.state.status

    @property
    def consecutive_failures(self) -> int:
        return self.state.consecutive_failures

    def allow_attempt(self) -> bool:
        """Check whether a delivery attempt may proceed.

        Performs the lazy OPEN -> HALF_OPEN transition when the reset timeout
        has elapsed. While HALF_OPEN only one trial is let through until its
        outcome is recorded.
        """
        with self._lock:
            if self._status == CircuitState.OPEN:
                elapsed = (self._clock() - self._opened_at).total_seconds()
                if elapsed < self.reset_timeout:
                    return False
                logger.debug(
                    "Circuit breaker reset timeout elapsed",
                    circuit_name=self.name,
                    elapsed_seconds=round(elapsed, 2),
                    reset_timeout=self.reset_timeout,
                )
                self._transition_to(CircuitState.HALF_OPEN)

            if self._status == CircuitState.HALF_OPEN:
                if self._trial_in_flight:
                    return False
                self._trial_in_flight = True

            return True

    def record_success(self) -> None:
        """Record a successful attempt."""
        with self._lock:
            self._consecutive_failures = 0
            self._trial_in_flight = False
            if self._status == CircuitState.HALF_OPEN:
                self._opened_at = None
                self._transition_to(CircuitState.CLOSED)

    def record_failure(self) -> None:
        """Record a failed attempt."""
        with self._lock:
            self._consecutive_failures += 1
            self._trial_in_flight = False

            if self._status == CircuitState.HALF_OPEN:
                self._opened_at = self._clock()
                self._transition_to(CircuitState.OPEN)
            elif self._status == CircuitState.OPEN:
                # Late outcome from an attempt dispatched before the trip
                self._opened_at = self._clock()
            elif self._consecutive_failures >= self.threshold:
                self._opened_at = self._clock()
                self._transition_to(CircuitState.OPEN)

    def release_trial(self) -> None:
        """Give back a half-open trial whose outcome will never be recorded."""
        with self._lock:
            self._trial_in_flight = False

    def reconfigure(self, threshold: int, reset_timeout: float) -> None:
        """Apply new limits without resetting the current state."""
        with self._lock:
            self.threshold = threshold
            self.reset_timeout = reset_timeout

    def _transition_to(self, new_state: CircuitState) -> None:
        """Transition to new state (called under lock)."""
        old_state = self._status
        if old_state == new_state:
            return
        self._status = new_state

        if new_state == CircuitState.OPEN:
            logger.warning(
                "Circuit breaker opened",
                circuit_name=self.name,
                consecutive_failures=self._consecutive_failures,
                reset_timeout=self.reset_timeout,
            )
        else:
            logger.info(
                "Circuit breaker state changed",
                circuit_name=self.name,
                old_state=old_state.value,
                new_state=new_state.value,
            )

        if self.on_state_change:
            self.on_state_change(old_state, new_state)
