"""Consecutive-failure circuit breaker shared by concurrent workers."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from book_aggregator import logging_manager as log_mgr
from book_aggregator.catalog.errors import CircuitOpenError

logger = log_mgr.get_logger().getChild("resilience.circuit_breaker")


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True, slots=True)
class BreakerSnapshot:
    """Point-in-time view of a breaker."""

    state: CircuitState
    consecutive_failures: int
    opened_at: Optional[float]


class CircuitBreaker:
    """Open after ``failure_threshold`` consecutive failures, admit a trial call after a cool-down.

    ``CLOSED``: calls pass and failures are counted. ``OPEN``: calls fail fast
    with :class:`CircuitOpenError` until ``reset_timeout`` seconds have passed
    since opening. ``HALF_OPEN``: a single trial call is let through; success
    closes the breaker and clears the counter, failure re-opens it.
    """

    def __init__(
        self,
        failure_threshold: int = 10,
        reset_timeout: float = 300.0,
        *,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if failure_threshold <= 0:
            raise ValueError("failure_threshold must be greater than zero")
        self._threshold = failure_threshold
        self._reset_timeout = reset_timeout
        self._name = name
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at: Optional[float] = None
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._maybe_half_open()
            return self._state

    @property
    def consecutive_failures(self) -> int:
        with self._lock:
            return self._failures

    def snapshot(self) -> BreakerSnapshot:
        with self._lock:
            self._maybe_half_open()
            return BreakerSnapshot(self._state, self._failures, self._opened_at)

    def before_call(self) -> bool:
        """Raise :class:`CircuitOpenError` when the call must not be attempted.

        Returns ``True`` when the admitted call is the half-open trial; the
        caller must then report its verdict, or :meth:`release_trial` when the
        call ended without one.
        """
        with self._lock:
            self._maybe_half_open()
            if self._state is CircuitState.CLOSED:
                return False
            if self._state is CircuitState.HALF_OPEN and not self._trial_in_flight:
                self._trial_in_flight = True
                return True
            raise CircuitOpenError(
                f"circuit '{self._name}' is open after {self._failures} consecutive failures"
            )

    def record_success(self) -> None:
        with self._lock:
            if self._state is not CircuitState.CLOSED:
                logger.info(
                    "Circuit breaker closed (recovered)",
                    extra={"event": "resilience.breaker.closed", "breaker": self._name},
                )
            self._state = CircuitState.CLOSED
            self._failures = 0
            self._opened_at = None
            self._trial_in_flight = False

    def record_failure(self) -> None:
        with self._lock:
            self._failures += 1
            if self._state is CircuitState.HALF_OPEN:
                self._open()
                return
            if self._state is CircuitState.CLOSED and self._failures >= self._threshold:
                self._open()

    def release_trial(self) -> None:
        """Re-open after a trial call that was cancelled or failed for an unrelated reason."""
        with self._lock:
            if self._state is CircuitState.HALF_OPEN and self._trial_in_flight:
                self._open()

    def reset(self) -> None:
        self.record_success()

    def _open(self) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        self._trial_in_flight = False
        logger.warning(
            "Circuit breaker opened after %d consecutive failures",
            self._failures,
            extra={"event": "resilience.breaker.opened", "breaker": self._name},
        )

    def _maybe_half_open(self) -> None:
        if (
            self._state is CircuitState.OPEN
            and self._opened_at is not None
            and self._clock() - self._opened_at >= self._reset_timeout
        ):
            self._state = CircuitState.HALF_OPEN
            self._trial_in_flight = False
            logger.info(
                "Circuit breaker half-open (testing recovery)",
                extra={"event": "resilience.breaker.half_open", "breaker": self._name},
            )


__all__ = ["BreakerSnapshot", "CircuitBreaker", "CircuitState"]
