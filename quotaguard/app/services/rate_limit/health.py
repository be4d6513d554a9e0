"""Shared store health tracking.

This module provides a consecutive-failure circuit breaker for the shared
window store. While the breaker is open, checks skip the store entirely and
are served by the local fallback store (or the configured failure policy),
so a dead Redis does not cost every request a socket timeout.
"""

import time
from typing import Callable

from quotaguard.app.core.logging import get_log_context, get_logger

logger = get_logger(__name__)

CLOSED = "closed"
OPEN = "open"
HALF_OPEN = "half_open"


class StoreCircuitBreaker:
    """Tracks store failures and decides whether to attempt the store.

    States:
    - closed: every check goes to the store
    - open: checks bypass the store until the cooldown elapses
    - half_open: one probe check goes to the store; success closes the
      breaker, failure reopens it

    Usage:
        breaker = StoreCircuitBreaker(failure_threshold=5, cooldown_seconds=30)
        if breaker.allow_request():
            try:
                ...
            except StoreUnavailableError:
                breaker.record_failure()
            else:
                breaker.record_success()
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        cooldown_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the breaker.

        Args:
            failure_threshold: Consecutive failures that open the breaker
            cooldown_seconds: Time the breaker stays open before probing
            clock: Time source, injectable for tests
        """
        self._failure_threshold = failure_threshold
        self._cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._state = CLOSED
        self._consecutive_failures = 0
        self._opened_at = 0.0
        self._probe_in_flight = False
        self._probe_started_at = 0.0
        self._times_opened = 0

    @property
    def state(self) -> str:
        if self._state == OPEN and self._clock() - self._opened_at >= self._cooldown_seconds:
            return HALF_OPEN
        return self._state

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def times_opened(self) -> int:
        return self._times_opened

    def allow_request(self) -> bool:
        """Return True if the caller should attempt the store now."""
        state = self.state
        if state == CLOSED:
            return True
        if state == HALF_OPEN and (
            not self._probe_in_flight
            # A probe abandoned by a cancelled caller must not wedge the breaker
            or self._clock() - self._probe_started_at >= self._cooldown_seconds
        ):
            self._state = HALF_OPEN
            self._probe_in_flight = True
            self._probe_started_at = self._clock()
            logger.info("Window store circuit half-open, probing store")
            return True
        return False

    def record_success(self) -> None:
        if self._state != CLOSED:
            logger.info(
                "Window store recovered, circuit closed",
                extra=get_log_context(event="rate_limiter_store_recovered"),
            )
        self._state = CLOSED
        self._consecutive_failures = 0
        self._probe_in_flight = False

    def record_failure(self) -> None:
        self._consecutive_failures += 1
        if self._state == HALF_OPEN:
            self._open()
        elif self._state == CLOSED and self._consecutive_failures >= self._failure_threshold:
            self._open()

    def _open(self) -> None:
        self._state = OPEN
        self._opened_at = self._clock()
        self._probe_in_flight = False
        self._times_opened += 1
        logger.warning(
            f"Window store circuit opened after {self._consecutive_failures} "
            f"consecutive failures; bypassing store for {self._cooldown_seconds}s",
            extra=get_log_context(event="rate_limiter_circuit_open"),
        )

    def get_status(self) -> dict:
        return {
            "state": self.state,
            "consecutive_failures": self._consecutive_failures,
            "failure_threshold": self._failure_threshold,
            "cooldown_seconds": self._cooldown_seconds,
            "times_opened": self._times_opened,
        }
