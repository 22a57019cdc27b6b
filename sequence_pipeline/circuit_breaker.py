from __future__ import annotations

import logging
import threading
import time
from typing import Callable, TypeVar

from .errors import CircuitOpenError

logger = logging.getLogger(__name__)

T = TypeVar("T")

CLOSED = "closed"
OPEN = "open"
HALF_OPEN = "half-open"


class CircuitBreaker:
    """Stops calling a failing backend until ``reset_seconds`` have passed.

    After ``failure_threshold`` failures with no success in between the
    breaker opens and every call raises ``CircuitOpenError`` without running.
    Once the timeout elapses a single trial call is let through (half-open);
    success closes the breaker, failure opens it again.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = max(1, failure_threshold)
        self.reset_seconds = reset_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CLOSED
        self._failures = 0
        self._opened_at = 0.0
        self._trial_running = False

    @property
    def state(self) -> str:
        with self._lock:
            if self._state == OPEN and self._clock() - self._opened_at >= self.reset_seconds:
                return HALF_OPEN
            return self._state

    @property
    def failures(self) -> int:
        with self._lock:
            return self._failures

    def call(self, operation: Callable[[], T]) -> T:
        self._before_call()
        try:
            result = operation()
        except Exception:
            self._on_failure()
            raise
        self._on_success()
        return result

    def _before_call(self) -> None:
        with self._lock:
            if self._state == OPEN:
                if self._clock() - self._opened_at < self.reset_seconds:
                    raise CircuitOpenError("Circuit breaker is open")
                self._state = HALF_OPEN
                self._trial_running = False
            if self._state == HALF_OPEN:
                if self._trial_running:
                    raise CircuitOpenError("Circuit breaker is open")
                self._trial_running = True

    def _on_success(self) -> None:
        with self._lock:
            if self._state != CLOSED:
                logger.info("Circuit breaker closed")
            self._state = CLOSED
            self._failures = 0
            self._trial_running = False

    def _on_failure(self) -> None:
        with self._lock:
            self._failures += 1
            self._trial_running = False
            if self._state == HALF_OPEN or self._failures >= self.failure_threshold:
                if self._state != OPEN:
                    logger.warning("Circuit breaker opened after %d failure(s)", self._failures)
                self._state = OPEN
                self._opened_at = self._clock()
