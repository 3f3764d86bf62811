"""Circuit breaker guarding the AI analysis capability.

States:
- closed: calls pass through; failures are counted
- open: calls fail fast with CircuitOpenError until the cooldown elapses
- half_open: exactly one trial call is allowed; its outcome decides
  whether the breaker closes again or re-opens

The breaker opens after `failure_threshold` consecutive failures that all
fall inside the sliding `window_seconds`. A success resets the count.
State transitions are guarded by a threading.Lock so the breaker can be
shared by concurrent tasks and threads.

Usage:
    breaker = CircuitBreaker(failure_threshold=3, window_seconds=60, cooldown_seconds=30)

    result = await breaker.call(lambda: analyzer.analyze(email, score))
"""

from __future__ import annotations

import asyncio
import threading
import time
from collections import deque
from collections.abc import Awaitable, Callable
from typing import Literal, TypeVar

from mailpilot.core.errors import CircuitOpenError
from mailpilot.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

BreakerState = Literal["closed", "open", "half_open"]


class CircuitBreaker:
    """Three-state circuit breaker with a sliding failure window.

    Args:
        failure_threshold: Consecutive in-window failures that open the breaker
        window_seconds: Failures older than this no longer count
        cooldown_seconds: Time spent open before a half-open trial is allowed
        clock: Monotonic clock, injectable for tests
        name: Label used in log events
    """

    def __init__(
        self,
        failure_threshold: int = 3,
        window_seconds: float = 60.0,
        cooldown_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
        name: str = "ai",
    ):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        self.failure_threshold = failure_threshold
        self.window_seconds = window_seconds
        self.cooldown_seconds = cooldown_seconds
        self.name = name
        self._clock = clock
        self._lock = threading.Lock()
        self._state: BreakerState = "closed"
        self._failures: deque[float] = deque()
        self._opened_at = 0.0
        self._trial_in_flight = False

    @property
    def state(self) -> BreakerState:
        """Current state, promoting open to half_open once the cooldown has passed."""
        with self._lock:
            self._maybe_half_open()
            return self._state

    def retry_after(self) -> float:
        """Seconds until a trial call would be allowed (0 when not open)."""
        with self._lock:
            if self._state != "open":
                return 0.0
            return max(0.0, self._opened_at + self.cooldown_seconds - self._clock())

    def allow_request(self) -> bool:
        """Claim permission for one call.

        In half_open only the first caller gets the trial; everyone else is
        refused until the trial reports back.
        """
        with self._lock:
            self._maybe_half_open()
            if self._state == "closed":
                return True
            if self._state == "half_open" and not self._trial_in_flight:
                self._trial_in_flight = True
                return True
            return False

    def record_success(self) -> None:
        with self._lock:
            if self._state == "half_open":
                logger.info("circuit_breaker_closed", breaker=self.name)
            self._state = "closed"
            self._failures.clear()
            self._trial_in_flight = False

    def record_failure(self) -> None:
        with self._lock:
            now = self._clock()
            if self._state == "half_open":
                self._open(now, reason="trial_failed")
                return
            if self._state == "open":
                return

            self._failures.append(now)
            while self._failures and now - self._failures[0] > self.window_seconds:
                self._failures.popleft()

            if len(self._failures) >= self.failure_threshold:
                self._open(now, reason="failure_threshold")

    async def call(self, func: Callable[[], Awaitable[T]]) -> T:
        """Run an async callable through the breaker.

        Raises:
            CircuitOpenError: If the breaker refuses the call (func is not invoked)
        """
        if not self.allow_request():
            retry_after = self.retry_after()
            raise CircuitOpenError(
                f"AI circuit breaker '{self.name}' is open; retry in {retry_after:.1f}s",
                retry_after=retry_after,
            )

        try:
            result = await func()
        except asyncio.CancelledError:
            # A cancelled call says nothing about the AI service
            self._release_trial()
            raise
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result

    def _release_trial(self) -> None:
        with self._lock:
            self._trial_in_flight = False

    def reset(self) -> None:
        """Force the breaker closed. Primarily for testing and operator use."""
        with self._lock:
            self._state = "closed"
            self._failures.clear()
            self._trial_in_flight = False

    def _open(self, now: float, reason: str) -> None:
        # Caller holds the lock
        self._state = "open"
        self._opened_at = now
        self._failures.clear()
        self._trial_in_flight = False
        logger.warning(
            "circuit_breaker_opened",
            breaker=self.name,
            reason=reason,
            cooldown_seconds=self.cooldown_seconds,
        )

    def _maybe_half_open(self) -> None:
        # Caller holds the lock
        if self._state == "open" and self._clock() - self._opened_at >= self.cooldown_seconds:
            self._state = "half_open"
            self._trial_in_flight = False
            logger.info("circuit_breaker_half_open", breaker=self.name)
