"""Sliding-window rate limiter for outbound CRM calls.

The remote CRM allows a fixed number of calls per rolling window (observed
default 300 per 5 minutes). The limiter keeps the timestamps of the calls
made inside the current window; a caller that would exceed the budget waits
until the oldest call leaves the window. There is no per-minute reset, so
callers never stampede at a window boundary.

One limiter instance is shared by every trigger in the process.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from collections.abc import Awaitable, Callable

import structlog

from src.membership_sync.core.errors import TransientSyncFailure

logger = structlog.get_logger(__name__)

Clock = Callable[[], float]
Sleeper = Callable[[float], Awaitable[None]]

NEAR_LIMIT_PERCENT = 80.0


class SlidingWindowRateLimiter:
    """Atomic sliding-window call budget.

    Args:
        max_calls: Calls allowed per window.
        window_seconds: Length of the rolling window.
        max_wait: Longest a caller may wait for budget before the call is
            rejected with TransientSyncFailure.
        min_interval: Minimum spacing between two consecutive calls.
        clock: Monotonic clock (injectable for tests).
        sleep: Async sleep (injectable for tests).
    """

    def __init__(
        self,
        max_calls: int = 300,
        window_seconds: float = 300.0,
        max_wait: float = 60.0,
        min_interval: float = 0.0,
        clock: Clock | None = None,
        sleep: Sleeper | None = None,
    ) -> None:
        if max_calls <= 0:
            raise ValueError("max_calls must be positive")
        self.max_calls = max_calls
        self.window_seconds = window_seconds
        self.max_wait = max_wait
        self.min_interval = min_interval
        self._clock = clock or time.monotonic
        self._sleep = sleep or asyncio.sleep
        self._calls: deque[float] = deque()
        self._lock = asyncio.Lock()

    def _prune(self, now: float) -> None:
        cutoff = now - self.window_seconds
        while self._calls and self._calls[0] <= cutoff:
            self._calls.popleft()

    def _delay_needed(self, now: float) -> float:
        """Seconds until one more call fits the budget and spacing."""
        delay = 0.0
        if len(self._calls) >= self.max_calls:
            delay = self._calls[0] + self.window_seconds - now
        if self.min_interval and self._calls:
            delay = max(delay, self._calls[-1] + self.min_interval - now)
        return max(delay, 0.0)

    async def acquire(self) -> None:
        """Reserve one call slot, waiting if the window is full.

        The check and the increment happen under one lock, so two concurrent
        callers can never both take the last slot.

        Raises:
            TransientSyncFailure: If budget does not free up within max_wait.
        """
        async with self._lock:
            waited = 0.0
            while True:
                now = self._clock()
                self._prune(now)
                delay = self._delay_needed(now)
                if delay <= 0:
                    self._calls.append(now)
                    return
                if waited + delay > self.max_wait:
                    logger.warning(
                        "rate_limiter.budget_exhausted",
                        used=len(self._calls),
                        limit=self.max_calls,
                        retry_after=round(delay, 2),
                    )
                    raise TransientSyncFailure(
                        "CRM rate limit budget exhausted",
                        status_code=429,
                        retry_after=delay,
                    )
                logger.debug("rate_limiter.waiting", delay=round(delay, 2))
                await self._sleep(delay)
                waited += delay

    def status(self) -> dict:
        """Current budget usage, for the operator console."""
        now = self._clock()
        self._prune(now)
        used = len(self._calls)
        percentage = round(used / self.max_calls * 100, 1)
        resets_in = 0.0
        if self._calls:
            resets_in = max(self._calls[0] + self.window_seconds - now, 0.0)
        return {
            "limit": self.max_calls,
            "window_seconds": self.window_seconds,
            "used": used,
            "remaining": max(self.max_calls - used, 0),
            "percentage": percentage,
            "resets_in_seconds": round(resets_in, 2),
            "is_near_limit": percentage > NEAR_LIMIT_PERCENT,
        }

    def reset(self) -> None:
        """Forget all recorded calls."""
        self._calls.clear()
        logger.info("rate_limiter.reset")
