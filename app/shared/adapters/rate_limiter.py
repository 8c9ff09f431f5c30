"""
Rate Limiting Helpers

- RateLimiter: token bucket for provider API calls (Cost Explorer: 5 req/s)
- SlidingWindowRateLimiter: caps job starts per rolling window (10 per 60s)

Cost Explorer is billed per request, so job starts are capped independently of
worker concurrency.
"""

import asyncio
from collections import deque
from typing import Awaitable, Callable, Deque, Optional

import structlog

logger = structlog.get_logger()

DEFAULT_RATE_LIMIT = 5  # requests per second


class RateLimiter:
    """
    Token bucket rate limiter for provider API calls.

    Owned by the adapter instance that uses it.
    """

    def __init__(self, rate_per_second: float = DEFAULT_RATE_LIMIT):
        self.rate = rate_per_second
        self.tokens = rate_per_second
        try:
            loop = asyncio.get_running_loop()
            self.last_update = loop.time()
        except RuntimeError:
            self.last_update = 0
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        """Wait until a token is available."""
        async with self._lock:
            now = asyncio.get_running_loop().time()
            elapsed = now - self.last_update

            # Refill tokens based on elapsed time
            self.tokens = min(
                self.rate,
                self.tokens + elapsed * self.rate
            )
            self.last_update = now

            if self.tokens < 1:
                wait_time = (1 - self.tokens) / self.rate
                logger.debug(
                    "rate_limit_waiting",
                    wait_seconds=round(wait_time, 3)
                )
                await asyncio.sleep(wait_time)
                self.tokens = 0
                self.last_update = asyncio.get_running_loop().time()
            else:
                self.tokens -= 1


class SlidingWindowRateLimiter:
    """
    At most `max_events` acquisitions in any rolling `window_seconds`.

    Waiters queue on the lock in arrival order.
    """

    def __init__(
        self,
        max_events: int = 10,
        window_seconds: float = 60.0,
        clock: Optional[Callable[[], float]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_events < 1 or window_seconds <= 0:
            raise ValueError("max_events and window_seconds must be positive")
        self.max_events = max_events
        self.window_seconds = window_seconds
        self._clock = clock
        self._sleep = sleep
        self._events: Deque[float] = deque()
        self._lock = asyncio.Lock()

    def _now(self) -> float:
        if self._clock is not None:
            return self._clock()
        return asyncio.get_running_loop().time()

    def _purge(self, now: float) -> None:
        while self._events and now - self._events[0] >= self.window_seconds:
            self._events.popleft()

    async def acquire(self) -> float:
        """Block until a slot is free. Returns the seconds spent waiting."""
        waited = 0.0
        async with self._lock:
            while True:
                now = self._now()
                self._purge(now)
                if len(self._events) < self.max_events:
                    self._events.append(now)
                    return waited

                wait_time = self._events[0] + self.window_seconds - now
                logger.debug(
                    "job_start_rate_limited",
                    wait_seconds=round(wait_time, 3),
                    window_seconds=self.window_seconds,
                )
                await self._sleep(wait_time)
                waited += wait_time

    def in_window(self) -> int:
        self._purge(self._now())
        return len(self._events)
