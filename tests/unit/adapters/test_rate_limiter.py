"""
Tests for the job-start sliding window limiter and the provider token bucket.
"""

import asyncio

import pytest

from app.shared.adapters.rate_limiter import RateLimiter, SlidingWindowRateLimiter


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


class TestSlidingWindowRateLimiter:
    @pytest.mark.asyncio
    async def test_allows_burst_up_to_max(self):
        clock = FakeClock()
        limiter = SlidingWindowRateLimiter(3, 60, clock=clock, sleep=clock.sleep)

        for _ in range(3):
            assert await limiter.acquire() == 0.0
        assert clock.sleeps == []
        assert limiter.in_window() == 3

    @pytest.mark.asyncio
    async def test_waits_for_oldest_event_to_leave_window(self):
        clock = FakeClock()
        limiter = SlidingWindowRateLimiter(2, 60, clock=clock, sleep=clock.sleep)

        await limiter.acquire()
        clock.now = 10.0
        await limiter.acquire()
        clock.now = 20.0

        waited = await limiter.acquire()

        assert waited == pytest.approx(40.0)
        assert clock.now == pytest.approx(60.0)

    @pytest.mark.asyncio
    async def test_never_exceeds_limit_in_any_window(self):
        """Twenty-five starts through a 10-per-60s limiter never put more than 10 in one window."""
        clock = FakeClock()
        limiter = SlidingWindowRateLimiter(10, 60, clock=clock, sleep=clock.sleep)
        starts = []
        for _ in range(25):
            await limiter.acquire()
            starts.append(clock.now)

        for t in starts:
            assert len([s for s in starts if t <= s < t + 60]) <= 10

    def test_rejects_invalid_configuration(self):
        with pytest.raises(ValueError):
            SlidingWindowRateLimiter(0, 60)
        with pytest.raises(ValueError):
            SlidingWindowRateLimiter(5, 0)


class TestTokenBucket:
    @pytest.mark.asyncio
    async def test_initial_tokens_do_not_wait(self):
        limiter = RateLimiter(rate_per_second=100)
        loop = asyncio.get_running_loop()
        started = loop.time()
        for _ in range(5):
            await limiter.acquire()
        assert loop.time() - started < 0.5
