import asyncio

import pytest

from assembly_guides.rate_limiter import (
    DEFAULT_RATE_LIMITS,
    FALLBACK_RATE_LIMIT,
    RateLimitConfig,
    RateLimiter,
    RateLimiterRegistry,
)


@pytest.fixture
def limiter(clock):
    return RateLimiter(RateLimitConfig(15, 60_000), clock=clock, sleep=clock.sleep)


class TestRateLimiter:
    @pytest.mark.asyncio
    async def test_window_fills_then_frees_after_it_elapses(self, limiter, clock):
        for _ in range(15):
            await limiter.acquire()

        assert limiter.available_slots() == 0
        assert not limiter.can_proceed()
        assert limiter.wait_time_ms() > 0
        assert clock.sleeps == []

        clock.advance(60_001)
        assert limiter.available_slots() == 15
        assert limiter.wait_time_ms() == 0

    @pytest.mark.asyncio
    async def test_acquire_waits_for_oldest_timestamp_to_expire(self, limiter, clock):
        start = clock()
        for _ in range(15):
            await limiter.acquire()
            clock.advance(1_000)

        await limiter.acquire()

        assert len(clock.sleeps) == 1
        # The first request expires 60 s after it was made
        assert clock() > start + 60_000
        assert limiter.available_slots() == 0

    def test_wait_time_counts_down_with_clock(self, limiter, clock):
        for _ in range(15):
            limiter.record()
        first_wait = limiter.wait_time_ms()
        clock.advance(20_000)
        assert limiter.wait_time_ms() == pytest.approx(first_wait - 20_000)

    def test_reset_clears_history(self, limiter):
        for _ in range(15):
            limiter.record()
        limiter.reset()
        assert limiter.available_slots() == 15

    @pytest.mark.asyncio
    async def test_concurrent_acquires_never_exceed_quota(self, clock):
        limiter = RateLimiter(RateLimitConfig(3, 1_000), clock=clock, sleep=clock.sleep)
        await asyncio.gather(*(limiter.acquire() for _ in range(3)))
        assert limiter.available_slots() == 0
        assert clock.sleeps == []


class TestRateLimiterRegistry:
    def test_one_limiter_per_provider(self, limiters):
        assert limiters.get("gemini") is limiters.get("gemini")
        assert limiters.get("gemini") is not limiters.get("openai")

    def test_default_limits(self, limiters):
        assert limiters.get("gemini").config == DEFAULT_RATE_LIMITS["gemini"]
        assert limiters.get("gemini").config.max_requests == 15
        assert limiters.get("openai").config.max_requests == 30
        assert limiters.get("somebody-else").config == FALLBACK_RATE_LIMIT

    def test_explicit_config_only_applies_on_first_use(self, limiters):
        first = limiters.get("custom", RateLimitConfig(2, 500))
        again = limiters.get("custom", RateLimitConfig(99, 500))
        assert again is first
        assert again.config.max_requests == 2

    def test_shared_quota_across_call_sites(self, clock):
        registry = RateLimiterRegistry(clock=clock, sleep=clock.sleep)
        for _ in range(10):
            registry.get("gemini").record()
        assert registry.get("gemini").available_slots() == 5
