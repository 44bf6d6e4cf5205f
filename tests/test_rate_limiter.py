"""
Tests for the Rate Limiter
"""

import asyncio

import pytest

from app.queue.rate_limiter import RateLimiter


@pytest.fixture
def limiter(redis, keys) -> RateLimiter:
    return RateLimiter(redis, keys)


class TestRateLimiter:
    async def test_allows_up_to_limit(self, limiter: RateLimiter):
        results = [
            await limiter.check_and_increment("github:octo", limit=5, window_seconds=60)
            for _ in range(6)
        ]
        assert results == [True] * 5 + [False]

    async def test_rejected_calls_still_count(self, limiter: RateLimiter):
        for _ in range(7):
            await limiter.check_and_increment("github:octo", limit=5, window_seconds=60)
        assert await limiter.current_usage("github:octo") == 7

    async def test_window_expiry_resets_count(self, limiter: RateLimiter):
        for _ in range(3):
            await limiter.check_and_increment("github:octo", limit=2, window_seconds=1)
        await asyncio.sleep(1.2)

        assert await limiter.check_and_increment("github:octo", limit=2, window_seconds=1) is True
        assert await limiter.current_usage("github:octo") == 1

    async def test_counter_has_expiry(self, limiter: RateLimiter, redis, keys):
        await limiter.check_and_increment("github:octo", limit=5, window_seconds=60)
        ttl = await redis.ttl(keys.rate("github:octo"))
        assert 0 < ttl <= 60

    async def test_identifiers_are_independent(self, limiter: RateLimiter):
        assert await limiter.check_and_increment("github:a", limit=1, window_seconds=60) is True
        assert await limiter.check_and_increment("github:b", limit=1, window_seconds=60) is True
        assert await limiter.check_and_increment("github:a", limit=1, window_seconds=60) is False

    async def test_usage_without_window(self, limiter: RateLimiter):
        assert await limiter.current_usage("github:nobody") == 0

    async def test_reset(self, limiter: RateLimiter):
        await limiter.check_and_increment("github:octo", limit=1, window_seconds=60)
        await limiter.reset("github:octo")
        assert await limiter.check_and_increment("github:octo", limit=1, window_seconds=60) is True

    async def test_invalid_arguments(self, limiter: RateLimiter):
        with pytest.raises(ValueError):
            await limiter.check_and_increment("github:octo", limit=0, window_seconds=60)
