"""
Rate Limiter

Fixed-window counter per identifier (``github:{owner}``), kept in the shared
store. Every check counts against the window, including rejected ones.
"""

from redis.asyncio import Redis

from app.logging_config import get_logger
from app.store import KeySpace

logger = get_logger(__name__)


class RateLimiter:
    """Redis-backed fixed-window rate limiter."""

    def __init__(self, redis: Redis, keys: KeySpace):
        self.redis = redis
        self.keys = keys

    async def check_and_increment(
        self,
        identifier: str,
        limit: int,
        window_seconds: int,
    ) -> bool:
        """
        Count one operation for ``identifier``.

        The window starts with the first increment (``SET NX EX`` seeds the
        counter with its expiry); ``INCR`` keeps the TTL. Both run in one
        MULTI so the counter can never be left without an expiry.

        Returns:
            True iff the post-increment count is within ``limit``
        """
        if limit < 1 or window_seconds < 1:
            raise ValueError("limit and window_seconds must be positive")

        key = self.keys.rate(identifier)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.set(key, 0, ex=window_seconds, nx=True)
            pipe.incr(key)
            _, count = await pipe.execute()

        allowed = count <= limit
        if not allowed:
            logger.warning(
                "Rate limit exceeded",
                identifier=identifier,
                count=count,
                limit=limit,
                window_seconds=window_seconds,
            )
        return allowed

    async def current_usage(self, identifier: str) -> int:
        """Count in the current window; 0 when no window is open."""
        value = await self.redis.get(self.keys.rate(identifier))
        return int(value) if value is not None else 0

    async def reset(self, identifier: str) -> None:
        await self.redis.delete(self.keys.rate(identifier))
