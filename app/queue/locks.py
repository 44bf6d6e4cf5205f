"""
Distributed Lock Manager

Mutual exclusion keyed by a resource string (``pr:{owner}/{repo}:{number}``),
stored in the shared Redis so that every worker process and instance sees the
same locks.

- ``acquire`` is a single ``SET NX PX``: atomic, never blocks, never retries.
- Locks expire on their own after ``ttl_ms`` if the holder crashes.
- ``release`` without a token clears the key unconditionally (crash-recovery
  and operator use). With a token it only clears a lock still held by that
  token; a mismatched release is a logged no-op.
"""

from typing import Optional
from uuid import uuid4

from redis.asyncio import Redis
from redis.exceptions import WatchError

from app.logging_config import get_logger
from app.store import KeySpace

logger = get_logger(__name__)


class LockManager:
    """
    Redis-backed lock manager.

    Usage:
        locks = LockManager(redis, keys)
        if await locks.acquire("pr:octo/repo:7", ttl_ms=300000, token=job.token):
            try:
                ...
            finally:
                await locks.release("pr:octo/repo:7", token=job.token)
    """

    def __init__(self, redis: Redis, keys: KeySpace):
        self.redis = redis
        self.keys = keys

    async def acquire(
        self,
        resource_key: str,
        ttl_ms: int,
        token: Optional[str] = None,
    ) -> bool:
        """
        Take the lock if no unexpired lock exists for ``resource_key``.

        Returns:
            True if this call now holds the lock, False otherwise
        """
        if ttl_ms <= 0:
            raise ValueError(f"ttl_ms must be positive, got {ttl_ms}")

        acquired = await self.redis.set(
            self.keys.lock(resource_key),
            token or uuid4().hex,
            nx=True,
            px=ttl_ms,
        )

        logger.debug(
            "Lock acquire",
            resource_key=resource_key,
            acquired=bool(acquired),
            ttl_ms=ttl_ms,
        )
        return bool(acquired)

    async def release(self, resource_key: str, token: Optional[str] = None) -> bool:
        """
        Release the lock. Idempotent: releasing a free key is not an error.

        Returns:
            True if a lock was removed
        """
        key = self.keys.lock(resource_key)

        if token is None:
            removed = await self.redis.delete(key)
            logger.debug("Lock released", resource_key=resource_key, removed=bool(removed))
            return bool(removed)

        async with self.redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    holder = await pipe.get(key)
                    if holder is None:
                        await pipe.unwatch()
                        return False
                    if holder != token:
                        await pipe.unwatch()
                        logger.warning(
                            "Refusing to release lock held by another owner",
                            resource_key=resource_key,
                        )
                        return False
                    pipe.multi()
                    pipe.delete(key)
                    await pipe.execute()
                    logger.debug("Lock released", resource_key=resource_key, removed=True)
                    return True
                except WatchError:
                    # Holder changed between GET and DEL; re-read.
                    continue

    async def is_locked(self, resource_key: str) -> bool:
        return bool(await self.redis.exists(self.keys.lock(resource_key)))

    async def holder(self, resource_key: str) -> Optional[str]:
        """Token of the current holder, if any."""
        return await self.redis.get(self.keys.lock(resource_key))
