"""
Shared Store

Creates the single Redis handle shared by the queue, lock manager, rate
limiter, metrics aggregator and review repository. The handle is built once
at process start, passed by reference to every component, and closed at
shutdown; nothing in the application keeps a module-level client.
"""

from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from app.config import Settings
from app.logging_config import get_logger

logger = get_logger(__name__)


class KeySpace:
    """Builds every key the application writes under one prefix."""

    def __init__(self, prefix: str):
        self.prefix = prefix

    def queue(self, queue_name: str, suffix: str) -> str:
        return f"{self.prefix}:queue:{queue_name}:{suffix}"

    def job(self, queue_name: str, job_id: str) -> str:
        return f"{self.prefix}:queue:{queue_name}:job:{job_id}"

    def lock(self, resource_key: str) -> str:
        return f"{self.prefix}:lock:{resource_key}"

    def rate(self, identifier: str) -> str:
        return f"{self.prefix}:rate:{identifier}"

    def metrics(self) -> str:
        return f"{self.prefix}:metrics:jobs"

    def review(self, review_id: str) -> str:
        return f"{self.prefix}:review:{review_id}"

    def review_comments(self, review_id: str) -> str:
        return f"{self.prefix}:review:{review_id}:comments"

    def review_index(self) -> str:
        return f"{self.prefix}:reviews"

    def review_by_pr(self, owner: str, repo: str, pull_number: int) -> str:
        return f"{self.prefix}:reviews:pr:{owner}/{repo}:{pull_number}"

    def review_status(self, status: str) -> str:
        return f"{self.prefix}:reviews:status:{status}"

    def desired_workers(self) -> str:
        return f"{self.prefix}:autoscaler:desired_workers"


@retry(
    stop=stop_after_attempt(5),
    wait=wait_fixed(2),
    retry=retry_if_exception_type((RedisConnectionError, RedisTimeoutError, OSError)),
    before_sleep=before_sleep_log(logger, 30),
    reraise=True,
)
async def create_redis(settings: Settings) -> Redis:
    """
    Connect to Redis and verify the connection with PING.

    Retries a few times so that workers started alongside Redis
    (docker compose, k8s) do not crash on a cold start.
    """
    logger.info("Connecting to Redis")
    client = Redis.from_url(settings.redis_url, decode_responses=True)
    try:
        await client.ping()
    except Exception:
        await client.aclose()
        raise
    logger.info("Redis connection established")
    return client


async def close_redis(client: Redis) -> None:
    await client.aclose()
    logger.info("Redis connection closed")
