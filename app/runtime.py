"""
Review Runtime

Builds the queue core and its collaborators once per process around a single
Redis handle, and owns their lifecycle:

    start: workers -> periodic tasks
    stop:  periodic tasks -> workers -> HTTP client -> Redis

The FastAPI lifespan creates one runtime and exposes it on ``app.state``.
"""

from typing import Any, Dict, Mapping, Optional, Union

import httpx
from openai import AsyncOpenAI
from redis.asyncio import Redis

from app.config import Settings
from app.logging_config import get_logger
from app.models import (
    HealthClassification,
    HealthSnapshot,
    JobOptions,
    JobPayload,
    JobPriority,
    JobState,
    QueueStats,
)
from app.queue.autoscaler import Autoscaler
from app.queue.job_queue import PriorityJobQueue
from app.queue.locks import LockManager
from app.queue.metrics import MetricsAggregator
from app.queue.processor import ReviewJobProcessor
from app.queue.rate_limiter import RateLimiter
from app.queue.scheduler import MaintenanceScheduler
from app.services.analyzer import CodeAnalyzer
from app.services.github_client import GitHubClient
from app.services.review_store import ReviewRepository
from app.store import KeySpace, close_redis, create_redis

logger = get_logger(__name__)


class ReviewRuntime:
    """
    Usage:
        runtime = await ReviewRuntime.create(settings)
        await runtime.start()
        job_id = await runtime.enqueue_review(payload, JobPriority.HIGH)
        ...
        await runtime.stop()
    """

    def __init__(
        self,
        settings: Settings,
        redis: Redis,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        openai_client: Optional[AsyncOpenAI] = None,
        owns_redis: bool = False,
    ):
        self.settings = settings
        self.redis = redis
        self.owns_redis = owns_redis
        self.keys = KeySpace(settings.queue_prefix)

        self.queue = PriorityJobQueue(redis, self.keys, settings)
        self.locks = LockManager(redis, self.keys)
        self.rate_limiter = RateLimiter(redis, self.keys)
        self.metrics = MetricsAggregator(redis, self.keys, settings.metrics_retention_days)
        self.reviews = ReviewRepository(redis, self.keys)

        self.github = GitHubClient(settings, http_client=http_client)
        self.analyzer = CodeAnalyzer(settings, client=openai_client)

        self.processor = ReviewJobProcessor(
            locks=self.locks,
            rate_limiter=self.rate_limiter,
            metrics=self.metrics,
            reviews=self.reviews,
            fetcher=self.github,
            analyzer=self.analyzer,
            publisher=self.github,
            settings=settings,
        )
        self.processor.attach(self.queue)

        self.autoscaler = Autoscaler(
            self.queue,
            self.metrics,
            redis,
            self.keys,
            min_workers=settings.min_workers,
            max_workers=settings.max_workers,
            window_hours=settings.metrics_window_hours,
        )
        self.scheduler = MaintenanceScheduler()
        self.started = False

    @classmethod
    async def create(cls, settings: Settings) -> "ReviewRuntime":
        redis = await create_redis(settings)
        return cls(settings, redis, owns_redis=True)

    # =========================================================================
    # Lifecycle
    # =========================================================================
    async def start(self) -> None:
        if self.started:
            return
        if self.settings.run_workers:
            await self.queue.start(self.processor.handle)
            self.scheduler.add_interval_task(
                self.autoscaler.evaluate,
                "autoscaler",
                seconds=self.settings.autoscaler_interval_seconds,
            )
            self.scheduler.add_interval_task(
                self.run_health_check,
                "health-check",
                seconds=self.settings.health_check_interval_seconds,
            )
            self.scheduler.add_interval_task(
                self.run_cleanup,
                "cleanup",
                seconds=self.settings.cleanup_interval_seconds,
            )
            self.scheduler.start()
        else:
            logger.info("Workers disabled, running as producer only")
        self.started = True

    async def stop(self) -> None:
        self.scheduler.shutdown()
        await self.queue.close(timeout=30)
        await self.github.close()
        if self.owns_redis:
            await close_redis(self.redis)
        self.started = False

    # =========================================================================
    # Producer and reporting surface
    # =========================================================================
    async def enqueue_review(
        self,
        payload: Union[JobPayload, Mapping[str, Any]],
        priority: Union[JobPriority, str] = JobPriority.NORMAL,
        options: Optional[JobOptions] = None,
    ) -> str:
        return await self.queue.enqueue(payload, priority, options)

    async def get_queue_stats(self) -> QueueStats:
        return await self.queue.get_queue_stats()

    async def get_health_snapshot(self) -> HealthSnapshot:
        stats = await self.queue.get_queue_stats()
        return await self.metrics.health_snapshot(stats, self.settings.metrics_window_hours)

    async def ping(self) -> bool:
        return bool(await self.redis.ping())

    # =========================================================================
    # Periodic tasks
    # =========================================================================
    async def run_health_check(self) -> HealthSnapshot:
        snapshot = await self.get_health_snapshot()
        fields = snapshot.model_dump(mode="json", exclude={"timestamp"})
        if snapshot.classification == HealthClassification.CRITICAL:
            logger.error("Queue health critical", **fields)
        elif snapshot.classification == HealthClassification.WARNING:
            logger.warning("Queue health degraded", **fields)
        else:
            logger.info("Queue health check", **fields)
        return snapshot

    async def run_cleanup(self) -> Dict[str, int]:
        """Sweep finished jobs and metrics past their retention horizon."""
        grace_ms = self.settings.job_retention_ms
        removed = {
            "completed": await self.queue.clean(grace_ms, JobState.COMPLETED),
            "failed": await self.queue.clean(grace_ms, JobState.FAILED),
            "metrics": await self.metrics.purge_expired(),
        }
        logger.info("Retention sweep finished", **removed)
        return removed
