"""
Autoscaler

Heuristic worker-count controller. Every evaluation looks at the queue depth
and the rolling average processing time and fires at most one rule:

    depth > 50                          -> +2
    avg > 180000ms and depth > 10       -> +1
    depth == 0 and workers > minimum    -> -1
    otherwise                           -> hold

The desired count is clamped to [min_workers, max_workers], published to the
shared store for other instances and applied to the local worker pool.
"""

from typing import Callable, Optional

from redis.asyncio import Redis

from app.logging_config import get_logger
from app.queue.job_queue import PriorityJobQueue
from app.queue.metrics import MetricsAggregator
from app.store import KeySpace

logger = get_logger(__name__)

SCALE_UP_DEPTH = 50
SLOW_DEPTH = 10
SLOW_AVG_MS = 180_000


class Autoscaler:
    """Recommends and applies the number of worker slots."""

    def __init__(
        self,
        queue: PriorityJobQueue,
        metrics: MetricsAggregator,
        redis: Redis,
        keys: KeySpace,
        min_workers: int = 1,
        max_workers: int = 10,
        window_hours: float = 1.0,
        on_scale: Optional[Callable[[int, int], None]] = None,
    ):
        if min_workers < 1 or min_workers > max_workers:
            raise ValueError(f"Invalid worker bounds: [{min_workers}, {max_workers}]")
        self.queue = queue
        self.metrics = metrics
        self.redis = redis
        self.desired_key = keys.desired_workers()
        self.min_workers = min_workers
        self.max_workers = max_workers
        self.window_hours = window_hours
        self.on_scale = on_scale

    def clamp(self, workers: int) -> int:
        return max(self.min_workers, min(self.max_workers, workers))

    def recommend(
        self,
        current_workers: int,
        queue_depth: int,
        avg_processing_time_ms: float,
    ) -> int:
        if queue_depth > SCALE_UP_DEPTH:
            desired = current_workers + 2
        elif avg_processing_time_ms > SLOW_AVG_MS and queue_depth > SLOW_DEPTH:
            desired = current_workers + 1
        elif queue_depth == 0 and current_workers > self.min_workers:
            desired = current_workers - 1
        else:
            desired = current_workers
        return self.clamp(desired)

    async def evaluate(self) -> int:
        """
        Run one evaluation against live queue and metric state.

        Returns:
            The desired worker count
        """
        stats = await self.queue.get_queue_stats()
        avg_ms = await self.metrics.average_processing_time(self.window_hours)
        current = self.queue.concurrency
        desired = self.recommend(current, stats.depth, avg_ms)

        await self.redis.set(self.desired_key, desired)

        if desired != current:
            logger.info(
                "Scaling workers",
                current_workers=current,
                desired_workers=desired,
                queue_depth=stats.depth,
                avg_processing_time_ms=round(avg_ms, 1),
            )
            self.queue.set_concurrency(desired)
            if self.on_scale is not None:
                self.on_scale(current, desired)
        else:
            logger.debug("Worker count unchanged", workers=current, queue_depth=stats.depth)
        return desired

    async def desired_workers(self) -> Optional[int]:
        """Last published desired count, if any instance has evaluated."""
        value = await self.redis.get(self.desired_key)
        return int(value) if value is not None else None
