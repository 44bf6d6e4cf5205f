"""
Metrics & Health Aggregator

Job metrics live in one sorted set in the shared store, scored by timestamp,
so every instance aggregates over the same samples:

    {prefix}:metrics:jobs    zset, member = JobMetric JSON, score = timestamp

The aggregator is the only writer. Health snapshots are derived on demand and
never stored.
"""

from typing import Any, Dict, List, Optional, Union
from uuid import uuid4

from redis.asyncio import Redis

from app.logging_config import get_logger
from app.models import (
    HealthClassification,
    HealthSnapshot,
    JobMetric,
    MetricStatus,
    QueueStats,
    now_ms,
)
from app.store import KeySpace

logger = get_logger(__name__)

# (success rate below, average ms above, waiting jobs above)
CRITICAL_THRESHOLDS = (80.0, 300_000.0, 100)
WARNING_THRESHOLDS = (95.0, 120_000.0, 50)


def classify_health(
    success_rate: float,
    avg_processing_time_ms: float,
    queue_waiting: int,
) -> HealthClassification:
    """Most severe matching level wins."""
    for level, (min_rate, max_avg_ms, max_waiting) in (
        (HealthClassification.CRITICAL, CRITICAL_THRESHOLDS),
        (HealthClassification.WARNING, WARNING_THRESHOLDS),
    ):
        if (
            success_rate < min_rate
            or avg_processing_time_ms > max_avg_ms
            or queue_waiting > max_waiting
        ):
            return level
    return HealthClassification.HEALTHY


class MetricsAggregator:
    """
    Records job outcomes and computes rolling aggregates.

    Usage:
        metrics = MetricsAggregator(redis, keys, retention_days=7)
        await metrics.record_completion(1800, MetricStatus.SUCCESS)
        rate = await metrics.success_rate(window_hours=1)
    """

    def __init__(self, redis: Redis, keys: KeySpace, retention_days: int = 7):
        self.redis = redis
        self.key = keys.metrics()
        self.retention_ms = retention_days * 24 * 3600 * 1000

    async def record_completion(
        self,
        duration_ms: float,
        status: Union[MetricStatus, str],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[JobMetric]:
        """
        Append one metric. Storage errors are logged, never raised.

        Returns:
            The stored metric, or None if it could not be stored
        """
        try:
            metric = JobMetric(
                id=uuid4().hex,
                duration_ms=max(float(duration_ms), 0.0),
                status=MetricStatus(status),
                metadata=metadata or {},
            )
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.zadd(self.key, {metric.model_dump_json(): metric.timestamp})
                pipe.zremrangebyscore(self.key, "-inf", metric.timestamp - self.retention_ms)
                await pipe.execute()
        except Exception as e:
            logger.error(
                "Failed to record job metric",
                status=str(status),
                error=str(e),
                error_type=type(e).__name__,
            )
            return None

        logger.debug(
            "Recorded job metric",
            status=metric.status.value,
            duration_ms=round(metric.duration_ms, 1),
        )
        return metric

    async def window(self, window_hours: float = 1.0) -> List[JobMetric]:
        """Metrics recorded in the last ``window_hours``."""
        since = now_ms() - int(window_hours * 3600 * 1000)
        members = await self.redis.zrangebyscore(self.key, since, "+inf")
        return [JobMetric.model_validate_json(member) for member in members]

    async def average_processing_time(self, window_hours: float = 1.0) -> float:
        metrics = await self.window(window_hours)
        if not metrics:
            return 0.0
        return sum(m.duration_ms for m in metrics) / len(metrics)

    async def success_rate(self, window_hours: float = 1.0) -> float:
        """Percentage of successful jobs; 100 when there are no samples."""
        metrics = await self.window(window_hours)
        return self._success_rate(metrics)

    async def throughput_per_hour(self, window_hours: float = 1.0) -> float:
        metrics = await self.window(window_hours)
        return len(metrics) / window_hours

    @staticmethod
    def _success_rate(metrics: List[JobMetric]) -> float:
        if not metrics:
            return 100.0
        successes = sum(1 for m in metrics if m.status == MetricStatus.SUCCESS)
        return successes / len(metrics) * 100

    async def health_snapshot(
        self,
        queue_stats: QueueStats,
        window_hours: float = 1.0,
    ) -> HealthSnapshot:
        """Combine live queue counts with the rolling metrics."""
        metrics = await self.window(window_hours)
        avg_ms = sum(m.duration_ms for m in metrics) / len(metrics) if metrics else 0.0
        rate = self._success_rate(metrics)

        return HealthSnapshot(
            queue_depth=queue_stats.depth,
            queue_waiting=queue_stats.waiting,
            avg_processing_time_ms=round(avg_ms, 2),
            success_rate_pct=round(rate, 2),
            throughput_per_hour=round(len(metrics) / window_hours, 2),
            classification=classify_health(rate, avg_ms, queue_stats.waiting),
            window_hours=window_hours,
        )

    async def purge_expired(self) -> int:
        """Drop metrics older than the retention horizon."""
        return await self.redis.zremrangebyscore(
            self.key, "-inf", now_ms() - self.retention_ms
        )
