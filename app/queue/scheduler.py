"""
Periodic Task Scheduler

Wraps an APScheduler ``AsyncIOScheduler`` running on the application's event
loop. Tasks are registered explicitly at startup and the scheduler is shut
down with the rest of the runtime.

Usage:
    scheduler = MaintenanceScheduler()
    scheduler.add_interval_task(autoscaler.evaluate, "autoscaler", seconds=60)
    scheduler.start()
    ...
    scheduler.shutdown()
"""

from typing import Any, Awaitable, Callable, List

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_MISSED, JobExecutionEvent
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from app.logging_config import get_logger

logger = get_logger(__name__)


class MaintenanceScheduler:
    """Lifecycle wrapper for the periodic maintenance tasks."""

    def __init__(self) -> None:
        self.scheduler = AsyncIOScheduler(
            timezone="UTC",
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": 30,
            },
        )
        self.scheduler.add_listener(self._on_task_error, EVENT_JOB_ERROR)
        self.scheduler.add_listener(self._on_task_missed, EVENT_JOB_MISSED)

    def _on_task_error(self, event: JobExecutionEvent) -> None:
        logger.error(
            "Periodic task failed",
            task_id=event.job_id,
            error=str(event.exception),
            error_type=type(event.exception).__name__,
        )

    def _on_task_missed(self, event: JobExecutionEvent) -> None:
        logger.warning("Periodic task missed its run time", task_id=event.job_id)

    def add_interval_task(
        self,
        func: Callable[[], Awaitable[Any]],
        task_id: str,
        seconds: float,
    ) -> None:
        if seconds <= 0:
            raise ValueError(f"Interval must be positive, got {seconds}")
        self.scheduler.add_job(
            func,
            trigger=IntervalTrigger(seconds=seconds, timezone="UTC"),
            id=task_id,
            replace_existing=True,
        )
        logger.info("Registered periodic task", task_id=task_id, interval_seconds=seconds)

    @property
    def running(self) -> bool:
        return self.scheduler.running

    @property
    def task_ids(self) -> List[str]:
        return [job.id for job in self.scheduler.get_jobs()]

    def start(self) -> None:
        if self.scheduler.running:
            logger.warning("Scheduler already running")
            return
        self.scheduler.start()
        logger.info("Scheduler started", tasks=self.task_ids)

    def shutdown(self) -> None:
        if not self.scheduler.running:
            return
        self.scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
