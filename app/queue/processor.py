"""
Review Job Processor

Consumes review jobs from the queue and drives the pipeline:

    rate check -> lock -> fetch diff -> analyze -> persist -> publish -> complete

Design Decisions:
- Rate limit first: a rejected attempt fails with RateLimitExceeded and goes
  through the queue's backoff like any other retryable error
- Lock contention is not an error; the job completes as DUPLICATE and the
  pipeline never runs twice for the same pull request. The lock token is the
  claim token, so a lock left by an earlier claim of the same job (one taken
  back by stalled recovery) also means DUPLICATE until it is released or
  expires
- The lock is released in a ``finally`` on every exit path, and only if this
  claim still holds it
- Pipeline errors mark the review failed and record an error metric before
  they are re-raised, so the queue's retry bookkeeping still applies
"""

import asyncio
import time
from typing import Any, Dict, List, Optional, Protocol

import httpx

from app.config import Settings
from app.errors import ExhaustedRetries, InvalidJobPayload, PipelineFailure, RateLimitExceeded
from app.logging_config import get_logger
from app.models import (
    AnalysisResult,
    CodeIssue,
    Job,
    JobOutcome,
    MetricStatus,
    ReviewRecord,
    ReviewStatus,
)
from app.queue.job_queue import ActiveJob, PriorityJobQueue
from app.queue.locks import LockManager
from app.queue.metrics import MetricsAggregator
from app.queue.rate_limiter import RateLimiter

logger = get_logger(__name__)


class DiffFetcher(Protocol):
    async def get_diff(self, owner: str, repo: str, pull_number: int) -> str: ...


class CommentPublisher(Protocol):
    async def post_comments(
        self,
        owner: str,
        repo: str,
        pull_number: int,
        commit_sha: str,
        issues: List[CodeIssue],
        diff_text: str,
    ) -> int: ...

    async def post_summary(
        self,
        owner: str,
        repo: str,
        pull_number: int,
        commit_sha: str,
        analysis: AnalysisResult,
    ) -> None: ...


class Analyzer(Protocol):
    async def analyze(self, diff_text: str) -> AnalysisResult: ...


class ReviewStore(Protocol):
    async def create_review(
        self,
        review_id: str,
        owner: str,
        repo: str,
        pull_number: int,
        commit_sha: str,
        summary: str = ...,
        metadata: Optional[Dict[str, Any]] = ...,
    ) -> ReviewRecord: ...

    async def update_status(self, review_id: str, status: ReviewStatus) -> bool: ...

    async def update_summary(self, review_id: str, summary: str) -> bool: ...

    async def add_comments(self, review_id: str, issues: List[CodeIssue]) -> Any: ...


def _is_timeout(error: BaseException) -> bool:
    current: Optional[BaseException] = error
    while current is not None:
        if isinstance(current, (asyncio.TimeoutError, TimeoutError, httpx.TimeoutException)):
            return True
        current = current.__cause__
    return False


class ReviewJobProcessor:
    """
    Handler registered with the priority queue.

    Usage:
        processor = ReviewJobProcessor(...)
        processor.attach(queue)
        await queue.start(processor.handle)
    """

    def __init__(
        self,
        *,
        locks: LockManager,
        rate_limiter: RateLimiter,
        metrics: MetricsAggregator,
        reviews: ReviewStore,
        fetcher: DiffFetcher,
        analyzer: Analyzer,
        publisher: CommentPublisher,
        settings: Settings,
    ):
        self.locks = locks
        self.rate_limiter = rate_limiter
        self.metrics = metrics
        self.reviews = reviews
        self.fetcher = fetcher
        self.analyzer = analyzer
        self.publisher = publisher
        self.lock_ttl_ms = settings.lock_ttl_ms
        self.rate_limit = settings.rate_limit_per_owner
        self.rate_window_seconds = settings.rate_limit_window_seconds

    def attach(self, queue: PriorityJobQueue) -> None:
        """Listen for terminal failures the pipeline itself never saw."""
        queue.on("failed", self.on_job_failed)

    async def handle(self, job: ActiveJob) -> JobOutcome:
        payload = job.payload
        if payload.kind != "analyze-pull-request":
            raise InvalidJobPayload(f"Unsupported job kind: {payload.kind}")

        log = logger.bind(
            job_id=job.id,
            repo=payload.full_repo_name,
            pull_number=payload.pull_number,
            attempt=job.attempt,
        )

        # Step 1: owner-scoped rate limit
        allowed = await self.rate_limiter.check_and_increment(
            payload.rate_identifier, self.rate_limit, self.rate_window_seconds
        )
        if not allowed:
            raise RateLimitExceeded(
                payload.rate_identifier, self.rate_limit, self.rate_window_seconds
            )

        # Step 2: per pull request lock, owned by this claim of the job
        resource_key = payload.resource_key
        if not await self.locks.acquire(resource_key, self.lock_ttl_ms, token=job.token):
            holder = await self.locks.holder(resource_key) or ""
            if holder.startswith(f"{job.id}:"):
                log.warning("Earlier claim of this job still holds the pull request lock")
            else:
                log.info("Pull request review already in progress, skipping duplicate")
            return JobOutcome.DUPLICATE

        try:
            return await self._run_pipeline(job, log)
        finally:
            try:
                await self.locks.release(resource_key, token=job.token)
            except Exception:
                log.exception("Failed to release pull request lock", resource_key=resource_key)

    async def _run_pipeline(self, job: ActiveJob, log: Any) -> JobOutcome:
        payload = job.payload
        started = time.monotonic()
        step = "persist"

        try:
            await job.update_progress(10)
            log.info("Starting pull request review")

            await self.reviews.create_review(
                review_id=job.id,
                owner=payload.owner,
                repo=payload.repo,
                pull_number=payload.pull_number,
                commit_sha=payload.head_sha,
                summary="Processing...",
                metadata={"base_sha": payload.base_sha, "attempt": job.attempt},
            )
            await self.reviews.update_status(job.id, ReviewStatus.IN_PROGRESS)

            step = "fetch"
            diff_text = await self.fetcher.get_diff(
                payload.owner, payload.repo, payload.pull_number
            )
            await job.update_progress(30)
            log.info("Fetched diff", diff_size=len(diff_text))

            step = "analyze"
            analysis = await self.analyzer.analyze(diff_text)
            await job.update_progress(60)
            log.info(
                "Analysis finished",
                num_issues=len(analysis.issues),
                ai_available=analysis.ai_available,
            )

            step = "persist"
            if analysis.issues:
                await self.reviews.add_comments(job.id, analysis.issues)
            await self.reviews.update_summary(job.id, analysis.summary)
            await job.update_progress(70)

            step = "publish"
            if analysis.issues:
                posted = await self.publisher.post_comments(
                    payload.owner,
                    payload.repo,
                    payload.pull_number,
                    payload.head_sha,
                    analysis.issues,
                    diff_text,
                )
                log.info("Posted review comments", posted=posted)
            await self.publisher.post_summary(
                payload.owner,
                payload.repo,
                payload.pull_number,
                payload.head_sha,
                analysis,
            )
            await job.update_progress(90)

            step = "persist"
            await self.reviews.update_status(job.id, ReviewStatus.COMPLETED)
            await job.update_progress(100)

        except Exception as error:
            duration_ms = (time.monotonic() - started) * 1000
            try:
                await self.reviews.update_status(job.id, ReviewStatus.FAILED)
            except Exception:
                log.exception("Failed to mark review as failed")
            await self.metrics.record_completion(
                duration_ms,
                MetricStatus.TIMEOUT if _is_timeout(error) else MetricStatus.ERROR,
                {
                    "job_id": job.id,
                    "repo": payload.full_repo_name,
                    "pull_number": payload.pull_number,
                    "step": step,
                    "error": type(error).__name__,
                },
            )
            log.error(
                "Pull request review failed",
                step=step,
                error=str(error),
                error_type=type(error).__name__,
            )
            raise PipelineFailure(step, error) from error

        duration_ms = (time.monotonic() - started) * 1000
        await self.metrics.record_completion(
            duration_ms,
            MetricStatus.SUCCESS,
            {
                "job_id": job.id,
                "repo": payload.full_repo_name,
                "pull_number": payload.pull_number,
                "issues": len(analysis.issues),
            },
        )
        log.info("Completed pull request review", duration_ms=round(duration_ms, 1))
        return JobOutcome.COMPLETED

    async def on_job_failed(self, job: Job, error: Exception) -> None:
        """Mark the review failed once a job will not be retried again."""
        if not isinstance(error, ExhaustedRetries) and getattr(error, "retryable", True):
            return
        updated = await self.reviews.update_status(job.id, ReviewStatus.FAILED)
        if not updated:
            # No attempt reached the pipeline (rate limited every time).
            payload = job.payload
            await self.reviews.create_review(
                review_id=job.id,
                owner=payload.owner,
                repo=payload.repo,
                pull_number=payload.pull_number,
                commit_sha=payload.head_sha,
                summary=job.failed_reason or "Review failed",
                metadata={"base_sha": payload.base_sha, "error_kind": job.error_kind},
            )
            updated = await self.reviews.update_status(job.id, ReviewStatus.FAILED)
        logger.error(
            "Review job permanently failed",
            job_id=job.id,
            attempts_made=job.attempts_made,
            error_kind=job.error_kind,
            review_updated=updated,
        )
