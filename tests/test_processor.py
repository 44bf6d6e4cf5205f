"""
Tests for the Review Job Processor

GitHub is replaced by in-memory fakes; the analyzer is the real one running
heuristic-only (no OpenAI key in the test settings).
"""

import asyncio
from typing import List

import httpx
import pytest

from app.errors import ExhaustedRetries, PipelineFailure, RateLimitExceeded
from app.models import (
    AnalysisResult,
    CodeIssue,
    JobOptions,
    JobOutcome,
    JobState,
    MetricStatus,
    ReviewStatus,
)
from app.queue.job_queue import ActiveJob, PriorityJobQueue
from app.queue.locks import LockManager
from app.queue.metrics import MetricsAggregator
from app.queue.processor import ReviewJobProcessor
from app.queue.rate_limiter import RateLimiter
from app.services.analyzer import CodeAnalyzer
from app.services.review_store import ReviewRepository
from helpers import SAMPLE_DIFF, make_payload, make_settings, wait_for


class FakeGitHub:
    """Records calls instead of talking to GitHub."""

    def __init__(self, diff: str = SAMPLE_DIFF, fetch_error: Exception = None, delay: float = 0):
        self.diff = diff
        self.fetch_error = fetch_error
        self.delay = delay
        self.fetches: List[int] = []
        self.comment_posts: List[List[CodeIssue]] = []
        self.summaries: List[AnalysisResult] = []

    async def get_diff(self, owner: str, repo: str, pull_number: int) -> str:
        self.fetches.append(pull_number)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fetch_error is not None:
            raise self.fetch_error
        return self.diff

    async def post_comments(self, owner, repo, pull_number, commit_sha, issues, diff_text) -> int:
        self.comment_posts.append(list(issues))
        return len(issues)

    async def post_summary(self, owner, repo, pull_number, commit_sha, analysis) -> None:
        self.summaries.append(analysis)


class Harness:
    def __init__(self, redis, keys, settings, github: FakeGitHub):
        self.queue = PriorityJobQueue(redis, keys, settings)
        self.locks = LockManager(redis, keys)
        self.rate_limiter = RateLimiter(redis, keys)
        self.metrics = MetricsAggregator(redis, keys)
        self.reviews = ReviewRepository(redis, keys)
        self.github = github
        self.processor = ReviewJobProcessor(
            locks=self.locks,
            rate_limiter=self.rate_limiter,
            metrics=self.metrics,
            reviews=self.reviews,
            fetcher=github,
            analyzer=CodeAnalyzer(settings),
            publisher=github,
            settings=settings,
        )
        self.processor.attach(self.queue)

    async def claim(self, pull_number: int = 42, **options) -> ActiveJob:
        await self.queue.enqueue(make_payload(pull_number), options=JobOptions(**options))
        job = await self.queue._claim_next()
        return ActiveJob(self.queue, job)


@pytest.fixture
def github() -> FakeGitHub:
    return FakeGitHub()


@pytest.fixture
async def harness(redis, keys, settings, github):
    h = Harness(redis, keys, settings, github)
    yield h
    await h.queue.close(timeout=1)


class TestPipeline:
    async def test_successful_review(self, harness: Harness, github: FakeGitHub):
        job = await harness.claim()

        outcome = await harness.processor.handle(job)

        assert outcome == JobOutcome.COMPLETED
        assert job.job.progress == 100

        review = await harness.reviews.get_review(job.id)
        assert review.status == ReviewStatus.COMPLETED
        assert review.commit_sha == "head0042"
        assert len(review.comments) == 4

        assert len(github.comment_posts) == 1
        assert len(github.summaries) == 1
        assert github.summaries[0].ai_available is False

        metrics = await harness.metrics.window()
        assert [m.status for m in metrics] == [MetricStatus.SUCCESS]
        assert await harness.locks.is_locked("pr:octo/widgets:42") is False

    async def test_no_issues_skips_comment_post(self, redis, keys, settings):
        github = FakeGitHub(diff="")
        harness = Harness(redis, keys, settings, github)
        job = await harness.claim()

        assert await harness.processor.handle(job) == JobOutcome.COMPLETED
        assert github.comment_posts == []
        assert len(github.summaries) == 1

    async def test_fetch_failure(self, redis, keys, settings):
        github = FakeGitHub(fetch_error=RuntimeError("boom"))
        harness = Harness(redis, keys, settings, github)
        job = await harness.claim()

        with pytest.raises(PipelineFailure) as exc_info:
            await harness.processor.handle(job)

        assert exc_info.value.step == "fetch"
        assert isinstance(exc_info.value.__cause__, RuntimeError)

        review = await harness.reviews.get_review(job.id)
        assert review.status == ReviewStatus.FAILED
        metrics = await harness.metrics.window()
        assert [m.status for m in metrics] == [MetricStatus.ERROR]
        assert metrics[0].metadata["step"] == "fetch"
        assert await harness.locks.is_locked("pr:octo/widgets:42") is False

    async def test_timeout_recorded_as_timeout(self, redis, keys, settings):
        github = FakeGitHub(fetch_error=httpx.ReadTimeout("timed out"))
        harness = Harness(redis, keys, settings, github)
        job = await harness.claim()

        with pytest.raises(PipelineFailure):
            await harness.processor.handle(job)

        metrics = await harness.metrics.window()
        assert metrics[0].status == MetricStatus.TIMEOUT


class TestCoordination:
    async def test_duplicate_when_lock_held(self, harness: Harness, github: FakeGitHub):
        await harness.locks.acquire("pr:octo/widgets:42", ttl_ms=5000, token="other-job")
        job = await harness.claim()

        outcome = await harness.processor.handle(job)

        assert outcome == JobOutcome.DUPLICATE
        assert github.fetches == []
        assert await harness.metrics.window() == []
        assert await harness.locks.holder("pr:octo/widgets:42") == "other-job"

    async def test_lock_uses_claim_token(self, harness: Harness):
        job = await harness.claim()
        seen = []

        async def get_diff(owner, repo, pull_number):
            seen.append(await harness.locks.holder("pr:octo/widgets:42"))
            return ""

        harness.processor.fetcher.get_diff = get_diff
        await harness.processor.handle(job)

        assert job.token.startswith(f"{job.id}:")
        assert seen == [job.token]

    async def test_lock_of_earlier_claim_is_not_taken_over(self, harness: Harness, github: FakeGitHub):
        job = await harness.claim()
        earlier = f"{job.id}:earlier"
        await harness.locks.acquire("pr:octo/widgets:42", ttl_ms=5000, token=earlier)

        assert await harness.processor.handle(job) == JobOutcome.DUPLICATE
        assert github.fetches == []
        assert await harness.locks.holder("pr:octo/widgets:42") == earlier

    async def test_requeued_stalled_job_does_not_run_twice(self, redis, keys, settings):
        """A claim taken back by stalled recovery keeps the PR to one pipeline run."""
        github = FakeGitHub(delay=0.6)
        harness = Harness(redis, keys, settings, github)
        first = await harness.claim()

        # The first worker stops renewing its claim but keeps running.
        first_run = asyncio.create_task(harness.processor.handle(first))
        await asyncio.sleep(0.3)
        assert await harness.queue.check_stalled() == [first.id]

        second = ActiveJob(harness.queue, await harness.queue._claim_next())
        assert second.id == first.id
        assert second.token != first.token

        assert await harness.processor.handle(second) == JobOutcome.DUPLICATE
        assert await first_run == JobOutcome.COMPLETED

        assert github.fetches == [42]
        assert len(github.comment_posts) == 1
        assert await harness.locks.is_locked("pr:octo/widgets:42") is False

        # Only the current claim may settle the job.
        await harness.queue._settle_success(first.job, JobOutcome.COMPLETED)
        assert (await harness.queue.get_job(first.id)).state == JobState.ACTIVE
        await harness.queue._settle_success(second.job, JobOutcome.DUPLICATE)
        job = await harness.queue.get_job(first.id)
        assert job.state == JobState.COMPLETED
        assert job.return_value == "duplicate"

    async def test_rate_limit_exceeded(self, redis, keys):
        settings = make_settings(rate_limit_per_owner=1)
        github = FakeGitHub()
        harness = Harness(redis, keys, settings, github)

        first = await harness.claim(pull_number=1)
        assert await harness.processor.handle(first) == JobOutcome.COMPLETED

        second = await harness.claim(pull_number=2)
        with pytest.raises(RateLimitExceeded):
            await harness.processor.handle(second)

        assert github.fetches == [1]
        assert await harness.locks.is_locked("pr:octo/widgets:2") is False

    async def test_concurrent_jobs_for_same_pull_request(self, redis, keys):
        """Only one of two jobs for the same PR runs the pipeline."""
        settings = make_settings(queue_concurrency=2)
        github = FakeGitHub(delay=0.2)
        harness = Harness(redis, keys, settings, github)
        results = []
        harness.queue.on("completed", lambda job, result: results.append(result))

        await harness.queue.enqueue(make_payload(42))
        await harness.queue.enqueue(make_payload(42))
        await harness.queue.start(harness.processor.handle)
        try:
            await wait_for(lambda: len(results) == 2)
        finally:
            await harness.queue.close(timeout=1)

        assert sorted(results) == [JobOutcome.COMPLETED, JobOutcome.DUPLICATE]
        assert github.fetches == [42]


class TestTerminalFailure:
    async def test_exhausted_job_marks_review_failed(self, redis, keys):
        github = FakeGitHub(fetch_error=RuntimeError("boom"))
        harness = Harness(redis, keys, make_settings(), github)
        failures = []
        harness.queue.on("failed", lambda job, error: failures.append(error))

        job_id = await harness.queue.enqueue(
            make_payload(), options=JobOptions(attempts=2, backoff_delay_ms=10)
        )
        await harness.queue.start(harness.processor.handle)
        try:
            await wait_for(lambda: len(failures) == 2)
        finally:
            await harness.queue.close(timeout=1)

        assert isinstance(failures[-1], ExhaustedRetries)
        assert (await harness.queue.get_job(job_id)).state == JobState.FAILED
        review = await harness.reviews.get_review(job_id)
        assert review.status == ReviewStatus.FAILED
        assert len(github.fetches) == 2

    async def test_rate_limited_job_still_gets_failed_review(self, redis, keys):
        """A job rejected by the rate limit on every attempt leaves a failed review."""
        github = FakeGitHub()
        harness = Harness(redis, keys, make_settings(rate_limit_per_owner=1), github)
        await harness.rate_limiter.check_and_increment("github:octo", 1, 60)
        failures = []
        harness.queue.on("failed", lambda job, error: failures.append(error))

        job_id = await harness.queue.enqueue(
            make_payload(), options=JobOptions(attempts=2, backoff_delay_ms=10)
        )
        await harness.queue.start(harness.processor.handle)
        try:
            await wait_for(lambda: len(failures) == 2)
            await wait_for(lambda: harness.reviews.get_review(job_id))
        finally:
            await harness.queue.close(timeout=1)

        assert isinstance(failures[-1], ExhaustedRetries)
        assert github.fetches == []
        review = await harness.reviews.get_review(job_id)
        assert review.status == ReviewStatus.FAILED
        assert review.commit_sha == "head0042"
        assert review.metadata["error_kind"] == "exhausted_retries"

    async def test_retryable_failure_is_ignored_by_listener(self, harness: Harness):
        job = await harness.claim()
        await harness.reviews.create_review(job.id, "octo", "widgets", 42, "head0042")

        await harness.processor.on_job_failed(job.job, RuntimeError("transient"))

        review = await harness.reviews.get_review(job.id)
        assert review.status == ReviewStatus.PENDING
