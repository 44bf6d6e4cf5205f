"""
Tests for the Priority Job Queue
"""

import asyncio
import time
from typing import List

import pytest

from app.errors import ErrorKind, ExhaustedRetries, InvalidJobPayload
from app.models import JobOptions, JobPriority, JobState
from app.queue.job_queue import ActiveJob, PriorityJobQueue
from helpers import make_payload, make_settings, wait_for


@pytest.fixture
async def queue(redis, keys, settings):
    job_queue = PriorityJobQueue(redis, keys, settings)
    yield job_queue
    await job_queue.close(timeout=1)


class TestEnqueue:
    async def test_enqueue_returns_id_and_waits(self, queue: PriorityJobQueue):
        job_id = await queue.enqueue(make_payload(), JobPriority.NORMAL)

        job = await queue.get_job(job_id)
        assert job is not None
        assert job.state == JobState.WAITING
        assert job.payload.pull_number == 42
        assert job.attempts_allowed == 3

        stats = await queue.get_queue_stats()
        assert stats.waiting == 1

    async def test_priority_sets_attempt_budget(self, queue: PriorityJobQueue):
        low = await queue.get_job(await queue.enqueue(make_payload(1), "low"))
        critical = await queue.get_job(await queue.enqueue(make_payload(2), "critical"))

        assert low.attempts_allowed == 2
        assert critical.attempts_allowed == 10

    async def test_options_override_attempts(self, queue: PriorityJobQueue):
        job_id = await queue.enqueue(make_payload(), options=JobOptions(attempts=7))
        assert (await queue.get_job(job_id)).attempts_allowed == 7

    async def test_missing_field_rejected(self, queue: PriorityJobQueue):
        payload = make_payload()
        del payload["headSha"]

        with pytest.raises(InvalidJobPayload) as exc_info:
            await queue.enqueue(payload)

        assert exc_info.value.kind == ErrorKind.VALIDATION
        assert (await queue.get_queue_stats()).waiting == 0

    async def test_unknown_priority_rejected(self, queue: PriorityJobQueue):
        with pytest.raises(InvalidJobPayload):
            await queue.enqueue(make_payload(), "urgent")

    async def test_custom_job_id_is_idempotent(self, queue: PriorityJobQueue):
        options = JobOptions(job_id="delivery-abc")
        first = await queue.enqueue(make_payload(), options=options)
        second = await queue.enqueue(make_payload(), options=options)

        assert first == second == "delivery-abc"
        assert (await queue.get_queue_stats()).waiting == 1

    async def test_wait_listing_follows_dequeue_order(self, queue: PriorityJobQueue):
        low = await queue.enqueue(make_payload(1), JobPriority.LOW)
        high = await queue.enqueue(make_payload(2), JobPriority.HIGH)
        normal = await queue.enqueue(make_payload(3), JobPriority.NORMAL)

        waiting = await queue.get_jobs(JobState.WAITING)
        assert [job.id for job in waiting] == [high, normal, low]


class TestProcessing:
    async def test_priority_order(self, queue: PriorityJobQueue):
        """Higher priority first; FIFO within a priority."""
        ids = {
            "low": await queue.enqueue(make_payload(1), JobPriority.LOW),
            "normal-1": await queue.enqueue(make_payload(2), JobPriority.NORMAL),
            "critical": await queue.enqueue(make_payload(3), JobPriority.CRITICAL),
            "normal-2": await queue.enqueue(make_payload(4), JobPriority.NORMAL),
            "high": await queue.enqueue(make_payload(5), JobPriority.HIGH),
        }
        order: List[str] = []

        async def handler(job: ActiveJob):
            order.append(job.id)

        await queue.start(handler)
        await wait_for(lambda: len(order) == 5)

        expected = ["critical", "high", "normal-1", "normal-2", "low"]
        assert order == [ids[name] for name in expected]

    async def test_completed_job_records_result(self, queue: PriorityJobQueue):
        completed = []
        queue.on("completed", lambda job, result: completed.append((job.id, result)))
        job_id = await queue.enqueue(make_payload())

        async def handler(job: ActiveJob):
            await job.update_progress(50)
            return "done"

        await queue.start(handler)
        await wait_for(lambda: completed)

        job = await queue.get_job(job_id)
        assert job.state == JobState.COMPLETED
        assert job.return_value == "done"
        assert job.progress == 50
        assert job.finished_at is not None
        assert completed == [(job_id, "done")]
        assert (await queue.get_queue_stats()).completed == 1

    async def test_progress_is_monotonic(self, queue: PriorityJobQueue):
        progress = []
        queue.on("progress", lambda job, value: progress.append(value))
        job_id = await queue.enqueue(make_payload())

        async def handler(job: ActiveJob):
            await job.update_progress(60)
            await job.update_progress(30)
            await job.update_progress(90)

        await queue.start(handler)
        await wait_for(lambda: len(progress) == 2)
        await wait_for(lambda: queue.local_active == 0)

        assert progress == [60, 90]
        assert (await queue.get_job(job_id)).progress == 90

    async def test_concurrency_limits_parallel_runs(self, redis, keys):
        queue = PriorityJobQueue(redis, keys, make_settings(queue_concurrency=2))
        running = 0
        peak = 0
        done = []

        async def handler(job: ActiveJob):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.05)
            running -= 1
            done.append(job.id)

        for number in range(1, 6):
            await queue.enqueue(make_payload(number))
        await queue.start(handler)
        try:
            await wait_for(lambda: len(done) == 5)
        finally:
            await queue.close(timeout=1)

        assert peak == 2

    async def test_start_twice_fails(self, queue: PriorityJobQueue):
        async def handler(job: ActiveJob):
            return None

        await queue.start(handler)
        with pytest.raises(RuntimeError):
            await queue.start(handler)


class TestRetries:
    async def test_retries_with_backoff_then_fails(self, queue: PriorityJobQueue):
        starts: List[float] = []
        failures = []
        queue.on("failed", lambda job, error: failures.append(error))

        job_id = await queue.enqueue(
            make_payload(), options=JobOptions(attempts=3, backoff_delay_ms=50)
        )

        async def handler(job: ActiveJob):
            starts.append(time.monotonic())
            raise RuntimeError("github unavailable")

        await queue.start(handler)
        await wait_for(lambda: len(failures) == 3)

        job = await queue.get_job(job_id)
        assert job.state == JobState.FAILED
        assert job.attempts_made == 3
        assert job.error_kind == ErrorKind.EXHAUSTED_RETRIES.value
        assert job.failed_reason == "github unavailable"
        assert isinstance(failures[-1], ExhaustedRetries)

        # 50ms then 100ms, measured from attempt start to attempt start.
        assert starts[1] - starts[0] >= 0.045
        assert starts[2] - starts[1] >= 0.095

    async def test_success_after_retry(self, queue: PriorityJobQueue):
        calls = []
        job_id = await queue.enqueue(make_payload(), options=JobOptions(attempts=3))

        async def handler(job: ActiveJob):
            calls.append(job.attempt)
            if len(calls) == 1:
                raise RuntimeError("transient")
            return "ok"

        await queue.start(handler)
        await wait_for(lambda: len(calls) == 2)
        await wait_for(lambda: queue.local_active == 0)

        job = await queue.get_job(job_id)
        assert calls == [1, 2]
        assert job.state == JobState.COMPLETED
        assert job.attempts_made == 1

    async def test_non_retryable_error_fails_immediately(self, queue: PriorityJobQueue):
        calls = []
        failures = []
        queue.on("failed", lambda job, error: failures.append(error))
        job_id = await queue.enqueue(make_payload(), JobPriority.CRITICAL)

        async def handler(job: ActiveJob):
            calls.append(job.id)
            raise InvalidJobPayload("bad data")

        await queue.start(handler)
        await wait_for(lambda: failures)

        job = await queue.get_job(job_id)
        assert len(calls) == 1
        assert job.state == JobState.FAILED
        assert job.error_kind == ErrorKind.VALIDATION.value


class TestStalledRecovery:
    async def test_stalled_job_requeued_then_failed(self, queue: PriorityJobQueue):
        stalled = []
        queue.on("stalled", lambda job: stalled.append(job.stalled_count))
        job_id = await queue.enqueue(make_payload())

        # A worker claims the job and then dies without renewing it.
        assert (await queue._claim_next()).id == job_id
        await asyncio.sleep(0.25)
        assert await queue.check_stalled() == [job_id]

        job = await queue.get_job(job_id)
        assert job.state == JobState.WAITING
        assert job.stalled_count == 1

        assert (await queue._claim_next()).id == job_id
        await asyncio.sleep(0.25)
        assert await queue.check_stalled() == [job_id]

        job = await queue.get_job(job_id)
        assert job.state == JobState.FAILED
        assert job.error_kind == ErrorKind.EXHAUSTED_RETRIES.value
        assert stalled == [1, 2]

    async def test_live_job_is_not_stalled(self, queue: PriorityJobQueue):
        await queue.enqueue(make_payload())
        await queue._claim_next()
        assert await queue.check_stalled() == []

    async def test_long_handler_keeps_heartbeat(self, queue: PriorityJobQueue):
        """A handler running longer than the stall interval is not recovered."""
        stalled = []
        done = []
        queue.on("stalled", lambda job: stalled.append(job.id))
        await queue.enqueue(make_payload())

        async def handler(job: ActiveJob):
            await asyncio.sleep(0.5)
            done.append(job.id)

        await queue.start(handler)
        await wait_for(lambda: done)

        assert stalled == []

    async def test_superseded_claim_cannot_touch_job(self, queue: PriorityJobQueue):
        """Once stalled recovery takes a claim back, the old worker's writes are ignored."""
        job_id = await queue.enqueue(make_payload())
        first = await queue._claim_next()
        await asyncio.sleep(0.25)
        assert await queue.check_stalled() == [job_id]
        second = await queue._claim_next()

        assert second.token != first.token
        await queue.update_progress(first, 80)
        await queue._settle_failure(first, RuntimeError("late failure"))
        await queue._settle_success(first, "late result")

        job = await queue.get_job(job_id)
        assert job.state == JobState.ACTIVE
        assert job.token == second.token
        assert job.progress == 0
        assert job.attempts_made == 0

        await queue._settle_success(second, "done")
        job = await queue.get_job(job_id)
        assert job.state == JobState.COMPLETED
        assert job.return_value == "done"


class TestClaim:
    async def test_claim_moves_job_to_active(self, queue: PriorityJobQueue, redis):
        """A claimed job is in ``active`` with a token before the handler runs."""
        job_id = await queue.enqueue(make_payload())
        seen = []

        async def handler(job: ActiveJob):
            seen.append(
                (
                    await redis.zscore(queue._key(JobState.ACTIVE), job.id),
                    await redis.zscore(queue._key(JobState.WAITING), job.id),
                    (await queue.get_job(job.id)).state,
                    job.token,
                )
            )

        await queue.start(handler)
        await wait_for(lambda: seen)

        active_score, wait_score, state, token = seen[0]
        assert active_score is not None
        assert wait_score is None
        assert state == JobState.ACTIVE
        assert token.startswith(f"{job_id}:")

    async def test_each_claim_gets_a_new_token(self, queue: PriorityJobQueue):
        await queue.enqueue(make_payload(1))
        await queue.enqueue(make_payload(2))

        first = await queue._claim_next()
        second = await queue._claim_next()

        assert first.token and second.token
        assert first.token != second.token
        assert (await queue.get_job(first.id)).token == first.token

    async def test_claim_on_empty_queue(self, queue: PriorityJobQueue):
        assert await queue._claim_next() is None

    async def test_claimed_job_is_always_in_one_state(self, queue: PriorityJobQueue, redis):
        job_id = await queue.enqueue(make_payload())
        await queue._claim_next()

        memberships = [
            await redis.zscore(queue._key(state), job_id) is not None
            for state in (
                JobState.WAITING,
                JobState.ACTIVE,
                JobState.DELAYED,
                JobState.COMPLETED,
                JobState.FAILED,
            )
        ]
        assert memberships == [False, True, False, False, False]

    async def test_run_without_handler_raises(self, queue: PriorityJobQueue):
        await queue.enqueue(make_payload())
        job = await queue._claim_next()

        with pytest.raises(RuntimeError):
            await queue._run(job)


class TestRetention:
    async def test_remove_on_complete(self, redis, keys):
        queue = PriorityJobQueue(redis, keys, make_settings(remove_on_complete=2))
        done = []

        async def handler(job: ActiveJob):
            done.append(job.id)

        ids = [await queue.enqueue(make_payload(number)) for number in range(1, 5)]
        await queue.start(handler)
        try:
            await wait_for(lambda: len(done) == 4)
            await wait_for(lambda: queue.local_active == 0)
        finally:
            await queue.close(timeout=1)

        completed = await queue.get_jobs(JobState.COMPLETED)
        assert [job.id for job in completed] == ids[2:]
        assert await queue.get_job(ids[0]) is None

    async def test_clean_removes_old_finished_jobs(self, queue: PriorityJobQueue):
        done = []

        async def handler(job: ActiveJob):
            done.append(job.id)

        job_id = await queue.enqueue(make_payload())
        await queue.start(handler)
        await wait_for(lambda: done)
        await wait_for(lambda: queue.local_active == 0)

        assert await queue.clean(grace_ms=60000) == 0
        await asyncio.sleep(0.02)
        assert await queue.clean(grace_ms=0) == 1
        assert await queue.get_job(job_id) is None

    async def test_clean_rejects_unfinished_state(self, queue: PriorityJobQueue):
        with pytest.raises(ValueError):
            await queue.clean(grace_ms=0, state=JobState.WAITING)


class TestConcurrency:
    async def test_set_concurrency(self, queue: PriorityJobQueue):
        queue.set_concurrency(4)
        assert queue.concurrency == 4

    async def test_set_concurrency_rejects_zero(self, queue: PriorityJobQueue):
        with pytest.raises(ValueError):
            queue.set_concurrency(0)
