"""
Priority Job Queue

Durable queue of review jobs kept in the shared Redis store, modelled on the
usual Redis job queue layout:

    {prefix}:queue:{name}:id          INCR counter (job ids, FIFO sequence)
    {prefix}:queue:{name}:job:{id}    hash with the job record
    {prefix}:queue:{name}:wait        zset, score = weight * SEQ_SPAN - seq
    {prefix}:queue:{name}:active      zset, score = liveness deadline (ms)
    {prefix}:queue:{name}:delayed     zset, score = ready time (ms)
    {prefix}:queue:{name}:completed   zset, score = finish time (ms)
    {prefix}:queue:{name}:failed      zset, score = finish time (ms)

Jobs are pushed to a registered handler by N worker slots. Every move between
state sets is one server-side script, so a job is always in exactly one set
even if the process dies mid-move. Each claim writes a fresh ``token`` into
the job hash; heartbeats, progress and settling only apply while the hash
still carries the caller's token, so a worker whose claim was taken back by
stalled recovery can no longer touch the job.
"""

import asyncio
import contextlib
import inspect
from collections import defaultdict
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union
from uuid import uuid4

from pydantic import ValidationError as PydanticValidationError
from redis.asyncio import Redis

from app.config import Settings
from app.errors import (
    ExhaustedRetries,
    InvalidJobPayload,
    error_kind_of,
    is_retryable,
)
from app.logging_config import get_logger
from app.models import (
    PRIORITY_POLICY,
    Job,
    JobOptions,
    JobPayload,
    JobPriority,
    JobState,
    QueueStats,
    now_ms,
)
from app.store import KeySpace

logger = get_logger(__name__)

SEQ_SPAN = 10 ** 12

QUEUE_EVENTS = ("waiting", "active", "progress", "completed", "failed", "stalled")

STORED_STATES = (
    JobState.WAITING,
    JobState.ACTIVE,
    JobState.DELAYED,
    JobState.COMPLETED,
    JobState.FAILED,
)

# KEYS: wait, active
# ARGV: job key prefix, liveness deadline, now, claim nonce
CLAIM_SCRIPT = """
local popped = redis.call('ZPOPMAX', KEYS[1])
if #popped == 0 then
  return false
end
local job_id = popped[1]
local job_key = ARGV[1] .. job_id
local token = job_id .. ':' .. ARGV[4]
redis.call('ZADD', KEYS[2], ARGV[2], job_id)
redis.call('HSET', job_key, 'state', 'active', 'processed_at', ARGV[3], 'progress', '0', 'token', token)
return {job_id, redis.call('HGETALL', job_key)}
"""

# KEYS: source set, target set, job hash
# ARGV: job id, claim token ('' skips the check), target score, field, value, ...
MOVE_SCRIPT = """
if ARGV[2] ~= '' and redis.call('HGET', KEYS[3], 'token') ~= ARGV[2] then
  return 0
end
if redis.call('ZREM', KEYS[1], ARGV[1]) == 0 then
  return 0
end
for i = 4, #ARGV, 2 do
  redis.call('HSET', KEYS[3], ARGV[i], ARGV[i + 1])
end
redis.call('ZADD', KEYS[2], ARGV[3], ARGV[1])
return 1
"""

# KEYS: active, job hash
# ARGV: job id, claim token, liveness deadline, progress ('' leaves it)
TOUCH_SCRIPT = """
if redis.call('HGET', KEYS[2], 'token') ~= ARGV[2] then
  return 0
end
if redis.call('ZSCORE', KEYS[1], ARGV[1]) == false then
  return 0
end
if ARGV[4] ~= '' then
  redis.call('HSET', KEYS[2], 'progress', ARGV[4])
end
redis.call('ZADD', KEYS[1], ARGV[3], ARGV[1])
return 1
"""


class ActiveJob:
    """
    Handle passed to the job handler.

    Exposes the job record and the only mutation a handler may request
    directly: progress reporting (which also renews the liveness deadline).
    """

    def __init__(self, queue: "PriorityJobQueue", job: Job):
        self._queue = queue
        self.job = job

    @property
    def id(self) -> str:
        return self.job.id

    @property
    def payload(self) -> JobPayload:
        return self.job.payload

    @property
    def token(self) -> str:
        """Identifies this claim of the job; changes on every claim."""
        return self.job.token or ""

    @property
    def attempt(self) -> int:
        """1-based number of the attempt being run."""
        return self.job.attempts_made + 1

    async def update_progress(self, value: int) -> None:
        await self._queue.update_progress(self.job, value)


JobHandler = Callable[[ActiveJob], Awaitable[Any]]
Listener = Callable[..., Any]


class PriorityJobQueue:
    """
    Redis-backed priority queue with retry/backoff and stalled-job recovery.

    Usage:
        queue = PriorityJobQueue(redis, keys, settings)
        job_id = await queue.enqueue(payload, JobPriority.HIGH)
        await queue.start(processor.handle)
        ...
        await queue.close()
    """

    def __init__(self, redis: Redis, keys: KeySpace, settings: Settings):
        self.redis = redis
        self.keys = keys
        self.name = settings.queue_name
        self.concurrency = settings.queue_concurrency
        self.poll_interval = settings.queue_poll_interval_ms / 1000
        self.stalled_interval_ms = settings.stalled_interval_ms
        self.max_stalled_count = settings.max_stalled_count
        self.backoff_delay_ms = settings.backoff_delay_ms
        self.remove_on_complete = settings.remove_on_complete
        self.remove_on_fail = settings.remove_on_fail

        self._listeners: Dict[str, List[Listener]] = defaultdict(list)
        self._handler: Optional[JobHandler] = None
        self._workers: Dict[int, asyncio.Task] = {}
        self._guardian: Optional[asyncio.Task] = None
        self._wakeup = asyncio.Event()
        self._running = False
        self._closing = False
        self._local_active = 0

        self._claim_script = redis.register_script(CLAIM_SCRIPT)
        self._move_script = redis.register_script(MOVE_SCRIPT)
        self._touch_script = redis.register_script(TOUCH_SCRIPT)

    # =========================================================================
    # Keys
    # =========================================================================
    def _key(self, state: Union[JobState, str]) -> str:
        suffix = state.value if isinstance(state, JobState) else state
        return self.keys.queue(self.name, suffix)

    def _job_key(self, job_id: str) -> str:
        return self.keys.job(self.name, job_id)

    async def _move(
        self,
        job_id: str,
        source: JobState,
        target: JobState,
        score: int,
        fields: Mapping[str, Any],
        token: Optional[str] = None,
    ) -> bool:
        """
        Atomically move ``job_id`` from ``source`` to ``target`` and update its hash.

        Returns:
            False if the job was not in ``source`` or, with ``token``, if the
            job has since been claimed again
        """
        args: List[Any] = [job_id, token or "", score]
        for field, value in fields.items():
            args.extend([field, value])
        moved = await self._move_script(
            keys=[self._key(source), self._key(target), self._job_key(job_id)],
            args=args,
        )
        return bool(moved)

    async def _touch(self, job: Job, progress: Optional[int] = None) -> bool:
        """Renew the liveness deadline (and progress) while the claim is current."""
        touched = await self._touch_script(
            keys=[self._key(JobState.ACTIVE), self._job_key(job.id)],
            args=[
                job.id,
                job.token or "",
                now_ms() + self.stalled_interval_ms,
                "" if progress is None else progress,
            ],
        )
        return bool(touched)

    @staticmethod
    def _wait_score(job: Job) -> int:
        # Higher weight first; within a weight, lower sequence (older) first.
        return job.weight * SEQ_SPAN - job.seq

    # =========================================================================
    # Events
    # =========================================================================
    def on(self, event: str, listener: Listener) -> None:
        """Register a lifecycle listener (sync or async)."""
        if event not in QUEUE_EVENTS:
            raise ValueError(f"Unknown queue event: {event}")
        self._listeners[event].append(listener)

    async def _emit(self, event: str, *args: Any) -> None:
        for listener in self._listeners.get(event, []):
            try:
                result = listener(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Queue event listener failed", queue_event=event)

    # =========================================================================
    # Producer API
    # =========================================================================
    async def enqueue(
        self,
        payload: Union[JobPayload, Mapping[str, Any]],
        priority: Union[JobPriority, str] = JobPriority.NORMAL,
        options: Optional[JobOptions] = None,
    ) -> str:
        """
        Validate and enqueue a job.

        Returns:
            The job id

        Raises:
            InvalidJobPayload: If the payload or priority is malformed
        """
        try:
            job_payload = (
                payload if isinstance(payload, JobPayload)
                else JobPayload.model_validate(payload)
            )
        except PydanticValidationError as e:
            raise InvalidJobPayload(
                "Invalid job payload",
                details={"errors": e.errors(include_url=False, include_context=False)},
            ) from e

        try:
            job_priority = JobPriority(priority)
        except ValueError as e:
            raise InvalidJobPayload(f"Unknown priority: {priority}") from e

        options = options or JobOptions()
        policy = PRIORITY_POLICY[job_priority]
        seq = await self.redis.incr(self._key("id"))
        job_id = options.job_id or str(seq)

        if options.job_id is not None:
            claimed = await self.redis.hsetnx(self._job_key(job_id), "id", job_id)
            if not claimed:
                logger.info("Job already enqueued", job_id=job_id)
                return job_id

        job = Job(
            id=job_id,
            payload=job_payload,
            priority=job_priority,
            attempts_allowed=options.attempts or policy.attempts,
            backoff_delay_ms=(
                options.backoff_delay_ms
                if options.backoff_delay_ms is not None
                else self.backoff_delay_ms
            ),
            seq=seq,
            remove_on_complete=options.remove_on_complete,
            remove_on_fail=options.remove_on_fail,
        )

        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hset(self._job_key(job_id), mapping=job.to_redis())
            pipe.zadd(self._key(JobState.WAITING), {job_id: self._wait_score(job)})
            await pipe.execute()

        self._wakeup.set()
        logger.info(
            "Enqueued job",
            job_id=job_id,
            priority=job_priority.value,
            attempts_allowed=job.attempts_allowed,
            repo=job_payload.full_repo_name,
            pull_number=job_payload.pull_number,
        )
        await self._emit("waiting", job)
        return job_id

    # =========================================================================
    # Inspection
    # =========================================================================
    async def get_job(self, job_id: str) -> Optional[Job]:
        data = await self.redis.hgetall(self._job_key(job_id))
        if not data or "payload" not in data:
            return None
        return Job.from_redis(data)

    async def get_jobs(self, state: JobState, start: int = 0, end: int = -1) -> List[Job]:
        """Jobs in ``state``; wait is ordered by dequeue order, others by score."""
        if state not in STORED_STATES:
            raise ValueError(f"State is not stored: {state}")
        if state == JobState.WAITING:
            ids = await self.redis.zrevrange(self._key(state), start, end)
        else:
            ids = await self.redis.zrange(self._key(state), start, end)
        jobs = []
        for job_id in ids:
            job = await self.get_job(job_id)
            if job is not None:
                jobs.append(job)
        return jobs

    async def get_queue_stats(self) -> QueueStats:
        async with self.redis.pipeline(transaction=False) as pipe:
            for state in STORED_STATES:
                pipe.zcard(self._key(state))
            counts = await pipe.execute()
        return QueueStats(**{state.value: count for state, count in zip(STORED_STATES, counts)})

    @property
    def local_active(self) -> int:
        """Jobs currently being run by this process."""
        return self._local_active

    # =========================================================================
    # Worker lifecycle
    # =========================================================================
    async def start(self, handler: JobHandler) -> None:
        """Register the handler and start the worker slots."""
        if self._running:
            raise RuntimeError(f"Queue {self.name} is already running")

        self._handler = handler
        self._running = True
        self._closing = False
        self._wakeup = asyncio.Event()

        for slot in range(self.concurrency):
            self._spawn(slot)
        self._guardian = asyncio.create_task(self._guard(), name=f"{self.name}-guardian")

        logger.info("Queue workers started", queue=self.name, concurrency=self.concurrency)

    def set_concurrency(self, concurrency: int) -> None:
        """
        Resize the local worker pool.

        Extra slots exit after finishing their current job; nothing running
        is cancelled.
        """
        if concurrency < 1:
            raise ValueError(f"concurrency must be at least 1, got {concurrency}")
        previous, self.concurrency = self.concurrency, concurrency
        if self._running and not self._closing:
            for slot in range(concurrency):
                task = self._workers.get(slot)
                if task is None or task.done():
                    self._spawn(slot)
            self._wakeup.set()
        if previous != concurrency:
            logger.info("Queue concurrency changed", previous=previous, concurrency=concurrency)

    def _spawn(self, slot: int) -> None:
        self._workers[slot] = asyncio.create_task(
            self._work(slot), name=f"{self.name}-worker-{slot}"
        )

    async def close(self, timeout: Optional[float] = None) -> None:
        """Stop claiming jobs, let running ones settle, then stop."""
        if not self._running:
            return
        self._closing = True
        self._wakeup.set()

        if self._guardian:
            self._guardian.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._guardian

        workers = [task for task in self._workers.values() if not task.done()]
        if workers:
            _, pending = await asyncio.wait(workers, timeout=timeout)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        self._workers.clear()
        self._running = False
        logger.info("Queue workers stopped", queue=self.name)

    async def _work(self, slot: int) -> None:
        try:
            while not self._closing and slot < self.concurrency:
                try:
                    job = await self._claim_next()
                except Exception:
                    logger.exception("Failed to claim job", slot=slot)
                    await asyncio.sleep(self.poll_interval)
                    continue

                if job is None:
                    await self._idle()
                    continue

                try:
                    await self._run(job)
                except Exception:
                    logger.exception("Failed to settle job", job_id=job.id)
        finally:
            if self._workers.get(slot) is asyncio.current_task():
                del self._workers[slot]

    async def _idle(self) -> None:
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout=self.poll_interval)
        except asyncio.TimeoutError:
            pass
        self._wakeup.clear()

    async def _claim_next(self) -> Optional[Job]:
        """Pop the best waiting job into ``active`` under a new claim token."""
        now = now_ms()
        claimed = await self._claim_script(
            keys=[self._key(JobState.WAITING), self._key(JobState.ACTIVE)],
            args=[self._job_key(""), now + self.stalled_interval_ms, now, uuid4().hex],
        )
        if not claimed:
            return None

        job_id, flat = claimed
        data = dict(zip(flat[::2], flat[1::2]))
        if "payload" not in data:
            logger.warning("Dropping job without a record", job_id=job_id)
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.zrem(self._key(JobState.ACTIVE), job_id)
                pipe.delete(self._job_key(job_id))
                await pipe.execute()
            return None
        return Job.from_redis(data)

    async def _run(self, job: Job) -> None:
        if self._handler is None:
            raise RuntimeError(f"Queue {self.name} has no handler; call start() first")
        self._local_active += 1
        heartbeat = asyncio.create_task(self._heartbeat(job))
        try:
            await self._emit("active", job)
            logger.info(
                "Processing job",
                job_id=job.id,
                attempt=job.attempts_made + 1,
                attempts_allowed=job.attempts_allowed,
            )
            try:
                result = await self._handler(ActiveJob(self, job))
            except Exception as error:
                await self._settle_failure(job, error)
            else:
                await self._settle_success(job, result)
        finally:
            self._local_active -= 1
            heartbeat.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await heartbeat

    async def _heartbeat(self, job: Job) -> None:
        interval = max(self.stalled_interval_ms / 2000, 0.01)
        while True:
            await asyncio.sleep(interval)
            try:
                if not await self._touch(job):
                    logger.warning("Job claim superseded, stopping heartbeat", job_id=job.id)
                    return
            except Exception:
                logger.exception("Failed to renew job liveness", job_id=job.id)

    # =========================================================================
    # State transitions
    # =========================================================================
    async def update_progress(self, job: Job, value: int) -> None:
        value = max(0, min(100, int(value)))
        if value < job.progress:
            logger.debug("Ignoring progress regression", job_id=job.id, progress=value)
            return
        job.progress = value
        if not await self._touch(job, progress=value):
            logger.warning("Job claim superseded, progress not stored", job_id=job.id)
            return
        await self._emit("progress", job, value)

    async def _settle_success(self, job: Job, result: Any) -> None:
        now = now_ms()
        return_value = result.value if isinstance(result, Enum) else result
        return_value = None if return_value is None else str(return_value)

        mapping: Dict[str, Any] = {"state": JobState.COMPLETED.value, "finished_at": now}
        if return_value is not None:
            mapping["return_value"] = return_value

        if not await self._move(
            job.id, JobState.ACTIVE, JobState.COMPLETED, now, mapping, token=job.token
        ):
            logger.warning("Job lost its active claim, discarding completion", job_id=job.id)
            return

        job.state = JobState.COMPLETED
        job.finished_at = now
        job.return_value = return_value

        logger.info("Job completed", job_id=job.id, result=job.return_value)
        await self._trim(
            JobState.COMPLETED,
            job.remove_on_complete if job.remove_on_complete is not None else self.remove_on_complete,
        )
        await self._emit("completed", job, result)

    async def _settle_failure(self, job: Job, error: Exception) -> None:
        now = now_ms()
        reason = str(error) or type(error).__name__
        kind = error_kind_of(error)
        attempts_made = job.attempts_made + 1

        if is_retryable(error) and attempts_made < job.attempts_allowed:
            delay = job.backoff_for(attempts_made)
            moved = await self._move(
                job.id,
                JobState.ACTIVE,
                JobState.DELAYED,
                now + delay,
                {
                    "state": JobState.DELAYED.value,
                    "attempts_made": attempts_made,
                    "failed_reason": reason,
                    "error_kind": kind.value,
                },
                token=job.token,
            )
            if not moved:
                logger.warning("Job lost its active claim, discarding failure", job_id=job.id)
                return

            job.state = JobState.DELAYED
            job.attempts_made = attempts_made
            job.failed_reason = reason
            job.error_kind = kind.value
            logger.warning(
                "Job attempt failed, retry scheduled",
                job_id=job.id,
                attempts_made=job.attempts_made,
                attempts_allowed=job.attempts_allowed,
                delay_ms=delay,
                error_kind=kind.value,
                error=reason,
            )
            await self._emit("failed", job, error)
            return

        if is_retryable(error):
            error = ExhaustedRetries(job.id, attempts_made, reason)
            kind = error.kind

        moved = await self._move(
            job.id,
            JobState.ACTIVE,
            JobState.FAILED,
            now,
            {
                "state": JobState.FAILED.value,
                "attempts_made": attempts_made,
                "failed_reason": reason,
                "error_kind": kind.value,
                "finished_at": now,
            },
            token=job.token,
        )
        if not moved:
            logger.warning("Job lost its active claim, discarding failure", job_id=job.id)
            return

        job.state = JobState.FAILED
        job.finished_at = now
        job.attempts_made = attempts_made
        job.failed_reason = reason
        job.error_kind = kind.value

        logger.error(
            "Job failed",
            job_id=job.id,
            attempts_made=job.attempts_made,
            error_kind=job.error_kind,
            error=reason,
        )
        await self._trim(
            JobState.FAILED,
            job.remove_on_fail if job.remove_on_fail is not None else self.remove_on_fail,
        )
        await self._emit("failed", job, error)

    async def promote_delayed(self) -> int:
        """Move delayed jobs whose backoff has elapsed back to wait."""
        due = await self.redis.zrangebyscore(
            self._key(JobState.DELAYED), "-inf", now_ms(), start=0, num=100
        )
        promoted = 0
        for job_id in due:
            job = await self.get_job(job_id)
            if job is None:
                await self.redis.zrem(self._key(JobState.DELAYED), job_id)
                continue
            if await self._move(
                job_id,
                JobState.DELAYED,
                JobState.WAITING,
                self._wait_score(job),
                {"state": JobState.WAITING.value},
            ):
                promoted += 1

        if promoted:
            self._wakeup.set()
            logger.debug("Promoted delayed jobs", count=promoted)
        return promoted

    async def check_stalled(self) -> List[str]:
        """
        Recover active jobs whose liveness deadline has passed.

        Returns:
            Ids of the jobs found stalled
        """
        stalled_ids = await self.redis.zrangebyscore(
            self._key(JobState.ACTIVE), "-inf", now_ms()
        )
        recovered: List[str] = []
        for job_id in stalled_ids:
            job = await self.get_job(job_id)
            if job is None:
                await self.redis.zrem(self._key(JobState.ACTIVE), job_id)
                continue

            stalled_count = job.stalled_count + 1
            now = now_ms()

            if stalled_count > self.max_stalled_count:
                error = ExhaustedRetries(
                    job.id, job.attempts_made, "job stalled more than allowable limit"
                )
                moved = await self._move(
                    job_id,
                    JobState.ACTIVE,
                    JobState.FAILED,
                    now,
                    {
                        "state": JobState.FAILED.value,
                        "stalled_count": stalled_count,
                        "failed_reason": error.last_error,
                        "error_kind": error.kind.value,
                        "finished_at": now,
                        "token": "",
                    },
                    token=job.token,
                )
                if not moved:
                    continue
                recovered.append(job_id)
                job.state = JobState.FAILED
                job.stalled_count = stalled_count
                job.finished_at = now
                job.failed_reason = error.last_error
                job.error_kind = error.kind.value
                job.token = ""
                logger.error("Stalled job failed", job_id=job_id, stalled_count=stalled_count)
                await self._emit("stalled", job)
                await self._emit("failed", job, error)
                continue

            moved = await self._move(
                job_id,
                JobState.ACTIVE,
                JobState.WAITING,
                self._wait_score(job),
                {"state": JobState.WAITING.value, "stalled_count": stalled_count, "token": ""},
                token=job.token,
            )
            if not moved:
                continue
            recovered.append(job_id)
            job.state = JobState.WAITING
            job.stalled_count = stalled_count
            job.token = ""
            logger.warning("Stalled job requeued", job_id=job_id, stalled_count=job.stalled_count)
            await self._emit("stalled", job)

        if recovered:
            self._wakeup.set()
        return recovered

    async def _guard(self) -> None:
        last_stalled_check = now_ms()
        while not self._closing:
            try:
                await self.promote_delayed()
                if now_ms() - last_stalled_check >= self.stalled_interval_ms:
                    await self.check_stalled()
                    last_stalled_check = now_ms()
            except Exception:
                logger.exception("Queue maintenance pass failed", queue=self.name)
            await asyncio.sleep(self.poll_interval)

    # =========================================================================
    # Retention
    # =========================================================================
    async def _remove(self, state: JobState, job_ids: List[str]) -> None:
        if not job_ids:
            return
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.zrem(self._key(state), *job_ids)
            pipe.delete(*[self._job_key(job_id) for job_id in job_ids])
            await pipe.execute()

    async def _trim(self, state: JobState, keep: int) -> None:
        """Keep only the ``keep`` most recent jobs in a finished state."""
        count = await self.redis.zcard(self._key(state))
        if count <= keep:
            return
        job_ids = await self.redis.zrange(self._key(state), 0, count - keep - 1)
        await self._remove(state, job_ids)
        logger.debug("Trimmed finished jobs", state=state.value, removed=len(job_ids))

    async def clean(
        self,
        grace_ms: int,
        state: JobState = JobState.COMPLETED,
        limit: int = 1000,
    ) -> int:
        """
        Remove finished jobs older than ``grace_ms``.

        Returns:
            Number of jobs removed
        """
        if state not in (JobState.COMPLETED, JobState.FAILED):
            raise ValueError(f"Only finished jobs can be cleaned, got {state}")
        cutoff = now_ms() - grace_ms
        job_ids = await self.redis.zrangebyscore(
            self._key(state), "-inf", cutoff, start=0, num=limit
        )
        await self._remove(state, job_ids)
        if job_ids:
            logger.info("Cleaned finished jobs", state=state.value, removed=len(job_ids))
        return len(job_ids)
