import asyncio
import logging
import math
import time
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from pydantic import ValidationError

from app.controllers.queue.job import (
    PENDING_STATES,
    PRIORITIES,
    QUEUE_CONFIGS,
    Job,
    JobOptions,
    JobState,
    QueueConfig,
    QueueName,
)
from app.controllers.resilience.counter_store import SharedCounterStore
from app.controllers.resilience.rate_limiter import RateLimiter
from app.exceptions import CounterStoreError, DuplicateJobError, InvalidDataError, JobPermanentFailure

JobHandler = Callable[[Job], Awaitable[Any]]


@dataclass
class QueueStats:
    waiting: int
    active: int
    completed: int
    failed: int
    delayed: int
    paused: bool


class JobQueue:
    """Named job queues kept in the shared counter store.

    Each queue gets a fixed pool of worker tasks. A job is popped atomically from the
    waiting set, so exactly one worker runs it. Failed attempts are re-queued as
    delayed with exponential backoff until `max_attempts` is reached.
    """

    def __init__(
        self,
        store: SharedCounterStore,
        rate_limiter: RateLimiter,
        configs: dict[QueueName, QueueConfig] | None = None,
        poll_interval: float = 1.0,
        job_timeout: float = 300,
        completed_retention_seconds: int = 86400,
        completed_retention_count: int = 1000,
        failed_retention_seconds: int = 604800,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._logger = logging.getLogger(__name__)
        self._store = store
        self._rate_limiter = rate_limiter
        self._configs = configs or QUEUE_CONFIGS
        self._poll_interval = poll_interval
        self._job_timeout = job_timeout
        self._completed_retention_seconds = completed_retention_seconds
        self._completed_retention_count = completed_retention_count
        self._failed_retention_seconds = failed_retention_seconds
        self._clock = clock

        self._handlers: dict[QueueName, JobHandler] = {}
        self._workers: list[asyncio.Task[None]] = []
        self._reaper: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()
        self._running = False

    @staticmethod
    def _key(queue: QueueName, suffix: str) -> str:
        return f"queue:{queue.value}:{suffix}"

    def _job_key(self, queue: QueueName, job_id: str) -> str:
        return self._key(queue, f"job:{job_id}")

    def _state_key(self, queue: QueueName, state: JobState) -> str:
        return self._key(queue, state.value)

    def register(self, queue: QueueName, handler: JobHandler) -> None:
        self._handlers[queue] = handler

    async def enqueue(self, queue: QueueName, payload: dict[str, Any], options: JobOptions | None = None) -> str:
        """Add a job and return its id. Raises DuplicateJobError if a job with that id is still pending."""
        config = self._configs[queue]
        options = options or JobOptions()
        now = self._clock()

        job = Job(
            id=options.job_id or uuid.uuid4().hex,
            queue=queue,
            payload=payload,
            priority=options.priority,
            max_attempts=options.max_attempts or config.max_attempts,
            backoff_base_seconds=options.backoff_base_seconds or config.backoff_base_seconds,
            remove_on_complete=options.remove_on_complete,
            created_at=now,
        )
        if options.delay > 0:
            job.state = JobState.DELAYED
            job.process_after = now + options.delay

        job_key = self._job_key(queue, job.id)
        if not await self._store.set_if_absent(job_key, job.to_json()):
            existing = await self.get_job(queue, job.id)
            if existing is not None and existing.state in PENDING_STATES:
                raise DuplicateJobError(
                    f"Job {job.id} is already {existing.state.value} in {queue.value}", queue=queue.value, job_id=job.id
                )
            if existing is not None:
                await self._store.zrem(self._state_key(queue, existing.state), job.id)
            await self._store.set(job_key, job.to_json())

        if job.state == JobState.DELAYED:
            await self._store.zadd(self._state_key(queue, JobState.DELAYED), job.id, job.process_after)
        else:
            await self._store.zadd(self._state_key(queue, JobState.WAITING), job.id, job.waiting_score)

        self._logger.debug(f"Enqueued job {job.id} on {queue.value}")
        return job.id

    async def get_job(self, queue: QueueName, job_id: str) -> Job | None:
        raw = await self._store.get(self._job_key(queue, job_id))
        if raw is None:
            return None
        try:
            return Job.from_json(raw)
        except ValidationError as e:
            raise InvalidDataError(f"Corrupt job record {job_id}: {e}", queue=queue.value, job_id=job_id) from e

    async def _save(self, job: Job) -> None:
        await self._store.set(self._job_key(job.queue, job.id), job.to_json())

    async def cancel_job(self, queue: QueueName, job_id: str) -> bool:
        """Remove a waiting or delayed job. Active and finished jobs are left alone."""
        job = await self.get_job(queue, job_id)
        if job is None or job.state not in (JobState.WAITING, JobState.DELAYED):
            return False
        if not await self._store.zrem(self._state_key(queue, job.state), job_id):
            return False
        await self._store.delete(self._job_key(queue, job_id))
        self._logger.info(f"Cancelled job {job_id} on {queue.value}")
        return True

    async def pause(self, queue: QueueName) -> None:
        await self._store.set(self._key(queue, "paused"), "1")
        self._logger.info(f"Paused queue {queue.value}")

    async def resume(self, queue: QueueName) -> None:
        await self._store.delete(self._key(queue, "paused"))
        self._logger.info(f"Resumed queue {queue.value}")

    async def is_paused(self, queue: QueueName) -> bool:
        return await self._store.get(self._key(queue, "paused")) is not None

    async def get_queue_stats(self, queue: QueueName) -> QueueStats:
        return QueueStats(
            waiting=await self._store.zcard(self._state_key(queue, JobState.WAITING)),
            active=await self._store.zcard(self._state_key(queue, JobState.ACTIVE)),
            completed=await self._store.zcard(self._state_key(queue, JobState.COMPLETED)),
            failed=await self._store.zcard(self._state_key(queue, JobState.FAILED)),
            delayed=await self._store.zcard(self._state_key(queue, JobState.DELAYED)),
            paused=await self.is_paused(queue),
        )

    async def get_all_stats(self) -> dict[str, QueueStats]:
        return {queue.value: await self.get_queue_stats(queue) for queue in self._configs}

    async def clean(self, queue: QueueName, state: JobState, older_than_seconds: float) -> int:
        """Drop finished jobs in `state` that finished more than `older_than_seconds` ago."""
        if state not in (JobState.COMPLETED, JobState.FAILED):
            raise InvalidDataError(f"Only finished jobs can be cleaned, got {state.value}", queue=queue.value)
        state_key = self._state_key(queue, state)
        job_ids = await self._store.zrangebyscore(state_key, -math.inf, self._clock() - older_than_seconds)
        return await self._drop(queue, state_key, job_ids)

    async def _drop(self, queue: QueueName, state_key: str, job_ids: list[str]) -> int:
        removed = 0
        for job_id in job_ids:
            if await self._store.zrem(state_key, job_id):
                await self._store.delete(self._job_key(queue, job_id))
                removed += 1
        return removed

    async def trim_history(self, queue: QueueName) -> int:
        """Apply the retention policy to finished jobs."""
        removed = await self.clean(queue, JobState.COMPLETED, self._completed_retention_seconds)
        removed += await self.clean(queue, JobState.FAILED, self._failed_retention_seconds)

        completed_key = self._state_key(queue, JobState.COMPLETED)
        excess = await self._store.zcard(completed_key) - self._completed_retention_count
        if excess > 0:
            oldest = await self._store.zrangebyscore(completed_key, -math.inf, math.inf, limit=excess)
            removed += await self._drop(queue, completed_key, oldest)
        return removed

    async def promote_delayed(self, queue: QueueName) -> int:
        """Move delayed jobs whose process_after has passed into the waiting set."""
        delayed_key = self._state_key(queue, JobState.DELAYED)
        promoted = 0
        for job_id in await self._store.zrangebyscore(delayed_key, -math.inf, self._clock()):
            if not await self._store.zrem(delayed_key, job_id):
                continue
            job = await self.get_job(queue, job_id)
            if job is None:
                continue
            job.state = JobState.WAITING
            await self._save(job)
            await self._store.zadd(self._state_key(queue, JobState.WAITING), job.id, job.waiting_score)
            promoted += 1
        return promoted

    async def _claim_next(self, queue: QueueName) -> Job | None:
        waiting_key = self._state_key(queue, JobState.WAITING)
        popped = await self._store.zpopmin(waiting_key)
        if popped is None:
            return None
        job_id, score = popped

        job = await self.get_job(queue, job_id)
        if job is None:
            return None

        limiter = self._configs[queue].limiter
        if limiter is not None:
            allowed = await self._rate_limiter.allow(f"queue:{queue.value}", limiter.max_jobs, limiter.duration_seconds)
            if not allowed.allowed:
                await self._store.zadd(waiting_key, job_id, score)
                await asyncio.sleep(max(0.0, allowed.reset_at - time.time()))
                return None

        now = self._clock()
        job.state = JobState.ACTIVE
        job.started_at = now
        await self._save(job)
        await self._store.zadd(self._state_key(queue, JobState.ACTIVE), job.id, now + self._job_timeout)
        return job

    async def process_next(self, queue: QueueName) -> bool:
        """Run at most one job from `queue`. Returns whether a job was run."""
        await self.promote_delayed(queue)
        job = await self._claim_next(queue)
        if job is None:
            return False

        handler = self._handlers.get(queue)
        if handler is None:
            await self._fail(job, f"No handler registered for {queue.value}")
            return True

        self._logger.debug(f"Processing job {job.id} on {queue.value} (attempt {job.attempts + 1})")
        try:
            result = await asyncio.wait_for(handler(job), timeout=self._job_timeout)
        except asyncio.TimeoutError:
            await self._fail(job, f"Job timed out after {self._job_timeout}s")
        except Exception as e:
            self._logger.warning(f"Job {job.id} on {queue.value} failed: {e}")
            await self._fail(job, str(e))
        else:
            await self._complete(job, result)
        return True

    async def _complete(self, job: Job, result: Any) -> None:
        if not await self._store.zrem(self._state_key(job.queue, JobState.ACTIVE), job.id):
            self._logger.warning(f"Job {job.id} finished after it was reclaimed, ignoring result")
            return

        if job.remove_on_complete:
            await self._store.delete(self._job_key(job.queue, job.id))
        else:
            now = self._clock()
            job.state = JobState.COMPLETED
            job.finished_at = now
            job.result = result
            await self._save(job)
            await self._store.zadd(self._state_key(job.queue, JobState.COMPLETED), job.id, now)
            await self.trim_history(job.queue)
        self._logger.info(f"Job {job.id} on {job.queue.value} completed")

    async def _fail(self, job: Job, error: str) -> None:
        if not await self._store.zrem(self._state_key(job.queue, JobState.ACTIVE), job.id):
            return

        now = self._clock()
        job.attempts += 1
        job.last_error = error

        if job.attempts < job.max_attempts:
            delay = job.backoff_delay()
            job.state = JobState.DELAYED
            job.process_after = now + delay
            await self._save(job)
            await self._store.zadd(self._state_key(job.queue, JobState.DELAYED), job.id, job.process_after)
            self._logger.info(
                f"Job {job.id} on {job.queue.value} will retry in {delay:.0f}s "
                f"(attempt {job.attempts}/{job.max_attempts})"
            )
            return

        job.state = JobState.FAILED
        job.finished_at = now
        await self._save(job)
        await self._store.zadd(self._state_key(job.queue, JobState.FAILED), job.id, now)
        failure = JobPermanentFailure(
            f"Job {job.id} failed after {job.attempts} attempts: {error}", queue=job.queue.value, job_id=job.id
        )
        self._logger.error(str(failure), extra=failure.extra)

    async def reap_expired(self, queue: QueueName) -> int:
        """Send active jobs past their deadline through the failure path."""
        active_key = self._state_key(queue, JobState.ACTIVE)
        reaped = 0
        for job_id in await self._store.zrangebyscore(active_key, -math.inf, self._clock()):
            job = await self.get_job(queue, job_id)
            if job is None:
                await self._store.zrem(active_key, job_id)
                continue
            self._logger.warning(f"Reclaiming abandoned job {job_id} on {queue.value}")
            await self._fail(job, f"Job exceeded the {self._job_timeout}s processing deadline")
            reaped += 1
        return reaped

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._stop_event.clear()

        for queue, config in self._configs.items():
            if queue not in self._handlers:
                self._logger.warning(f"No handler for {queue.value}, not starting workers")
                continue
            for index in range(config.concurrency):
                self._workers.append(asyncio.create_task(self._worker(queue), name=f"{queue.value}-worker-{index}"))
        self._reaper = asyncio.create_task(self._reap_loop(), name="job-queue-reaper")
        self._logger.info(f"Job queue started with {len(self._workers)} workers")

    async def stop(self) -> None:
        """Stop taking new jobs and wait for running ones to finish."""
        if not self._running:
            return
        self._running = False
        self._stop_event.set()

        tasks = [*self._workers, *([self._reaper] if self._reaper else [])]
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=self._job_timeout)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        self._workers = []
        self._reaper = None
        self._logger.info("Job queue stopped")

    async def _idle(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _worker(self, queue: QueueName) -> None:
        while self._running:
            try:
                if await self.is_paused(queue) or not await self.process_next(queue):
                    await self._idle(self._poll_interval)
            except CounterStoreError as e:
                self._logger.warning(f"Queue store unavailable for {queue.value}: {e}")
                await self._idle(self._poll_interval)
            except Exception:
                self._logger.exception(f"Worker error on {queue.value}")
                await self._idle(self._poll_interval)

    async def _reap_loop(self) -> None:
        interval = max(self._poll_interval, self._job_timeout / 10)
        while self._running:
            await self._idle(interval)
            for queue in self._configs:
                try:
                    await self.reap_expired(queue)
                except CounterStoreError as e:
                    self._logger.warning(f"Reaper could not reach the queue store for {queue.value}: {e}")

    async def enqueue_send_email(self, payload: dict[str, Any], priority: str = "normal") -> str:
        if priority not in PRIORITIES:
            raise InvalidDataError(f"Unknown priority {priority}", queue=QueueName.SEND_EMAIL.value)
        return await self.enqueue(QueueName.SEND_EMAIL, payload, JobOptions(priority=PRIORITIES[priority]))

    async def enqueue_sync_account(self, account_id: int, owner_id: int, full_sync: bool = False) -> str:
        """One sync job per account: a second enqueue while one is pending raises DuplicateJobError."""
        return await self.enqueue(
            QueueName.SYNC_ACCOUNT,
            {"account_id": account_id, "owner_id": owner_id, "full_sync": full_sync},
            JobOptions(job_id=f"sync-{account_id}", remove_on_complete=True),
        )

    async def enqueue_bulk_operation(self, owner_id: int, action: str, thread_ids: list[int]) -> str:
        return await self.enqueue(
            QueueName.BULK_MUTATE, {"owner_id": owner_id, "action": action, "thread_ids": thread_ids}
        )

    async def enqueue_notification(self, owner_id: int, event_type: str, data: dict[str, Any] | None = None) -> str:
        return await self.enqueue(QueueName.NOTIFY, {"owner_id": owner_id, "type": event_type, "data": data or {}})

    async def enqueue_cleanup(self, task: str, delay: float = 0.0) -> str:
        return await self.enqueue(QueueName.CLEANUP, {"task": task}, JobOptions(delay=delay))
