import asyncio
from unittest.mock import AsyncMock

import pytest

from app.controllers.queue.job import PRIORITIES, Job, JobOptions, JobState, QueueName
from app.controllers.queue.job_queue import JobQueue
from app.exceptions import DuplicateJobError, InvalidDataError


@pytest.fixture
def job_queue(counter_store, rate_limiter, clock) -> JobQueue:
    return JobQueue(counter_store, rate_limiter, poll_interval=0.01, clock=clock)


def test_job_serializes_with_camel_case_keys():
    job = Job(id="j1", queue=QueueName.NOTIFY, created_at=1.0, max_attempts=5)

    raw = job.to_json()

    assert '"maxAttempts":5' in raw
    assert '"createdAt":1.0' in raw
    assert Job.from_json(raw) == job


def test_backoff_doubles_per_attempt():
    job = Job(id="j1", queue=QueueName.BULK_MUTATE, created_at=0.0, backoff_base_seconds=2.0)

    delays = []
    for attempts in (1, 2, 3):
        job.attempts = attempts
        delays.append(job.backoff_delay())

    assert delays == [2.0, 4.0, 8.0]


@pytest.mark.asyncio
async def test_failing_job_is_attempted_max_attempts_times_with_backoff(job_queue, clock):
    handler = AsyncMock(side_effect=RuntimeError("store exploded"))
    job_queue.register(QueueName.BULK_MUTATE, handler)
    job_id = await job_queue.enqueue_bulk_operation(10, "archive", [1, 2])

    assert await job_queue.process_next(QueueName.BULK_MUTATE)
    job = await job_queue.get_job(QueueName.BULK_MUTATE, job_id)
    assert job.state is JobState.DELAYED
    assert job.process_after == clock.now + 2

    clock.advance(1)
    assert not await job_queue.process_next(QueueName.BULK_MUTATE)

    clock.advance(1)
    assert await job_queue.process_next(QueueName.BULK_MUTATE)
    job = await job_queue.get_job(QueueName.BULK_MUTATE, job_id)
    assert job.process_after == clock.now + 4

    clock.advance(4)
    assert await job_queue.process_next(QueueName.BULK_MUTATE)

    job = await job_queue.get_job(QueueName.BULK_MUTATE, job_id)
    assert job.state is JobState.FAILED
    assert job.attempts == 3
    assert job.last_error == "store exploded"
    assert handler.await_count == 3

    clock.advance(100)
    assert not await job_queue.process_next(QueueName.BULK_MUTATE)
    stats = await job_queue.get_queue_stats(QueueName.BULK_MUTATE)
    assert (stats.failed, stats.delayed, stats.waiting, stats.active) == (1, 0, 0, 0)


@pytest.mark.asyncio
async def test_successful_job_records_result(job_queue):
    job_queue.register(QueueName.NOTIFY, AsyncMock(return_value={"delivered": True}))
    job_id = await job_queue.enqueue_notification(10, "thread_archived", {"threadId": 5})

    await job_queue.process_next(QueueName.NOTIFY)

    job = await job_queue.get_job(QueueName.NOTIFY, job_id)
    assert job.state is JobState.COMPLETED
    assert job.result == {"delivered": True}
    assert job.attempts == 0


@pytest.mark.asyncio
async def test_sync_jobs_are_deduplicated_per_account(job_queue):
    job_id = await job_queue.enqueue_sync_account(1, 10)
    assert job_id == "sync-1"

    with pytest.raises(DuplicateJobError):
        await job_queue.enqueue_sync_account(1, 10, full_sync=True)

    assert await job_queue.enqueue_sync_account(2, 10) == "sync-2"
    assert (await job_queue.get_queue_stats(QueueName.SYNC_ACCOUNT)).waiting == 2


@pytest.mark.asyncio
async def test_sync_job_can_be_enqueued_again_after_completion(job_queue):
    handler = AsyncMock(return_value={"message_count": 0})
    job_queue.register(QueueName.SYNC_ACCOUNT, handler)
    await job_queue.enqueue_sync_account(1, 10)

    await job_queue.process_next(QueueName.SYNC_ACCOUNT)

    assert await job_queue.get_job(QueueName.SYNC_ACCOUNT, "sync-1") is None
    assert await job_queue.enqueue_sync_account(1, 10) == "sync-1"


@pytest.mark.asyncio
async def test_finished_job_with_explicit_id_is_replaced(job_queue):
    job_queue.register(QueueName.CLEANUP, AsyncMock(return_value={}))
    await job_queue.enqueue(QueueName.CLEANUP, {"task": "job-history"}, JobOptions(job_id="nightly"))
    await job_queue.process_next(QueueName.CLEANUP)

    await job_queue.enqueue(QueueName.CLEANUP, {"task": "job-history"}, JobOptions(job_id="nightly"))

    job = await job_queue.get_job(QueueName.CLEANUP, "nightly")
    stats = await job_queue.get_queue_stats(QueueName.CLEANUP)
    assert job.state is JobState.WAITING
    assert (stats.waiting, stats.completed) == (1, 0)


@pytest.mark.asyncio
async def test_higher_priority_runs_first(job_queue):
    seen = []

    async def handler(job):
        seen.append(job.payload["label"])

    job_queue.register(QueueName.SEND_EMAIL, handler)
    await job_queue.enqueue_send_email({"label": "low"}, priority="low")
    await job_queue.enqueue_send_email({"label": "normal"})
    await job_queue.enqueue_send_email({"label": "high"}, priority="high")

    while await job_queue.process_next(QueueName.SEND_EMAIL):
        pass

    assert seen == ["high", "normal", "low"]
    assert PRIORITIES["high"] < PRIORITIES["low"]


@pytest.mark.asyncio
async def test_unknown_priority_is_rejected(job_queue):
    with pytest.raises(InvalidDataError):
        await job_queue.enqueue_send_email({}, priority="urgent")


@pytest.mark.asyncio
async def test_delayed_job_waits(job_queue, clock):
    handler = AsyncMock()
    job_queue.register(QueueName.CLEANUP, handler)
    await job_queue.enqueue_cleanup("cache-flush", delay=60)

    assert not await job_queue.process_next(QueueName.CLEANUP)
    clock.advance(60)
    assert await job_queue.process_next(QueueName.CLEANUP)
    handler.assert_awaited_once()


@pytest.mark.asyncio
async def test_abandoned_active_job_is_reclaimed(job_queue, clock):
    job_queue.register(QueueName.NOTIFY, AsyncMock())
    job_id = await job_queue.enqueue_notification(10, "ping")
    job = await job_queue._claim_next(QueueName.NOTIFY)
    assert job.state is JobState.ACTIVE

    clock.advance(299)
    assert await job_queue.reap_expired(QueueName.NOTIFY) == 0

    clock.advance(2)
    assert await job_queue.reap_expired(QueueName.NOTIFY) == 1
    reclaimed = await job_queue.get_job(QueueName.NOTIFY, job_id)
    assert reclaimed.state is JobState.DELAYED
    assert reclaimed.attempts == 1

    # The original worker finishing late must not overwrite the retry
    await job_queue._complete(job, "late")
    assert (await job_queue.get_job(QueueName.NOTIFY, job_id)).state is JobState.DELAYED


@pytest.mark.asyncio
async def test_job_without_handler_fails(job_queue):
    job_id = await job_queue.enqueue(QueueName.NOTIFY, {}, JobOptions(max_attempts=1))

    assert await job_queue.process_next(QueueName.NOTIFY)

    job = await job_queue.get_job(QueueName.NOTIFY, job_id)
    assert job.state is JobState.FAILED
    assert job.last_error == "No handler registered for notify"


@pytest.mark.asyncio
async def test_handler_timeout_fails_the_attempt(counter_store, rate_limiter, clock):
    job_queue = JobQueue(counter_store, rate_limiter, job_timeout=0.01, clock=clock)

    async def hang(job):
        await asyncio.sleep(1)

    job_queue.register(QueueName.NOTIFY, hang)
    job_id = await job_queue.enqueue_notification(10, "ping")

    await job_queue.process_next(QueueName.NOTIFY)

    job = await job_queue.get_job(QueueName.NOTIFY, job_id)
    assert job.state is JobState.DELAYED
    assert "timed out" in job.last_error


@pytest.mark.asyncio
async def test_cancel_removes_pending_job(job_queue):
    job_id = await job_queue.enqueue_notification(10, "ping")

    assert await job_queue.cancel_job(QueueName.NOTIFY, job_id)
    assert await job_queue.get_job(QueueName.NOTIFY, job_id) is None
    assert not await job_queue.cancel_job(QueueName.NOTIFY, job_id)
    assert (await job_queue.get_queue_stats(QueueName.NOTIFY)).waiting == 0


@pytest.mark.asyncio
async def test_pause_and_resume(job_queue):
    await job_queue.pause(QueueName.SEND_EMAIL)
    assert (await job_queue.get_queue_stats(QueueName.SEND_EMAIL)).paused

    await job_queue.resume(QueueName.SEND_EMAIL)
    assert not await job_queue.is_paused(QueueName.SEND_EMAIL)


@pytest.mark.asyncio
async def test_completed_history_is_trimmed(counter_store, rate_limiter, clock):
    job_queue = JobQueue(counter_store, rate_limiter, completed_retention_count=2, clock=clock)
    job_queue.register(QueueName.NOTIFY, AsyncMock())
    for _ in range(3):
        await job_queue.enqueue_notification(10, "ping")
        clock.advance(1)
        await job_queue.process_next(QueueName.NOTIFY)

    assert (await job_queue.get_queue_stats(QueueName.NOTIFY)).completed == 2

    clock.advance(86401)
    assert await job_queue.trim_history(QueueName.NOTIFY) == 2
    assert (await job_queue.get_queue_stats(QueueName.NOTIFY)).completed == 0


@pytest.mark.asyncio
async def test_clean_rejects_pending_states(job_queue):
    with pytest.raises(InvalidDataError):
        await job_queue.clean(QueueName.NOTIFY, JobState.WAITING, 0)


@pytest.mark.asyncio
async def test_all_stats_cover_every_queue(job_queue):
    await job_queue.enqueue_notification(10, "ping")

    stats = await job_queue.get_all_stats()

    assert set(stats) == {queue.value for queue in QueueName}
    assert stats["notify"].waiting == 1


@pytest.mark.asyncio
async def test_workers_process_jobs_until_stopped(job_queue):
    done = asyncio.Event()

    async def handler(job):
        done.set()
        return "ok"

    job_queue.register(QueueName.NOTIFY, handler)
    job_id = await job_queue.enqueue_notification(10, "ping")

    await job_queue.start()
    await asyncio.wait_for(done.wait(), timeout=1)
    await job_queue.stop()

    assert (await job_queue.get_job(QueueName.NOTIFY, job_id)).state is JobState.COMPLETED
