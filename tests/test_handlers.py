from unittest.mock import AsyncMock, MagicMock

import pytest

from app.controllers.notify.notifier import EmailCacheInvalidator
from app.controllers.providers.base import AdapterRegistry
from app.controllers.providers.models import SendResult
from app.controllers.queue.handlers import JobHandlers
from app.controllers.queue.job import Job, QueueName
from app.controllers.queue.job_queue import JobQueue
from app.controllers.resilience.circuit_breaker import CircuitBreakerRegistry
from app.controllers.resilience.lock import DistributedLock
from app.controllers.resilience.rate_limiter import RateLimitBudget
from app.controllers.sync.coordinator import AccountResult
from app.exceptions import (
    EntityNotFoundError,
    InvalidDataError,
    LockNotAcquiredError,
    ProviderError,
    ProviderRateLimitedError,
)
from tests.fakes import FakeAdapter, FakeStore, make_account


@pytest.fixture
def store() -> FakeStore:
    return FakeStore([make_account(1, owner_id=10)])


@pytest.fixture
def adapter() -> FakeAdapter:
    return FakeAdapter()


@pytest.fixture
def handlers(store, adapter, counter_store, rate_limiter, clock) -> JobHandlers:
    coordinator = MagicMock()
    coordinator.sync_accounts = AsyncMock(return_value=[AccountResult(account_id=1, success=True, message_count=3)])
    notifier = MagicMock()
    notifier.broadcast_to_owner = AsyncMock(return_value=True)
    return JobHandlers(
        store=store,
        adapters=AdapterRegistry([adapter]),
        breakers=CircuitBreakerRegistry(),
        rate_limiter=rate_limiter,
        coordinator=coordinator,
        notifier=notifier,
        cache_invalidator=EmailCacheInvalidator(counter_store),
        lock=DistributedLock(counter_store, retry_delay=0),
        job_queue=JobQueue(counter_store, rate_limiter, clock=clock),
        send_budget=RateLimitBudget("send", 1, 3600),
    )


def make_job(queue: QueueName, payload: dict) -> Job:
    return Job(id="job-1", queue=queue, payload=payload, created_at=0.0)


@pytest.mark.asyncio
async def test_bulk_archive_runs_in_batches_of_fifty(handlers, store, counter_store):
    await counter_store.set("email:threads:10:page-1", "[]")
    job = make_job(QueueName.BULK_MUTATE, {"owner_id": 10, "action": "archive", "thread_ids": list(range(120))})

    result = await handlers.bulk_mutate(job)

    assert result == {"affected": 120}
    assert [len(batch) for batch in store.archived] == [50, 50, 20]
    assert await counter_store.get("email:threads:10:page-1") is None


@pytest.mark.asyncio
async def test_bulk_mark_read_and_delete(handlers):
    for action in ("mark-read", "mark-unread", "delete"):
        job = make_job(QueueName.BULK_MUTATE, {"owner_id": 10, "action": action, "thread_ids": [1, 2, 3]})
        assert (await handlers.bulk_mutate(job))["affected"] == 3


@pytest.mark.asyncio
async def test_unknown_bulk_action_is_rejected(handlers):
    job = make_job(QueueName.BULK_MUTATE, {"owner_id": 10, "action": "snooze", "thread_ids": [1]})

    with pytest.raises(InvalidDataError):
        await handlers.bulk_mutate(job)


@pytest.mark.asyncio
async def test_send_email_respects_send_budget(handlers):
    job = make_job(QueueName.SEND_EMAIL, {"account_id": 1, "owner_id": 10, "to": ["bob@example.com"], "subject": "Hi"})

    assert await handlers.send_email(job) == {"provider_message_id": "<sent-1@example.com>"}
    with pytest.raises(ProviderRateLimitedError):
        await handlers.send_email(job)


@pytest.mark.asyncio
async def test_send_email_raises_when_provider_rejects(handlers, adapter):
    adapter.send = AsyncMock(return_value=SendResult(success=False, error="mailbox full"))
    job = make_job(QueueName.SEND_EMAIL, {"account_id": 1, "to": ["bob@example.com"]})

    with pytest.raises(ProviderError, match="mailbox full"):
        await handlers.send_email(job)


@pytest.mark.asyncio
async def test_send_email_for_another_owner_is_not_found(handlers):
    job = make_job(QueueName.SEND_EMAIL, {"account_id": 1, "owner_id": 99, "to": ["bob@example.com"]})

    with pytest.raises(EntityNotFoundError):
        await handlers.send_email(job)


@pytest.mark.asyncio
async def test_sync_account_delegates_to_coordinator(handlers):
    job = make_job(QueueName.SYNC_ACCOUNT, {"account_id": 1, "owner_id": 10, "full_sync": True})

    result = await handlers.sync_account(job)

    assert result == {"message_count": 3, "was_full_sync": False}
    [accounts, options] = handlers._coordinator.sync_accounts.await_args.args
    assert [account.id for account in accounts] == [1]
    assert options.full_sync


@pytest.mark.asyncio
async def test_failed_sync_raises_for_retry(handlers):
    handlers._coordinator.sync_accounts.return_value = [AccountResult(account_id=1, success=False, error="timeout")]
    job = make_job(QueueName.SYNC_ACCOUNT, {"account_id": 1, "owner_id": 10})

    with pytest.raises(ProviderError, match="timeout"):
        await handlers.sync_account(job)


@pytest.mark.asyncio
async def test_notify_broadcasts_owner_event(handlers):
    job = make_job(QueueName.NOTIFY, {"owner_id": 10, "type": "thread_archived", "data": {"threadId": 4}})

    assert await handlers.notify(job) == {"delivered": True}

    owner_id, event = handlers._notifier.broadcast_to_owner.await_args.args
    assert owner_id == 10
    assert event.to_payload()["threadId"] == 4


@pytest.mark.asyncio
async def test_cache_flush_clears_every_email_key(handlers, counter_store):
    await counter_store.set("email:threads:10:page-1", "[]")
    await counter_store.set("email:threads:11:page-1", "[]")
    await counter_store.set("ratelimit:send:1:0", "1")

    result = await handlers.cleanup(make_job(QueueName.CLEANUP, {"task": "cache-flush"}))

    assert result == {"deleted": 2}
    assert await counter_store.get("ratelimit:send:1:0") == "1"
    assert await counter_store.get("lock:cache-flush") is None


@pytest.mark.asyncio
async def test_cache_flush_needs_the_lock(handlers, counter_store):
    await counter_store.set("lock:cache-flush", "other-worker")

    with pytest.raises(LockNotAcquiredError):
        await handlers.cleanup(make_job(QueueName.CLEANUP, {"task": "cache-flush"}))


@pytest.mark.asyncio
async def test_job_history_cleanup_and_unknown_task(handlers):
    assert await handlers.cleanup(make_job(QueueName.CLEANUP, {"task": "job-history"})) == {"removed": 0}

    with pytest.raises(InvalidDataError):
        await handlers.cleanup(make_job(QueueName.CLEANUP, {"task": "vacuum"}))


def test_register_covers_every_queue(handlers):
    handlers.register()

    assert set(handlers._job_queue._handlers) == set(QueueName)
