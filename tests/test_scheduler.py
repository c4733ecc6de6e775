import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from app.controllers.providers.base import AdapterRegistry
from app.controllers.resilience.circuit_breaker import CircuitBreakerRegistry
from app.controllers.resilience.rate_limiter import RateLimitBudget
from app.controllers.sync.coordinator import ParallelFetchCoordinator
from app.controllers.sync.ingestion import MessageIngestionPipeline
from app.controllers.sync.scheduler import SyncScheduler
from app.exceptions import ProviderAuthError, TransientStoreError
from tests.fakes import NOW, FakeAdapter, FakeStore, make_account, make_raw


def build_scheduler(store, adapter, rate_limiter, **kwargs):
    notifier = MagicMock()
    notifier.broadcast_to_owner = AsyncMock(return_value=True)
    invalidator = MagicMock()
    invalidator.invalidate_owner = AsyncMock(return_value=0)
    coordinator = ParallelFetchCoordinator(
        store=store,
        adapters=AdapterRegistry([adapter]),
        pipeline=MessageIngestionPipeline(store, sleep=AsyncMock()),
        breakers=CircuitBreakerRegistry(),
        rate_limiter=rate_limiter,
        notifier=notifier,
        cache_invalidator=invalidator,
        clock=lambda: NOW,
    )
    return SyncScheduler(store, coordinator, rate_limiter, clock=lambda: NOW, **kwargs)


def test_account_is_due_once_its_frequency_has_elapsed():
    assert make_account(last_sync_at=NOW - timedelta(seconds=20), sync_frequency_seconds=15).is_due(NOW)
    assert not make_account(last_sync_at=NOW - timedelta(seconds=5), sync_frequency_seconds=15).is_due(NOW)
    assert make_account(last_sync_at=None).is_due(NOW)


@pytest.mark.asyncio
async def test_sync_all_only_syncs_due_accounts(rate_limiter):
    store = FakeStore(
        [
            make_account(1, last_sync_at=NOW - timedelta(seconds=20)),
            make_account(2, last_sync_at=NOW - timedelta(seconds=5)),
            make_account(3, last_sync_at=None),
            make_account(4, last_sync_at=None, sync_enabled=False),
        ]
    )
    adapter = FakeAdapter(messages={1: [make_raw("m1")]})
    scheduler = build_scheduler(store, adapter, rate_limiter)

    summary = await scheduler.sync_all()

    assert sorted(adapter.fetched) == [1, 3]
    assert summary.total == 2
    assert summary.succeeded == 2
    assert summary.new_messages == 1
    assert scheduler.state.last_pass_summary == summary
    assert not scheduler.state.is_syncing


@pytest.mark.asyncio
async def test_sync_all_caps_concurrency(rate_limiter):
    store = FakeStore([make_account(account_id) for account_id in range(1, 13)])
    adapter = FakeAdapter(delay=0.01)
    scheduler = build_scheduler(store, adapter, rate_limiter, max_concurrent_syncs=5)

    summary = await scheduler.sync_all()

    assert summary.succeeded == 12
    assert len(adapter.fetched) == 12
    assert adapter.max_in_flight == 5


@pytest.mark.asyncio
async def test_sync_all_counts_failures_and_rate_limited_skips(rate_limiter):
    store = FakeStore([make_account(1), make_account(2), make_account(3)])
    adapter = FakeAdapter(errors={2: ProviderAuthError("token revoked")})
    scheduler = build_scheduler(store, adapter, rate_limiter, sync_budget=RateLimitBudget("sync", 0, 300))

    summary = await scheduler.sync_all()

    assert summary.skipped == 3
    assert adapter.fetched == []

    scheduler = build_scheduler(store, adapter, rate_limiter)
    summary = await scheduler.sync_all()

    assert summary.succeeded == 2
    assert summary.failed == 1


@pytest.mark.asyncio
async def test_tick_is_skipped_while_a_pass_is_running(rate_limiter):
    scheduler = build_scheduler(FakeStore(), FakeAdapter(), rate_limiter)
    scheduler.state.is_syncing = True

    scheduler._tick()

    assert scheduler._pass_task is None


@pytest.mark.asyncio
async def test_start_runs_a_pass_immediately_and_stop_waits_for_it(rate_limiter):
    store = FakeStore([make_account(1), make_account(2)])
    adapter = FakeAdapter(delay=0.01)
    scheduler = build_scheduler(store, adapter, rate_limiter)

    await scheduler.start()
    assert scheduler.state.is_running
    await asyncio.sleep(0)
    await scheduler.stop()

    assert sorted(adapter.fetched) == [1, 2]
    assert not scheduler.state.is_running
    assert scheduler.state.last_pass_summary.succeeded == 2


def test_interval_is_floored_at_minimum():
    scheduler = SyncScheduler(MagicMock(), MagicMock(), MagicMock(), interval_seconds=3, min_interval_seconds=10)
    assert scheduler.interval_seconds == 10


@pytest.mark.asyncio
async def test_sync_account_on_demand(rate_limiter):
    store = FakeStore([make_account(1, owner_id=10)])
    adapter = FakeAdapter(messages={1: [make_raw("m1")]})
    scheduler = build_scheduler(store, adapter, rate_limiter, sync_budget=RateLimitBudget("sync", 1, 300))

    outcome = await scheduler.sync_account_on_demand(1, owner_id=10, full_sync=True)
    assert outcome.success
    assert outcome.message_count == 1

    outcome = await scheduler.sync_account_on_demand(1, owner_id=10)
    assert not outcome.success
    assert outcome.error == "Sync rate limit exceeded, try again later"


@pytest.mark.asyncio
async def test_sync_account_on_demand_checks_ownership(rate_limiter):
    store = FakeStore([make_account(1, owner_id=10)])
    adapter = FakeAdapter()
    scheduler = build_scheduler(store, adapter, rate_limiter)

    assert (await scheduler.sync_account_on_demand(1, owner_id=11)).error == "Account not found"
    assert (await scheduler.sync_account_on_demand(404, owner_id=10)).error == "Account not found"
    assert adapter.fetched == []


@pytest.mark.asyncio
async def test_sync_account_on_demand_reports_store_outage(rate_limiter):
    store = FakeStore([make_account(1, owner_id=10)])
    store.get_account = AsyncMock(side_effect=TransientStoreError("db down"))
    adapter = FakeAdapter()
    scheduler = build_scheduler(store, adapter, rate_limiter)

    outcome = await scheduler.sync_account_on_demand(1, owner_id=10)

    assert not outcome.success
    assert outcome.error == "db down"
    assert adapter.fetched == []


@pytest.mark.asyncio
async def test_sync_account_on_demand_reports_coordinator_crash(rate_limiter):
    store = FakeStore([make_account(1, owner_id=10)])
    scheduler = build_scheduler(store, FakeAdapter(), rate_limiter)
    scheduler._coordinator.sync_accounts = AsyncMock(side_effect=RuntimeError("boom"))

    outcome = await scheduler.sync_account_on_demand(1, owner_id=10)

    assert not outcome.success
    assert outcome.error == "boom"


@pytest.mark.asyncio
async def test_account_sync_controls(rate_limiter):
    account = make_account(1, last_sync_at=NOW - timedelta(seconds=4), sync_frequency_seconds=15)
    store = FakeStore([account])
    scheduler = build_scheduler(store, FakeAdapter(), rate_limiter)

    stats = await scheduler.get_account_sync_stats(1)
    assert stats["next_sync_in"] == 11

    await scheduler.disable_account_sync(1)
    assert not account.sync_enabled
    assert (await scheduler.get_account_sync_stats(1))["next_sync_in"] is None

    await scheduler.enable_account_sync(1)
    assert account.sync_enabled

    assert await scheduler.update_sync_frequency(1, 5) == 10
    assert account.sync_frequency_seconds == 10
    assert await scheduler.get_account_sync_stats(404) is None
