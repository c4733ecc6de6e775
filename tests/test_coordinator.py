import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from app.controllers.notify.notifier import EMAIL_SYNC_COMPLETE
from app.controllers.providers.base import AdapterRegistry
from app.controllers.providers.models import FetchOptions
from app.controllers.resilience.circuit_breaker import CircuitBreakerRegistry, CircuitState
from app.controllers.resilience.rate_limiter import RateLimitBudget
from app.controllers.sync.coordinator import ParallelFetchCoordinator
from app.controllers.sync.ingestion import MessageIngestionPipeline
from app.exceptions import ProviderAuthError, ProviderUnavailableError
from app.models.account import AccountProvider
from tests.fakes import NOW, FakeAdapter, FakeStore, make_account, make_raw


def build_coordinator(store, adapter, rate_limiter, breakers=None, fetch_budget=None):
    notifier = MagicMock()
    notifier.broadcast_to_owner = AsyncMock(return_value=True)
    invalidator = MagicMock()
    invalidator.invalidate_owner = AsyncMock(return_value=1)
    kwargs = {"fetch_budget": fetch_budget} if fetch_budget else {}
    coordinator = ParallelFetchCoordinator(
        store=store,
        adapters=AdapterRegistry([adapter]),
        pipeline=MessageIngestionPipeline(store, sleep=AsyncMock()),
        breakers=breakers or CircuitBreakerRegistry(),
        rate_limiter=rate_limiter,
        notifier=notifier,
        cache_invalidator=invalidator,
        clock=lambda: NOW,
        **kwargs,
    )
    return coordinator, notifier, invalidator


@pytest.mark.asyncio
async def test_one_failing_account_does_not_affect_others(rate_limiter):
    accounts = [make_account(account_id) for account_id in (1, 2, 3)]
    store = FakeStore(accounts)
    adapter = FakeAdapter(
        messages={1: [make_raw("a")], 3: [make_raw("b"), make_raw("c")]},
        errors={2: ProviderUnavailableError("IMAP server down")},
        cursor="42",
    )
    coordinator, _, _ = build_coordinator(store, adapter, rate_limiter)

    results = await coordinator.sync_accounts(accounts)

    by_id = {result.account_id: result for result in results}
    assert by_id[1].success and by_id[1].message_count == 1
    assert by_id[3].success and by_id[3].message_count == 2
    assert not by_id[2].success
    assert by_id[2].error == "IMAP server down"
    assert [update[0] for update in store.cursor_updates] == [1, 3]


@pytest.mark.asyncio
async def test_fetch_accounts_only_syncs_eligible_owned_accounts(rate_limiter):
    store = FakeStore(
        [
            make_account(1, owner_id=10),
            make_account(2, owner_id=10, sync_enabled=False),
            make_account(3, owner_id=10, is_active=False),
            make_account(4, owner_id=99),
            make_account(5, owner_id=10),
        ]
    )
    adapter = FakeAdapter()
    coordinator, _, _ = build_coordinator(store, adapter, rate_limiter)

    results = await coordinator.fetch_accounts(10)
    assert sorted(result.account_id for result in results) == [1, 5]

    results = await coordinator.fetch_accounts(10, account_ids=[5])
    assert [result.account_id for result in results] == [5]


@pytest.mark.asyncio
async def test_cursor_is_kept_when_a_message_failed(rate_limiter):
    account = make_account(incremental_cursor="old")
    store = FakeStore([account])
    store.transient_failures["bad"] = 10
    adapter = FakeAdapter(messages={1: [make_raw("good"), make_raw("bad")]}, cursor="new")
    coordinator, _, _ = build_coordinator(store, adapter, rate_limiter)

    [result] = await coordinator.sync_accounts([account])

    assert result.success
    assert result.message_count == 1
    assert store.cursor_updates == [(1, None, NOW)]
    assert account.incremental_cursor == "old"
    assert account.last_sync_at == NOW


@pytest.mark.asyncio
async def test_cursor_advances_after_clean_ingest(rate_limiter):
    account = make_account()
    store = FakeStore([account])
    adapter = FakeAdapter(messages={1: [make_raw("m1")]}, cursor="99")
    coordinator, _, _ = build_coordinator(store, adapter, rate_limiter)

    [result] = await coordinator.sync_accounts([account])

    assert result.was_full_sync
    assert account.incremental_cursor == "99"


@pytest.mark.asyncio
async def test_fetch_budget_exhaustion_fails_without_fetching(rate_limiter):
    account = make_account()
    store = FakeStore([account])
    adapter = FakeAdapter()
    coordinator, _, _ = build_coordinator(
        store, adapter, rate_limiter, fetch_budget=RateLimitBudget("fetch", 1, 60)
    )

    [first] = await coordinator.sync_accounts([account])
    [second] = await coordinator.sync_accounts([account])

    assert first.success
    assert not second.success
    assert second.error.startswith("Rate limited")
    assert adapter.fetched == [1]


@pytest.mark.asyncio
async def test_new_messages_invalidate_cache_and_notify_owner(rate_limiter):
    account = make_account(owner_id=7)
    store = FakeStore([account])
    adapter = FakeAdapter(messages={1: [make_raw("m1"), make_raw("m2")]})
    coordinator, notifier, invalidator = build_coordinator(store, adapter, rate_limiter)

    await coordinator.sync_accounts([account])
    await coordinator.drain_notifications()

    invalidator.invalidate_owner.assert_awaited_once_with(7)
    owner_id, event = notifier.broadcast_to_owner.await_args.args
    assert owner_id == 7
    assert event.type == EMAIL_SYNC_COMPLETE
    assert event.to_payload()["newMessageCount"] == 2


@pytest.mark.asyncio
async def test_no_notification_without_new_messages(rate_limiter):
    account = make_account()
    store = FakeStore([account])
    coordinator, notifier, invalidator = build_coordinator(store, FakeAdapter(), rate_limiter)

    await coordinator.sync_accounts([account])

    notifier.broadcast_to_owner.assert_not_awaited()
    invalidator.invalidate_owner.assert_not_awaited()


@pytest.mark.asyncio
async def test_notification_failure_does_not_fail_the_sync(rate_limiter):
    account = make_account()
    store = FakeStore([account])
    adapter = FakeAdapter(messages={1: [make_raw("m1")]})
    coordinator, notifier, _ = build_coordinator(store, adapter, rate_limiter)
    notifier.broadcast_to_owner.side_effect = RuntimeError("webhook exploded")

    [result] = await coordinator.sync_accounts([account])

    assert result.success
    await coordinator.drain_notifications()
    assert coordinator.pending_notifications == 0


@pytest.mark.asyncio
async def test_provider_failures_open_the_provider_circuit(rate_limiter):
    accounts = [make_account(account_id) for account_id in range(1, 8)]
    store = FakeStore(accounts)
    adapter = FakeAdapter(errors={account.id: ProviderUnavailableError("down") for account in accounts})
    breakers = CircuitBreakerRegistry()
    coordinator, _, _ = build_coordinator(store, adapter, rate_limiter, breakers=breakers)

    results = await coordinator.sync_accounts(accounts, FetchOptions())

    assert not any(result.success for result in results)
    assert breakers.get(f"provider:{AccountProvider.imap.value}").state is CircuitState.OPEN
    # The seventh account was short-circuited
    assert len(adapter.fetched) == 6


@pytest.mark.asyncio
async def test_slow_notifier_does_not_hold_up_the_sync(rate_limiter):
    account = make_account()
    store = FakeStore([account])
    adapter = FakeAdapter(messages={1: [make_raw("m1")]})
    coordinator, notifier, _ = build_coordinator(store, adapter, rate_limiter)
    delivered = asyncio.Event()

    async def slow_broadcast(owner_id, event):
        await delivered.wait()
        return True

    notifier.broadcast_to_owner.side_effect = slow_broadcast

    [result] = await asyncio.wait_for(coordinator.sync_accounts([account]), timeout=1)

    assert result.success
    assert coordinator.pending_notifications == 1

    delivered.set()
    await coordinator.drain_notifications()
    assert coordinator.pending_notifications == 0
    notifier.broadcast_to_owner.assert_awaited_once()


@pytest.mark.asyncio
async def test_rejected_credentials_do_not_open_the_provider_circuit(rate_limiter):
    revoked = [make_account(account_id) for account_id in range(1, 8)]
    healthy = make_account(8)
    store = FakeStore([*revoked, healthy])
    adapter = FakeAdapter(
        messages={8: [make_raw("m1")]},
        errors={account.id: ProviderAuthError("token revoked") for account in revoked},
    )
    breakers = CircuitBreakerRegistry()
    coordinator, _, _ = build_coordinator(store, adapter, rate_limiter, breakers=breakers)

    results = await coordinator.sync_accounts(revoked, FetchOptions())
    [result] = await coordinator.sync_accounts([healthy], FetchOptions())

    assert all(r.error == "token revoked" for r in results)
    assert breakers.get(f"provider:{AccountProvider.imap.value}").state is CircuitState.CLOSED
    assert result.success
    assert result.message_count == 1
