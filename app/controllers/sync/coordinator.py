import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from app.controllers.notify.notifier import EmailCacheInvalidator, Notifier, SyncEvent
from app.controllers.providers.base import AdapterRegistry
from app.controllers.providers.models import FetchOptions
from app.controllers.resilience.circuit_breaker import CircuitBreakerRegistry
from app.controllers.resilience.rate_limiter import FETCH_BUDGET, RateLimitBudget, RateLimiter
from app.controllers.sync.ingestion import MessageIngestionPipeline
from app.exceptions import BaseError, ProviderRateLimitedError
from app.models.account import Account
from app.models.base import utcnow
from app.repos.store import Store


@dataclass
class AccountResult:
    account_id: int
    success: bool
    message_count: int = 0
    error: str | None = None
    duration_ms: int = 0
    was_full_sync: bool = False


def breaker_name(account: Account) -> str:
    return f"provider:{account.provider.value}"


class ParallelFetchCoordinator:
    """Runs fetch + ingest for many accounts at once, isolating each account's failure."""

    def __init__(
        self,
        store: Store,
        adapters: AdapterRegistry,
        pipeline: MessageIngestionPipeline,
        breakers: CircuitBreakerRegistry,
        rate_limiter: RateLimiter,
        notifier: Notifier,
        cache_invalidator: EmailCacheInvalidator,
        fetch_budget: RateLimitBudget = FETCH_BUDGET,
        default_fetch_limit: int = 50,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._logger = logging.getLogger(__name__)
        self._store = store
        self._adapters = adapters
        self._pipeline = pipeline
        self._breakers = breakers
        self._rate_limiter = rate_limiter
        self._notifier = notifier
        self._cache_invalidator = cache_invalidator
        self._fetch_budget = fetch_budget
        self._default_fetch_limit = default_fetch_limit
        self._clock = clock
        self._broadcasts: set[asyncio.Task[None]] = set()

    async def fetch_accounts(
        self,
        owner_id: int,
        account_ids: list[int] | None = None,
        options: FetchOptions | None = None,
    ) -> list[AccountResult]:
        """Sync the owner's active, sync-enabled accounts, optionally only `account_ids`."""
        accounts = await self._store.list_owner_accounts(owner_id)
        eligible = [
            account
            for account in accounts
            if account.is_active and account.sync_enabled and (account_ids is None or account.id in account_ids)
        ]
        if not eligible:
            self._logger.debug(f"No eligible accounts to sync for owner {owner_id}")
            return []
        return await self.sync_accounts(eligible, options)

    async def sync_accounts(self, accounts: list[Account], options: FetchOptions | None = None) -> list[AccountResult]:
        options = options or FetchOptions(max_results=self._default_fetch_limit)
        results = await asyncio.gather(*(self._sync_isolated(account, options) for account in accounts))

        succeeded = sum(1 for result in results if result.success)
        self._logger.info(f"Synced {succeeded}/{len(accounts)} accounts")
        return list(results)

    async def _sync_isolated(self, account: Account, options: FetchOptions) -> AccountResult:
        started = time.perf_counter()
        try:
            inserted, was_full_sync = await self._sync_account(account, options)
        except Exception as e:
            duration_ms = int((time.perf_counter() - started) * 1000)
            error = e.message if isinstance(e, BaseError) else str(e)
            if isinstance(e, BaseError):
                self._logger.warning(f"Sync failed for {account.email} ({account.id}): {e}")
            else:
                self._logger.exception(f"Unexpected sync failure for {account.email} ({account.id})")
            return AccountResult(account_id=account.id, success=False, error=error, duration_ms=duration_ms)

        duration_ms = int((time.perf_counter() - started) * 1000)
        return AccountResult(
            account_id=account.id,
            success=True,
            message_count=inserted,
            duration_ms=duration_ms,
            was_full_sync=was_full_sync,
        )

    async def _sync_account(self, account: Account, options: FetchOptions) -> tuple[int, bool]:
        budget = await self._rate_limiter.allow_budget(self._fetch_budget, account.id)
        if not budget.allowed:
            raise ProviderRateLimitedError(
                f"Rate limited: fetch budget exhausted for account {account.id}", account_id=account.id, action="fetch"
            )

        adapter = self._adapters.get(account.provider)
        fetched = await self._breakers.call(breaker_name(account), adapter.fetch, account, options)
        report = await self._pipeline.ingest_report(account, fetched.messages)

        # Keep the old cursor when anything failed so the next incremental pass sees those messages again
        cursor = fetched.new_cursor if report.failed == 0 else None
        await self._store.update_account_cursor(account.id, cursor, self._clock())

        if report.inserted > 0:
            await self._announce(account, report.inserted)
        return report.inserted, fetched.was_full_sync

    async def _announce(self, account: Account, inserted: int) -> None:
        try:
            await self._cache_invalidator.invalidate_owner(account.owner_id)
        except Exception:
            self._logger.exception(f"Cache invalidation failed for account {account.id}")

        # Delivery runs in the background; a slow notifier must not hold up the sync
        task = asyncio.create_task(
            self._broadcast(account, SyncEvent(account_id=account.id, new_message_count=inserted)),
            name=f"sync-notify-{account.id}",
        )
        self._broadcasts.add(task)
        task.add_done_callback(self._broadcasts.discard)

    async def _broadcast(self, account: Account, event: SyncEvent) -> None:
        try:
            await self._notifier.broadcast_to_owner(account.owner_id, event)
        except Exception:
            self._logger.exception(f"Post-sync notification failed for account {account.id}")

    @property
    def pending_notifications(self) -> int:
        return len(self._broadcasts)

    async def drain_notifications(self) -> None:
        """Wait for every in-flight notification to finish."""
        if self._broadcasts:
            await asyncio.gather(*self._broadcasts)
