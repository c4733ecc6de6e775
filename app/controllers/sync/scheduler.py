import asyncio
import logging
import time
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Callable

from app.controllers.providers.models import FetchOptions
from app.controllers.resilience.rate_limiter import SYNC_BUDGET, RateLimitBudget, RateLimiter
from app.controllers.sync.coordinator import AccountResult, ParallelFetchCoordinator
from app.exceptions import BaseError
from app.models.account import Account
from app.models.base import utcnow
from app.repos.store import Store


@dataclass
class SyncPassSummary:
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    new_messages: int = 0
    duration_ms: int = 0


@dataclass
class SchedulerState:
    is_running: bool = False
    is_syncing: bool = False
    last_pass_started_at: datetime | None = None
    last_pass_summary: SyncPassSummary | None = None


@dataclass
class SyncOutcome:
    success: bool
    message_count: int = 0
    error: str | None = None


class SyncScheduler:
    """Periodically syncs every due account.

    At most one pass runs at a time; a tick that lands while a pass is in flight is
    skipped. Within a pass accounts are synced in chunks of `max_concurrent_syncs`.
    """

    def __init__(
        self,
        store: Store,
        coordinator: ParallelFetchCoordinator,
        rate_limiter: RateLimiter,
        sync_budget: RateLimitBudget = SYNC_BUDGET,
        interval_seconds: int = 15,
        min_interval_seconds: int = 10,
        max_concurrent_syncs: int = 5,
        default_fetch_limit: int = 50,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._logger = logging.getLogger(__name__)
        self._store = store
        self._coordinator = coordinator
        self._rate_limiter = rate_limiter
        self._sync_budget = sync_budget
        self._min_interval_seconds = min_interval_seconds
        self._interval_seconds = max(interval_seconds, min_interval_seconds)
        self._max_concurrent_syncs = max(1, max_concurrent_syncs)
        self._default_fetch_limit = default_fetch_limit
        self._clock = clock

        self._state = SchedulerState()
        self._timer_task: asyncio.Task[None] | None = None
        self._pass_task: asyncio.Task[SyncPassSummary | None] | None = None

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def interval_seconds(self) -> int:
        return self._interval_seconds

    async def start(self) -> None:
        if self._state.is_running:
            self._logger.warning("Sync scheduler already running")
            return

        self._state.is_running = True
        self._logger.info(f"Starting sync scheduler, interval {self._interval_seconds}s")
        self._tick()
        self._timer_task = asyncio.create_task(self._timer_loop(), name="sync-scheduler-timer")

    async def stop(self) -> None:
        """Stop the timer and wait for the pass in flight, if any."""
        if not self._state.is_running:
            return
        self._state.is_running = False

        if self._timer_task and not self._timer_task.done():
            self._timer_task.cancel()
            try:
                await self._timer_task
            except asyncio.CancelledError:
                pass
        self._timer_task = None

        if self._pass_task and not self._pass_task.done():
            self._logger.info("Waiting for in-flight sync pass to finish")
            await self._pass_task
        self._pass_task = None
        await self._coordinator.drain_notifications()
        self._logger.info("Sync scheduler stopped")

    async def _timer_loop(self) -> None:
        while self._state.is_running:
            await asyncio.sleep(self._interval_seconds)
            self._tick()

    def _tick(self) -> None:
        if self._state.is_syncing:
            self._logger.debug("Previous sync pass still running, skipping tick")
            return
        self._state.is_syncing = True
        self._pass_task = asyncio.create_task(self._run_pass(), name="sync-pass")

    async def _run_pass(self) -> SyncPassSummary | None:
        try:
            return await self.sync_all()
        except Exception:
            self._logger.exception("Sync pass failed")
            return None

    async def sync_all(self) -> SyncPassSummary:
        """Run one pass over every due account."""
        started = time.perf_counter()
        now = self._clock()
        self._state.is_syncing = True
        self._state.last_pass_started_at = now

        try:
            due = await self._store.list_due_accounts(now)
            if not due:
                self._logger.debug("No accounts due for sync")
                summary = SyncPassSummary(duration_ms=int((time.perf_counter() - started) * 1000))
                self._state.last_pass_summary = summary
                return summary

            runnable: list[Account] = []
            skipped = 0
            for account in due:
                budget = await self._rate_limiter.allow_budget(self._sync_budget, account.id)
                if budget.allowed:
                    runnable.append(account)
                else:
                    skipped += 1
                    self._logger.info(f"Skipping {account.email} ({account.id}): sync rate limit reached")

            options = FetchOptions(max_results=self._default_fetch_limit)
            results: list[AccountResult] = []
            for start in range(0, len(runnable), self._max_concurrent_syncs):
                chunk = runnable[start : start + self._max_concurrent_syncs]
                results.extend(await self._coordinator.sync_accounts(chunk, options))

            summary = SyncPassSummary(
                total=len(due),
                succeeded=sum(1 for result in results if result.success),
                failed=sum(1 for result in results if not result.success),
                skipped=skipped,
                new_messages=sum(result.message_count for result in results),
                duration_ms=int((time.perf_counter() - started) * 1000),
            )
            self._state.last_pass_summary = summary
            self._logger.info(
                f"Sync pass complete: {summary.succeeded} succeeded, {summary.failed} failed, "
                f"{summary.skipped} skipped, {summary.new_messages} new messages in {summary.duration_ms}ms"
            )
            return summary
        finally:
            self._state.is_syncing = False

    async def sync_account_on_demand(self, account_id: int, owner_id: int, full_sync: bool = False) -> SyncOutcome:
        """Sync one account now, regardless of its schedule. Still subject to the sync budget.

        Failures come back as an unsuccessful outcome rather than an exception.
        """
        try:
            return await self._sync_account_on_demand(account_id, owner_id, full_sync)
        except Exception as e:
            error = e.message if isinstance(e, BaseError) else str(e)
            if isinstance(e, BaseError):
                self._logger.warning(f"On-demand sync failed for account {account_id}: {e}")
            else:
                self._logger.exception(f"Unexpected on-demand sync failure for account {account_id}")
            return SyncOutcome(success=False, error=error)

    async def _sync_account_on_demand(self, account_id: int, owner_id: int, full_sync: bool) -> SyncOutcome:
        account = await self._store.get_account(account_id)
        if account is None or account.owner_id != owner_id:
            return SyncOutcome(success=False, error="Account not found")

        budget = await self._rate_limiter.allow_budget(self._sync_budget, account.id)
        if not budget.allowed:
            return SyncOutcome(success=False, error="Sync rate limit exceeded, try again later")

        options = FetchOptions(max_results=self._default_fetch_limit, full_sync=full_sync)
        [result] = await self._coordinator.sync_accounts([account], options)
        return SyncOutcome(success=result.success, message_count=result.message_count, error=result.error)

    def get_status(self) -> dict[str, Any]:
        summary = self._state.last_pass_summary
        return {
            "is_running": self._state.is_running,
            "is_syncing": self._state.is_syncing,
            "interval_seconds": self._interval_seconds,
            "max_concurrent_syncs": self._max_concurrent_syncs,
            "last_pass_started_at": self._state.last_pass_started_at,
            "last_pass_summary": asdict(summary) if summary else None,
        }

    async def get_account_sync_stats(self, account_id: int) -> dict[str, Any] | None:
        account = await self._store.get_account(account_id)
        if account is None:
            return None

        next_sync_in: int | None = None
        if account.is_active and account.sync_enabled:
            if account.last_sync_at is None:
                next_sync_in = 0
            else:
                elapsed = (self._clock() - account.last_sync_at).total_seconds()
                next_sync_in = max(0, int(account.sync_frequency_seconds - elapsed))

        return {
            "account_id": account.id,
            "email": account.email,
            "provider": account.provider.value,
            "sync_enabled": account.sync_enabled,
            "sync_frequency_seconds": account.sync_frequency_seconds,
            "last_sync_at": account.last_sync_at,
            "next_sync_in": next_sync_in,
        }

    async def enable_account_sync(self, account_id: int) -> None:
        await self._store.set_account_sync(account_id, True)
        self._logger.info(f"Enabled sync for account {account_id}")

    async def disable_account_sync(self, account_id: int) -> None:
        await self._store.set_account_sync(account_id, False)
        self._logger.info(f"Disabled sync for account {account_id}")

    async def update_sync_frequency(self, account_id: int, seconds: int) -> int:
        """Set the account's sync frequency, floored at the minimum interval. Returns the stored value."""
        frequency = max(seconds, self._min_interval_seconds)
        await self._store.set_account_sync_frequency(account_id, frequency)
        self._logger.info(f"Sync frequency for account {account_id} set to {frequency}s")
        return frequency
