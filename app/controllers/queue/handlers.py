import logging
from typing import Any

from app.controllers.notify.notifier import EmailCacheInvalidator, Notifier, OwnerEvent
from app.controllers.providers.base import AdapterRegistry
from app.controllers.providers.models import FetchOptions, OutgoingMessage
from app.controllers.queue.job import Job, QueueName
from app.controllers.queue.job_queue import JobQueue
from app.controllers.resilience.circuit_breaker import CircuitBreakerRegistry
from app.controllers.resilience.lock import DistributedLock
from app.controllers.resilience.rate_limiter import SEND_BUDGET, RateLimitBudget, RateLimiter
from app.controllers.sync.coordinator import ParallelFetchCoordinator, breaker_name
from app.exceptions import EntityNotFoundError, InvalidDataError, ProviderError, ProviderRateLimitedError
from app.models.account import Account
from app.repos.store import Store

BULK_BATCH_SIZE = 50
CACHE_FLUSH_LOCK = "cache-flush"


class JobHandlers:
    """Work done by each queue. A handler that raises sends its job down the retry path."""

    def __init__(
        self,
        store: Store,
        adapters: AdapterRegistry,
        breakers: CircuitBreakerRegistry,
        rate_limiter: RateLimiter,
        coordinator: ParallelFetchCoordinator,
        notifier: Notifier,
        cache_invalidator: EmailCacheInvalidator,
        lock: DistributedLock,
        job_queue: JobQueue,
        send_budget: RateLimitBudget = SEND_BUDGET,
        fetch_limit: int = 50,
    ) -> None:
        self._logger = logging.getLogger(__name__)
        self._store = store
        self._adapters = adapters
        self._breakers = breakers
        self._rate_limiter = rate_limiter
        self._coordinator = coordinator
        self._notifier = notifier
        self._cache_invalidator = cache_invalidator
        self._lock = lock
        self._job_queue = job_queue
        self._send_budget = send_budget
        self._fetch_limit = fetch_limit

        self._bulk_actions = {
            "archive": self._archive,
            "delete": self._delete,
            "mark-read": self._mark_read,
            "mark-unread": self._mark_unread,
        }

    def register(self) -> None:
        self._job_queue.register(QueueName.SEND_EMAIL, self.send_email)
        self._job_queue.register(QueueName.SYNC_ACCOUNT, self.sync_account)
        self._job_queue.register(QueueName.BULK_MUTATE, self.bulk_mutate)
        self._job_queue.register(QueueName.NOTIFY, self.notify)
        self._job_queue.register(QueueName.CLEANUP, self.cleanup)

    async def _owned_account(self, account_id: int, owner_id: int | None) -> Account:
        account = await self._store.get_account(account_id)
        if account is None or (owner_id is not None and account.owner_id != owner_id):
            raise EntityNotFoundError(f"Account {account_id} not found", account_id=account_id)
        return account

    async def send_email(self, job: Job) -> dict[str, Any]:
        payload = job.payload
        account = await self._owned_account(payload["account_id"], payload.get("owner_id"))

        budget = await self._rate_limiter.allow_budget(self._send_budget, account.id)
        if not budget.allowed:
            raise ProviderRateLimitedError(
                f"Send budget exhausted for account {account.id}", account_id=account.id, action="send"
            )

        message = OutgoingMessage(
            to=payload["to"],
            subject=payload.get("subject", ""),
            html_body=payload.get("html_body"),
            text_body=payload.get("text_body"),
            cc=payload.get("cc", []),
            bcc=payload.get("bcc", []),
            in_reply_to=payload.get("in_reply_to"),
        )
        adapter = self._adapters.get(account.provider)
        result = await self._breakers.call(breaker_name(account), adapter.send, account, message)
        if not result.success:
            raise ProviderError(result.error or "Send failed", account_id=account.id, provider=account.provider.value)

        self._logger.info(f"Sent message for account {account.id}: {result.provider_message_id}")
        return {"provider_message_id": result.provider_message_id}

    async def sync_account(self, job: Job) -> dict[str, Any]:
        payload = job.payload
        account = await self._owned_account(payload["account_id"], payload.get("owner_id"))

        options = FetchOptions(max_results=self._fetch_limit, full_sync=payload.get("full_sync", False))
        [result] = await self._coordinator.sync_accounts([account], options)
        if not result.success:
            raise ProviderError(
                result.error or "Sync failed", account_id=account.id, provider=account.provider.value, action="sync"
            )
        return {"message_count": result.message_count, "was_full_sync": result.was_full_sync}

    async def bulk_mutate(self, job: Job) -> dict[str, Any]:
        owner_id = job.payload["owner_id"]
        action = job.payload["action"]
        thread_ids = list(job.payload.get("thread_ids", []))

        apply = self._bulk_actions.get(action)
        if apply is None:
            raise InvalidDataError(f"Unknown bulk action {action}", queue=QueueName.BULK_MUTATE.value, job_id=job.id)

        affected = 0
        for start in range(0, len(thread_ids), BULK_BATCH_SIZE):
            affected += await apply(owner_id, thread_ids[start : start + BULK_BATCH_SIZE])

        if affected:
            await self._cache_invalidator.invalidate_owner(owner_id)
        self._logger.info(f"Bulk {action} for owner {owner_id} touched {affected} of {len(thread_ids)} threads")
        return {"affected": affected}

    async def _archive(self, owner_id: int, thread_ids: list[int]) -> int:
        return await self._store.archive_threads(owner_id, thread_ids)

    async def _delete(self, owner_id: int, thread_ids: list[int]) -> int:
        return await self._store.delete_threads(owner_id, thread_ids)

    async def _mark_read(self, owner_id: int, thread_ids: list[int]) -> int:
        return await self._store.set_threads_read(owner_id, thread_ids, True)

    async def _mark_unread(self, owner_id: int, thread_ids: list[int]) -> int:
        return await self._store.set_threads_read(owner_id, thread_ids, False)

    async def notify(self, job: Job) -> dict[str, Any]:
        event = OwnerEvent(type=job.payload["type"], data=job.payload.get("data", {}))
        delivered = await self._notifier.broadcast_to_owner(job.payload["owner_id"], event)
        return {"delivered": delivered}

    async def cleanup(self, job: Job) -> dict[str, Any]:
        task = job.payload.get("task")
        if task == "cache-flush":
            async with self._lock.hold(CACHE_FLUSH_LOCK, ttl_seconds=60):
                deleted = await self._cache_invalidator.clear_all()
            return {"deleted": deleted}
        if task == "job-history":
            removed = 0
            for queue in QueueName:
                removed += await self._job_queue.trim_history(queue)
            self._logger.info(f"Trimmed {removed} finished jobs")
            return {"removed": removed}
        raise InvalidDataError(f"Unknown cleanup task {task}", queue=QueueName.CLEANUP.value, job_id=job.id)
