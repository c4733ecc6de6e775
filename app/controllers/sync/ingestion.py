import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from app.controllers.providers.models import RawMessage
from app.exceptions import TransientStoreError
from app.models.account import Account
from app.repos.store import Store


@dataclass
class IngestReport:
    inserted: int = 0
    duplicates: int = 0
    failed: int = 0

    def merge(self, other: "IngestReport") -> None:
        self.inserted += other.inserted
        self.duplicates += other.duplicates
        self.failed += other.failed


class MessageIngestionPipeline:
    """Turns raw provider messages into stored, threaded messages.

    Ingestion is idempotent on (account_id, external_message_id): replaying the same
    input inserts nothing the second time.
    """

    def __init__(
        self,
        store: Store,
        batch_size: int = 10,
        batch_concurrency: int = 3,
        max_retries: int = 2,
        base_delay: float = 1.0,
        max_delay: float = 5.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._logger = logging.getLogger(__name__)
        self._store = store
        self._batch_size = batch_size
        self._batch_concurrency = batch_concurrency
        self._max_retries = max_retries
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._sleep = sleep

    async def ingest(self, account: Account, raw_messages: list[RawMessage]) -> int:
        """Store new messages and return how many were inserted."""
        report = await self.ingest_report(account, raw_messages)
        return report.inserted

    async def ingest_report(self, account: Account, raw_messages: list[RawMessage]) -> IngestReport:
        report = IngestReport()
        if not raw_messages:
            return report

        batches = [
            raw_messages[start : start + self._batch_size] for start in range(0, len(raw_messages), self._batch_size)
        ]
        semaphore = asyncio.Semaphore(self._batch_concurrency)

        async def bounded(batch: list[RawMessage]) -> IngestReport:
            async with semaphore:
                return await self._ingest_batch(account, batch)

        for batch_report in await asyncio.gather(*(bounded(batch) for batch in batches)):
            report.merge(batch_report)

        self._logger.info(
            f"Ingested {len(raw_messages)} messages for {account.email}: {report.inserted} new, "
            f"{report.duplicates} duplicates, {report.failed} failed"
        )
        return report

    async def _ingest_batch(self, account: Account, batch: list[RawMessage]) -> IngestReport:
        report = IngestReport()
        for raw in batch:
            outcome = await self._ingest_one(account, raw)
            if outcome is None:
                report.failed += 1
            elif outcome:
                report.inserted += 1
            else:
                report.duplicates += 1
        return report

    async def _ingest_one(self, account: Account, raw: RawMessage) -> bool | None:
        """True when inserted, False for a duplicate, None when the message could not be stored."""
        attempt = 0
        while True:
            try:
                if await self._store.message_exists(account.id, raw.external_message_id):
                    return False
                return await self._store.save_received_message(account, raw)
            except TransientStoreError as e:
                if attempt >= self._max_retries:
                    self._logger.error(
                        f"Giving up on message {raw.external_message_id} for {account.email} "
                        f"after {attempt + 1} attempts: {e}"
                    )
                    return None
                delay = min(self._base_delay * (2**attempt), self._max_delay)
                self._logger.warning(
                    f"Transient store error for message {raw.external_message_id}, retrying in {delay:.1f}s: {e}"
                )
                await self._sleep(delay)
                attempt += 1
            except Exception:
                self._logger.exception(f"Failed to ingest message {raw.external_message_id} for {account.email}")
                return None
