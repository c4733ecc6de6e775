import asyncio
from collections import Counter
from datetime import UTC, datetime, timedelta
from itertools import count

from app.controllers.providers.base import ProviderSyncAdapter, RetryPolicy
from app.controllers.providers.models import (
    ConnectionTestResult,
    FetchOptions,
    FetchResult,
    OutgoingMessage,
    RawMessage,
    SendResult,
)
from app.exceptions import TransientStoreError
from app.models.account import Account, AccountProvider
from app.models.thread import Thread
from app.repos.store import normalize_subject

NOW = datetime(2026, 10, 18, 12, 0, tzinfo=UTC)


class FakeClock:
    """Epoch-seconds clock that only moves when told to."""

    def __init__(self, start: float = 1_800_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_account(
    account_id: int = 1,
    owner_id: int = 10,
    provider: AccountProvider = AccountProvider.imap,
    last_sync_at: datetime | None = None,
    sync_frequency_seconds: int = 15,
    incremental_cursor: str | None = None,
    provider_context: dict | None = None,
    is_active: bool = True,
    sync_enabled: bool = True,
) -> Account:
    return Account(
        id=account_id,
        owner_id=owner_id,
        email=f"user{account_id}@example.com",
        provider=provider,
        credentials="encrypted",
        provider_context=provider_context or {},
        is_active=is_active,
        sync_enabled=sync_enabled,
        sync_frequency_seconds=sync_frequency_seconds,
        last_sync_at=last_sync_at,
        incremental_cursor=incremental_cursor,
    )


def make_raw(external_id: str, subject: str = "Quarterly report", sent_at: datetime = NOW) -> RawMessage:
    return RawMessage(
        external_message_id=external_id,
        from_email="alice@example.com",
        subject=subject,
        to=["bob@example.com"],
        text_body=f"body of {external_id}",
        sent_at=sent_at,
    )


class FakeStore:
    """In-memory Store with the same dedup and threading rules as MailStore."""

    def __init__(self, accounts: list[Account] | None = None) -> None:
        self.accounts = {account.id: account for account in accounts or []}
        self.messages: dict[tuple[int, str], dict] = {}
        self.threads: dict[int, Thread] = {}
        self.cursor_updates: list[tuple[int, str | None, datetime]] = []
        self.transient_failures: dict[str, int] = {}
        self.save_attempts: Counter[str] = Counter()
        self.archived: list[list[int]] = []
        self._thread_ids = count(1)

    async def get_account(self, account_id: int) -> Account | None:
        return self.accounts.get(account_id)

    async def list_owner_accounts(self, owner_id: int) -> list[Account]:
        return [account for account in self.accounts.values() if account.owner_id == owner_id]

    async def list_due_accounts(self, now: datetime) -> list[Account]:
        return [
            account
            for account in self.accounts.values()
            if account.is_active and account.sync_enabled and account.is_due(now)
        ]

    async def message_exists(self, account_id: int, external_message_id: str) -> bool:
        return (account_id, external_message_id) in self.messages

    async def find_or_create_thread(self, owner_id: int, subject: str, participants: list[str]) -> Thread:
        subject = normalize_subject(subject)
        for thread in self.threads.values():
            if thread.owner_id == owner_id and thread.subject == subject:
                return thread
        thread = Thread(
            id=next(self._thread_ids),
            owner_id=owner_id,
            subject=subject,
            participant_emails=list(participants),
            message_count=0,
            is_archived=False,
        )
        self.threads[thread.id] = thread
        return thread

    async def save_received_message(self, account: Account, raw: RawMessage) -> bool:
        self.save_attempts[raw.external_message_id] += 1
        remaining = self.transient_failures.get(raw.external_message_id, 0)
        if remaining:
            self.transient_failures[raw.external_message_id] = remaining - 1
            raise TransientStoreError("connection reset")

        key = (account.id, raw.external_message_id)
        if key in self.messages:
            return False

        thread = await self.find_or_create_thread(account.owner_id, raw.subject, raw.participants)
        thread.add_participants(raw.participants)
        thread.message_count += 1
        if thread.last_message_at is None or raw.sent_at > thread.last_message_at:
            thread.last_message_at = raw.sent_at
        self.messages[key] = {"thread_id": thread.id, "direction": "received", "is_read": False}
        return True

    async def update_account_cursor(self, account_id: int, cursor: str | None, synced_at: datetime) -> None:
        self.cursor_updates.append((account_id, cursor, synced_at))
        account = self.accounts[account_id]
        account.last_sync_at = synced_at
        if cursor is not None:
            account.incremental_cursor = cursor

    async def set_account_sync(self, account_id: int, enabled: bool) -> None:
        self.accounts[account_id].sync_enabled = enabled

    async def set_account_sync_frequency(self, account_id: int, seconds: int) -> None:
        self.accounts[account_id].sync_frequency_seconds = seconds

    async def archive_threads(self, owner_id: int, thread_ids: list[int]) -> int:
        self.archived.append(list(thread_ids))
        return len(thread_ids)

    async def delete_threads(self, owner_id: int, thread_ids: list[int]) -> int:
        return len(thread_ids)

    async def set_threads_read(self, owner_id: int, thread_ids: list[int], is_read: bool) -> int:
        return len(thread_ids)


class FakeAdapter(ProviderSyncAdapter):
    """Full-sync-only adapter that serves canned messages and records concurrency."""

    supports_incremental = False

    def __init__(
        self,
        provider: AccountProvider = AccountProvider.imap,
        messages: dict[int, list[RawMessage]] | None = None,
        errors: dict[int, Exception] | None = None,
        delay: float = 0.0,
        cursor: str | None = None,
    ) -> None:
        super().__init__(RetryPolicy(base_delay=0, max_delay=0))
        self.provider = provider
        self.messages = messages or {}
        self.errors = errors or {}
        self.delay = delay
        self.cursor = cursor
        self.fetched: list[int] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def fetch_full(self, account: Account, options: FetchOptions) -> FetchResult:
        self.fetched.append(account.id)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if account.id in self.errors:
                raise self.errors[account.id]
            return FetchResult(
                messages=list(self.messages.get(account.id, [])), new_cursor=self.cursor, was_full_sync=True
            )
        finally:
            self.in_flight -= 1

    async def send(self, account: Account, message: OutgoingMessage) -> SendResult:
        return SendResult(success=True, provider_message_id=f"<sent-{account.id}@example.com>")

    async def test_connection(self, account: Account) -> ConnectionTestResult:
        return ConnectionTestResult(success=True)


def minutes_ago(minutes: float) -> datetime:
    return NOW - timedelta(minutes=minutes)
