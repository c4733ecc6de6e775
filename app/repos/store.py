import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncGenerator, Protocol

from sqlalchemy.exc import DBAPIError, DisconnectionError, InterfaceError, OperationalError

from app.controllers.providers.models import RawMessage
from app.exceptions import TransientStoreError
from app.models.account import Account
from app.models.message import MessageDirection
from app.models.thread import NO_SUBJECT, Thread
from app.repos.account import AccountRepo
from app.repos.message import MessageRepo
from app.repos.thread import ThreadRepo

_TRANSIENT_ERRORS = (OperationalError, InterfaceError, DisconnectionError, ConnectionError, TimeoutError)


class Store(Protocol):
    """Read/write surface the sync engine needs from the mail store."""

    async def get_account(self, account_id: int) -> Account | None: ...

    async def list_owner_accounts(self, owner_id: int) -> list[Account]: ...

    async def list_due_accounts(self, now: datetime) -> list[Account]: ...

    async def message_exists(self, account_id: int, external_message_id: str) -> bool: ...

    async def find_or_create_thread(self, owner_id: int, subject: str, participants: list[str]) -> Thread: ...

    async def save_received_message(self, account: Account, raw: RawMessage) -> bool: ...

    async def update_account_cursor(self, account_id: int, cursor: str | None, synced_at: datetime) -> None: ...

    async def set_account_sync(self, account_id: int, enabled: bool) -> None: ...

    async def set_account_sync_frequency(self, account_id: int, seconds: int) -> None: ...

    async def archive_threads(self, owner_id: int, thread_ids: list[int]) -> int: ...

    async def delete_threads(self, owner_id: int, thread_ids: list[int]) -> int: ...

    async def set_threads_read(self, owner_id: int, thread_ids: list[int], is_read: bool) -> int: ...


def normalize_subject(subject: str | None) -> str:
    subject = (subject or "").strip()
    return subject or NO_SUBJECT


class MailStore:
    """Store backed by the SQLAlchemy repositories.

    Every public call commits its own work. Connectivity failures are raised as
    TransientStoreError so callers can retry them.
    """

    def __init__(self, account_repo: AccountRepo, thread_repo: ThreadRepo, message_repo: MessageRepo) -> None:
        self._logger = logging.getLogger(__name__)
        self._account_repo = account_repo
        self._thread_repo = thread_repo
        self._message_repo = message_repo

    @asynccontextmanager
    async def _transaction(self, operation: str) -> AsyncGenerator[None, None]:
        try:
            yield
            await self._account_repo.commit()
        except _TRANSIENT_ERRORS as e:
            await self._safe_rollback()
            raise TransientStoreError(f"Store unavailable during {operation}: {e}", action=operation) from e
        except DBAPIError as e:
            await self._safe_rollback()
            if e.connection_invalidated:
                raise TransientStoreError(f"Connection lost during {operation}: {e}", action=operation) from e
            raise
        except BaseException:
            await self._safe_rollback()
            raise

    async def _safe_rollback(self) -> None:
        try:
            await self._account_repo.rollback()
        except Exception as e:
            self._logger.warning(f"Rollback failed: {e}")

    async def get_account(self, account_id: int) -> Account | None:
        async with self._transaction("get_account"):
            return await self._account_repo.get(account_id)

    async def list_owner_accounts(self, owner_id: int) -> list[Account]:
        async with self._transaction("list_owner_accounts"):
            return await self._account_repo.get_by_owner(owner_id)

    async def list_due_accounts(self, now: datetime) -> list[Account]:
        async with self._transaction("list_due_accounts"):
            candidates = await self._account_repo.get_sync_candidates()
        return [account for account in candidates if account.is_due(now)]

    async def message_exists(self, account_id: int, external_message_id: str) -> bool:
        async with self._transaction("message_exists"):
            return await self._message_repo.exists(account_id, external_message_id)

    async def find_or_create_thread(self, owner_id: int, subject: str, participants: list[str]) -> Thread:
        async with self._transaction("find_or_create_thread"):
            return await self._find_or_create_thread(owner_id, normalize_subject(subject), participants)

    async def _find_or_create_thread(self, owner_id: int, subject: str, participants: list[str]) -> Thread:
        return await self._thread_repo.get_or_create(owner_id, subject, participants)

    async def save_received_message(self, account: Account, raw: RawMessage) -> bool:
        """Thread and insert one received message. Returns False for a duplicate."""
        async with self._transaction("save_received_message"):
            if await self._message_repo.exists(account.id, raw.external_message_id):
                return False

            subject = normalize_subject(raw.subject)
            thread = await self._find_or_create_thread(account.owner_id, subject, raw.participants)

            message_id = await self._message_repo.insert_if_absent(
                {
                    "thread_id": thread.id,
                    "account_id": account.id,
                    "external_message_id": raw.external_message_id,
                    "from_email": raw.from_email,
                    "to_emails": raw.to,
                    "cc_emails": raw.cc,
                    "bcc_emails": raw.bcc,
                    "subject": subject,
                    "html_body": raw.html_body,
                    "text_body": raw.text_body,
                    "direction": MessageDirection.received.name,
                    "is_read": False,
                    "is_starred": raw.is_starred,
                    "sent_at": raw.sent_at,
                }
            )
            if message_id is None:
                # Lost a race with a concurrent insert of the same message
                await self._thread_repo.rollback()
                return False

            thread.add_participants(raw.participants)
            await self._thread_repo.flush()
            await self._thread_repo.attach_message(thread.id, raw.sent_at)
            return True

    async def update_account_cursor(self, account_id: int, cursor: str | None, synced_at: datetime) -> None:
        async with self._transaction("update_account_cursor"):
            await self._account_repo.update_sync_state(account_id, cursor, synced_at)

    async def set_account_sync(self, account_id: int, enabled: bool) -> None:
        async with self._transaction("set_account_sync"):
            await self._account_repo.set_sync_enabled(account_id, enabled)

    async def set_account_sync_frequency(self, account_id: int, seconds: int) -> None:
        async with self._transaction("set_account_sync_frequency"):
            await self._account_repo.set_sync_frequency(account_id, seconds)

    async def archive_threads(self, owner_id: int, thread_ids: list[int]) -> int:
        async with self._transaction("archive_threads"):
            return await self._thread_repo.set_archived(owner_id, thread_ids)

    async def delete_threads(self, owner_id: int, thread_ids: list[int]) -> int:
        async with self._transaction("delete_threads"):
            return await self._thread_repo.delete_owned(owner_id, thread_ids)

    async def set_threads_read(self, owner_id: int, thread_ids: list[int], is_read: bool) -> int:
        async with self._transaction("set_threads_read"):
            return await self._message_repo.set_read_for_threads(owner_id, thread_ids, is_read)
