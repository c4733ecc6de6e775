from datetime import datetime

from sqlalchemy import delete, func, update
from sqlalchemy.dialects.postgresql import insert

from app.exceptions import TransientStoreError
from app.models.thread import Thread, merge_participants
from app.repos.base import BaseRepo


class ThreadRepo(BaseRepo[Thread]):
    """Repository for Thread model operations."""

    def __init__(self) -> None:
        super().__init__(Thread)

    async def get_by_owner_and_subject(self, owner_id: int, subject: str) -> Thread | None:
        query = (
            self.base_stmt.where(Thread.owner_id == owner_id, Thread.subject == subject)
            .order_by(Thread.id)
            .limit(1)
        )
        result = await self.execute(query)
        return result.one_or_none()

    async def get_or_create(self, owner_id: int, subject: str, participants: list[str]) -> Thread:
        """Return the owner's thread for `subject`, creating it once.

        Concurrent sessions may race on a new subject: the insert skips on the
        (owner_id, subject) unique index and the winner's row is selected instead.
        """
        thread = await self.get_by_owner_and_subject(owner_id, subject)
        if thread is not None:
            return thread

        stmt = (
            insert(Thread)
            .values(
                owner_id=owner_id,
                subject=subject,
                participant_emails=merge_participants([], participants),
                message_count=0,
                is_archived=False,
            )
            .on_conflict_do_nothing(index_elements=["owner_id", "subject"])
        )
        await self.session.execute(stmt)

        thread = await self.get_by_owner_and_subject(owner_id, subject)
        if thread is None:
            raise TransientStoreError(
                f"Thread '{subject}' for owner {owner_id} vanished after insert", action="find_or_create_thread"
            )
        return thread

    async def attach_message(self, thread_id: int, message_at: datetime) -> None:
        """Count one more message on the thread and move last_message_at forward."""
        await self.session.execute(
            update(Thread)
            .where(Thread.id == thread_id)
            .values(
                message_count=Thread.message_count + 1,
                last_message_at=func.greatest(func.coalesce(Thread.last_message_at, message_at), message_at),
            )
        )

    async def get_owned(self, owner_id: int, thread_ids: list[int]) -> list[Thread]:
        result = await self.execute(self.base_stmt.where(Thread.owner_id == owner_id, Thread.id.in_(thread_ids)))
        return list(result.all())

    async def set_archived(self, owner_id: int, thread_ids: list[int], archived: bool = True) -> int:
        result = await self.session.execute(
            update(Thread).where(Thread.owner_id == owner_id, Thread.id.in_(thread_ids)).values(is_archived=archived)
        )
        return result.rowcount or 0

    async def delete_owned(self, owner_id: int, thread_ids: list[int]) -> int:
        result = await self.session.execute(
            delete(Thread).where(Thread.owner_id == owner_id, Thread.id.in_(thread_ids))
        )
        return result.rowcount or 0
