from typing import Any

from sqlalchemy import exists, select, update
from sqlalchemy.dialects.postgresql import insert

from app.models.message import Message
from app.models.thread import Thread
from app.repos.base import BaseRepo


class MessageRepo(BaseRepo[Message]):
    """Repository for Message model operations."""

    def __init__(self) -> None:
        super().__init__(Message)

    async def exists(self, account_id: int, external_message_id: str) -> bool:
        query = select(
            exists().where(Message.account_id == account_id, Message.external_message_id == external_message_id)
        )
        result = await self.session.execute(query)
        return bool(result.scalar())

    async def insert_if_absent(self, values: dict[str, Any]) -> int | None:
        """Insert a message, returning its id, or None when the dedup key already exists."""
        stmt = (
            insert(Message)
            .values(**values)
            .on_conflict_do_nothing(index_elements=["account_id", "external_message_id"])
            .returning(Message.id)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def set_read_for_threads(self, owner_id: int, thread_ids: list[int], is_read: bool) -> int:
        owned = select(Thread.id).where(Thread.owner_id == owner_id, Thread.id.in_(thread_ids))
        result = await self.session.execute(
            update(Message).where(Message.thread_id.in_(owned)).values(is_read=is_read)
        )
        return result.rowcount or 0

