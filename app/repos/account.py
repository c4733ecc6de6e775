from datetime import datetime

from sqlalchemy import update

from app.models.account import Account
from app.repos.base import BaseRepo


class AccountRepo(BaseRepo[Account]):
    """Repository for Account model operations."""

    def __init__(self) -> None:
        super().__init__(Account)

    async def get_by_owner(self, owner_id: int) -> list[Account]:
        result = await self.execute(self.base_stmt.where(Account.owner_id == owner_id).order_by(Account.id))
        return list(result.all())

    async def get_sync_candidates(self) -> list[Account]:
        """Active accounts with sync enabled, least recently synced first."""
        query = (
            self.base_stmt.where(Account.is_active.is_(True), Account.sync_enabled.is_(True))
            .order_by(Account.last_sync_at.asc().nulls_first(), Account.id)
        )
        result = await self.execute(query)
        return list(result.all())

    async def update_sync_state(self, account_id: int, cursor: str | None, synced_at: datetime) -> None:
        values: dict[str, object] = {"last_sync_at": synced_at}
        if cursor is not None:
            values["incremental_cursor"] = cursor
        await self.session.execute(update(Account).where(Account.id == account_id).values(**values))

    async def set_sync_enabled(self, account_id: int, enabled: bool) -> None:
        await self.session.execute(update(Account).where(Account.id == account_id).values(sync_enabled=enabled))

    async def set_sync_frequency(self, account_id: int, seconds: int) -> None:
        await self.session.execute(
            update(Account).where(Account.id == account_id).values(sync_frequency_seconds=seconds)
        )
