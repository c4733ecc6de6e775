from datetime import datetime
from enum import Enum
from typing import Any

import sqlalchemy as sa
from pydantic import ValidationError
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.schema import UniqueConstraint

from app.exceptions import InvalidDataError

from .base import Base, TimestampMixin
from .decorators.types import EnumStringType
from .provider_config import GmailConfig, IMAPConfig, OutlookConfig, provider_config_adapter

DEFAULT_SYNC_FREQUENCY_SECONDS = 15


class AccountProvider(Enum):
    gmail = "gmail"
    outlook = "outlook"
    imap = "imap"


class Account(Base, TimestampMixin):
    """An external mailbox and the sync state the engine keeps for it."""

    __tablename__ = "accounts"

    owner_id: Mapped[int] = mapped_column(sa.BigInteger(), nullable=False, index=True)
    email: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    provider: Mapped[AccountProvider] = mapped_column(EnumStringType(AccountProvider), nullable=False)
    credentials: Mapped[str] = mapped_column(sa.Text(), nullable=False, comment="Encrypted password or token set")
    provider_context: Mapped[dict[str, Any]] = mapped_column(JSONB(), nullable=False, server_default=sa.text("'{}'"))
    is_active: Mapped[bool] = mapped_column(sa.Boolean(), nullable=False, server_default=sa.true(), default=True)
    sync_enabled: Mapped[bool] = mapped_column(sa.Boolean(), nullable=False, server_default=sa.true(), default=True)
    sync_frequency_seconds: Mapped[int] = mapped_column(
        sa.Integer(),
        nullable=False,
        server_default=str(DEFAULT_SYNC_FREQUENCY_SECONDS),
        default=DEFAULT_SYNC_FREQUENCY_SECONDS,
    )
    last_sync_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    incremental_cursor: Mapped[str | None] = mapped_column(sa.String(255), nullable=True)

    __table_args__ = (UniqueConstraint("owner_id", "email", name="uq_account_owner_id_email"),)

    @property
    def provider_config(self) -> GmailConfig | OutlookConfig | IMAPConfig:
        """Provider-specific settings, validated against the account's provider."""
        try:
            return provider_config_adapter.validate_python({**self.provider_context, "kind": self.provider.value})
        except ValidationError as e:
            raise InvalidDataError(f"Invalid provider context: {e}", account_id=self.id, provider=self.provider.value)

    def is_due(self, now: datetime) -> bool:
        """Whether a scheduled sync should run for this account at `now`."""
        if self.last_sync_at is None:
            return True
        return (now - self.last_sync_at).total_seconds() >= self.sync_frequency_seconds

    def __repr__(self) -> str:
        return f"<Account(email='{self.email}', provider='{self.provider.name}')>"
