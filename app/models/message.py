from datetime import datetime
from enum import Enum

import sqlalchemy as sa
from sqlalchemy import UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin
from .decorators.types import EnumStringType


class MessageDirection(Enum):
    sent = "sent"
    received = "received"
    draft = "draft"


class Message(Base, TimestampMixin):
    """One ingested email. (account_id, external_message_id) is the dedup key."""

    __tablename__ = "messages"

    thread_id: Mapped[int] = mapped_column(sa.ForeignKey("threads.id", ondelete="CASCADE"), nullable=False, index=True)
    account_id: Mapped[int] = mapped_column(sa.ForeignKey("accounts.id"), nullable=False)
    external_message_id: Mapped[str] = mapped_column(sa.String(512), nullable=False)
    from_email: Mapped[str] = mapped_column(sa.String(320), nullable=False)
    to_emails: Mapped[list[str]] = mapped_column(JSONB(), nullable=False, server_default=sa.text("'[]'"))
    cc_emails: Mapped[list[str]] = mapped_column(JSONB(), nullable=False, server_default=sa.text("'[]'"))
    bcc_emails: Mapped[list[str]] = mapped_column(JSONB(), nullable=False, server_default=sa.text("'[]'"))
    subject: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    html_body: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    text_body: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    direction: Mapped[MessageDirection] = mapped_column(EnumStringType(MessageDirection), nullable=False)
    is_read: Mapped[bool] = mapped_column(sa.Boolean(), nullable=False, server_default=sa.false(), default=False)
    is_starred: Mapped[bool] = mapped_column(sa.Boolean(), nullable=False, server_default=sa.false(), default=False)
    sent_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)

    __table_args__ = (UniqueConstraint("account_id", "external_message_id", name="uq_message_account_external_id"),)
