from datetime import datetime

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin

NO_SUBJECT = "No Subject"


class Thread(Base, TimestampMixin):
    """Conversation grouping, matched by exact subject per owner."""

    __tablename__ = "threads"

    owner_id: Mapped[int] = mapped_column(sa.BigInteger(), nullable=False)
    subject: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    participant_emails: Mapped[list[str]] = mapped_column(JSONB(), nullable=False, server_default=sa.text("'[]'"))
    last_message_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    message_count: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default="0", default=0)
    is_archived: Mapped[bool] = mapped_column(sa.Boolean(), nullable=False, server_default=sa.false(), default=False)

    __table_args__ = (
        sa.Index("ix_threads_owner_id_subject", "owner_id", "subject", unique=True),
        sa.CheckConstraint("message_count >= 0", name="ck_threads_message_count_non_negative"),
    )

    def add_participants(self, emails: list[str]) -> None:
        self.participant_emails = merge_participants(self.participant_emails or [], emails)


def merge_participants(known: list[str], emails: list[str]) -> list[str]:
    merged = list(known)
    for email in emails:
        if email and email not in merged:
            merged.append(email)
    return merged
