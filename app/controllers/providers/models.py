from dataclasses import dataclass, field
from datetime import datetime

from app.models.base import utcnow
from app.models.thread import NO_SUBJECT


@dataclass
class RawMessage:
    """A provider message normalized just enough to be ingested."""

    external_message_id: str
    from_email: str
    subject: str = NO_SUBJECT
    to: list[str] = field(default_factory=list)
    cc: list[str] = field(default_factory=list)
    bcc: list[str] = field(default_factory=list)
    html_body: str | None = None
    text_body: str | None = None
    sent_at: datetime = field(default_factory=utcnow)
    is_read: bool = False
    is_starred: bool = False

    @property
    def participants(self) -> list[str]:
        return [self.from_email, *self.to]


@dataclass
class FetchOptions:
    max_results: int = 50
    full_sync: bool = False


@dataclass
class FetchResult:
    messages: list[RawMessage]
    new_cursor: str | None = None
    was_full_sync: bool = False


@dataclass
class OutgoingMessage:
    to: list[str]
    subject: str
    html_body: str | None = None
    text_body: str | None = None
    cc: list[str] = field(default_factory=list)
    bcc: list[str] = field(default_factory=list)
    in_reply_to: str | None = None


@dataclass
class SendResult:
    success: bool
    provider_message_id: str | None = None
    error: str | None = None


@dataclass
class ConnectionTestResult:
    success: bool
    error: str | None = None
