import logging
import uuid
from datetime import UTC, datetime
from email.header import decode_header, make_header
from email.message import Message as PythonEmailMessage
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formatdate, getaddresses, parsedate_to_datetime

from app.controllers.providers.models import OutgoingMessage, RawMessage
from app.models.base import utcnow
from app.models.thread import NO_SUBJECT

logger = logging.getLogger(__name__)


class MessageUtils:
    """Helpers shared by the provider adapters to read and build RFC 5322 messages."""

    @staticmethod
    def parse_addresses(value: str | None) -> list[str]:
        """Email addresses from a header value, display names dropped."""
        if not value:
            return []
        return [address for _, address in getaddresses([str(value)]) if address]

    @staticmethod
    def decode_header_value(value: str | None) -> str:
        if not value:
            return ""
        try:
            return str(make_header(decode_header(str(value))))
        except (UnicodeDecodeError, LookupError):
            return str(value)

    @staticmethod
    def parse_date(value: str | None) -> datetime:
        if not value:
            return utcnow()
        try:
            parsed = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            logger.debug(f"Unparseable Date header '{value}', using current time")
            return utcnow()
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=UTC)
        return parsed

    @staticmethod
    def parse_iso_datetime(value: str | None) -> datetime:
        if not value:
            return utcnow()
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            logger.debug(f"Unparseable timestamp '{value}', using current time")
            return utcnow()
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=UTC)
        return parsed

    @staticmethod
    def _decode_part(part: PythonEmailMessage) -> str | None:
        payload = part.get_payload(decode=True)
        if not payload:
            return None
        if not isinstance(payload, bytes):
            return str(payload)
        charset = part.get_content_charset() or "utf-8"
        try:
            return payload.decode(charset)
        except (UnicodeDecodeError, LookupError):
            return payload.decode("utf-8", errors="ignore")

    @staticmethod
    def extract_bodies(msg: PythonEmailMessage) -> tuple[str | None, str | None]:
        """The first text/html and text/plain bodies, attachments skipped."""
        html_body: str | None = None
        text_body: str | None = None

        parts = msg.walk() if msg.is_multipart() else [msg]
        for part in parts:
            if part.is_multipart():
                continue
            if "attachment" in str(part.get("Content-Disposition", "")):
                continue
            content_type = part.get_content_type()
            if content_type == "text/html" and html_body is None:
                html_body = MessageUtils._decode_part(part)
            elif content_type == "text/plain" and text_body is None:
                text_body = MessageUtils._decode_part(part)

        return html_body, text_body

    @staticmethod
    def to_raw_message(
        msg: PythonEmailMessage,
        fallback_id: str,
        is_read: bool = False,
        is_starred: bool = False,
    ) -> RawMessage:
        """Convert a parsed RFC 5322 message into a RawMessage."""
        from_addresses = MessageUtils.parse_addresses(msg.get("From"))
        html_body, text_body = MessageUtils.extract_bodies(msg)
        message_id = (msg.get("Message-ID") or "").strip()

        return RawMessage(
            external_message_id=message_id or fallback_id,
            from_email=from_addresses[0] if from_addresses else "",
            subject=MessageUtils.decode_header_value(msg.get("Subject")).strip() or NO_SUBJECT,
            to=MessageUtils.parse_addresses(msg.get("To")),
            cc=MessageUtils.parse_addresses(msg.get("Cc")),
            bcc=MessageUtils.parse_addresses(msg.get("Bcc")),
            html_body=html_body,
            text_body=text_body.strip() if text_body else None,
            sent_at=MessageUtils.parse_date(msg.get("Date")),
            is_read=is_read,
            is_starred=is_starred,
        )

    @staticmethod
    def build_mime_message(sender: str, message: OutgoingMessage, include_bcc: bool = False) -> MIMEMultipart:
        """Build the outgoing MIME message with a generated Message-ID."""
        mime = MIMEMultipart("alternative")
        mime["Subject"] = message.subject
        mime["Date"] = formatdate(localtime=True)
        mime["From"] = sender
        mime["To"] = ", ".join(message.to)
        if message.cc:
            mime["Cc"] = ", ".join(message.cc)
        # Bcc is only written for APIs that read recipients from the headers
        if message.bcc and include_bcc:
            mime["Bcc"] = ", ".join(message.bcc)
        if message.in_reply_to:
            mime["In-Reply-To"] = message.in_reply_to
            mime["References"] = message.in_reply_to

        domain = sender.split("@")[-1] if "@" in sender else "localhost"
        mime["Message-ID"] = f"<{uuid.uuid4()}@{domain}>"

        if message.text_body:
            mime.attach(MIMEText(message.text_body, "plain", "utf-8"))
        if message.html_body:
            mime.attach(MIMEText(message.html_body, "html", "utf-8"))
        if not message.text_body and not message.html_body:
            mime.attach(MIMEText("", "plain", "utf-8"))
        return mime
