import asyncio
import email
import re
import smtplib
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart

from app.controllers.providers.base import ProviderSyncAdapter, RetryPolicy
from app.controllers.providers.imap_connection import ConnectionManager
from app.controllers.providers.models import (
    ConnectionTestResult,
    FetchOptions,
    FetchResult,
    OutgoingMessage,
    RawMessage,
    SendResult,
)
from app.exceptions import InvalidDataError, ProviderAuthError, ProviderError, ProviderUnavailableError
from app.models.account import Account, AccountProvider
from app.models.provider_config import IMAPConfig
from app.utils.crypto import CredentialCipher
from app.utils.message_utils import MessageUtils

_EXISTS_RE = re.compile(rb"(\d+)\s+EXISTS")
_UID_RE = re.compile(rb"UID\s+(\d+)")
_FLAGS_RE = re.compile(rb"FLAGS\s+\(([^)]*)\)")


@dataclass
class FetchedMessage:
    sequence: int
    uid: int | None
    flags: list[str]
    body: bytes


class IMAPSyncAdapter(ProviderSyncAdapter):
    """Generic IMAP fetch with SMTP send. Each call opens and closes its own connection."""

    provider = AccountProvider.imap
    supports_incremental = False

    def __init__(
        self,
        connection_manager: ConnectionManager,
        cipher: CredentialCipher,
        smtp_timeout: int = 30,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        super().__init__(retry_policy)
        self._connection_manager = connection_manager
        self._cipher = cipher
        self._smtp_timeout = smtp_timeout

    @staticmethod
    def _config(account: Account) -> IMAPConfig:
        config = account.provider_config
        if not isinstance(config, IMAPConfig):
            raise InvalidDataError(f"Account {account.id} has no IMAP settings", account_id=account.id)
        return config

    async def fetch_full(self, account: Account, options: FetchOptions) -> FetchResult:
        config = self._config(account)
        fetched = await self._call(
            lambda: self._fetch_recent(account, config, options.max_results), f"imap fetch for account {account.id}"
        )
        messages = [self._to_raw_message(account, item) for item in fetched]
        return FetchResult(messages=messages, new_cursor=None, was_full_sync=True)

    async def _fetch_recent(self, account: Account, config: IMAPConfig, limit: int) -> list[FetchedMessage]:
        connection = await self._connection_manager.open(account, config)
        try:
            selected = await connection.select(config.folder)
            if selected.result != "OK":
                raise ProviderUnavailableError(
                    f"Could not select {config.folder} for {account.email}: {selected.result}", account_id=account.id
                )

            exists = self.parse_exists(selected.lines)
            if exists == 0:
                return []

            start = max(1, exists - limit + 1)
            response = await connection.fetch(f"{start}:*", "(UID FLAGS RFC822)")
            if response.result != "OK":
                raise ProviderUnavailableError(
                    f"FETCH failed for {account.email}: {response.result}", account_id=account.id
                )
            fetched = self.parse_fetch_response(response.lines)
        except (OSError, asyncio.TimeoutError) as e:
            raise ProviderUnavailableError(f"IMAP error for {account.email}: {e}", account_id=account.id) from e
        finally:
            await self._connection_manager.close(connection, account)

        fetched.sort(key=lambda item: item.sequence, reverse=True)
        return fetched

    @staticmethod
    def parse_exists(lines: list[bytes]) -> int:
        for line in lines:
            if isinstance(line, (bytes, bytearray)):
                match = _EXISTS_RE.search(line)
                if match:
                    return int(match.group(1))
        return 0

    @staticmethod
    def parse_fetch_response(lines: list[bytes]) -> list[FetchedMessage]:
        """Pair each `n FETCH (... RFC822 {size}` header line with the literal that follows it."""
        messages: list[FetchedMessage] = []
        i = 0
        while i < len(lines):
            line = lines[i]
            if isinstance(line, (bytes, bytearray)) and b"FETCH" in line and b"RFC822" in line:
                if i + 1 < len(lines) and isinstance(lines[i + 1], (bytes, bytearray)):
                    head = bytes(line)
                    try:
                        sequence = int(head.split(b" ", 1)[0])
                    except ValueError:
                        i += 1
                        continue
                    uid_match = _UID_RE.search(head)
                    flags_match = _FLAGS_RE.search(head)
                    messages.append(
                        FetchedMessage(
                            sequence=sequence,
                            uid=int(uid_match.group(1)) if uid_match else None,
                            flags=flags_match.group(1).decode().split() if flags_match else [],
                            body=bytes(lines[i + 1]),
                        )
                    )
                    i += 2
                    continue
            i += 1
        return messages

    @staticmethod
    def _to_raw_message(account: Account, item: FetchedMessage) -> RawMessage:
        parsed = email.message_from_bytes(item.body)
        fallback_id = f"{item.uid if item.uid is not None else item.sequence}@{account.email}"
        return MessageUtils.to_raw_message(
            parsed,
            fallback_id=fallback_id,
            is_read="\\Seen" in item.flags,
            is_starred="\\Flagged" in item.flags,
        )

    def _deliver(self, config: IMAPConfig, account: Account, mime: MIMEMultipart, recipients: list[str]) -> None:
        password = self._cipher.decrypt(account.credentials)
        with smtplib.SMTP_SSL(config.smtp_host, config.smtp_port, timeout=self._smtp_timeout) as server:
            server.login(account.email, password)
            server.sendmail(account.email, recipients, mime.as_string())

    async def send(self, account: Account, message: OutgoingMessage) -> SendResult:
        config = self._config(account)
        mime = MessageUtils.build_mime_message(account.email, message)
        recipients = [*message.to, *message.cc, *message.bcc]

        async def deliver() -> None:
            try:
                await asyncio.to_thread(self._deliver, config, account, mime, recipients)
            except smtplib.SMTPAuthenticationError as e:
                raise ProviderAuthError(f"SMTP login rejected for {account.email}: {e}", account_id=account.id) from e
            except (smtplib.SMTPException, OSError) as e:
                raise ProviderUnavailableError(f"SMTP send failed for {account.email}: {e}", account_id=account.id) from e

        await self._call(deliver, f"smtp send for account {account.id}")
        message_id = mime["Message-ID"]
        self._logger.info(f"Email sent successfully: {message_id}")
        return SendResult(success=True, provider_message_id=message_id)

    async def test_connection(self, account: Account) -> ConnectionTestResult:
        try:
            config = self._config(account)
            connection = await self._connection_manager.open(account, config)
        except (ProviderError, InvalidDataError) as e:
            return ConnectionTestResult(success=False, error=e.message)
        await self._connection_manager.close(connection, account)
        return ConnectionTestResult(success=True)
