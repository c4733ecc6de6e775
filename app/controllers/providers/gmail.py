"""
Gmail adapter: incremental sync over the History API with a transparent full-sync fallback.

The google-api-python-client is blocking, so every request is executed in a worker thread.
"""

import asyncio
import base64
from datetime import UTC, datetime
from typing import Any, Callable

from google.auth.exceptions import RefreshError
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import Resource, build
from googleapiclient.errors import HttpError
from googleapiclient.http import HttpRequest

from app.controllers.providers.base import ProviderSyncAdapter, RetryPolicy, error_for_status
from app.controllers.providers.models import (
    ConnectionTestResult,
    FetchOptions,
    FetchResult,
    OutgoingMessage,
    RawMessage,
    SendResult,
)
from app.exceptions import (
    BaseError,
    EntityNotFoundError,
    ProviderAuthError,
    ProviderError,
    ProviderUnavailableError,
    StaleCursorError,
)
from app.models.account import Account, AccountProvider
from app.models.provider_config import GmailConfig
from app.models.thread import NO_SUBJECT
from app.utils.crypto import CredentialCipher
from app.utils.message_utils import MessageUtils


class GmailServiceFactory:
    """Builds an authorized Gmail API resource from an account's stored token set."""

    def __init__(self, cipher: CredentialCipher, client_id: str, client_secret: str, token_uri: str) -> None:
        self._cipher = cipher
        self._client_id = client_id
        self._client_secret = client_secret
        self._token_uri = token_uri

    def build(self, account: Account) -> Resource:
        tokens = self._cipher.decrypt_json(account.credentials)
        config = account.provider_config
        scopes = config.scopes if isinstance(config, GmailConfig) else None
        credentials = Credentials(
            token=tokens.get("access_token"),
            refresh_token=tokens.get("refresh_token"),
            token_uri=self._token_uri,
            client_id=self._client_id,
            client_secret=self._client_secret,
            scopes=scopes,
        )
        return build("gmail", "v1", credentials=credentials, cache_discovery=False)


class GmailSyncAdapter(ProviderSyncAdapter):
    provider = AccountProvider.gmail
    supports_incremental = True

    def __init__(
        self,
        service_factory: GmailServiceFactory,
        retry_policy: RetryPolicy | None = None,
        history_page_size: int = 100,
    ) -> None:
        super().__init__(retry_policy)
        self._service_factory = service_factory
        self._history_page_size = history_page_size

    async def _service(self, account: Account) -> Resource:
        return await asyncio.to_thread(self._service_factory.build, account)

    def _translate(self, error: HttpError, description: str, account: Account, cursor_request: bool) -> BaseError:
        status = int(error.resp.status)
        reason = str(error)
        if cursor_request and (status == 404 or (status == 400 and "history" in reason.lower())):
            return StaleCursorError(f"{description}: history id no longer valid", account_id=account.id)
        return error_for_status(status, f"{description} failed with {status}: {reason}", account_id=account.id)

    async def _execute(
        self,
        account: Account,
        request: Callable[[], HttpRequest],
        description: str,
        cursor_request: bool = False,
    ) -> dict[str, Any]:
        async def run() -> dict[str, Any]:
            try:
                return await asyncio.to_thread(lambda: request().execute())
            except HttpError as e:
                raise self._translate(e, description, account, cursor_request) from e
            except RefreshError as e:
                raise ProviderAuthError(f"{description}: token refresh failed: {e}", account_id=account.id) from e
            except (OSError, TimeoutError) as e:
                raise ProviderUnavailableError(f"{description}: {e}", account_id=account.id) from e

        return await self._call(run, f"gmail {description} for account {account.id}")

    async def fetch_incremental(self, account: Account, options: FetchOptions) -> FetchResult:
        service = await self._service(account)
        users = service.users()
        cursor = account.incremental_cursor
        history_id = cursor
        message_ids: list[str] = []
        page_token: str | None = None

        try:
            while True:
                response = await self._execute(
                    account,
                    lambda: users.history().list(
                        userId="me",
                        startHistoryId=cursor,
                        historyTypes=["messageAdded"],
                        maxResults=self._history_page_size,
                        pageToken=page_token,
                    ),
                    "history.list",
                    cursor_request=True,
                )
                for record in response.get("history", []):
                    for added in record.get("messagesAdded", []):
                        message_id = added.get("message", {}).get("id")
                        if message_id and message_id not in message_ids:
                            message_ids.append(message_id)
                history_id = response.get("historyId", history_id)
                page_token = response.get("nextPageToken")
                if not page_token:
                    break
        except StaleCursorError:
            self._logger.info(f"Stale history id for {account.email}, falling back to full sync")
            result = await self.fetch_full(account, options)
            return FetchResult(messages=result.messages, new_cursor=result.new_cursor, was_full_sync=True)

        messages = await self._get_messages(account, users, message_ids)
        self._logger.debug(f"Incremental sync for {account.email}: {len(messages)} new messages")
        return FetchResult(messages=messages, new_cursor=str(history_id) if history_id else cursor)

    async def fetch_full(self, account: Account, options: FetchOptions) -> FetchResult:
        service = await self._service(account)
        users = service.users()
        config = account.provider_config
        label_ids = config.label_ids if isinstance(config, GmailConfig) else ["INBOX"]

        # The profile is read first so anything arriving during the listing shows up in the next history call
        profile = await self._execute(account, lambda: users.getProfile(userId="me"), "getProfile")
        listing = await self._execute(
            account,
            lambda: users.messages().list(userId="me", maxResults=options.max_results, labelIds=label_ids),
            "messages.list",
        )
        message_ids = [item["id"] for item in listing.get("messages", [])]
        messages = await self._get_messages(account, users, message_ids)

        history_id = profile.get("historyId")
        return FetchResult(messages=messages, new_cursor=str(history_id) if history_id else None, was_full_sync=True)

    async def _get_messages(self, account: Account, users: Resource, message_ids: list[str]) -> list[RawMessage]:
        messages: list[RawMessage] = []
        for message_id in message_ids:
            try:
                payload = await self._execute(
                    account,
                    lambda: users.messages().get(userId="me", id=message_id, format="full"),
                    "messages.get",
                )
            except EntityNotFoundError:
                self._logger.info(f"Message {message_id} disappeared before it could be fetched for {account.email}")
                continue
            messages.append(self.parse_message(payload))
        return messages

    @staticmethod
    def _decode_data(data: str | None) -> str | None:
        if not data:
            return None
        padded = data + "=" * (-len(data) % 4)
        return base64.urlsafe_b64decode(padded.encode()).decode("utf-8", errors="replace")

    @classmethod
    def _collect_bodies(cls, part: dict[str, Any], bodies: dict[str, str]) -> None:
        mime_type = part.get("mimeType", "")
        if mime_type in ("text/plain", "text/html") and mime_type not in bodies:
            decoded = cls._decode_data(part.get("body", {}).get("data"))
            if decoded is not None:
                bodies[mime_type] = decoded
        for child in part.get("parts", []) or []:
            cls._collect_bodies(child, bodies)

    @classmethod
    def parse_message(cls, payload: dict[str, Any]) -> RawMessage:
        """Convert a messages.get(format=full) response into a RawMessage."""
        message_payload = payload.get("payload", {})
        headers = {h["name"].lower(): h["value"] for h in message_payload.get("headers", [])}
        bodies: dict[str, str] = {}
        cls._collect_bodies(message_payload, bodies)

        internal_date = payload.get("internalDate")
        if internal_date:
            sent_at = datetime.fromtimestamp(int(internal_date) / 1000, tz=UTC)
        else:
            sent_at = MessageUtils.parse_date(headers.get("date"))

        from_addresses = MessageUtils.parse_addresses(headers.get("from"))
        labels = payload.get("labelIds", []) or []

        return RawMessage(
            external_message_id=payload["id"],
            from_email=from_addresses[0] if from_addresses else "",
            subject=(headers.get("subject") or "").strip() or NO_SUBJECT,
            to=MessageUtils.parse_addresses(headers.get("to")),
            cc=MessageUtils.parse_addresses(headers.get("cc")),
            bcc=MessageUtils.parse_addresses(headers.get("bcc")),
            html_body=bodies.get("text/html"),
            text_body=bodies.get("text/plain") or payload.get("snippet"),
            sent_at=sent_at,
            is_read="UNREAD" not in labels,
            is_starred="STARRED" in labels,
        )

    async def send(self, account: Account, message: OutgoingMessage) -> SendResult:
        service = await self._service(account)
        users = service.users()
        mime = MessageUtils.build_mime_message(account.email, message, include_bcc=True)
        raw = base64.urlsafe_b64encode(mime.as_bytes()).decode()

        response = await self._execute(
            account, lambda: users.messages().send(userId="me", body={"raw": raw}), "messages.send"
        )
        self._logger.info(f"Sent message {response.get('id')} from {account.email}")
        return SendResult(success=True, provider_message_id=response.get("id"))

    async def test_connection(self, account: Account) -> ConnectionTestResult:
        try:
            service = await self._service(account)
            await self._execute(account, lambda: service.users().getProfile(userId="me"), "getProfile")
        except (ProviderError, EntityNotFoundError) as e:
            return ConnectionTestResult(success=False, error=e.message)
        return ConnectionTestResult(success=True)
