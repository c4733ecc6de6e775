import asyncio
from typing import Any

import aiohttp

from app.controllers.providers.base import ProviderSyncAdapter, RetryPolicy, error_for_status
from app.controllers.providers.models import (
    ConnectionTestResult,
    FetchOptions,
    FetchResult,
    OutgoingMessage,
    RawMessage,
    SendResult,
)
from app.exceptions import BaseError, ProviderAuthError, ProviderUnavailableError
from app.models.account import Account, AccountProvider
from app.models.provider_config import OutlookConfig
from app.models.thread import NO_SUBJECT
from app.utils.crypto import CredentialCipher
from app.utils.message_utils import MessageUtils

MESSAGE_FIELDS = (
    "id",
    "subject",
    "from",
    "toRecipients",
    "ccRecipients",
    "bccRecipients",
    "receivedDateTime",
    "body",
    "bodyPreview",
    "isRead",
    "flag",
)


class OutlookSyncAdapter(ProviderSyncAdapter):
    """Microsoft Graph adapter. Graph offers no cursor here, so every sync lists the newest messages."""

    provider = AccountProvider.outlook
    supports_incremental = False

    def __init__(
        self,
        cipher: CredentialCipher,
        base_url: str = "https://graph.microsoft.com/v1.0",
        timeout: int = 30,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        super().__init__(retry_policy)
        self._cipher = cipher
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._http_session: aiohttp.ClientSession | None = None
        self._session_lock = asyncio.Lock()

    async def _session(self) -> aiohttp.ClientSession:
        async with self._session_lock:
            if self._http_session is None or self._http_session.closed:
                self._http_session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self._timeout))
            return self._http_session

    async def close(self) -> None:
        if self._http_session:
            await self._http_session.close()
            self._http_session = None

    def _headers(self, account: Account) -> dict[str, str]:
        tokens = self._cipher.decrypt_json(account.credentials)
        access_token = tokens.get("access_token")
        if not access_token:
            raise ProviderAuthError("Outlook account has no access token", account_id=account.id)
        return {"Authorization": f"Bearer {access_token}", "Content-Type": "application/json"}

    async def _request(
        self,
        account: Account,
        method: str,
        path: str,
        description: str,
        params: dict[str, str] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        headers = self._headers(account)
        session = await self._session()

        async def run() -> dict[str, Any]:
            try:
                async with session.request(
                    method, f"{self._base_url}{path}", headers=headers, params=params, json=json_body
                ) as response:
                    if response.status >= 400:
                        body = await response.text()
                        raise error_for_status(
                            response.status,
                            f"{description} failed with {response.status}: {body[:200]}",
                            account_id=account.id,
                        )
                    if response.status == 202 or response.content_length == 0:
                        return {}
                    return await response.json()
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                raise ProviderUnavailableError(f"{description}: {e}", account_id=account.id) from e

        return await self._call(run, f"outlook {description} for account {account.id}")

    async def fetch_full(self, account: Account, options: FetchOptions) -> FetchResult:
        config = account.provider_config
        folder = config.folder if isinstance(config, OutlookConfig) else "inbox"
        response = await self._request(
            account,
            "GET",
            f"/me/mailFolders/{folder}/messages",
            "list messages",
            params={
                "$top": str(options.max_results),
                "$select": ",".join(MESSAGE_FIELDS),
                "$orderby": "receivedDateTime desc",
            },
        )
        messages = [self.parse_message(item) for item in response.get("value", [])]
        return FetchResult(messages=messages, new_cursor=None, was_full_sync=True)

    @staticmethod
    def _addresses(recipients: list[dict[str, Any]] | None) -> list[str]:
        return [
            r["emailAddress"]["address"] for r in recipients or [] if r.get("emailAddress", {}).get("address")
        ]

    @classmethod
    def parse_message(cls, item: dict[str, Any]) -> RawMessage:
        body = item.get("body") or {}
        content = body.get("content")
        is_html = (body.get("contentType") or "").lower() == "html"
        sender = (item.get("from") or {}).get("emailAddress", {}).get("address", "")
        received = item.get("receivedDateTime")

        return RawMessage(
            external_message_id=item["id"],
            from_email=sender,
            subject=(item.get("subject") or "").strip() or NO_SUBJECT,
            to=cls._addresses(item.get("toRecipients")),
            cc=cls._addresses(item.get("ccRecipients")),
            bcc=cls._addresses(item.get("bccRecipients")),
            html_body=content if is_html else None,
            text_body=content if not is_html and content else item.get("bodyPreview"),
            sent_at=MessageUtils.parse_iso_datetime(received),
            is_read=bool(item.get("isRead", False)),
            is_starred=(item.get("flag") or {}).get("flagStatus") == "flagged",
        )

    @staticmethod
    def _recipients(addresses: list[str]) -> list[dict[str, Any]]:
        return [{"emailAddress": {"address": address}} for address in addresses]

    async def send(self, account: Account, message: OutgoingMessage) -> SendResult:
        content_type = "HTML" if message.html_body else "Text"
        payload = {
            "message": {
                "subject": message.subject,
                "body": {"contentType": content_type, "content": message.html_body or message.text_body or ""},
                "toRecipients": self._recipients(message.to),
                "ccRecipients": self._recipients(message.cc),
                "bccRecipients": self._recipients(message.bcc),
            },
            "saveToSentItems": True,
        }
        await self._request(account, "POST", "/me/sendMail", "sendMail", json_body=payload)
        self._logger.info(f"Sent message from {account.email} via Graph")
        # Graph accepts the message with 202 and does not return its id
        return SendResult(success=True, provider_message_id=None)

    async def test_connection(self, account: Account) -> ConnectionTestResult:
        try:
            await self._request(account, "GET", "/me", "get profile")
        except BaseError as e:
            return ConnectionTestResult(success=False, error=e.message)
        return ConnectionTestResult(success=True)
