import asyncio
import hashlib
import hmac
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

import aiohttp

from app.controllers.resilience.counter_store import SharedCounterStore
from app.exceptions import CounterStoreError
from app.models.base import utcnow

EMAIL_SYNC_COMPLETE = "email_sync_complete"


@dataclass
class SyncEvent:
    account_id: int
    new_message_count: int
    type: str = EMAIL_SYNC_COMPLETE
    timestamp: datetime = field(default_factory=utcnow)

    def to_payload(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "accountId": self.account_id,
            "newMessageCount": self.new_message_count,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class OwnerEvent:
    """Free-form event queued through the notify queue."""

    type: str
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    def to_payload(self) -> dict[str, Any]:
        return {"type": self.type, **self.data, "timestamp": self.timestamp.isoformat()}


class Event(Protocol):
    type: str

    def to_payload(self) -> dict[str, Any]: ...


class Notifier(Protocol):
    async def broadcast_to_owner(self, owner_id: int, event: Event) -> bool: ...

    async def close_session(self) -> None: ...


class LoggingNotifier:
    """Notifier used when no webhook is configured."""

    def __init__(self) -> None:
        self._logger = logging.getLogger(__name__)

    async def broadcast_to_owner(self, owner_id: int, event: Event) -> bool:
        self._logger.info(f"Event {event.type} for owner {owner_id}: {event.to_payload()}")
        return True

    async def close_session(self) -> None:
        return None


class WebhookNotifier:
    """Posts owner events to a webhook, signed with HMAC-SHA256. Best-effort: never raises."""

    def __init__(self, url: str, secret: str | None = None, timeout: int = 10, max_retries: int = 3) -> None:
        self._logger = logging.getLogger(__name__)
        self._url = url
        self._secret = secret
        self._timeout = timeout
        self._max_retries = max_retries
        self._http_session: aiohttp.ClientSession | None = None
        self._session_lock = asyncio.Lock()

    async def init_session(self) -> aiohttp.ClientSession:
        async with self._session_lock:
            if self._http_session is None or self._http_session.closed:
                self._http_session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self._timeout))
            return self._http_session

    async def close_session(self) -> None:
        if self._http_session:
            await self._http_session.close()
            self._http_session = None

    def _generate_signature(self, body: str) -> str:
        if not self._secret:
            return ""
        return hmac.new(self._secret.encode("utf-8"), msg=body.encode("utf-8"), digestmod=hashlib.sha256).hexdigest()

    async def broadcast_to_owner(self, owner_id: int, event: Event) -> bool:
        session = await self.init_session()
        payload = {"id": str(uuid.uuid4()), "ownerId": owner_id, "delivery_attempt": 1, "event": event.to_payload()}
        base_delay = 1.0

        for attempt in range(1, self._max_retries + 1):
            payload["delivery_attempt"] = attempt
            body = json.dumps(payload, default=str)
            headers = {"Content-Type": "application/json"}
            signature = self._generate_signature(body)
            if signature:
                headers["x-mailsync-signature"] = signature

            try:
                async with session.post(self._url, data=body, headers=headers) as response:
                    if response.status < 300:
                        self._logger.debug(f"Delivered {event.type} for owner {owner_id}")
                        return True
                    self._logger.warning(f"Webhook returned {response.status} for {event.type}, owner {owner_id}")
                    if 400 <= response.status < 500:
                        return False
            except asyncio.TimeoutError:
                self._logger.warning(f"Webhook timeout (attempt {attempt}) for {event.type}, owner {owner_id}")
            except aiohttp.ClientError as e:
                self._logger.warning(f"Webhook error (attempt {attempt}) for {event.type}, owner {owner_id}: {e}")

            if attempt < self._max_retries:
                await asyncio.sleep(base_delay * (2 ** (attempt - 1)))

        self._logger.error(f"Webhook delivery failed after {self._max_retries} attempts for owner {owner_id}")
        return False


class EmailCacheInvalidator:
    """Drops cached thread listings in the shared store after new mail lands."""

    PREFIX = "email:"

    def __init__(self, store: SharedCounterStore) -> None:
        self._logger = logging.getLogger(__name__)
        self._store = store

    async def invalidate_owner(self, owner_id: int) -> int:
        try:
            deleted = await self._store.delete_pattern(f"{self.PREFIX}threads:{owner_id}:*")
        except CounterStoreError as e:
            self._logger.warning(f"Failed to invalidate cache for owner {owner_id}: {e}")
            return 0
        if deleted:
            self._logger.debug(f"Invalidated {deleted} cache entries for owner {owner_id}")
        return deleted

    async def clear_all(self) -> int:
        """Delete every email cache entry. Destructive; callers hold the cache-flush lock."""
        deleted = await self._store.delete_pattern(f"{self.PREFIX}*")
        self._logger.info(f"Cleared {deleted} email cache entries")
        return deleted
