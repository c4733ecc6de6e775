import hashlib
import hmac
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from app.controllers.notify.notifier import (
    EmailCacheInvalidator,
    LoggingNotifier,
    OwnerEvent,
    SyncEvent,
    WebhookNotifier,
)
from app.exceptions import CounterStoreError


@pytest.mark.asyncio
async def test_invalidate_owner_only_touches_that_owner(counter_store):
    await counter_store.set("email:threads:10:page-1", "[]")
    await counter_store.set("email:threads:10:page-2", "[]")
    await counter_store.set("email:threads:11:page-1", "[]")

    assert await EmailCacheInvalidator(counter_store).invalidate_owner(10) == 2
    assert await counter_store.get("email:threads:11:page-1") == "[]"


@pytest.mark.asyncio
async def test_invalidate_owner_survives_store_errors():
    store = MagicMock()
    store.delete_pattern = AsyncMock(side_effect=CounterStoreError("down"))

    assert await EmailCacheInvalidator(store).invalidate_owner(10) == 0


def test_sync_event_payload():
    payload = SyncEvent(account_id=3, new_message_count=2).to_payload()

    assert payload["type"] == "email_sync_complete"
    assert payload["accountId"] == 3
    assert payload["newMessageCount"] == 2


@pytest.mark.asyncio
async def test_logging_notifier_always_delivers():
    assert await LoggingNotifier().broadcast_to_owner(10, OwnerEvent(type="ping"))


def test_webhook_signature_is_hmac_sha256_of_body():
    notifier = WebhookNotifier("https://hooks.example.com", secret="s3cret")
    body = json.dumps({"ownerId": 10})

    expected = hmac.new(b"s3cret", body.encode(), hashlib.sha256).hexdigest()
    assert notifier._generate_signature(body) == expected
    assert WebhookNotifier("https://hooks.example.com")._generate_signature(body) == ""
