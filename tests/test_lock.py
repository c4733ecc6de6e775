from unittest.mock import AsyncMock, MagicMock

import pytest

from app.controllers.resilience.lock import DistributedLock
from app.exceptions import CounterStoreError, LockNotAcquiredError


@pytest.mark.asyncio
async def test_only_one_holder(counter_store):
    lock = DistributedLock(counter_store, retry_delay=0)

    token = await lock.acquire("cache-flush", ttl_seconds=60)

    assert token is not None
    assert await lock.acquire("cache-flush", ttl_seconds=60, retries=2) is None


@pytest.mark.asyncio
async def test_release_requires_matching_token(counter_store):
    lock = DistributedLock(counter_store, retry_delay=0)
    token = await lock.acquire("cache-flush")

    assert not await lock.release("cache-flush", "someone-else")
    assert await lock.release("cache-flush", token)
    assert await lock.acquire("cache-flush") is not None


@pytest.mark.asyncio
async def test_expired_lock_can_be_taken_over(counter_store, clock):
    lock = DistributedLock(counter_store, retry_delay=0)
    stale = await lock.acquire("cache-flush", ttl_seconds=10)

    clock.advance(11)
    fresh = await lock.acquire("cache-flush", ttl_seconds=10)

    assert fresh is not None
    assert not await lock.release("cache-flush", stale)
    assert await counter_store.get("lock:cache-flush") == fresh


@pytest.mark.asyncio
async def test_hold_releases_on_exit(counter_store):
    lock = DistributedLock(counter_store, retry_delay=0)

    with pytest.raises(RuntimeError):
        async with lock.hold("cache-flush"):
            assert await counter_store.get("lock:cache-flush") is not None
            raise RuntimeError("boom")

    assert await counter_store.get("lock:cache-flush") is None


@pytest.mark.asyncio
async def test_hold_raises_when_held_elsewhere(counter_store):
    lock = DistributedLock(counter_store, retry_delay=0)
    await lock.acquire("cache-flush")

    with pytest.raises(LockNotAcquiredError):
        async with lock.hold("cache-flush", retries=1):
            pass


@pytest.mark.asyncio
async def test_store_errors_mean_not_acquired():
    store = MagicMock()
    store.set_if_absent = AsyncMock(side_effect=CounterStoreError("down"))
    lock = DistributedLock(store, retry_delay=0)

    assert await lock.acquire("cache-flush", retries=2) is None
    assert store.set_if_absent.await_count == 2
