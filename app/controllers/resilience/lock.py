import asyncio
import logging
import secrets
import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from app.controllers.resilience.counter_store import SharedCounterStore
from app.exceptions import CounterStoreError, LockNotAcquiredError


class DistributedLock:
    """At-most-one-holder lock over the shared store.

    Acquire is SET NX with a TTL; release deletes the key only while it still holds
    the caller's token, so an expired holder can never free someone else's lock.
    """

    def __init__(self, store: SharedCounterStore, retry_delay: float = 0.1) -> None:
        self._logger = logging.getLogger(__name__)
        self._store = store
        self._retry_delay = retry_delay

    @staticmethod
    def _key(key: str) -> str:
        return f"lock:{key}"

    async def acquire(self, key: str, ttl_seconds: int = 10, retries: int = 3) -> str | None:
        token = f"{int(time.time() * 1000)}-{secrets.token_hex(8)}"
        for attempt in range(retries):
            try:
                if await self._store.set_if_absent(self._key(key), token, ttl_seconds=ttl_seconds):
                    self._logger.debug(f"Acquired lock {key}")
                    return token
            except CounterStoreError as e:
                self._logger.warning(f"Lock store error while acquiring {key}: {e}")
            if attempt < retries - 1:
                await asyncio.sleep(self._retry_delay * (attempt + 1))

        self._logger.info(f"Could not acquire lock {key} after {retries} attempts")
        return None

    async def release(self, key: str, token: str) -> bool:
        try:
            released = await self._store.compare_and_delete(self._key(key), token)
        except CounterStoreError as e:
            self._logger.warning(f"Lock store error while releasing {key}: {e}")
            return False
        if not released:
            self._logger.warning(f"Lock {key} was not held by this token; it may have expired")
        return released

    @asynccontextmanager
    async def hold(self, key: str, ttl_seconds: int = 10, retries: int = 3) -> AsyncGenerator[str, None]:
        token = await self.acquire(key, ttl_seconds=ttl_seconds, retries=retries)
        if token is None:
            raise LockNotAcquiredError(f"Lock {key} is held by another worker", key=key)
        try:
            yield token
        finally:
            await self.release(key, token)
