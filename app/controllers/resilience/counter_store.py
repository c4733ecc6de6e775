"""
Shared key-value primitives used by the rate limiter, circuit breakers, locks and the job queue.

RedisCounterStore is the production backend. InMemoryCounterStore keeps the same semantics
inside one process for single-node runs and tests.
"""

import fnmatch
import heapq
import logging
import time
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Callable

from redis import asyncio as aioredis
from redis.exceptions import RedisError

from app.exceptions import CounterStoreError

COMPARE_AND_DELETE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class SharedCounterStore(ABC):
    @abstractmethod
    async def incr_with_ttl(self, key: str, ttl_seconds: int) -> int:
        """Atomically increment `key` and make sure it expires after `ttl_seconds`."""

    @abstractmethod
    async def get(self, key: str) -> str | None: ...

    @abstractmethod
    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None: ...

    @abstractmethod
    async def set_if_absent(self, key: str, value: str, ttl_seconds: int | None = None) -> bool: ...

    @abstractmethod
    async def delete(self, key: str) -> bool: ...

    @abstractmethod
    async def compare_and_delete(self, key: str, expected: str) -> bool:
        """Delete `key` only while it still holds `expected`."""

    @abstractmethod
    async def delete_pattern(self, pattern: str) -> int: ...

    @abstractmethod
    async def zadd(self, key: str, member: str, score: float) -> None: ...

    @abstractmethod
    async def zrem(self, key: str, member: str) -> bool:
        """Remove `member`; True only for the caller that actually removed it."""

    @abstractmethod
    async def zpopmin(self, key: str) -> tuple[str, float] | None: ...

    @abstractmethod
    async def zrangebyscore(self, key: str, min_score: float, max_score: float, limit: int | None = None) -> list[str]: ...

    @abstractmethod
    async def zremrangebyscore(self, key: str, min_score: float, max_score: float) -> int: ...

    @abstractmethod
    async def zcard(self, key: str) -> int: ...

    @abstractmethod
    async def ping(self) -> bool: ...

    async def close(self) -> None:
        return None


class RedisCounterStore(SharedCounterStore):
    def __init__(self, url: str, key_prefix: str = "", socket_timeout: float = 2.0) -> None:
        self._logger = logging.getLogger(__name__)
        self._prefix = key_prefix
        self._client = aioredis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=socket_timeout,
            socket_timeout=socket_timeout,
        )
        self._compare_and_delete = self._client.register_script(COMPARE_AND_DELETE_SCRIPT)

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    @asynccontextmanager
    async def _command(self, name: str, key: str) -> AsyncGenerator[None, None]:
        try:
            yield
        except RedisError as e:
            raise CounterStoreError(f"Redis {name} failed for {key}: {e}", key=key) from e

    async def incr_with_ttl(self, key: str, ttl_seconds: int) -> int:
        async with self._command("incr", key):
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.incr(self._key(key))
                pipe.expire(self._key(key), ttl_seconds)
                count, _ = await pipe.execute()
        return int(count)

    async def get(self, key: str) -> str | None:
        async with self._command("get", key):
            return await self._client.get(self._key(key))

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        async with self._command("set", key):
            await self._client.set(self._key(key), value, ex=ttl_seconds)

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int | None = None) -> bool:
        async with self._command("set nx", key):
            return bool(await self._client.set(self._key(key), value, ex=ttl_seconds, nx=True))

    async def delete(self, key: str) -> bool:
        async with self._command("del", key):
            return bool(await self._client.delete(self._key(key)))

    async def compare_and_delete(self, key: str, expected: str) -> bool:
        async with self._command("compare and delete", key):
            return bool(await self._compare_and_delete(keys=[self._key(key)], args=[expected]))

    async def delete_pattern(self, pattern: str) -> int:
        deleted = 0
        async with self._command("delete pattern", pattern):
            batch: list[str] = []
            async for key in self._client.scan_iter(match=self._key(pattern), count=500):
                batch.append(key)
                if len(batch) >= 500:
                    deleted += await self._client.delete(*batch)
                    batch = []
            if batch:
                deleted += await self._client.delete(*batch)
        return deleted

    async def zadd(self, key: str, member: str, score: float) -> None:
        async with self._command("zadd", key):
            await self._client.zadd(self._key(key), {member: score})

    async def zrem(self, key: str, member: str) -> bool:
        async with self._command("zrem", key):
            return bool(await self._client.zrem(self._key(key), member))

    async def zpopmin(self, key: str) -> tuple[str, float] | None:
        async with self._command("zpopmin", key):
            popped = await self._client.zpopmin(self._key(key), 1)
        if not popped:
            return None
        member, score = popped[0]
        return member, float(score)

    async def zrangebyscore(self, key: str, min_score: float, max_score: float, limit: int | None = None) -> list[str]:
        async with self._command("zrangebyscore", key):
            if limit is None:
                return list(await self._client.zrangebyscore(self._key(key), min_score, max_score))
            return list(await self._client.zrangebyscore(self._key(key), min_score, max_score, start=0, num=limit))

    async def zremrangebyscore(self, key: str, min_score: float, max_score: float) -> int:
        async with self._command("zremrangebyscore", key):
            return int(await self._client.zremrangebyscore(self._key(key), min_score, max_score))

    async def zcard(self, key: str) -> int:
        async with self._command("zcard", key):
            return int(await self._client.zcard(self._key(key)))

    async def ping(self) -> bool:
        try:
            return bool(await self._client.ping())
        except RedisError as e:
            self._logger.warning(f"Redis ping failed: {e}")
            return False

    async def close(self) -> None:
        await self._client.aclose()


class InMemoryCounterStore(SharedCounterStore):
    """Process-local store.

    Expiry is evaluated against `clock` when a key is read, and every write also
    sweeps keys whose deadline has passed, so keys that are never read again
    (old rate limit windows) do not pile up.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._values: dict[str, str] = {}
        self._expires_at: dict[str, float] = {}
        self._deadlines: list[tuple[float, str]] = []
        self._sorted_sets: dict[str, dict[str, float]] = {}

    def _expire_if_needed(self, key: str) -> None:
        expires_at = self._expires_at.get(key)
        if expires_at is not None and expires_at <= self._clock():
            self._values.pop(key, None)
            self._expires_at.pop(key, None)

    def _put(self, key: str, value: str, ttl_seconds: int | None) -> None:
        self._sweep()
        self._values[key] = value
        if ttl_seconds is None:
            self._expires_at.pop(key, None)
        else:
            expires_at = self._clock() + ttl_seconds
            self._expires_at[key] = expires_at
            heapq.heappush(self._deadlines, (expires_at, key))

    def _sweep(self) -> None:
        now = self._clock()
        while self._deadlines and self._deadlines[0][0] <= now:
            expires_at, key = heapq.heappop(self._deadlines)
            # Skip entries superseded by a later TTL or a persist
            if self._expires_at.get(key) == expires_at:
                self._values.pop(key, None)
                self._expires_at.pop(key, None)

    async def incr_with_ttl(self, key: str, ttl_seconds: int) -> int:
        self._expire_if_needed(key)
        count = int(self._values.get(key, "0")) + 1
        self._put(key, str(count), ttl_seconds)
        return count

    async def get(self, key: str) -> str | None:
        self._expire_if_needed(key)
        return self._values.get(key)

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        self._put(key, value, ttl_seconds)

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int | None = None) -> bool:
        self._expire_if_needed(key)
        if key in self._values:
            return False
        self._put(key, value, ttl_seconds)
        return True

    async def delete(self, key: str) -> bool:
        self._expire_if_needed(key)
        self._expires_at.pop(key, None)
        removed_value = self._values.pop(key, None) is not None
        removed_set = self._sorted_sets.pop(key, None) is not None
        return removed_value or removed_set

    async def compare_and_delete(self, key: str, expected: str) -> bool:
        self._expire_if_needed(key)
        if self._values.get(key) != expected:
            return False
        return await self.delete(key)

    async def delete_pattern(self, pattern: str) -> int:
        for key in list(self._values):
            self._expire_if_needed(key)
        matched = [key for key in {*self._values, *self._sorted_sets} if fnmatch.fnmatchcase(key, pattern)]
        for key in matched:
            await self.delete(key)
        return len(matched)

    async def zadd(self, key: str, member: str, score: float) -> None:
        self._sorted_sets.setdefault(key, {})[member] = score

    async def zrem(self, key: str, member: str) -> bool:
        members = self._sorted_sets.get(key)
        if not members or member not in members:
            return False
        del members[member]
        return True

    def _ordered(self, key: str) -> list[tuple[str, float]]:
        return sorted(self._sorted_sets.get(key, {}).items(), key=lambda item: (item[1], item[0]))

    async def zpopmin(self, key: str) -> tuple[str, float] | None:
        ordered = self._ordered(key)
        if not ordered:
            return None
        member, score = ordered[0]
        del self._sorted_sets[key][member]
        return member, score

    async def zrangebyscore(self, key: str, min_score: float, max_score: float, limit: int | None = None) -> list[str]:
        members = [member for member, score in self._ordered(key) if min_score <= score <= max_score]
        return members if limit is None else members[:limit]

    async def zremrangebyscore(self, key: str, min_score: float, max_score: float) -> int:
        members = await self.zrangebyscore(key, min_score, max_score)
        for member in members:
            del self._sorted_sets[key][member]
        return len(members)

    async def zcard(self, key: str) -> int:
        return len(self._sorted_sets.get(key, {}))

    async def ping(self) -> bool:
        return True
