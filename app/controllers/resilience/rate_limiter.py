import logging
import math
import time
from dataclasses import dataclass
from typing import Callable

from app.controllers.resilience.counter_store import SharedCounterStore
from app.exceptions import CounterStoreError


@dataclass(frozen=True)
class RateLimitBudget:
    operation: str
    limit: int
    window_seconds: int

    def key(self, account_id: int) -> str:
        return f"{self.operation}:{account_id}"


SEND_BUDGET = RateLimitBudget("send", 100, 3600)
SYNC_BUDGET = RateLimitBudget("sync", 10, 300)
FETCH_BUDGET = RateLimitBudget("fetch", 50, 60)


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: float


class RateLimiter:
    """Fixed-window counters over the shared store.

    Fails open: if the store cannot be reached the call is allowed.
    """

    def __init__(self, store: SharedCounterStore, clock: Callable[[], float] = time.time) -> None:
        self._logger = logging.getLogger(__name__)
        self._store = store
        self._clock = clock

    @staticmethod
    def _window_key(key: str, window_index: int) -> str:
        return f"ratelimit:{key}:{window_index}"

    async def allow(self, key: str, limit: int, window_seconds: int) -> RateLimitResult:
        now = self._clock()
        window_index = math.floor(now / window_seconds)
        reset_at = float((window_index + 1) * window_seconds)

        try:
            count = await self._store.incr_with_ttl(self._window_key(key, window_index), window_seconds)
        except CounterStoreError as e:
            self._logger.warning(f"Rate limiter store unavailable for {key}, allowing request: {e}")
            return RateLimitResult(allowed=True, remaining=limit, reset_at=reset_at)

        allowed = count <= limit
        if not allowed:
            self._logger.debug(f"Rate limit exceeded for {key}: {count}/{limit} in {window_seconds}s window")
        return RateLimitResult(allowed=allowed, remaining=max(0, limit - count), reset_at=reset_at)

    async def allow_budget(self, budget: RateLimitBudget, account_id: int) -> RateLimitResult:
        return await self.allow(budget.key(account_id), budget.limit, budget.window_seconds)

    async def reset(self, key: str, window_seconds: int) -> None:
        window_index = math.floor(self._clock() / window_seconds)
        try:
            await self._store.delete(self._window_key(key, window_index))
        except CounterStoreError as e:
            self._logger.warning(f"Failed to reset rate limit for {key}: {e}")
