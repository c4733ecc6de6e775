import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from app.controllers.providers.models import (
    ConnectionTestResult,
    FetchOptions,
    FetchResult,
    OutgoingMessage,
    SendResult,
)
from app.exceptions import (
    BaseError,
    EntityNotFoundError,
    ProviderAuthError,
    ProviderError,
    ProviderRateLimitedError,
    ProviderUnavailableError,
)
from app.models.account import Account, AccountProvider

T = TypeVar("T")

logger = logging.getLogger(__name__)


@dataclass
class RetryPolicy:
    base_delay: float = 1.0
    max_delay: float = 32.0
    max_attempts: int = 5

    def delay_for(self, attempt: int) -> float:
        return min(self.base_delay * (2**attempt), self.max_delay)


async def with_rate_limit_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    description: str = "provider call",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run `operation`, retrying only provider rate-limit errors with exponential backoff."""
    attempt = 0
    while True:
        try:
            return await operation()
        except ProviderRateLimitedError:
            if attempt >= policy.max_attempts - 1:
                logger.warning(f"{description}: still rate limited after {policy.max_attempts} attempts")
                raise
            delay = policy.delay_for(attempt)
            logger.info(f"{description}: rate limited, retrying in {delay:.1f}s (attempt {attempt + 1})")
            await sleep(delay)
            attempt += 1


def error_for_status(status: int, message: str, **kwargs: object) -> BaseError:
    """Map a provider HTTP status onto the provider error taxonomy."""
    if status == 404:
        return EntityNotFoundError(message, **kwargs)
    if status == 401:
        return ProviderAuthError(message, **kwargs)
    if status in (403, 429):
        return ProviderRateLimitedError(message, **kwargs)
    if status >= 500:
        return ProviderUnavailableError(message, **kwargs)
    return ProviderError(message, **kwargs)


class ProviderSyncAdapter(ABC):
    """Fetches and sends mail for one provider family."""

    provider: AccountProvider
    supports_incremental: bool = False

    def __init__(self, retry_policy: RetryPolicy | None = None) -> None:
        self._logger = logging.getLogger(type(self).__module__)
        self._retry_policy = retry_policy or RetryPolicy()

    async def _call(self, operation: Callable[[], Awaitable[T]], description: str) -> T:
        return await with_rate_limit_retry(operation, self._retry_policy, description=description)

    async def fetch(self, account: Account, options: FetchOptions | None = None) -> FetchResult:
        """Incremental sync when the account has a cursor, full sync otherwise."""
        options = options or FetchOptions()
        if self.supports_incremental and account.incremental_cursor and not options.full_sync:
            return await self.fetch_incremental(account, options)
        return await self.fetch_full(account, options)

    async def fetch_incremental(self, account: Account, options: FetchOptions) -> FetchResult:
        return await self.fetch_full(account, options)

    @abstractmethod
    async def fetch_full(self, account: Account, options: FetchOptions) -> FetchResult: ...

    @abstractmethod
    async def send(self, account: Account, message: OutgoingMessage) -> SendResult: ...

    @abstractmethod
    async def test_connection(self, account: Account) -> ConnectionTestResult: ...

    async def close(self) -> None:
        return None


class AdapterRegistry:
    def __init__(self, adapters: list[ProviderSyncAdapter]) -> None:
        self._adapters = {adapter.provider: adapter for adapter in adapters}

    def get(self, provider: AccountProvider) -> ProviderSyncAdapter:
        adapter = self._adapters.get(provider)
        if adapter is None:
            raise ProviderError(f"No adapter registered for provider {provider.value}", provider=provider.value)
        return adapter

    async def close(self) -> None:
        for adapter in self._adapters.values():
            await adapter.close()
