import asyncio
import logging
import time

from aioimaplib import IMAP4_SSL

from app.exceptions import ProviderAuthError, ProviderUnavailableError
from app.models.account import Account
from app.models.provider_config import IMAPConfig
from app.utils.crypto import CredentialCipher


class ConnectionThrottle:
    """Token bucket limiting how fast new connections are opened to one IMAP host."""

    def __init__(self, rate: float, burst: int | None = None):
        self._rate = rate
        self._burst = burst or int(rate * 2)
        self._tokens = float(self._burst)
        self._last_update = time.monotonic()
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        async with self._lock:
            now = time.monotonic()
            self._tokens = min(self._burst, self._tokens + (now - self._last_update) * self._rate)
            self._last_update = now

            if self._tokens >= 1:
                self._tokens -= 1
                return

            await asyncio.sleep((1 - self._tokens) / self._rate)
            self._tokens = 0
            self._last_update = time.monotonic()


class ConnectionManager:
    """Opens short-lived, logged-in IMAP connections with per-host limits.

    A host slot is held from `open` until `close`, so `connection_limit` bounds the
    live connections to each host, not just concurrent logins.
    """

    def __init__(self, cipher: CredentialCipher, timeout: int = 60, connection_limit: int = 10) -> None:
        self._logger = logging.getLogger(__name__)
        self._cipher = cipher
        self._timeout = timeout
        self._connection_limit = connection_limit
        self._throttles: dict[str, ConnectionThrottle] = {}
        self._host_slots: dict[str, asyncio.Semaphore] = {}
        self._held_slots: dict[int, asyncio.Semaphore] = {}

    def _slot(self, host: str) -> asyncio.Semaphore:
        if host not in self._host_slots:
            self._host_slots[host] = asyncio.Semaphore(self._connection_limit)
            self._throttles[host] = ConnectionThrottle(
                rate=max(1, self._connection_limit - 1), burst=self._connection_limit
            )
        return self._host_slots[host]

    async def open(self, account: Account, config: IMAPConfig) -> IMAP4_SSL:
        """Connect and log in. The caller must pass the connection to `close`."""
        password = self._cipher.decrypt(account.credentials)
        slot = self._slot(config.imap_host)
        await slot.acquire()

        connection: IMAP4_SSL | None = None
        try:
            await self._throttles[config.imap_host].acquire()
            connection = IMAP4_SSL(host=config.imap_host, port=config.imap_port, timeout=self._timeout)
            await connection.wait_hello_from_server()
            response = await connection.login(account.email, password)
            if response.result != "OK":
                raise ProviderAuthError(
                    f"IMAP login rejected by {config.imap_host}: {response.result}",
                    account_id=account.id,
                    provider="imap",
                )
        except (OSError, asyncio.TimeoutError) as e:
            await self._abandon(connection, account, slot)
            raise ProviderUnavailableError(
                f"Could not reach {config.imap_host}: {e}", account_id=account.id, provider="imap"
            ) from e
        except BaseException:
            await self._abandon(connection, account, slot)
            raise

        self._held_slots[id(connection)] = slot
        self._logger.debug(f"Opened IMAP connection for {account.email}")
        return connection

    async def _abandon(self, connection: IMAP4_SSL | None, account: Account, slot: asyncio.Semaphore) -> None:
        try:
            if connection is not None:
                await self._logout(connection, account)
        finally:
            slot.release()

    async def close(self, connection: IMAP4_SSL, account: Account) -> None:
        try:
            await self._logout(connection, account)
        finally:
            slot = self._held_slots.pop(id(connection), None)
            if slot is not None:
                slot.release()

    async def _logout(self, connection: IMAP4_SSL, account: Account) -> None:
        try:
            await asyncio.wait_for(connection.logout(), timeout=5)
            self._logger.debug(f"Closed connection for {account.email}")
        except asyncio.TimeoutError:
            self._logger.warning(f"Timeout closing connection for {account.email}, dropping it")
        except Exception as e:
            self._logger.warning(f"Error closing connection for {account.email}: {e}")
