import asyncio
import logging

from app.controllers.notify.notifier import Notifier
from app.controllers.providers.base import AdapterRegistry
from app.controllers.queue.handlers import JobHandlers
from app.controllers.queue.job_queue import JobQueue
from app.controllers.resilience.circuit_breaker import CircuitBreakerRegistry
from app.controllers.resilience.counter_store import SharedCounterStore
from app.controllers.sync.scheduler import SyncScheduler
from app.exceptions import CounterStoreError, DuplicateJobError
from app.models.account import AccountProvider

logger = logging.getLogger(__name__)


class SyncWorker:
    """Long-running process: the sync scheduler plus the job queue workers."""

    def __init__(
        self,
        scheduler: SyncScheduler,
        job_queue: JobQueue,
        job_handlers: JobHandlers,
        breakers: CircuitBreakerRegistry,
        adapters: AdapterRegistry,
        notifier: Notifier,
        counter_store: SharedCounterStore,
        cleanup_interval_seconds: int = 86400,
    ) -> None:
        self._scheduler = scheduler
        self._job_queue = job_queue
        self._job_handlers = job_handlers
        self._breakers = breakers
        self._adapters = adapters
        self._notifier = notifier
        self._counter_store = counter_store
        self._cleanup_interval_seconds = cleanup_interval_seconds

        self._shutdown_event = asyncio.Event()
        self._cleanup_task: asyncio.Task[None] | None = None

    async def run(self) -> None:
        """Start everything and block until `shutdown` is called."""
        try:
            await self.start()
            await self._shutdown_event.wait()
        finally:
            await self._cleanup()

    async def start(self) -> None:
        if not await self._counter_store.ping():
            logger.warning("Shared counter store is not reachable, rate limits will fail open")

        for provider in AccountProvider:
            state = await self._breakers.restore(f"provider:{provider.value}")
            logger.info(f"Circuit breaker provider:{provider.value} restored as {state.value}")

        self._job_handlers.register()
        await self._job_queue.start()
        await self._scheduler.start()
        self._cleanup_task = asyncio.create_task(self._schedule_cleanup(), name="job-history-cleanup")
        logger.info("Sync worker started")

    async def _schedule_cleanup(self) -> None:
        while True:
            try:
                await self._job_queue.enqueue_cleanup("job-history")
            except (CounterStoreError, DuplicateJobError) as e:
                logger.warning(f"Could not enqueue job history cleanup: {e}")
            await asyncio.sleep(self._cleanup_interval_seconds)

    async def shutdown(self) -> None:
        logger.info("Sync worker shutdown requested")
        self._shutdown_event.set()

    async def _cleanup(self) -> None:
        logger.info("Sync worker: starting cleanup")

        if self._cleanup_task and not self._cleanup_task.done():
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass

        await self._scheduler.stop()
        await self._job_queue.stop()
        await self._adapters.close()
        await self._notifier.close_session()
        await self._counter_store.close()
        logger.info("Sync worker: cleanup complete")
