from typing import cast

from dependency_injector import containers, providers

from app.controllers.notify.notifier import EmailCacheInvalidator, LoggingNotifier, WebhookNotifier
from app.controllers.providers.base import AdapterRegistry, RetryPolicy
from app.controllers.providers.gmail import GmailServiceFactory, GmailSyncAdapter
from app.controllers.providers.imap import IMAPSyncAdapter
from app.controllers.providers.imap_connection import ConnectionManager
from app.controllers.providers.outlook import OutlookSyncAdapter
from app.controllers.queue.handlers import JobHandlers
from app.controllers.queue.job_queue import JobQueue
from app.controllers.resilience.container import ResilienceContainer
from app.controllers.sync.coordinator import ParallelFetchCoordinator
from app.controllers.sync.ingestion import MessageIngestionPipeline
from app.controllers.sync.scheduler import SyncScheduler
from app.repos.container import RepoContainer
from app.utils.crypto import CredentialCipher
from settings import settings


class ControllerContainer(containers.DeclarativeContainer):
    repos: RepoContainer = cast(RepoContainer, providers.DependenciesContainer())
    resilience: ResilienceContainer = cast(ResilienceContainer, providers.DependenciesContainer())

    cipher = providers.Singleton(CredentialCipher, key=settings.password_encryption_key)
    retry_policy = providers.Singleton(
        RetryPolicy,
        base_delay=settings.provider.retry_base_delay,
        max_delay=settings.provider.retry_max_delay,
        max_attempts=settings.provider.retry_max_attempts,
    )

    gmail_service_factory = providers.Singleton(
        GmailServiceFactory,
        cipher=cipher,
        client_id=settings.provider.google_client_id,
        client_secret=settings.provider.google_client_secret,
        token_uri=settings.provider.google_token_uri,
    )
    gmail_adapter = providers.Singleton(GmailSyncAdapter, service_factory=gmail_service_factory, retry_policy=retry_policy)
    outlook_adapter = providers.Singleton(
        OutlookSyncAdapter,
        cipher=cipher,
        base_url=settings.provider.graph_base_url,
        timeout=settings.provider.http_timeout,
        retry_policy=retry_policy,
    )
    imap_connection_manager = providers.Singleton(
        ConnectionManager,
        cipher=cipher,
        timeout=settings.provider.imap_timeout,
        connection_limit=settings.provider.imap_connection_limit,
    )
    imap_adapter = providers.Singleton(
        IMAPSyncAdapter,
        connection_manager=imap_connection_manager,
        cipher=cipher,
        smtp_timeout=settings.provider.http_timeout,
        retry_policy=retry_policy,
    )
    adapters = providers.Singleton(
        AdapterRegistry, adapters=providers.List(gmail_adapter, outlook_adapter, imap_adapter)
    )

    notifier = providers.Selector(
        providers.Object("webhook" if settings.webhook.url else "logging"),
        webhook=providers.Singleton(
            WebhookNotifier,
            url=settings.webhook.url,
            secret=settings.webhook.secret,
            timeout=settings.webhook.timeout,
            max_retries=settings.webhook.max_retries,
        ),
        logging=providers.Singleton(LoggingNotifier),
    )
    cache_invalidator = providers.Singleton(EmailCacheInvalidator, store=resilience.counter_store)

    ingestion_pipeline = providers.Singleton(
        MessageIngestionPipeline,
        store=repos.store,
        batch_size=settings.sync.ingest_batch_size,
        batch_concurrency=settings.sync.ingest_batch_concurrency,
        max_retries=settings.sync.ingest_max_retries,
    )
    coordinator = providers.Singleton(
        ParallelFetchCoordinator,
        store=repos.store,
        adapters=adapters,
        pipeline=ingestion_pipeline,
        breakers=resilience.breakers,
        rate_limiter=resilience.rate_limiter,
        notifier=notifier,
        cache_invalidator=cache_invalidator,
        fetch_budget=resilience.fetch_budget,
        default_fetch_limit=settings.sync.default_fetch_limit,
    )
    scheduler = providers.Singleton(
        SyncScheduler,
        store=repos.store,
        coordinator=coordinator,
        rate_limiter=resilience.rate_limiter,
        sync_budget=resilience.sync_budget,
        interval_seconds=settings.sync.interval_seconds,
        min_interval_seconds=settings.sync.min_interval_seconds,
        max_concurrent_syncs=settings.sync.max_concurrent_syncs,
        default_fetch_limit=settings.sync.default_fetch_limit,
    )

    job_queue = providers.Singleton(
        JobQueue,
        store=resilience.counter_store,
        rate_limiter=resilience.rate_limiter,
        poll_interval=settings.queue.poll_interval,
        job_timeout=settings.queue.job_timeout,
        completed_retention_seconds=settings.queue.completed_retention_seconds,
        completed_retention_count=settings.queue.completed_retention_count,
        failed_retention_seconds=settings.queue.failed_retention_seconds,
    )
    job_handlers = providers.Singleton(
        JobHandlers,
        store=repos.store,
        adapters=adapters,
        breakers=resilience.breakers,
        rate_limiter=resilience.rate_limiter,
        coordinator=coordinator,
        notifier=notifier,
        cache_invalidator=cache_invalidator,
        lock=resilience.lock,
        job_queue=job_queue,
        send_budget=resilience.send_budget,
        fetch_limit=settings.sync.default_fetch_limit,
    )
