import logging

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

from app.environment import EnvironmentName
from settings.log import LoggingSettings


class DatabaseSettings(BaseSettings):
    host: str = Field(alias="DATABASE_HOST", default="postgresql://localhost:5432")
    name: str = Field(alias="DATABASE_NAME", default="mailsync")
    min_pool_size: int = Field(alias="DATABASE_MIN_POOL_SIZE", default=5)
    max_pool_size: int = Field(alias="DATABASE_MAX_POOL_SIZE", default=20)

    @property
    def async_host(self) -> str:
        """Return the host URL with async driver for SQLAlchemy async engine."""
        return self.host.replace("postgresql://", "postgresql+asyncpg://", 1)


class RedisSettings(BaseSettings):
    url: str = Field(alias="REDIS_URL", default="redis://localhost:6379/0")
    use_memory_store: bool = Field(alias="REDIS_USE_MEMORY_STORE", default=False)
    socket_timeout: float = Field(alias="REDIS_SOCKET_TIMEOUT", default=2.0)
    key_prefix: str = Field(alias="REDIS_KEY_PREFIX", default="mailsync:")


class SyncSettings(BaseSettings):
    interval_seconds: int = Field(alias="SYNC_INTERVAL_SECONDS", default=15)
    min_interval_seconds: int = Field(alias="SYNC_MIN_INTERVAL_SECONDS", default=10)
    max_concurrent_syncs: int = Field(alias="SYNC_MAX_CONCURRENT", default=5)
    default_fetch_limit: int = Field(alias="SYNC_FETCH_LIMIT", default=50)
    ingest_batch_size: int = Field(alias="SYNC_INGEST_BATCH_SIZE", default=10)
    ingest_batch_concurrency: int = Field(alias="SYNC_INGEST_BATCH_CONCURRENCY", default=3)
    ingest_max_retries: int = Field(alias="SYNC_INGEST_MAX_RETRIES", default=2)


class ResilienceSettings(BaseSettings):
    breaker_error_threshold_percentage: float = Field(alias="BREAKER_ERROR_THRESHOLD", default=50.0)
    breaker_reset_timeout: float = Field(alias="BREAKER_RESET_TIMEOUT", default=30.0)
    breaker_window_size: int = Field(alias="BREAKER_WINDOW_SIZE", default=10)
    breaker_call_timeout: float | None = Field(alias="BREAKER_CALL_TIMEOUT", default=None)
    breaker_persist_state: bool = Field(alias="BREAKER_PERSIST_STATE", default=True)
    breaker_state_ttl: int = Field(alias="BREAKER_STATE_TTL", default=3600)

    send_limit: int = Field(alias="RATE_LIMIT_SEND", default=100)
    send_window: int = Field(alias="RATE_LIMIT_SEND_WINDOW", default=3600)
    sync_limit: int = Field(alias="RATE_LIMIT_SYNC", default=10)
    sync_window: int = Field(alias="RATE_LIMIT_SYNC_WINDOW", default=300)
    fetch_limit: int = Field(alias="RATE_LIMIT_FETCH", default=50)
    fetch_window: int = Field(alias="RATE_LIMIT_FETCH_WINDOW", default=60)


class ProviderSettings(BaseSettings):
    retry_base_delay: float = Field(alias="PROVIDER_RETRY_BASE_DELAY", default=1.0)
    retry_max_delay: float = Field(alias="PROVIDER_RETRY_MAX_DELAY", default=32.0)
    retry_max_attempts: int = Field(alias="PROVIDER_RETRY_MAX_ATTEMPTS", default=5)

    google_client_id: str = Field(alias="GOOGLE_CLIENT_ID", default="")
    google_client_secret: str = Field(alias="GOOGLE_CLIENT_SECRET", default="")
    google_token_uri: str = Field(alias="GOOGLE_TOKEN_URI", default="https://oauth2.googleapis.com/token")

    graph_base_url: str = Field(alias="GRAPH_BASE_URL", default="https://graph.microsoft.com/v1.0")
    http_timeout: int = Field(alias="PROVIDER_HTTP_TIMEOUT", default=30)

    imap_timeout: int = Field(alias="IMAP_TIMEOUT", default=60)
    imap_connection_limit: int = Field(alias="IMAP_CONNECTION_LIMIT", default=10)


class QueueSettings(BaseSettings):
    poll_interval: float = Field(alias="QUEUE_POLL_INTERVAL", default=1.0)
    job_timeout: float = Field(alias="QUEUE_JOB_TIMEOUT", default=300.0)
    completed_retention_seconds: int = Field(alias="QUEUE_COMPLETED_RETENTION", default=24 * 3600)
    completed_retention_count: int = Field(alias="QUEUE_COMPLETED_RETENTION_COUNT", default=1000)
    failed_retention_seconds: int = Field(alias="QUEUE_FAILED_RETENTION", default=7 * 24 * 3600)
    cleanup_interval_seconds: int = Field(alias="QUEUE_CLEANUP_INTERVAL", default=24 * 3600)


class WebhookSettings(BaseSettings):
    url: str | None = Field(alias="WEBHOOK_URL", default=None)
    secret: str | None = Field(alias="WEBHOOK_SECRET", default=None)
    max_retries: int = Field(alias="WEBHOOK_MAX_RETRIES", default=3)
    timeout: int = Field(alias="WEBHOOK_TIMEOUT", default=10)


class SentrySettings(BaseSettings):
    dsn: str | None = Field(alias="SENTRY_DSN", default=None)
    traces_sample_rate: float = Field(alias="SENTRY_TRACES_SAMPLE_RATE", default=0.0)

    @property
    def is_enabled(self) -> bool:
        return bool(self.dsn)


class Settings(BaseSettings):
    model_config = {"env_file": ".env", "extra": "allow"}

    environment: EnvironmentName = Field(alias="ENVIRONMENT")
    password_encryption_key: str = Field(alias="PASSWORD_ENCRYPTION_KEY")

    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    sync: SyncSettings = Field(default_factory=SyncSettings)
    resilience: ResilienceSettings = Field(default_factory=ResilienceSettings)
    provider: ProviderSettings = Field(default_factory=ProviderSettings)
    queue: QueueSettings = Field(default_factory=QueueSettings)
    webhook: WebhookSettings = Field(default_factory=WebhookSettings)
    sentry: SentrySettings = Field(default_factory=SentrySettings)

    @field_validator("environment", mode="before")
    @classmethod
    def parse_environment(cls, value: str) -> EnvironmentName:
        try:
            return EnvironmentName(value)
        except ValueError:
            logging.getLogger(__name__).warning(f"Invalid environment: {value}")
            return EnvironmentName.DEVELOPMENT
