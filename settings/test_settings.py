import logging
from unittest.mock import Mock

from app.environment import EnvironmentName
from settings.settings import (
    DatabaseSettings,
    ProviderSettings,
    QueueSettings,
    RedisSettings,
    ResilienceSettings,
    SentrySettings,
    SyncSettings,
    WebhookSettings,
)


class TestSettings(Mock):
    environment = EnvironmentName.TESTING
    password_encryption_key = "2nR4bF3t0m1ZC2UQ0w0mNnYgM9mF7f1o3xZcQm8cJ9g="
    logging = Mock(level=logging.INFO, third_party_level=logging.WARNING, use_config=False, use_pretty_json=False)

    database = DatabaseSettings()
    redis = RedisSettings(REDIS_USE_MEMORY_STORE=True)
    sync = SyncSettings()
    resilience = ResilienceSettings()
    provider = ProviderSettings()
    queue = QueueSettings()
    webhook = WebhookSettings()
    sentry = SentrySettings()
