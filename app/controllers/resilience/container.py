from dependency_injector import containers, providers

from app.controllers.resilience.circuit_breaker import CircuitBreakerOptions, CircuitBreakerRegistry
from app.controllers.resilience.counter_store import InMemoryCounterStore, RedisCounterStore
from app.controllers.resilience.lock import DistributedLock
from app.controllers.resilience.rate_limiter import RateLimitBudget, RateLimiter
from settings import settings


class ResilienceContainer(containers.DeclarativeContainer):
    counter_store = providers.Selector(
        providers.Object("memory" if settings.redis.use_memory_store else "redis"),
        redis=providers.Singleton(
            RedisCounterStore,
            url=settings.redis.url,
            key_prefix=settings.redis.key_prefix,
            socket_timeout=settings.redis.socket_timeout,
        ),
        memory=providers.Singleton(InMemoryCounterStore),
    )

    rate_limiter = providers.Singleton(RateLimiter, store=counter_store)
    send_budget = providers.Object(
        RateLimitBudget("send", settings.resilience.send_limit, settings.resilience.send_window)
    )
    sync_budget = providers.Object(
        RateLimitBudget("sync", settings.resilience.sync_limit, settings.resilience.sync_window)
    )
    fetch_budget = providers.Object(
        RateLimitBudget("fetch", settings.resilience.fetch_limit, settings.resilience.fetch_window)
    )

    breakers = providers.Singleton(
        CircuitBreakerRegistry,
        store=counter_store,
        options=providers.Factory(
            CircuitBreakerOptions,
            error_threshold_percentage=settings.resilience.breaker_error_threshold_percentage,
            reset_timeout=settings.resilience.breaker_reset_timeout,
            rolling_window_size=settings.resilience.breaker_window_size,
            call_timeout=settings.resilience.breaker_call_timeout,
        ),
        persist_state=settings.resilience.breaker_persist_state,
        state_ttl_seconds=settings.resilience.breaker_state_ttl,
    )

    lock = providers.Singleton(DistributedLock, store=counter_store)
