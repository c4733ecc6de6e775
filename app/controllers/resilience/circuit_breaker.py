import asyncio
import inspect
import json
import logging
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

from app.controllers.resilience.counter_store import SharedCounterStore
from app.exceptions import (
    CircuitOpenError,
    CounterStoreError,
    EntityNotFoundError,
    InvalidDataError,
    NotSupportedError,
    ProviderAuthError,
)

T = TypeVar("T")

TransitionHook = Callable[["CircuitBreaker"], Awaitable[None]]


# Raised because of the request itself, not the health of the dependency behind the breaker
CALLER_ERRORS: tuple[type[Exception], ...] = (ProviderAuthError, InvalidDataError, EntityNotFoundError, NotSupportedError)


def is_dependency_failure(error: BaseException) -> bool:
    return not isinstance(error, CALLER_ERRORS)


class CircuitState(Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass
class CircuitBreakerOptions:
    error_threshold_percentage: float = 50.0
    reset_timeout: float = 30.0
    rolling_window_size: int = 10
    call_timeout: float | None = None
    is_failure: Callable[[BaseException], bool] = is_dependency_failure


@dataclass
class CircuitStats:
    successes: int = 0
    failures: int = 0
    rejects: int = 0
    fallbacks: int = 0
    timeouts: int = 0


@dataclass
class CircuitSnapshot:
    name: str
    state: str
    window_failures: int
    opened_at: float | None
    reset_at: float | None
    stats: dict[str, int] = field(default_factory=dict)


class CircuitBreaker:
    """Failure-rate state machine around calls to one dependency.

    The failure percentage is taken over the full rolling window, so slots not yet
    filled count as healthy. With the default options the sixth consecutive failure
    opens the circuit.
    """

    def __init__(
        self,
        name: str,
        options: CircuitBreakerOptions | None = None,
        clock: Callable[[], float] = time.time,
        on_transition: TransitionHook | None = None,
    ) -> None:
        self._logger = logging.getLogger(__name__)
        self.name = name
        self.options = options or CircuitBreakerOptions()
        self._clock = clock
        self._on_transition = on_transition
        self._state = CircuitState.CLOSED
        self._opened_at: float | None = None
        self._window: deque[bool] = deque(maxlen=self.options.rolling_window_size)
        self._trial_in_flight = False
        self._fallback: Callable[..., Any] | None = None
        self.stats = CircuitStats()

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def opened_at(self) -> float | None:
        return self._opened_at

    @property
    def failure_percentage(self) -> float:
        failures = sum(1 for ok in self._window if not ok)
        return failures / self.options.rolling_window_size * 100

    def set_fallback(self, fn: Callable[..., Any] | None) -> None:
        self._fallback = fn

    async def call(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        if self._state is CircuitState.OPEN:
            if self._clock() - (self._opened_at or 0.0) >= self.options.reset_timeout:
                await self._transition(CircuitState.HALF_OPEN)
            else:
                return await self._reject(*args, **kwargs)

        trial = False
        if self._state is CircuitState.HALF_OPEN:
            if self._trial_in_flight:
                return await self._reject(*args, **kwargs)
            self._trial_in_flight = True
            trial = True

        try:
            if self.options.call_timeout is not None:
                result = await asyncio.wait_for(fn(*args, **kwargs), timeout=self.options.call_timeout)
            else:
                result = await fn(*args, **kwargs)
        except asyncio.TimeoutError:
            self.stats.timeouts += 1
            await self._record_failure(trial)
            raise
        except Exception as e:
            if self.options.is_failure(e):
                await self._record_failure(trial)
            else:
                # The dependency answered; the request was at fault
                await self._record_success(trial)
            raise
        finally:
            if trial:
                self._trial_in_flight = False

        await self._record_success(trial)
        return result

    async def _reject(self, *args: Any, **kwargs: Any) -> Any:
        self.stats.rejects += 1
        if self._fallback is None:
            raise CircuitOpenError(f"Circuit {self.name} is {self._state.value}", action=self.name)

        self.stats.fallbacks += 1
        result = self._fallback(*args, **kwargs)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def _record_failure(self, trial: bool) -> None:
        self.stats.failures += 1
        if trial:
            self._logger.warning(f"Circuit {self.name}: half-open trial failed, reopening")
            await self._open()
            return

        self._window.append(False)
        if self._state is CircuitState.CLOSED and self.failure_percentage > self.options.error_threshold_percentage:
            self._logger.warning(
                f"Circuit {self.name}: failure rate {self.failure_percentage:.0f}% exceeded "
                f"{self.options.error_threshold_percentage:.0f}%, opening"
            )
            await self._open()

    async def _record_success(self, trial: bool) -> None:
        self.stats.successes += 1
        if trial:
            self._logger.info(f"Circuit {self.name}: half-open trial succeeded, closing")
            self._window.clear()
            self._opened_at = None
            await self._transition(CircuitState.CLOSED)
            return
        self._window.append(True)

    async def _open(self) -> None:
        self._opened_at = self._clock()
        await self._transition(CircuitState.OPEN)

    async def _transition(self, state: CircuitState) -> None:
        previous = self._state
        self._state = state
        self._logger.info(f"Circuit {self.name}: {previous.value} -> {state.value}")
        if self._on_transition is not None:
            await self._on_transition(self)

    def restore(self, state: CircuitState, opened_at: float | None) -> None:
        """Adopt a persisted state without firing transition hooks."""
        self._state = state
        self._opened_at = opened_at

    def reset(self) -> None:
        self._state = CircuitState.CLOSED
        self._opened_at = None
        self._window.clear()
        self._trial_in_flight = False
        self.stats = CircuitStats()

    def snapshot(self) -> CircuitSnapshot:
        reset_at = None
        if self._opened_at is not None and self._state is not CircuitState.CLOSED:
            reset_at = self._opened_at + self.options.reset_timeout
        return CircuitSnapshot(
            name=self.name,
            state=self._state.value,
            window_failures=sum(1 for ok in self._window if not ok),
            opened_at=self._opened_at,
            reset_at=reset_at,
            stats=asdict(self.stats),
        )


class CircuitBreakerRegistry:
    """Named circuit breakers for the process, optionally persisted to the shared store."""

    def __init__(
        self,
        store: SharedCounterStore | None = None,
        options: CircuitBreakerOptions | None = None,
        persist_state: bool = True,
        state_ttl_seconds: int = 3600,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._logger = logging.getLogger(__name__)
        self._store = store
        self._options = options or CircuitBreakerOptions()
        self._persist_state = persist_state and store is not None
        self._state_ttl_seconds = state_ttl_seconds
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}

    @staticmethod
    def _state_key(name: str) -> str:
        return f"circuit_breaker:{name}"

    def get(self, name: str, options: CircuitBreakerOptions | None = None) -> CircuitBreaker:
        breaker = self._breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(
                name,
                options=options or self._options,
                clock=self._clock,
                on_transition=self._persist if self._persist_state else None,
            )
            self._breakers[name] = breaker
        return breaker

    async def call(self, name: str, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        return await self.get(name).call(fn, *args, **kwargs)

    def fallback(self, name: str, fn: Callable[..., Any]) -> None:
        self.get(name).set_fallback(fn)

    async def _persist(self, breaker: CircuitBreaker) -> None:
        if self._store is None:
            return
        key = self._state_key(breaker.name)
        try:
            if breaker.state is CircuitState.CLOSED:
                await self._store.delete(key)
                return
            snapshot = breaker.snapshot()
            payload = {
                "name": snapshot.name,
                "state": snapshot.state,
                "failures": snapshot.window_failures,
                "lastFailure": snapshot.opened_at,
                "resetAt": snapshot.reset_at,
            }
            await self._store.set(key, json.dumps(payload), ttl_seconds=self._state_ttl_seconds)
        except CounterStoreError as e:
            self._logger.warning(f"Failed to persist circuit state for {breaker.name}: {e}")

    async def restore(self, name: str) -> CircuitState:
        """Load a persisted non-closed state for `name`, if one survived a restart."""
        breaker = self.get(name)
        if self._store is None:
            return breaker.state
        try:
            raw = await self._store.get(self._state_key(name))
        except CounterStoreError as e:
            self._logger.warning(f"Failed to load circuit state for {name}: {e}")
            return breaker.state
        if not raw:
            return breaker.state

        data = json.loads(raw)
        if data.get("state") in (CircuitState.OPEN.value, CircuitState.HALF_OPEN.value):
            # A half-open trial that was in flight when the process died is retried from OPEN
            breaker.restore(CircuitState.OPEN, data.get("lastFailure") or self._clock())
            self._logger.info(f"Restored circuit {name} as OPEN")
        return breaker.state

    def get_stats(self, name: str) -> dict[str, Any] | None:
        breaker = self._breakers.get(name)
        return asdict(breaker.snapshot()) if breaker else None

    def get_all_stats(self) -> dict[str, dict[str, Any]]:
        return {name: asdict(breaker.snapshot()) for name, breaker in self._breakers.items()}

    async def reset(self, name: str) -> None:
        breaker = self._breakers.get(name)
        if breaker is None:
            return
        breaker.reset()
        await self._persist(breaker)
