import os

os.environ.setdefault("MAILSYNC_ENV", "test")

import pytest  # noqa: E402

from app.controllers.resilience.counter_store import InMemoryCounterStore  # noqa: E402
from app.controllers.resilience.rate_limiter import RateLimiter  # noqa: E402
from tests.fakes import FakeClock  # noqa: E402


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def counter_store(clock: FakeClock) -> InMemoryCounterStore:
    return InMemoryCounterStore(clock=clock)


@pytest.fixture
def rate_limiter(counter_store: InMemoryCounterStore, clock: FakeClock) -> RateLimiter:
    return RateLimiter(counter_store, clock=clock)
