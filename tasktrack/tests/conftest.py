"""
Shared test fixtures.

Provides:
- a fakeredis-backed async Redis client with a private server per test
- an opened RedisBackend wrapping that client
- a RateLimiter with a controllable clock
"""

import fakeredis
import fakeredis.aioredis
import pytest
import pytest_asyncio

from tasktrack.common.cache import CacheService
from tasktrack.common.rate_limiter import RateLimiter
from tasktrack.common.redis import RedisBackend


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def fake_redis():
    """A clean fakeredis client for each test."""
    server = fakeredis.FakeServer()
    return fakeredis.aioredis.FakeRedis(server=server)


@pytest_asyncio.fixture()
async def backend(fake_redis):
    """An opened RedisBackend backed by fakeredis."""
    backend = RedisBackend(client=fake_redis)
    await backend.open()
    yield backend
    await backend.close()


@pytest.fixture()
def cache(backend):
    """A CacheService on the fake backend."""
    return CacheService(backend)


@pytest.fixture()
def clock():
    """A fixed clock that tests can advance."""
    return FakeClock()


@pytest.fixture()
def limiter(backend, clock):
    """A RateLimiter on the fake backend driven by the fake clock."""
    return RateLimiter(backend, clock=clock)
