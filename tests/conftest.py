"""Test configuration and fixtures.

Provides isolated test fixtures for:
- A manually advanced clock shared by every service under test
- A fresh fakeredis server per test (Lua via lupa)
- Redis-backed and in-memory service instances
"""

from collections.abc import AsyncGenerator

import fakeredis
import pytest
import pytest_asyncio
from fakeredis.aioredis import FakeRedis

from chatcache.core.config import Settings
from chatcache.models import Message, MessageRole
from chatcache.services.activity import LocalActivityTracker, RedisActivityTracker
from chatcache.services.response_cache import LocalResponseCache, RedisResponseCache
from chatcache.services.scripts import LocalAtomicScripts, RedisAtomicScripts
from chatcache.services.sessions import LocalSessionService, RedisSessionService
from chatcache.services.store import LocalStore

START_TIME = 1_700_000_000.0


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: float = START_TIME) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


def make_message(content: str, role: MessageRole = MessageRole.USER, session_id: str = "s1") -> Message:
    return Message(session_id=session_id, role=role, content=content)


# =============================================================================
# Core Fixtures
# =============================================================================

@pytest.fixture
def test_settings() -> Settings:
    """Settings with a placeholder Redis URL; clients are injected explicitly."""
    return Settings(
        redis_url="redis://fake:6379/0",
        debug=True,
        rate_limit_enabled=True,
    )


@pytest.fixture
def local_settings() -> Settings:
    return Settings(redis_url="", debug=True)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# =============================================================================
# Redis Fixtures
# =============================================================================

@pytest_asyncio.fixture
async def redis_client() -> AsyncGenerator[FakeRedis, None]:
    client = FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture
def redis_scripts(redis_client: FakeRedis, test_settings: Settings) -> RedisAtomicScripts:
    return RedisAtomicScripts(client=redis_client, settings=test_settings)


@pytest.fixture
def redis_activity(
    redis_client: FakeRedis, test_settings: Settings, clock: FakeClock
) -> RedisActivityTracker:
    return RedisActivityTracker(client=redis_client, settings=test_settings, clock=clock)


@pytest.fixture
def redis_cache(
    redis_client: FakeRedis,
    test_settings: Settings,
    redis_scripts: RedisAtomicScripts,
    redis_activity: RedisActivityTracker,
    clock: FakeClock,
) -> RedisResponseCache:
    return RedisResponseCache(
        client=redis_client,
        settings=test_settings,
        scripts=redis_scripts,
        activity=redis_activity,
        clock=clock,
    )


@pytest.fixture
def redis_sessions(
    redis_client: FakeRedis,
    test_settings: Settings,
    redis_scripts: RedisAtomicScripts,
    redis_activity: RedisActivityTracker,
    clock: FakeClock,
) -> RedisSessionService:
    return RedisSessionService(
        client=redis_client,
        settings=test_settings,
        scripts=redis_scripts,
        activity=redis_activity,
        clock=clock,
    )


# =============================================================================
# Local (in-memory) Fixtures
# =============================================================================

@pytest.fixture
def local_store(clock: FakeClock) -> LocalStore:
    return LocalStore(clock=clock)


@pytest.fixture
def local_scripts(local_store: LocalStore) -> LocalAtomicScripts:
    return LocalAtomicScripts(local_store)


@pytest.fixture
def local_activity(local_store: LocalStore, local_settings: Settings) -> LocalActivityTracker:
    return LocalActivityTracker(local_store, local_settings)


@pytest.fixture
def local_cache(
    local_store: LocalStore,
    local_settings: Settings,
    local_scripts: LocalAtomicScripts,
    local_activity: LocalActivityTracker,
) -> LocalResponseCache:
    return LocalResponseCache(
        local_store, local_settings, scripts=local_scripts, activity=local_activity
    )


@pytest.fixture
def local_sessions(
    local_store: LocalStore,
    local_settings: Settings,
    local_scripts: LocalAtomicScripts,
    local_activity: LocalActivityTracker,
) -> LocalSessionService:
    return LocalSessionService(
        local_store, local_settings, scripts=local_scripts, activity=local_activity
    )


# =============================================================================
# Backend-parametrized Fixtures
# =============================================================================

@pytest.fixture(params=["redis", "local"])
def backend(request: pytest.FixtureRequest) -> str:
    return request.param


@pytest.fixture
def scripts(backend: str, request: pytest.FixtureRequest):
    return request.getfixturevalue(f"{backend}_scripts")


@pytest.fixture
def activity(backend: str, request: pytest.FixtureRequest):
    return request.getfixturevalue(f"{backend}_activity")


@pytest.fixture
def cache(backend: str, request: pytest.FixtureRequest):
    return request.getfixturevalue(f"{backend}_cache")


@pytest.fixture
def sessions(backend: str, request: pytest.FixtureRequest):
    return request.getfixturevalue(f"{backend}_sessions")
