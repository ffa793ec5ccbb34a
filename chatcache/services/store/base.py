"""Base store operations - low-level Redis primitives."""

import asyncio
from functools import lru_cache

from redis.asyncio import Redis
from redis.commands.core import AsyncScript
from redis.exceptions import RedisError

from chatcache.core.config import Settings, get_settings
from chatcache.core.logging import get_logger
from chatcache.services.store.constants import make_key

logger = get_logger(__name__)


def create_redis_client(settings: Settings) -> Redis:
    """Build an async Redis client with bounded socket timeouts."""
    return Redis.from_url(
        settings.redis_url,
        decode_responses=True,
        socket_timeout=settings.redis_socket_timeout,
        socket_connect_timeout=settings.redis_connect_timeout,
    )


@lru_cache
def get_redis_client() -> Redis:
    """Get the process-wide Redis client (created lazily, cached)."""
    settings = get_settings()
    logger.info("Redis client initialized", url=settings.redis_url)
    return create_redis_client(settings)


class BaseStoreOperations:
    """Low-level Redis operations with graceful degradation.

    Reads return ``None``/empty and writes return ``False`` when the store
    is unreachable; the error is logged, never raised.
    """

    def __init__(self, client: Redis | None = None, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self._client: Redis | None = client
        if self._client is None and self._settings.redis_available:
            self._client = get_redis_client()

    @property
    def is_available(self) -> bool:
        """Check if a store client is configured."""
        return self._client is not None

    @property
    def client(self) -> Redis:
        if self._client is None:
            raise RuntimeError("Redis client is not configured")
        return self._client

    def _make_key(self, prefix: str, *parts: str | int) -> str:
        return make_key(prefix, *parts)

    def _register_script(self, source: str) -> AsyncScript:
        """Register a Lua script; it is loaded on first call via EVALSHA."""
        return self.client.register_script(source)  # type: ignore[return-value]

    # ========== String operations ==========

    async def get(self, key: str) -> str | None:
        if not self.is_available:
            return None
        try:
            result = await self.client.get(key)
            return result if isinstance(result, str) else None
        except RedisError as e:
            logger.warning("Store get failed", key=key, error=str(e))
            return None

    async def set(self, key: str, value: str, ttl: int | None = None) -> bool:
        if not self.is_available:
            return False
        try:
            if ttl:
                await self.client.set(key, value, ex=ttl)
            else:
                await self.client.set(key, value)
            return True
        except RedisError as e:
            logger.warning("Store set failed", key=key, error=str(e))
            return False

    async def delete(self, *keys: str) -> int:
        if not self.is_available or not keys:
            return 0
        try:
            return int(await self.client.delete(*keys))
        except RedisError as e:
            logger.warning("Store delete failed", keys=list(keys), error=str(e))
            return 0

    async def exists(self, key: str) -> bool:
        if not self.is_available:
            return False
        try:
            return bool(await self.client.exists(key))
        except RedisError as e:
            logger.warning("Store exists failed", key=key, error=str(e))
            return False

    async def count_keys(self, pattern: str) -> int:
        """Count keys matching a pattern using incremental SCAN."""
        if not self.is_available:
            return 0
        try:
            count = 0
            async for _ in self.client.scan_iter(match=pattern, count=500):
                count += 1
            return count
        except RedisError as e:
            logger.warning("Store key count failed", pattern=pattern, error=str(e))
            return 0

    # ========== Health check ==========

    async def check_health(self, timeout: float = 5.0) -> bool:
        """Check Redis connectivity with timeout."""
        if not self.is_available:
            return False

        try:
            result = await asyncio.wait_for(self.client.ping(), timeout=timeout)
            return bool(result)
        except asyncio.TimeoutError:
            logger.error("Redis health check timed out", timeout=timeout)
            return False
        except RedisError as e:
            logger.error("Redis health check failed", error=str(e))
            return False
