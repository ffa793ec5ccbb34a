"""Content-addressed response cache.

A reply is addressed by the SHA-256 of ``input|model|temperature``, so
identical logical requests always land on the same entry. Hit and miss
counters live in one shared hash; they are best-effort telemetry.
"""

import hashlib
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any

from redis.asyncio import Redis
from redis.exceptions import RedisError

from chatcache.core.config import Settings, get_settings
from chatcache.core.exceptions import DataCorruptionError, ScriptExecutionError, ValidationError
from chatcache.core.logging import get_logger
from chatcache.models import CacheEntry
from chatcache.services.activity import ActivityTracker, get_activity_tracker
from chatcache.services.scripts import AtomicScripts, get_atomic_scripts
from chatcache.services.store import (
    KEY_CACHE_STATS,
    KEY_PREFIX_RESPONSE,
    STAT_CACHED,
    STAT_HITS,
    STAT_MISSES,
    BaseStoreOperations,
    LocalStore,
    get_local_store,
    make_key,
)

logger = get_logger(__name__)

DEFAULT_TEMPERATURE_LITERAL = "0.7"
MOST_ACTIVE_LIMIT = 10


def make_cache_key(input_text: str, model: str, temperature: float | None = None) -> str:
    """Deterministic hex digest of the request tuple."""
    temp = DEFAULT_TEMPERATURE_LITERAL if temperature is None else str(float(temperature))
    return hashlib.sha256(f"{input_text}|{model}|{temp}".encode()).hexdigest()


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    cached: int = 0
    most_active_sessions: list[tuple[str, float]] = field(default_factory=list)
    most_active_users: list[tuple[str, float]] = field(default_factory=list)

    @property
    def hit_ratio(self) -> float:
        """Hit percentage rounded to 2 decimals; 0 before any lookup."""
        total = self.hits + self.misses
        if total == 0:
            return 0.0
        return round(self.hits / total * 100, 2)

    def to_dict(self) -> dict[str, Any]:
        return {
            "cache_hits": self.hits,
            "cache_misses": self.misses,
            "responses_cached": self.cached,
            "hit_ratio": self.hit_ratio,
            "most_active_sessions": self.most_active_sessions,
            "most_active_users": self.most_active_users,
        }


class ResponseCache(ABC):
    """Lookup/store of generated replies keyed by request content."""

    def __init__(
        self,
        scripts: AtomicScripts,
        activity: ActivityTracker,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.scripts = scripts
        self.activity = activity
        self.settings = settings or get_settings()
        self.clock = clock

    # ========== Backend primitives ==========

    @abstractmethod
    async def _read(self, key: str) -> str | None: ...

    @abstractmethod
    async def _write(self, key: str, value: str, ttl: int) -> bool: ...

    @abstractmethod
    async def _increment(self, stat: str) -> None: ...

    @abstractmethod
    async def _counters(self) -> dict[str, str]: ...

    @abstractmethod
    async def size(self) -> int:
        """Number of cached responses."""

    # ========== Operations ==========

    def make_key(self, input_text: str, model: str, temperature: float | None = None) -> str:
        return make_cache_key(input_text, model, temperature)

    def storage_key(self, digest: str) -> str:
        return make_key(KEY_PREFIX_RESPONSE, digest)

    def _validate(self, input_text: str, model: str) -> None:
        if input_text is None or not input_text.strip():
            raise ValidationError("Cache input cannot be null or empty")
        if model is None or not model.strip():
            raise ValidationError("Model cannot be null or empty")

    async def lookup(
        self, input_text: str, model: str, temperature: float | None = None
    ) -> CacheEntry | None:
        """Return the cached entry and count a hit, or count a miss."""
        self._validate(input_text, model)
        key = self.storage_key(self.make_key(input_text, model, temperature))

        raw = await self._read(key)
        entry = None
        if raw is not None:
            try:
                entry = CacheEntry.from_json(raw)
            except DataCorruptionError as e:
                logger.warning("Corrupt cache entry treated as miss", key=key, error=e.message)

        if entry is None:
            await self._increment(STAT_MISSES)
            logger.debug("Cache miss", model=model)
            return None

        entry.hit_count += 1
        await self._write(key, entry.to_json(), self.settings.response_cache_ttl_seconds)
        await self._increment(STAT_HITS)
        logger.debug("Cache hit", model=model, hit_count=entry.hit_count)
        return entry

    async def store(
        self,
        session_id: str,
        input_text: str,
        reply: str,
        model: str,
        temperature: float | None = None,
    ) -> CacheEntry | None:
        """Cache a generated reply; None when a fresh entry already exists."""
        self._validate(input_text, model)
        digest = self.make_key(input_text, model, temperature)
        entry = CacheEntry(
            key=digest,
            response=reply,
            session_id=session_id,
            model=model,
            temperature=self.settings.default_temperature if temperature is None else float(temperature),
            cached_at=self.clock(),
        )
        key = self.storage_key(digest)
        ttl = self.settings.response_cache_ttl_seconds

        try:
            written = await self.scripts.cache_set_if_stale(key, entry.to_json(), ttl)
        except ScriptExecutionError:
            written = await self._write(key, entry.to_json(), ttl)

        if not written:
            return None
        await self._increment(STAT_CACHED)
        logger.debug("Response cached", session_id=session_id, model=model)
        return entry

    async def stats(self) -> CacheStats:
        counters = await self._counters()
        return CacheStats(
            hits=int(counters.get(STAT_HITS) or 0),
            misses=int(counters.get(STAT_MISSES) or 0),
            cached=int(counters.get(STAT_CACHED) or 0),
            most_active_sessions=await self.activity.most_active("sessions", MOST_ACTIVE_LIMIT),
            most_active_users=await self.activity.most_active("users", MOST_ACTIVE_LIMIT),
        )

    async def clear(self) -> int:
        """Delete one bounded batch of cached responses."""
        try:
            deleted = await self.scripts.bulk_delete(
                f"{KEY_PREFIX_RESPONSE}:*", self.settings.bulk_delete_batch_size
            )
        except ScriptExecutionError:
            return 0
        logger.info("Response cache cleared", deleted=deleted)
        return deleted


class RedisResponseCache(BaseStoreOperations, ResponseCache):
    def __init__(
        self,
        client: Redis | None = None,
        settings: Settings | None = None,
        scripts: AtomicScripts | None = None,
        activity: ActivityTracker | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        BaseStoreOperations.__init__(self, client, settings)
        ResponseCache.__init__(
            self,
            scripts or get_atomic_scripts(),
            activity or get_activity_tracker(),
            self._settings,
            clock,
        )

    async def _read(self, key: str) -> str | None:
        return await self.get(key)

    async def _write(self, key: str, value: str, ttl: int) -> bool:
        return await self.set(key, value, ttl)

    async def _increment(self, stat: str) -> None:
        if not self.is_available:
            return
        try:
            await self.client.hincrby(KEY_CACHE_STATS, stat, 1)
        except RedisError as e:
            logger.warning("Cache counter update failed", stat=stat, error=str(e))

    async def _counters(self) -> dict[str, str]:
        if not self.is_available:
            return {}
        try:
            return await self.client.hgetall(KEY_CACHE_STATS)
        except RedisError as e:
            logger.warning("Cache counter read failed", error=str(e))
            return {}

    async def size(self) -> int:
        return await self.count_keys(f"{KEY_PREFIX_RESPONSE}:*")


class LocalResponseCache(ResponseCache):
    def __init__(
        self,
        store: LocalStore | None = None,
        settings: Settings | None = None,
        scripts: AtomicScripts | None = None,
        activity: ActivityTracker | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._store = store or get_local_store()
        super().__init__(
            scripts or get_atomic_scripts(),
            activity or get_activity_tracker(),
            settings,
            clock or self._store.now,
        )

    async def _read(self, key: str) -> str | None:
        return self._store.get(key)

    async def _write(self, key: str, value: str, ttl: int) -> bool:
        self._store.set(key, value, ttl)
        return True

    async def _increment(self, stat: str) -> None:
        async with self._store.lock:
            self._store.hincrby(KEY_CACHE_STATS, stat, 1)

    async def _counters(self) -> dict[str, str]:
        return self._store.hgetall(KEY_CACHE_STATS)

    async def size(self) -> int:
        return len(self._store.keys(f"{KEY_PREFIX_RESPONSE}:*"))


@lru_cache
def get_response_cache() -> ResponseCache:
    """Get the response cache for the configured backend (cached)."""
    settings = get_settings()
    if settings.redis_available:
        return RedisResponseCache(settings=settings)
    return LocalResponseCache(settings=settings)
