"""Atomic multi-step store updates.

Every operation here runs as one indivisible step: a Lua script on Redis
(loaded once, invoked by SHA), or a critical section under the shared
LocalStore lock. A failed script means nothing was applied; callers may
re-issue any of them safely.
"""

import math
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

from redis.asyncio import Redis
from redis.commands.core import AsyncScript
from redis.exceptions import RedisError

from chatcache.core.config import Settings, get_settings
from chatcache.core.exceptions import ScriptExecutionError
from chatcache.core.logging import get_logger
from chatcache.services.store import (
    KEY_PREFIX_MESSAGE,
    KEY_PREFIX_MESSAGES,
    KEY_PREFIX_SESSION,
    BaseStoreOperations,
    LocalStore,
    get_local_store,
    make_key,
)

logger = get_logger(__name__)


# ========== Lua sources ==========

UPDATE_SESSION_COUNTERS = """
local session_key = KEYS[1]
local ttl = tonumber(ARGV[4])

redis.call('HINCRBY', session_key, 'message_count', ARGV[1])
redis.call('HINCRBY', session_key, 'token_count', ARGV[2])
local current = tonumber(redis.call('HGET', session_key, 'last_activity'))
if not current or tonumber(ARGV[3]) > current then
    redis.call('HSET', session_key, 'last_activity', ARGV[3])
end
redis.call('EXPIRE', session_key, ttl)
return tonumber(redis.call('HGET', session_key, 'message_count'))
"""

APPEND_MESSAGE = """
local list_key = KEYS[1]
local session_key = KEYS[2]
local max_messages = tonumber(ARGV[2])
local ttl = tonumber(ARGV[3])
local body_prefix = ARGV[6]

redis.call('RPUSH', list_key, ARGV[1])
local overflow = redis.call('LLEN', list_key) - max_messages
if overflow > 0 then
    for _, id in ipairs(redis.call('LRANGE', list_key, 0, overflow - 1)) do
        redis.call('DEL', body_prefix .. id)
    end
    redis.call('LTRIM', list_key, -max_messages, -1)
end
redis.call('HINCRBY', session_key, 'message_count', 1)
redis.call('HINCRBY', session_key, 'token_count', ARGV[5])
local current = tonumber(redis.call('HGET', session_key, 'last_activity'))
if not current or tonumber(ARGV[4]) > current then
    redis.call('HSET', session_key, 'last_activity', ARGV[4])
end
redis.call('EXPIRE', session_key, ttl)
redis.call('EXPIRE', list_key, ttl)
for _, id in ipairs(redis.call('LRANGE', list_key, 0, -1)) do
    redis.call('EXPIRE', body_prefix .. id, ttl)
end
return redis.call('LLEN', list_key)
"""

SLIDING_WINDOW = """
local key = KEYS[1]
local window = tonumber(ARGV[1])
local limit = tonumber(ARGV[2])
local now = tonumber(ARGV[3])

redis.call('ZREMRANGEBYSCORE', key, '-inf', ARGV[5])
local count = redis.call('ZCARD', key)

if count < limit then
    redis.call('ZADD', key, ARGV[3], ARGV[4])
    redis.call('EXPIRE', key, math.ceil(window))
    return {1, limit - count - 1, 0}
end

local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
local retry_after = window
if oldest[2] then
    retry_after = math.ceil(tonumber(oldest[2]) + window - now)
end
if retry_after < 1 then
    retry_after = 1
end
return {0, 0, retry_after}
"""

CACHE_SET_IF_STALE = """
local key = KEYS[1]
local ttl = tonumber(ARGV[2])
local current = redis.call('TTL', key)

if current == -2 or (current >= 0 and current < ttl / 2) then
    redis.call('SET', key, ARGV[1], 'EX', ttl)
    return 1
end
return 0
"""

BULK_DELETE = """
local keys = redis.call('KEYS', ARGV[1])
local batch_size = tonumber(ARGV[2])
local deleted = 0

for i = 1, math.min(#keys, batch_size) do
    deleted = deleted + redis.call('DEL', keys[i])
end
return deleted
"""

CLEANUP_EXPIRED = """
local keys = redis.call('KEYS', ARGV[1])
local max_age = tonumber(ARGV[2])
local now = tonumber(ARGV[3])
local batch_size = tonumber(ARGV[4])
local deleted = 0

for i = 1, math.min(#keys, batch_size) do
    local key = keys[i]
    if redis.call('TYPE', key).ok == 'hash' then
        local last_activity = tonumber(redis.call('HGET', key, 'last_activity'))
        if last_activity and (now - last_activity) > max_age then
            deleted = deleted + redis.call('DEL', key)
        end
    end
end
return deleted
"""

SESSION_STATS = """
local session_key = KEYS[1]
local list_key = KEYS[2]

return {
    redis.call('HGET', session_key, 'message_count') or '0',
    redis.call('HGET', session_key, 'token_count') or '0',
    redis.call('HGET', session_key, 'last_activity') or '',
    redis.call('HGET', session_key, 'created_at') or '',
    redis.call('HGET', session_key, 'active') or '1',
    redis.call('LLEN', list_key),
    redis.call('TTL', session_key),
    redis.call('TTL', list_key),
}
"""


# ========== Results ==========

@dataclass
class RateLimitDecision:
    allowed: bool
    remaining: int
    retry_after: int = 0


@dataclass
class SessionStats:
    """Point-in-time snapshot of a session and its message list."""

    session_id: str
    message_count: int = 0
    token_count: int = 0
    last_activity: float | None = None
    created_at: float | None = None
    active: bool = True
    message_list_length: int = 0
    session_ttl: int = -2
    message_list_ttl: int = -2

    @property
    def exists(self) -> bool:
        return self.session_ttl != -2

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "message_count": self.message_count,
            "token_count": self.token_count,
            "last_activity": self.last_activity,
            "created_at": self.created_at,
            "active": self.active,
            "message_list_length": self.message_list_length,
            "session_ttl": self.session_ttl,
            "message_list_ttl": self.message_list_ttl,
        }


def _optional_float(value: Any) -> float | None:
    return float(value) if value not in (None, "") else None


def _rate_member(now: float) -> str:
    return f"{now}:{uuid.uuid4().hex}"


class AtomicScripts(ABC):
    """Indivisible multi-step updates against the store."""

    @abstractmethod
    async def update_session_counters(
        self,
        session_id: str,
        message_delta: int,
        token_delta: int,
        last_activity: float,
        ttl: int,
    ) -> int:
        """Apply counter deltas, advance last activity, refresh TTL; returns message count."""

    @abstractmethod
    async def append_message(
        self,
        session_id: str,
        message_id: str,
        token_count: int,
        last_activity: float,
        max_messages: int = 50,
        ttl: int = 7200,
    ) -> int:
        """Push a message id, trim to the last N, bump counters; returns list length.

        Bodies of trimmed ids are deleted and every body still listed gets
        the session TTL, so a live conversation never loses its history.
        """

    @abstractmethod
    async def check_rate_limit(
        self, key: str, window_seconds: float, limit: int, now: float
    ) -> RateLimitDecision:
        """Sliding-window admit/reject. A rejection mutates nothing."""

    @abstractmethod
    async def cache_set_if_stale(self, key: str, value: str, ttl: int) -> bool:
        """Write only if the key is absent or has under half its TTL left."""

    @abstractmethod
    async def bulk_delete(self, pattern: str, batch_size: int = 100) -> int:
        """Delete at most ``batch_size`` keys matching ``pattern``."""

    @abstractmethod
    async def cleanup_expired(
        self, pattern: str, max_age_seconds: float, now: float, batch_size: int = 100
    ) -> int:
        """Delete hashes whose last activity is older than ``max_age_seconds``."""

    @abstractmethod
    async def session_stats(self, session_id: str) -> SessionStats:
        """Read a session's counters, list length and TTLs in one step."""


class RedisAtomicScripts(BaseStoreOperations, AtomicScripts):
    """Lua-backed implementation; failures raise ScriptExecutionError."""

    def __init__(self, client: Redis | None = None, settings: Settings | None = None) -> None:
        super().__init__(client, settings)
        self._scripts: dict[str, AsyncScript] = {}
        if self.is_available:
            self._scripts = {
                "update_session_counters": self._register_script(UPDATE_SESSION_COUNTERS),
                "append_message": self._register_script(APPEND_MESSAGE),
                "check_rate_limit": self._register_script(SLIDING_WINDOW),
                "cache_set_if_stale": self._register_script(CACHE_SET_IF_STALE),
                "bulk_delete": self._register_script(BULK_DELETE),
                "cleanup_expired": self._register_script(CLEANUP_EXPIRED),
                "session_stats": self._register_script(SESSION_STATS),
            }

    async def _run(self, name: str, keys: list[str], args: list[Any]) -> Any:
        script = self._scripts.get(name)
        if script is None:
            raise ScriptExecutionError(name, "Store not configured")
        try:
            return await script(keys=keys, args=args)
        except RedisError as e:
            logger.warning("Atomic script failed", script=name, keys=keys, error=str(e))
            raise ScriptExecutionError(name) from e

    async def update_session_counters(
        self,
        session_id: str,
        message_delta: int,
        token_delta: int,
        last_activity: float,
        ttl: int,
    ) -> int:
        result = await self._run(
            "update_session_counters",
            [make_key(KEY_PREFIX_SESSION, session_id)],
            [message_delta, token_delta, repr(last_activity), ttl],
        )
        return int(result or 0)

    async def append_message(
        self,
        session_id: str,
        message_id: str,
        token_count: int,
        last_activity: float,
        max_messages: int = 50,
        ttl: int = 7200,
    ) -> int:
        result = await self._run(
            "append_message",
            [make_key(KEY_PREFIX_MESSAGES, session_id), make_key(KEY_PREFIX_SESSION, session_id)],
            [
                message_id,
                max_messages,
                ttl,
                repr(last_activity),
                token_count,
                make_key(KEY_PREFIX_MESSAGE, ""),
            ],
        )
        return int(result or 0)

    async def check_rate_limit(
        self, key: str, window_seconds: float, limit: int, now: float
    ) -> RateLimitDecision:
        allowed, remaining, retry_after = await self._run(
            "check_rate_limit",
            [key],
            [window_seconds, limit, repr(now), _rate_member(now), repr(now - window_seconds)],
        )
        return RateLimitDecision(bool(allowed), int(remaining), int(retry_after))

    async def cache_set_if_stale(self, key: str, value: str, ttl: int) -> bool:
        return bool(await self._run("cache_set_if_stale", [key], [value, ttl]))

    async def bulk_delete(self, pattern: str, batch_size: int = 100) -> int:
        return int(await self._run("bulk_delete", [], [pattern, batch_size]) or 0)

    async def cleanup_expired(
        self, pattern: str, max_age_seconds: float, now: float, batch_size: int = 100
    ) -> int:
        result = await self._run(
            "cleanup_expired", [], [pattern, max_age_seconds, repr(now), batch_size]
        )
        return int(result or 0)

    async def session_stats(self, session_id: str) -> SessionStats:
        raw = await self._run(
            "session_stats",
            [make_key(KEY_PREFIX_SESSION, session_id), make_key(KEY_PREFIX_MESSAGES, session_id)],
            [],
        )
        messages, tokens, last_activity, created_at, active, length, session_ttl, list_ttl = raw
        return SessionStats(
            session_id=session_id,
            message_count=int(messages),
            token_count=int(tokens),
            last_activity=_optional_float(last_activity),
            created_at=_optional_float(created_at),
            active=active in ("1", "true"),
            message_list_length=int(length),
            session_ttl=int(session_ttl),
            message_list_ttl=int(list_ttl),
        )


class LocalAtomicScripts(AtomicScripts):
    """In-memory implementation; each operation holds the store lock."""

    def __init__(self, store: LocalStore | None = None) -> None:
        self._store = store or get_local_store()

    def _advance_activity(self, session_key: str, last_activity: float) -> None:
        current = self._store.hget(session_key, "last_activity")
        if current is None or last_activity > float(current):
            self._store.hset(session_key, {"last_activity": repr(last_activity)})

    async def update_session_counters(
        self,
        session_id: str,
        message_delta: int,
        token_delta: int,
        last_activity: float,
        ttl: int,
    ) -> int:
        key = make_key(KEY_PREFIX_SESSION, session_id)
        async with self._store.lock:
            count = self._store.hincrby(key, "message_count", message_delta)
            self._store.hincrby(key, "token_count", token_delta)
            self._advance_activity(key, last_activity)
            self._store.expire(key, ttl)
            return count

    async def append_message(
        self,
        session_id: str,
        message_id: str,
        token_count: int,
        last_activity: float,
        max_messages: int = 50,
        ttl: int = 7200,
    ) -> int:
        list_key = make_key(KEY_PREFIX_MESSAGES, session_id)
        session_key = make_key(KEY_PREFIX_SESSION, session_id)
        async with self._store.lock:
            self._store.rpush(list_key, message_id)
            dropped = self._store.ltrim_last(list_key, max_messages)
            self._store.delete(*(make_key(KEY_PREFIX_MESSAGE, mid) for mid in dropped))
            self._store.hincrby(session_key, "message_count", 1)
            self._store.hincrby(session_key, "token_count", token_count)
            self._advance_activity(session_key, last_activity)
            self._store.expire(session_key, ttl)
            self._store.expire(list_key, ttl)
            for mid in self._store.lrange(list_key, 0, -1):
                self._store.expire(make_key(KEY_PREFIX_MESSAGE, mid), ttl)
            return self._store.llen(list_key)

    async def check_rate_limit(
        self, key: str, window_seconds: float, limit: int, now: float
    ) -> RateLimitDecision:
        async with self._store.lock:
            # Scores at exactly now - window are outside the window
            self._store.zremrange_below(key, math.nextafter(now - window_seconds, math.inf))
            count = self._store.zcard(key)
            if count < limit:
                self._store.zadd(key, _rate_member(now), now)
                self._store.expire(key, math.ceil(window_seconds))
                return RateLimitDecision(True, limit - count - 1, 0)

            scores = [s for _, s in self._store.zrevrange(key, count)]
            retry_after = math.ceil(min(scores) + window_seconds - now) if scores else window_seconds
            return RateLimitDecision(False, 0, max(1, int(retry_after)))

    async def cache_set_if_stale(self, key: str, value: str, ttl: int) -> bool:
        async with self._store.lock:
            current = self._store.ttl(key)
            if current == -2 or 0 <= current < ttl / 2:
                self._store.set(key, value, ttl)
                return True
            return False

    async def bulk_delete(self, pattern: str, batch_size: int = 100) -> int:
        async with self._store.lock:
            return self._store.delete(*self._store.keys(pattern)[:batch_size])

    async def cleanup_expired(
        self, pattern: str, max_age_seconds: float, now: float, batch_size: int = 100
    ) -> int:
        deleted = 0
        async with self._store.lock:
            for key in self._store.keys(pattern)[:batch_size]:
                last_activity = self._store.hget(key, "last_activity")
                if last_activity is not None and now - float(last_activity) > max_age_seconds:
                    deleted += self._store.delete(key)
        return deleted

    async def session_stats(self, session_id: str) -> SessionStats:
        session_key = make_key(KEY_PREFIX_SESSION, session_id)
        list_key = make_key(KEY_PREFIX_MESSAGES, session_id)
        async with self._store.lock:
            data = self._store.hgetall(session_key)
            return SessionStats(
                session_id=session_id,
                message_count=int(data.get("message_count") or 0),
                token_count=int(data.get("token_count") or 0),
                last_activity=_optional_float(data.get("last_activity")),
                created_at=_optional_float(data.get("created_at")),
                active=data.get("active", "1") == "1",
                message_list_length=self._store.llen(list_key),
                session_ttl=self._store.ttl(session_key),
                message_list_ttl=self._store.ttl(list_key),
            )


@lru_cache
def get_atomic_scripts() -> AtomicScripts:
    """Get the atomic script layer for the configured backend (cached)."""
    settings = get_settings()
    if settings.redis_available:
        return RedisAtomicScripts(settings=settings)
    return LocalAtomicScripts()
