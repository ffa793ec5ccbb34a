"""Session and user liveness tracking.

Two sorted sets rank sessions and users by last activity (epoch seconds).
Scores only move forward (ZADD GT). Each user's tracked sessions are capped;
overflow evicts the least recently active inactive sessions, never a live one.
"""

import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from functools import lru_cache

from redis.asyncio import Redis
from redis.exceptions import RedisError

from chatcache.core.config import Settings, get_settings
from chatcache.core.exceptions import ValidationError
from chatcache.core.logging import get_logger
from chatcache.models import validate_session_id, validate_user_id
from chatcache.services.store import (
    KEY_ACTIVITY_OWNERS,
    KEY_ACTIVITY_SESSIONS,
    KEY_ACTIVITY_USERS,
    KEY_PREFIX_ACTIVITY_MARKER,
    KEY_PREFIX_USER_SESSIONS,
    TTL_USER_SESSIONS,
    BaseStoreOperations,
    LocalStore,
    get_local_store,
    make_key,
)

logger = get_logger(__name__)

SCOPES = {"sessions": KEY_ACTIVITY_SESSIONS, "users": KEY_ACTIVITY_USERS}

# Cutoff is exclusive: entries scored exactly at the cutoff survive.
SWEEP_STALE = """
local cutoff = '(' .. ARGV[1]
local stale = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', cutoff)

for _, session_id in ipairs(stale) do
    local owner = redis.call('HGET', KEYS[3], session_id)
    if owner then
        redis.call('SREM', ARGV[3] .. owner, session_id)
        redis.call('HDEL', KEYS[3], session_id)
    end
    redis.call('DEL', ARGV[2] .. session_id)
end

local sessions = redis.call('ZREMRANGEBYSCORE', KEYS[1], '-inf', cutoff)
local users = redis.call('ZREMRANGEBYSCORE', KEYS[2], '-inf', cutoff)
return {sessions, users, stale}
"""


@dataclass
class SweepResult:
    sessions_removed: int = 0
    users_removed: int = 0
    session_ids: list[str] = field(default_factory=list)


@dataclass
class ActivitySummary:
    total: int = 0
    live: int = 0
    recent: int = 0
    today: int = 0


class ActivityTracker(ABC):
    """Liveness rankings with a per-user session cap.

    Store failures degrade to "not live", empty rankings and zero counts.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings or get_settings()
        self.clock = clock

    # ========== Backend primitives ==========

    @abstractmethod
    async def _record(self, session_id: str, user_id: str, now: float) -> bool: ...

    @abstractmethod
    async def _scores(self, session_ids: list[str]) -> dict[str, float | None]: ...

    @abstractmethod
    async def _top(self, key: str, limit: int) -> list[tuple[str, float]]: ...

    @abstractmethod
    async def _count_since(self, key: str, minimum: float) -> int: ...

    @abstractmethod
    async def _ids_since(self, key: str, minimum: float) -> list[str]: ...

    @abstractmethod
    async def _sweep(self, cutoff: float) -> SweepResult: ...

    @abstractmethod
    async def last_activity(self, session_id: str) -> float | None:
        """Ranking score of a session, or None when untracked."""

    @abstractmethod
    async def user_sessions(self, user_id: str) -> list[str]:
        """Session ids currently tracked for a user."""

    @abstractmethod
    async def remove_session(self, session_id: str, user_id: str | None = None) -> bool:
        """Drop a session's ranking entry, marker and user-set membership."""

    @abstractmethod
    async def mark_inactive(self, session_id: str) -> bool:
        """Shorten the liveness marker TTL for a session."""

    # ========== Operations ==========

    async def record_activity(self, session_id: str, user_id: str) -> list[str]:
        """Upsert both rankings to now and enforce the per-user cap.

        Returns the ids of sessions evicted by the cap.
        """
        session_id = validate_session_id(session_id)
        user_id = validate_user_id(user_id)
        now = self.clock()

        if not await self._record(session_id, user_id, now):
            return []
        return await self._enforce_cap(user_id, now)

    async def _enforce_cap(self, user_id: str, now: float) -> list[str]:
        members = await self.user_sessions(user_id)
        excess = len(members) - self.settings.max_sessions_per_user
        if excess <= 0:
            return []

        scores = await self._scores(members)
        live_cutoff = now - self.settings.live_window_seconds
        candidates = sorted(
            (scores.get(sid) or 0.0, sid)
            for sid in members
            if (scores.get(sid) or 0.0) < live_cutoff
        )
        evicted = [sid for _, sid in candidates[:excess]]
        for sid in evicted:
            await self.remove_session(sid, user_id)

        if evicted:
            logger.info("Evicted inactive sessions", user_id=user_id, evicted=evicted)
        if len(evicted) < excess:
            logger.debug(
                "Session cap exceeded by live sessions",
                user_id=user_id,
                over_by=excess - len(evicted),
            )
        return evicted

    async def is_live(self, session_id: str) -> bool:
        """The ranking score is authoritative; the expiring marker key is not consulted."""
        score = await self.last_activity(session_id)
        if score is None:
            return False
        return score >= self.clock() - self.settings.live_window_seconds

    async def live_sessions(self) -> list[str]:
        cutoff = self.clock() - self.settings.live_window_seconds
        return await self._ids_since(KEY_ACTIVITY_SESSIONS, cutoff)

    async def most_active(self, scope: str = "sessions", limit: int = 10) -> list[tuple[str, float]]:
        """Top ``limit`` ids in ``scope``, most recent first."""
        key = SCOPES.get(scope)
        if key is None:
            raise ValidationError(f"Unknown activity scope: {scope}", {"scope": scope})
        if limit < 1:
            raise ValidationError("Limit must be at least 1", {"limit": limit})
        return await self._top(key, limit)

    async def summary(self) -> ActivitySummary:
        now = self.clock()
        return ActivitySummary(
            total=await self._count_since(KEY_ACTIVITY_SESSIONS, float("-inf")),
            live=await self._count_since(KEY_ACTIVITY_SESSIONS, now - self.settings.live_window_seconds),
            recent=await self._count_since(KEY_ACTIVITY_SESSIONS, now - self.settings.recent_window_seconds),
            today=await self._count_since(KEY_ACTIVITY_SESSIONS, now - self.settings.today_window_seconds),
        )

    async def sweep_stale(self, threshold_seconds: float | None = None) -> SweepResult:
        """Remove ranking entries older than now - threshold, with their markers."""
        threshold = (
            self.settings.stale_threshold_seconds if threshold_seconds is None else threshold_seconds
        )
        cutoff = self.clock() - threshold
        result = await self._sweep(cutoff)
        if result.sessions_removed or result.users_removed:
            logger.info(
                "Stale activity swept",
                sessions_removed=result.sessions_removed,
                users_removed=result.users_removed,
                cutoff=cutoff,
            )
        return result


class RedisActivityTracker(BaseStoreOperations, ActivityTracker):
    """Sorted-set rankings in Redis."""

    def __init__(
        self,
        client: Redis | None = None,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        BaseStoreOperations.__init__(self, client, settings)
        ActivityTracker.__init__(self, self._settings, clock)
        self._sweep_script = self._register_script(SWEEP_STALE) if self.is_available else None

    async def _record(self, session_id: str, user_id: str, now: float) -> bool:
        if not self.is_available:
            return False
        user_key = make_key(KEY_PREFIX_USER_SESSIONS, user_id)
        try:
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.zadd(KEY_ACTIVITY_SESSIONS, {session_id: now}, gt=True)
                pipe.zadd(KEY_ACTIVITY_USERS, {user_id: now}, gt=True)
                pipe.sadd(user_key, session_id)
                pipe.expire(user_key, TTL_USER_SESSIONS)
                pipe.hset(KEY_ACTIVITY_OWNERS, session_id, user_id)
                pipe.set(
                    make_key(KEY_PREFIX_ACTIVITY_MARKER, session_id),
                    repr(now),
                    ex=self.settings.activity_marker_ttl_seconds,
                )
                await pipe.execute()
            return True
        except RedisError as e:
            logger.warning("Activity record failed", session_id=session_id, error=str(e))
            return False

    async def _scores(self, session_ids: list[str]) -> dict[str, float | None]:
        if not self.is_available or not session_ids:
            return {}
        try:
            scores = await self.client.zmscore(KEY_ACTIVITY_SESSIONS, session_ids)
            return dict(zip(session_ids, scores))
        except RedisError as e:
            logger.warning("Activity score lookup failed", error=str(e))
            return {}

    async def last_activity(self, session_id: str) -> float | None:
        if not self.is_available:
            return None
        try:
            return await self.client.zscore(KEY_ACTIVITY_SESSIONS, session_id)
        except RedisError as e:
            logger.warning("Activity lookup failed", session_id=session_id, error=str(e))
            return None

    async def _top(self, key: str, limit: int) -> list[tuple[str, float]]:
        if not self.is_available:
            return []
        try:
            return [
                (member, float(score))
                for member, score in await self.client.zrevrange(key, 0, limit - 1, withscores=True)
            ]
        except RedisError as e:
            logger.warning("Activity ranking failed", key=key, error=str(e))
            return []

    async def _count_since(self, key: str, minimum: float) -> int:
        if not self.is_available:
            return 0
        try:
            return int(await self.client.zcount(key, minimum, "+inf"))
        except RedisError as e:
            logger.warning("Activity count failed", key=key, error=str(e))
            return 0

    async def _ids_since(self, key: str, minimum: float) -> list[str]:
        if not self.is_available:
            return []
        try:
            return list(await self.client.zrangebyscore(key, minimum, "+inf"))
        except RedisError as e:
            logger.warning("Activity range failed", key=key, error=str(e))
            return []

    async def user_sessions(self, user_id: str) -> list[str]:
        if not self.is_available:
            return []
        try:
            members = await self.client.smembers(make_key(KEY_PREFIX_USER_SESSIONS, user_id))
            return sorted(members)
        except RedisError as e:
            logger.warning("User sessions lookup failed", user_id=user_id, error=str(e))
            return []

    async def remove_session(self, session_id: str, user_id: str | None = None) -> bool:
        if not self.is_available:
            return False
        try:
            owner = user_id or await self.client.hget(KEY_ACTIVITY_OWNERS, session_id)
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.zrem(KEY_ACTIVITY_SESSIONS, session_id)
                pipe.hdel(KEY_ACTIVITY_OWNERS, session_id)
                pipe.delete(make_key(KEY_PREFIX_ACTIVITY_MARKER, session_id))
                if owner:
                    pipe.srem(make_key(KEY_PREFIX_USER_SESSIONS, owner), session_id)
                await pipe.execute()
            return True
        except RedisError as e:
            logger.warning("Activity removal failed", session_id=session_id, error=str(e))
            return False

    async def mark_inactive(self, session_id: str) -> bool:
        if not self.is_available:
            return False
        try:
            return bool(
                await self.client.expire(
                    make_key(KEY_PREFIX_ACTIVITY_MARKER, session_id),
                    self.settings.inactive_marker_ttl_seconds,
                )
            )
        except RedisError as e:
            logger.warning("Mark inactive failed", session_id=session_id, error=str(e))
            return False

    async def _sweep(self, cutoff: float) -> SweepResult:
        if self._sweep_script is None:
            return SweepResult()
        try:
            sessions, users, stale = await self._sweep_script(
                keys=[KEY_ACTIVITY_SESSIONS, KEY_ACTIVITY_USERS, KEY_ACTIVITY_OWNERS],
                args=[
                    repr(cutoff),
                    f"{KEY_PREFIX_ACTIVITY_MARKER}:",
                    f"{KEY_PREFIX_USER_SESSIONS}:",
                ],
            )
            return SweepResult(int(sessions), int(users), list(stale or []))
        except RedisError as e:
            logger.warning("Stale sweep failed", cutoff=cutoff, error=str(e))
            return SweepResult()


class LocalActivityTracker(ActivityTracker):
    """Rankings held in the shared LocalStore."""

    def __init__(
        self,
        store: LocalStore | None = None,
        settings: Settings | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._store = store or get_local_store()
        super().__init__(settings, clock or self._store.now)

    async def _record(self, session_id: str, user_id: str, now: float) -> bool:
        user_key = make_key(KEY_PREFIX_USER_SESSIONS, user_id)
        async with self._store.lock:
            self._store.zadd(KEY_ACTIVITY_SESSIONS, session_id, now, gt=True)
            self._store.zadd(KEY_ACTIVITY_USERS, user_id, now, gt=True)
            self._store.sadd(user_key, session_id)
            self._store.expire(user_key, TTL_USER_SESSIONS)
            self._store.hset(KEY_ACTIVITY_OWNERS, {session_id: user_id})
            self._store.set(
                make_key(KEY_PREFIX_ACTIVITY_MARKER, session_id),
                repr(now),
                self.settings.activity_marker_ttl_seconds,
            )
        return True

    async def _scores(self, session_ids: list[str]) -> dict[str, float | None]:
        return {sid: self._store.zscore(KEY_ACTIVITY_SESSIONS, sid) for sid in session_ids}

    async def last_activity(self, session_id: str) -> float | None:
        return self._store.zscore(KEY_ACTIVITY_SESSIONS, session_id)

    async def _top(self, key: str, limit: int) -> list[tuple[str, float]]:
        return self._store.zrevrange(key, limit)

    async def _count_since(self, key: str, minimum: float) -> int:
        return self._store.zcount(key, minimum)

    async def _ids_since(self, key: str, minimum: float) -> list[str]:
        return self._store.zrange_from(key, minimum)

    async def user_sessions(self, user_id: str) -> list[str]:
        return sorted(self._store.smembers(make_key(KEY_PREFIX_USER_SESSIONS, user_id)))

    async def remove_session(self, session_id: str, user_id: str | None = None) -> bool:
        async with self._store.lock:
            owner = user_id or self._store.hget(KEY_ACTIVITY_OWNERS, session_id)
            self._store.zrem(KEY_ACTIVITY_SESSIONS, session_id)
            self._store.hdel(KEY_ACTIVITY_OWNERS, session_id)
            self._store.delete(make_key(KEY_PREFIX_ACTIVITY_MARKER, session_id))
            if owner:
                self._store.srem(make_key(KEY_PREFIX_USER_SESSIONS, owner), session_id)
        return True

    async def mark_inactive(self, session_id: str) -> bool:
        return self._store.expire(
            make_key(KEY_PREFIX_ACTIVITY_MARKER, session_id),
            self.settings.inactive_marker_ttl_seconds,
        )

    async def _sweep(self, cutoff: float) -> SweepResult:
        async with self._store.lock:
            stale = self._store.zrange_below(KEY_ACTIVITY_SESSIONS, cutoff)
            for session_id in stale:
                owner = self._store.hget(KEY_ACTIVITY_OWNERS, session_id)
                if owner:
                    self._store.srem(make_key(KEY_PREFIX_USER_SESSIONS, owner), session_id)
                    self._store.hdel(KEY_ACTIVITY_OWNERS, session_id)
                self._store.delete(make_key(KEY_PREFIX_ACTIVITY_MARKER, session_id))
            sessions = self._store.zremrange_below(KEY_ACTIVITY_SESSIONS, cutoff)
            users = self._store.zremrange_below(KEY_ACTIVITY_USERS, cutoff)
        return SweepResult(sessions, users, stale)


@lru_cache
def get_activity_tracker() -> ActivityTracker:
    """Get the activity tracker for the configured backend (cached)."""
    settings = get_settings()
    if settings.redis_available:
        return RedisActivityTracker(settings=settings)
    return LocalActivityTracker(settings=settings)
