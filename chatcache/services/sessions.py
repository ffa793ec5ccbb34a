"""Session lifecycle and message persistence.

Layout per session:
- ``session:{id}``: flat hash of the Session fields
- ``messages:{id}``: list of message ids, trimmed to the newest N
- ``message:{msg_id}``: JSON of one Message

Unlike the cache and activity paths, persistence failures here are raised
as StoreUnavailableError so the caller can retry against the local backend.
"""

import json
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from functools import lru_cache
from typing import Any

from redis.asyncio import Redis
from redis.exceptions import RedisError

from chatcache.core.config import Settings, get_settings
from chatcache.core.exceptions import (
    DataCorruptionError,
    NotFoundError,
    ScriptExecutionError,
    StoreUnavailableError,
)
from chatcache.core.logging import get_logger
from chatcache.models import (
    Message,
    MessageRole,
    Session,
    clean_content,
    validate_session_id,
    validate_title,
    validate_user_id,
)
from chatcache.services.activity import ActivityTracker, LocalActivityTracker, get_activity_tracker
from chatcache.services.scripts import (
    AtomicScripts,
    LocalAtomicScripts,
    SessionStats,
    get_atomic_scripts,
)
from chatcache.services.store import (
    KEY_PREFIX_MESSAGE,
    KEY_PREFIX_MESSAGES,
    KEY_PREFIX_SESSION,
    BaseStoreOperations,
    LocalStore,
    get_local_store,
    make_key,
)
from chatcache.services.tokens import TokenEstimator, get_token_estimator

logger = get_logger(__name__)


class SessionService(ABC):
    """Create, read, mutate and delete chat sessions and their messages."""

    def __init__(
        self,
        scripts: AtomicScripts,
        activity: ActivityTracker,
        estimator: TokenEstimator | None = None,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.scripts = scripts
        self.activity = activity
        self.estimator = estimator or get_token_estimator()
        self.settings = settings or get_settings()
        self.clock = clock

    # ========== Backend primitives ==========

    @abstractmethod
    async def _save_session(self, session: Session) -> None: ...

    @abstractmethod
    async def _load_session(self, session_id: str) -> dict[str, str]: ...

    @abstractmethod
    async def _update_fields(self, session_id: str, fields: dict[str, str]) -> None: ...

    @abstractmethod
    async def _save_message(self, message: Message) -> None: ...

    @abstractmethod
    async def _message_ids(self, session_id: str, start: int, stop: int) -> list[str]: ...

    @abstractmethod
    async def _load_messages(self, message_ids: list[str]) -> list[str | None]: ...

    @abstractmethod
    async def _delete_keys(self, *keys: str) -> int: ...

    # ========== Sessions ==========

    async def create_session(
        self,
        user_id: str,
        title: str | None = None,
        settings: dict[str, Any] | None = None,
    ) -> Session:
        user_id = validate_user_id(user_id)
        now = self.clock()
        session = Session(
            user_id=user_id,
            title=validate_title(title),
            created_at=now,
            last_activity=now,
            settings=dict(settings or {}),
        )
        await self._save_session(session)
        await self._record_activity(session.id, user_id)
        logger.info("Session created", session_id=session.id, user_id=user_id)
        return session

    async def get_session(self, session_id: str) -> Session | None:
        session_id = validate_session_id(session_id)
        data = await self._load_session(session_id)
        if not data:
            return None
        try:
            return Session.from_hash(data)
        except DataCorruptionError as e:
            logger.warning("Corrupt session treated as missing", session_id=session_id, error=e.message)
            return None

    async def require_session(self, session_id: str) -> Session:
        session = await self.get_session(session_id)
        if session is None:
            raise NotFoundError("Session", session_id)
        return session

    async def delete_session(self, session_id: str) -> bool:
        """Hard-delete a session, its messages and its activity entries."""
        session = await self.get_session(session_id)
        if session is None:
            return False
        await self._purge(session.id)
        await self.activity.remove_session(session.id, session.user_id)
        logger.info("Session deleted", session_id=session.id)
        return True

    async def _purge(self, session_id: str) -> None:
        message_ids = await self._message_ids(session_id, 0, -1)
        await self._delete_keys(
            make_key(KEY_PREFIX_SESSION, session_id),
            make_key(KEY_PREFIX_MESSAGES, session_id),
            *(make_key(KEY_PREFIX_MESSAGE, mid) for mid in message_ids),
        )

    async def purge_sessions(self, session_ids: list[str]) -> int:
        """Delete stored data for sessions already dropped from the rankings."""
        for session_id in session_ids:
            await self._purge(session_id)
        return len(session_ids)

    async def deactivate(self, session_id: str) -> Session:
        """Soft-delete: clear the active flag and shorten the liveness marker."""
        session = await self.require_session(session_id)
        await self._update_fields(session.id, {"active": "0"})
        await self.activity.mark_inactive(session.id)
        session.active = False
        return session

    async def reactivate(self, session_id: str) -> Session:
        session = await self.require_session(session_id)
        await self._update_fields(session.id, {"active": "1"})
        await self._record_activity(session.id, session.user_id)
        session.active = True
        return session

    async def update_title(self, session_id: str, title: str) -> Session:
        session = await self.require_session(session_id)
        session.title = validate_title(title)
        await self._update_fields(session.id, {"title": session.title})
        return session

    async def set_setting(self, session_id: str, key: str, value: Any) -> Session:
        session = await self.require_session(session_id)
        session.settings[key] = value
        await self._update_fields(session.id, {"settings": json.dumps(session.settings)})
        return session

    async def touch(self, session_id: str) -> Session:
        """Activity ping without a message."""
        session = await self.require_session(session_id)
        now = self.clock()
        try:
            await self.scripts.update_session_counters(
                session.id, 0, 0, now, self.settings.session_ttl_seconds
            )
        except ScriptExecutionError as e:
            raise StoreUnavailableError("touch", e.message) from e
        await self._record_activity(session.id, session.user_id)
        session.last_activity = max(session.last_activity, now)
        return session

    async def user_sessions(self, user_id: str) -> list[Session]:
        """Tracked sessions of a user, most recently active first."""
        user_id = validate_user_id(user_id)
        sessions = []
        for session_id in await self.activity.user_sessions(user_id):
            session = await self.get_session(session_id)
            if session is not None:
                sessions.append(session)
        return sorted(sessions, key=lambda s: s.last_activity, reverse=True)

    async def session_stats(self, session_id: str) -> SessionStats:
        session_id = validate_session_id(session_id)
        try:
            return await self.scripts.session_stats(session_id)
        except ScriptExecutionError:
            return SessionStats(session_id=session_id)

    async def cleanup_inactive(self, max_age_seconds: float | None = None) -> int:
        """Delete one batch of session hashes idle for longer than ``max_age_seconds``."""
        max_age = self.settings.stale_threshold_seconds if max_age_seconds is None else max_age_seconds
        try:
            deleted = await self.scripts.cleanup_expired(
                f"{KEY_PREFIX_SESSION}:*",
                max_age,
                self.clock(),
                self.settings.bulk_delete_batch_size,
            )
        except ScriptExecutionError:
            return 0
        if deleted:
            logger.info("Inactive sessions cleaned up", deleted=deleted)
        return deleted

    async def _record_activity(self, session_id: str, user_id: str) -> None:
        evicted = await self.activity.record_activity(session_id, user_id)
        if evicted:
            await self.purge_sessions(evicted)

    # ========== Messages ==========

    async def append_message(
        self,
        session_id: str,
        role: MessageRole | str,
        content: str,
        metadata: dict[str, Any] | None = None,
    ) -> Message:
        content = clean_content(content)
        session = await self.require_session(session_id)
        message = Message(
            session_id=session.id,
            role=MessageRole(role),
            content=content,
            created_at=self.clock(),
            metadata=dict(metadata or {}),
        )
        message.token_count = self.estimator.estimate_message(message)

        await self._save_message(message)
        try:
            await self.scripts.append_message(
                session.id,
                message.id,
                message.token_count,
                message.created_at,
                self.settings.max_messages_per_session,
                self.settings.session_ttl_seconds,
            )
        except ScriptExecutionError as e:
            await self._delete_keys(make_key(KEY_PREFIX_MESSAGE, message.id))
            raise StoreUnavailableError("append_message", e.message) from e

        await self._record_activity(session.id, session.user_id)
        return message

    async def get_messages(self, session_id: str, limit: int | None = None) -> list[Message]:
        """Messages in order, oldest first; ``limit`` keeps only the newest N."""
        session_id = validate_session_id(session_id)
        start = -limit if limit else 0
        message_ids = await self._message_ids(session_id, start, -1)
        if not message_ids:
            return []

        messages = []
        for message_id, raw in zip(message_ids, await self._load_messages(message_ids)):
            if raw is None:
                continue
            try:
                message = Message.from_json(raw)
            except DataCorruptionError as e:
                logger.warning("Corrupt message skipped", message_id=message_id, error=e.message)
                continue
            if message.token_count is None:
                message.token_count = self.estimator.estimate_message(message)
            messages.append(message)
        return messages

    async def recent_messages(self, session_id: str, count: int = 10) -> list[Message]:
        return await self.get_messages(session_id, limit=count)


class RedisSessionService(BaseStoreOperations, SessionService):
    def __init__(
        self,
        client: Redis | None = None,
        settings: Settings | None = None,
        scripts: AtomicScripts | None = None,
        activity: ActivityTracker | None = None,
        estimator: TokenEstimator | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        BaseStoreOperations.__init__(self, client, settings)
        SessionService.__init__(
            self,
            scripts or get_atomic_scripts(),
            activity or get_activity_tracker(),
            estimator,
            self._settings,
            clock,
        )

    def _fail(self, operation: str, error: Exception) -> StoreUnavailableError:
        logger.warning("Session store operation failed", operation=operation, error=str(error))
        return StoreUnavailableError(operation)

    async def _save_session(self, session: Session) -> None:
        key = make_key(KEY_PREFIX_SESSION, session.id)
        try:
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.hset(key, mapping=session.to_hash())
                pipe.expire(key, self.settings.session_ttl_seconds)
                await pipe.execute()
        except (RedisError, RuntimeError) as e:
            raise self._fail("save_session", e) from e

    async def _load_session(self, session_id: str) -> dict[str, str]:
        try:
            return await self.client.hgetall(make_key(KEY_PREFIX_SESSION, session_id))
        except (RedisError, RuntimeError) as e:
            raise self._fail("load_session", e) from e

    async def _update_fields(self, session_id: str, fields: dict[str, str]) -> None:
        try:
            await self.client.hset(make_key(KEY_PREFIX_SESSION, session_id), mapping=fields)
        except (RedisError, RuntimeError) as e:
            raise self._fail("update_session", e) from e

    async def _save_message(self, message: Message) -> None:
        try:
            await self.client.set(
                make_key(KEY_PREFIX_MESSAGE, message.id),
                message.to_json(),
                ex=self.settings.session_ttl_seconds,
            )
        except (RedisError, RuntimeError) as e:
            raise self._fail("save_message", e) from e

    async def _message_ids(self, session_id: str, start: int, stop: int) -> list[str]:
        try:
            return await self.client.lrange(make_key(KEY_PREFIX_MESSAGES, session_id), start, stop)
        except (RedisError, RuntimeError) as e:
            raise self._fail("list_messages", e) from e

    async def _load_messages(self, message_ids: list[str]) -> list[str | None]:
        try:
            return await self.client.mget([make_key(KEY_PREFIX_MESSAGE, mid) for mid in message_ids])
        except (RedisError, RuntimeError) as e:
            raise self._fail("load_messages", e) from e

    async def _delete_keys(self, *keys: str) -> int:
        return await self.delete(*keys)


class LocalSessionService(SessionService):
    """In-memory sessions; also the fallback when Redis is unreachable."""

    def __init__(
        self,
        store: LocalStore | None = None,
        settings: Settings | None = None,
        scripts: AtomicScripts | None = None,
        activity: ActivityTracker | None = None,
        estimator: TokenEstimator | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._store = store or get_local_store()
        settings = settings or get_settings()
        super().__init__(
            scripts or LocalAtomicScripts(self._store),
            activity or LocalActivityTracker(self._store, settings, clock),
            estimator,
            settings,
            clock or self._store.now,
        )

    async def _save_session(self, session: Session) -> None:
        key = make_key(KEY_PREFIX_SESSION, session.id)
        async with self._store.lock:
            self._store.hset(key, session.to_hash())
            self._store.expire(key, self.settings.session_ttl_seconds)

    async def _load_session(self, session_id: str) -> dict[str, str]:
        return self._store.hgetall(make_key(KEY_PREFIX_SESSION, session_id))

    async def _update_fields(self, session_id: str, fields: dict[str, str]) -> None:
        async with self._store.lock:
            self._store.hset(make_key(KEY_PREFIX_SESSION, session_id), fields)

    async def _save_message(self, message: Message) -> None:
        self._store.set(
            make_key(KEY_PREFIX_MESSAGE, message.id),
            message.to_json(),
            self.settings.session_ttl_seconds,
        )

    async def _message_ids(self, session_id: str, start: int, stop: int) -> list[str]:
        return self._store.lrange(make_key(KEY_PREFIX_MESSAGES, session_id), start, stop)

    async def _load_messages(self, message_ids: list[str]) -> list[str | None]:
        return [self._store.get(make_key(KEY_PREFIX_MESSAGE, mid)) for mid in message_ids]

    async def _delete_keys(self, *keys: str) -> int:
        async with self._store.lock:
            return self._store.delete(*keys)


@lru_cache
def get_session_service() -> SessionService:
    """Get the session service for the configured backend (cached)."""
    settings = get_settings()
    if settings.redis_available:
        return RedisSessionService(settings=settings)
    return LocalSessionService(settings=settings)
