"""Key-value store access.

Two backends share one key layout:
- Redis (redis.asyncio): hashes for sessions and counters, sorted sets for
  activity rankings and rate-limit windows, lists for message ordering,
  strings for JSON records, Lua scripts for multi-step updates
- LocalStore: an in-process keyspace used when no Redis URL is configured
"""

from chatcache.services.store.base import (
    BaseStoreOperations,
    create_redis_client,
    get_redis_client,
)
from chatcache.services.store.constants import (
    KEY_ACTIVITY_OWNERS,
    KEY_ACTIVITY_SESSIONS,
    KEY_ACTIVITY_USERS,
    KEY_CACHE_STATS,
    KEY_PREFIX_ACTIVITY_MARKER,
    KEY_PREFIX_MESSAGE,
    KEY_PREFIX_MESSAGES,
    KEY_PREFIX_RATE,
    KEY_PREFIX_RESPONSE,
    KEY_PREFIX_SESSION,
    KEY_PREFIX_USER_SESSIONS,
    STAT_CACHED,
    STAT_HITS,
    STAT_MISSES,
    TTL_USER_SESSIONS,
    make_key,
)
from chatcache.services.store.local import LocalStore, get_local_store

__all__ = [
    # Backends
    "BaseStoreOperations",
    "LocalStore",
    "create_redis_client",
    "get_local_store",
    "get_redis_client",
    # Key prefix constants
    "KEY_PREFIX_ACTIVITY_MARKER",
    "KEY_PREFIX_MESSAGE",
    "KEY_PREFIX_MESSAGES",
    "KEY_PREFIX_RATE",
    "KEY_PREFIX_RESPONSE",
    "KEY_PREFIX_SESSION",
    "KEY_PREFIX_USER_SESSIONS",
    # Singleton keys
    "KEY_ACTIVITY_OWNERS",
    "KEY_ACTIVITY_SESSIONS",
    "KEY_ACTIVITY_USERS",
    "KEY_CACHE_STATS",
    # Stat fields
    "STAT_CACHED",
    "STAT_HITS",
    "STAT_MISSES",
    # TTL constants
    "TTL_USER_SESSIONS",
    "make_key",
]
