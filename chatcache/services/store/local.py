"""In-memory map backend used when no Redis URL is configured.

Holds the same key layout as the Redis backend so every local service
implementation sees one coherent state. Methods are synchronous; callers
that need several steps to be indivisible hold ``store.lock`` for the
whole sequence, which is what stands in for a server-side script.
"""

from __future__ import annotations

import asyncio
import fnmatch
import time
from collections.abc import Callable
from functools import lru_cache
from typing import Any, TypeVar

T = TypeVar("T")


class LocalStore:
    """Process-local keyspace with lazy TTL expiry."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self.lock = asyncio.Lock()
        self._clock = clock
        self._data: dict[str, Any] = {}
        self._expires: dict[str, float] = {}

    def now(self) -> float:
        return self._clock()

    def _purge(self, key: str) -> None:
        deadline = self._expires.get(key)
        if deadline is not None and deadline <= self._clock():
            self._data.pop(key, None)
            self._expires.pop(key, None)

    def _lookup(self, key: str, kind: type[T]) -> T | None:
        self._purge(key)
        value = self._data.get(key)
        return value if isinstance(value, kind) else None

    def _ensure(self, key: str, kind: type[T]) -> T:
        value = self._lookup(key, kind)
        if value is None:
            value = kind()
            self._data[key] = value
        return value

    # ========== Keyspace ==========

    def exists(self, key: str) -> bool:
        self._purge(key)
        return key in self._data

    def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self.exists(key):
                del self._data[key]
                removed += 1
            self._expires.pop(key, None)
        return removed

    def expire(self, key: str, ttl: float) -> bool:
        if not self.exists(key):
            return False
        self._expires[key] = self._clock() + ttl
        return True

    def ttl(self, key: str) -> int:
        """Remaining TTL in whole seconds; -2 when missing, -1 when persistent."""
        if not self.exists(key):
            return -2
        deadline = self._expires.get(key)
        if deadline is None:
            return -1
        return max(int(deadline - self._clock()), 0)

    def keys(self, pattern: str = "*") -> list[str]:
        return [key for key in list(self._data) if self.exists(key) and fnmatch.fnmatchcase(key, pattern)]

    # ========== Strings ==========

    def get(self, key: str) -> str | None:
        return self._lookup(key, str)

    def set(self, key: str, value: str, ttl: float | None = None) -> None:
        self._data[key] = value
        if ttl:
            self._expires[key] = self._clock() + ttl
        else:
            self._expires.pop(key, None)

    # ========== Hashes ==========

    def hget(self, key: str, field: str) -> str | None:
        table = self._lookup(key, dict)
        return table.get(field) if table is not None else None

    def hgetall(self, key: str) -> dict[str, str]:
        return dict(self._lookup(key, dict) or {})

    def hset(self, key: str, mapping: dict[str, str]) -> None:
        self._ensure(key, dict).update(mapping)

    def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        table = self._ensure(key, dict)
        value = int(table.get(field, "0")) + amount
        table[field] = str(value)
        return value

    def hdel(self, key: str, *fields: str) -> int:
        table = self._lookup(key, dict)
        if table is None:
            return 0
        return sum(1 for f in fields if table.pop(f, None) is not None)

    # ========== Lists ==========

    def rpush(self, key: str, *values: str) -> int:
        items = self._ensure(key, list)
        items.extend(values)
        return len(items)

    def lrange(self, key: str, start: int, stop: int) -> list[str]:
        items = self._lookup(key, list) or []
        size = len(items)
        if start < 0:
            start = max(size + start, 0)
        if stop < 0:
            stop = size + stop
        return items[start : stop + 1]

    def ltrim_last(self, key: str, count: int) -> list[str]:
        """Keep the newest ``count`` items; returns the ones dropped."""
        items = self._lookup(key, list)
        if items is None or len(items) <= count:
            return []
        dropped = items[: len(items) - count]
        del items[: len(items) - count]
        return dropped

    def llen(self, key: str) -> int:
        return len(self._lookup(key, list) or [])

    # ========== Sets ==========

    def sadd(self, key: str, *members: str) -> None:
        self._ensure(key, set).update(members)

    def srem(self, key: str, *members: str) -> None:
        members_set = self._lookup(key, set)
        if members_set is not None:
            members_set.difference_update(members)

    def smembers(self, key: str) -> set[str]:
        return set(self._lookup(key, set) or set())

    # ========== Sorted sets (dict member -> score) ==========

    def _zset(self, key: str) -> dict[str, float]:
        return self._lookup(key, dict) or {}

    def zadd(self, key: str, member: str, score: float, *, gt: bool = False) -> None:
        ranking = self._ensure(key, dict)
        current = ranking.get(member)
        if gt and current is not None and current >= score:
            return
        ranking[member] = score

    def zscore(self, key: str, member: str) -> float | None:
        return self._zset(key).get(member)

    def zrem(self, key: str, *members: str) -> int:
        ranking = self._lookup(key, dict)
        if ranking is None:
            return 0
        return sum(1 for m in members if ranking.pop(m, None) is not None)

    def zcard(self, key: str) -> int:
        return len(self._zset(key))

    def zcount(self, key: str, minimum: float, maximum: float = float("inf")) -> int:
        return sum(1 for score in self._zset(key).values() if minimum <= score <= maximum)

    def zrange_below(self, key: str, cutoff: float) -> list[str]:
        """Members scored strictly below ``cutoff``, oldest first."""
        ranking = self._zset(key)
        return [m for m, s in sorted(ranking.items(), key=lambda kv: (kv[1], kv[0])) if s < cutoff]

    def zrange_from(self, key: str, minimum: float) -> list[str]:
        ranking = self._zset(key)
        return [m for m, s in sorted(ranking.items(), key=lambda kv: (kv[1], kv[0])) if s >= minimum]

    def zremrange_below(self, key: str, cutoff: float) -> int:
        stale = self.zrange_below(key, cutoff)
        return self.zrem(key, *stale) if stale else 0

    def zrevrange(self, key: str, limit: int) -> list[tuple[str, float]]:
        ranking = self._zset(key)
        ordered = sorted(ranking.items(), key=lambda kv: (-kv[1], kv[0]))
        return ordered[:limit]


@lru_cache
def get_local_store() -> LocalStore:
    """Process-wide in-memory store shared by all local service backends."""
    return LocalStore()
