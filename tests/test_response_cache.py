"""Tests for the content-addressed response cache."""

from unittest.mock import AsyncMock, patch

import pytest

from chatcache.core.exceptions import ScriptExecutionError, ValidationError
from chatcache.services.response_cache import CacheStats, make_cache_key


class TestCacheKey:
    def test_deterministic(self):
        assert make_cache_key("hello", "m1", 0.7) == make_cache_key("hello", "m1", 0.7)
        assert len(make_cache_key("hello", "m1", 0.7)) == 64

    def test_default_temperature_matches_explicit(self):
        assert make_cache_key("hello", "m1") == make_cache_key("hello", "m1", 0.7)

    def test_integer_and_float_temperature_agree(self):
        assert make_cache_key("hello", "m1", 1) == make_cache_key("hello", "m1", 1.0)

    @pytest.mark.parametrize(
        "other",
        [("hello!", "m1", 0.7), ("hello", "m2", 0.7), ("hello", "m1", 0.2)],
    )
    def test_any_component_changes_key(self, other):
        assert make_cache_key("hello", "m1", 0.7) != make_cache_key(*other)


class TestLookupAndStore:
    @pytest.mark.asyncio
    async def test_miss_then_store_then_hit(self, cache):
        assert await cache.lookup("hello", "m1", 0.7) is None

        stored = await cache.store("s1", "hello", "Hi", "m1", 0.7)
        assert stored is not None
        assert stored.response == "Hi"
        assert stored.key == make_cache_key("hello", "m1", 0.7)

        entry = await cache.lookup("hello", "m1", 0.7)
        assert entry is not None
        assert entry.response == "Hi"
        assert entry.hit_count == 1

        stats = await cache.stats()
        assert (stats.hits, stats.misses, stats.cached) == (1, 1, 1)
        assert stats.hit_ratio == 50.0

    @pytest.mark.asyncio
    async def test_hit_count_persists(self, cache):
        await cache.store("s1", "hello", "Hi", "m1")
        await cache.lookup("hello", "m1")
        entry = await cache.lookup("hello", "m1")
        assert entry.hit_count == 2

    @pytest.mark.asyncio
    async def test_fresh_entry_not_overwritten(self, cache):
        await cache.store("s1", "hello", "Hi", "m1")
        assert await cache.store("s2", "hello", "Hello there", "m1") is None

        entry = await cache.lookup("hello", "m1")
        assert entry.response == "Hi"
        assert (await cache.stats()).cached == 1

    @pytest.mark.asyncio
    async def test_different_temperature_is_a_miss(self, cache):
        await cache.store("s1", "hello", "Hi", "m1", 0.7)
        assert await cache.lookup("hello", "m1", 0.9) is None

    @pytest.mark.asyncio
    async def test_corrupt_entry_counts_as_miss(self, cache):
        key = cache.storage_key(cache.make_key("hello", "m1"))
        await cache._write(key, "{not json", 100)

        assert await cache.lookup("hello", "m1") is None
        assert (await cache.stats()).misses == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("input_text, model", [("", "m1"), ("   ", "m1"), (None, "m1"), ("hi", ""), ("hi", None)])
    async def test_blank_input_or_model_rejected(self, cache, input_text, model):
        with pytest.raises(ValidationError):
            await cache.lookup(input_text, model)
        with pytest.raises(ValidationError):
            await cache.store("s1", input_text, "reply", model)

    @pytest.mark.asyncio
    async def test_script_failure_falls_back_to_plain_write(self, local_cache):
        failure = AsyncMock(side_effect=ScriptExecutionError("cache_set_if_stale", "down"))
        with patch.object(local_cache.scripts, "cache_set_if_stale", failure):
            stored = await local_cache.store("s1", "hello", "Hi", "m1")

        assert stored is not None
        assert (await local_cache.lookup("hello", "m1")).response == "Hi"


class TestStatsAndClear:
    def test_hit_ratio_before_any_lookup(self):
        assert CacheStats().hit_ratio == 0.0

    def test_hit_ratio_rounded(self):
        assert CacheStats(hits=1, misses=2).hit_ratio == 33.33

    @pytest.mark.asyncio
    async def test_stats_include_most_active(self, cache):
        await cache.activity.record_activity("s1", "u1")
        stats = (await cache.stats()).to_dict()

        assert [sid for sid, _ in stats["most_active_sessions"]] == ["s1"]
        assert [uid for uid, _ in stats["most_active_users"]] == ["u1"]
        assert stats["hit_ratio"] == 0.0

    @pytest.mark.asyncio
    async def test_size_and_clear(self, cache):
        for text in ("one", "two", "three"):
            await cache.store("s1", text, "reply", "m1")

        assert await cache.size() == 3
        assert await cache.clear() == 3
        assert await cache.size() == 0
        assert await cache.lookup("one", "m1") is None
