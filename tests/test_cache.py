"""Tests for the query cache."""

import asyncio

import pytest

from store.cache import CacheKeys, QueryCache, with_cache


class TestGetSet:
    def test_miss_returns_default(self, cache):
        assert cache.get("missing") is None
        assert cache.get("missing", "fallback") == "fallback"

    def test_set_then_get(self, cache):
        cache.set("k", [1, 2])
        assert cache.get("k") == [1, 2]
        assert "k" in cache

    def test_entry_expires_after_ttl(self, cache, clock):
        cache.set("k", "v", ttl=0.1)
        clock.advance(0.05)
        assert cache.get("k") == "v"
        clock.advance(0.06)
        assert cache.get("k") is None
        assert len(cache) == 0

    def test_default_ttl_applies(self, clock):
        cache = QueryCache(default_ttl=10, clock=clock)
        cache.set("k", "v")
        clock.advance(9)
        assert cache.get("k") == "v"
        clock.advance(2)
        assert cache.get("k") is None

    @pytest.mark.asyncio
    async def test_real_clock_expiry(self):
        cache = QueryCache()
        cache.set("k", "v", ttl=0.1)
        await asyncio.sleep(0.15)
        assert cache.get("k") is None

    def test_falsy_values_are_cached(self, cache):
        cache.set("empty", ())
        assert cache.get("empty", "miss") == ()


class TestCapacity:
    def test_evicts_oldest_first(self, clock):
        cache = QueryCache(max_size=2, clock=clock)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.set("c", 3)
        assert cache.get("a") is None
        assert cache.get("b") == 2
        assert cache.get("c") == 3

    def test_reinsert_refreshes_position(self, clock):
        cache = QueryCache(max_size=2, clock=clock)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.set("a", 10)
        cache.set("c", 3)
        assert cache.get("a") == 10
        assert cache.get("b") is None

    def test_invalid_max_size(self):
        with pytest.raises(ValueError):
            QueryCache(max_size=0)


class TestInvalidation:
    def test_invalidate_key(self, cache):
        cache.set("k", "v")
        cache.invalidate("k")
        assert cache.get("k") is None
        cache.invalidate("never-set")

    def test_invalidate_pattern(self, cache):
        cache.set("secret:list:u1:*", 1)
        cache.set("secret:search:u1:db", 2)
        cache.set("secret:list:u2:*", 3)
        cache.set("api_key:list:u1:*", 4)

        removed = cache.invalidate_pattern(CacheKeys.owner_kind_pattern("secret", "u1"))

        assert removed == 2
        assert cache.get("secret:list:u2:*") == 3
        assert cache.get("api_key:list:u1:*") == 4

    def test_owner_pattern_escapes_regex(self, cache):
        cache.set("secret:list:u.1:*", 1)
        cache.set("secret:list:ux1:*", 2)
        cache.invalidate_pattern(CacheKeys.owner_kind_pattern("secret", "u.1"))
        assert cache.get("secret:list:ux1:*") == 2

    def test_clear(self, cache):
        cache.set("a", 1)
        cache.set("b", 2)
        cache.clear()
        assert len(cache) == 0

    def test_cleanup_removes_only_expired(self, cache, clock):
        cache.set("short", 1, ttl=1)
        cache.set("long", 2, ttl=100)
        clock.advance(5)
        assert cache.cleanup() == 1
        assert len(cache) == 1
        assert cache.get("long") == 2


class TestSweep:
    @pytest.mark.asyncio
    async def test_sweep_removes_expired_without_reads(self):
        cache = QueryCache()
        cache.set("k", "v", ttl=0.01)
        cache.start_sweep(interval=0.02)
        try:
            await asyncio.sleep(0.1)
            assert len(cache) == 0
        finally:
            await cache.stop_sweep()
        assert not cache.is_sweeping

    @pytest.mark.asyncio
    async def test_start_is_idempotent_and_stop_is_safe(self):
        cache = QueryCache()
        await cache.stop_sweep()
        cache.start_sweep(interval=60)
        first = cache._sweep_task
        cache.start_sweep(interval=60)
        assert cache._sweep_task is first
        await cache.stop_sweep()
        assert first.cancelled()


class TestWithCache:
    @pytest.mark.asyncio
    async def test_memoizes_within_ttl(self, cache, clock):
        calls = []

        async def load(owner):
            calls.append(owner)
            return f"rows for {owner}"

        cached_load = with_cache(cache, load, lambda owner: f"rows:{owner}", ttl=5)

        assert await cached_load("u1") == "rows for u1"
        assert await cached_load("u1") == "rows for u1"
        assert calls == ["u1"]

        clock.advance(6)
        await cached_load("u1")
        assert calls == ["u1", "u1"]

    @pytest.mark.asyncio
    async def test_concurrent_misses_are_not_deduplicated(self, cache):
        calls = 0

        async def load():
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.01)
            return "value"

        cached_load = cache.wrap(load, lambda: "key")
        results = await asyncio.gather(cached_load(), cached_load())

        assert results == ["value", "value"]
        assert calls == 2

    @pytest.mark.asyncio
    async def test_none_results_are_cached(self, cache):
        calls = 0

        async def load():
            nonlocal calls
            calls += 1
            return None

        cached_load = cache.wrap(load, lambda: "none")
        await cached_load()
        await cached_load()
        assert calls == 1


class TestStats:
    def test_hit_rate(self, cache):
        cache.set("k", "v")
        cache.get("k")
        cache.get("missing")
        stats = cache.stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["hit_rate"] == 0.5
        assert stats["size"] == 1
        assert stats["max_size"] == 50
