"""Tests for the in-memory result cache."""

import pytest

from adaptive_engine.core.cache import CacheBackend, InMemoryCache
from adaptive_engine.core.clock import ManualClock


class TestInMemoryCache:
    def test_satisfies_protocol(self, cache):
        backend: CacheBackend = cache
        backend.set("k", 1)
        assert backend.exists("k")

    def test_get_miss_returns_none(self, cache):
        assert cache.get("absent") is None
        assert cache.misses == 1

    def test_set_then_get(self, cache):
        cache.set("s3:list_buckets:ab", ["a", "b"])
        assert cache.get("s3:list_buckets:ab") == ["a", "b"]
        assert cache.hits == 1

    def test_ttl_expiry(self, clock, cache):
        cache.set("k", "v", ttl_seconds=5)
        clock.advance(5)
        assert cache.get("k") == "v"
        clock.advance(0.1)
        assert cache.get("k") is None
        assert not cache.exists("k")

    def test_default_ttl_applies(self, clock, cache):
        cache.set("k", "v")
        clock.advance(61)
        assert cache.get("k") is None

    @pytest.mark.parametrize("ttl", [0, -5])
    def test_non_positive_ttl_is_already_stale(self, cache, ttl):
        cache.set("k", "old")
        cache.set("k", "new", ttl_seconds=ttl)
        assert cache.get("k") is None
        assert cache.size() == 0

    def test_no_ttl_never_expires(self, clock):
        c = InMemoryCache(default_ttl_seconds=None, clock=clock)
        c.set("k", "v")
        clock.advance(1e6)
        assert c.get("k") == "v"

    def test_lru_eviction(self, clock):
        c = InMemoryCache(max_size=2, clock=clock)
        c.set("a", 1)
        c.set("b", 2)
        c.get("a")
        c.set("c", 3)
        assert c.get("b") is None
        assert c.get("a") == 1
        assert c.get("c") == 3
        assert c.size() == 2

    def test_delete_and_clear(self, cache):
        cache.set("a", 1)
        cache.set("b", 2)
        cache.delete("a")
        cache.delete("missing")
        assert cache.size() == 1
        cache.clear()
        assert cache.size() == 0

    def test_rejects_zero_size(self):
        with pytest.raises(ValueError):
            InMemoryCache(max_size=0, clock=ManualClock())
