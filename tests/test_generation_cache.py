"""Tests for the bounded generation cache."""

import pytest

from app.core.generation_cache import GenerationCache, make_cache_key, normalize_prompt
from app.core.metrics import MetricsRecorder


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def test_get_returns_stored_value():
    cache = GenerationCache()
    cache.set("k", "value")

    assert cache.get("k") == "value"
    assert "k" in cache
    assert len(cache) == 1


def test_get_missing_key_returns_none():
    cache = GenerationCache()
    assert cache.get("missing") is None
    assert cache.stats()["misses"] == 1


def test_entry_expires_after_ttl():
    clock = FakeClock()
    cache = GenerationCache(ttl_seconds=10, clock=clock)
    cache.set("k", "value")

    clock.advance(9.9)
    assert cache.get("k") == "value"

    clock.advance(0.2)
    assert cache.get("k") is None
    # Expired entries are removed on access
    assert len(cache) == 0


def test_full_cache_evicts_least_hit_entry():
    clock = FakeClock()
    cache = GenerationCache(max_size=3, clock=clock)
    for key in ("a", "b", "c"):
        cache.set(key, key)
        clock.advance(1)

    cache.get("a")
    cache.get("a")
    cache.get("c")

    cache.set("d", "d")

    assert len(cache) == 3
    assert "b" not in cache
    assert all(k in cache for k in ("a", "c", "d"))
    assert cache.stats()["evictions"] == 1


def test_eviction_tie_breaks_on_oldest():
    clock = FakeClock()
    cache = GenerationCache(max_size=2, clock=clock)
    cache.set("old", 1)
    clock.advance(1)
    cache.set("new", 2)
    clock.advance(1)

    cache.set("newest", 3)

    assert "old" not in cache
    assert "new" in cache
    assert "newest" in cache


def test_full_cache_drops_expired_entries_before_evicting():
    clock = FakeClock()
    cache = GenerationCache(ttl_seconds=5, max_size=2, clock=clock)
    cache.set("stale", 1)
    clock.advance(3)
    cache.set("fresh", 2)
    cache.get("fresh")
    clock.advance(3)

    cache.set("incoming", 3)

    assert "fresh" in cache
    assert "incoming" in cache
    assert cache.stats()["evictions"] == 0


def test_replacing_existing_key_does_not_evict():
    cache = GenerationCache(max_size=2)
    cache.set("a", 1)
    cache.set("b", 2)
    cache.set("a", 10)

    assert len(cache) == 2
    assert cache.get("a") == 10
    assert cache.get("b") == 2


def test_size_never_exceeds_max_size():
    cache = GenerationCache(max_size=5)
    for i in range(50):
        cache.set(f"k{i}", i)
        if i % 3 == 0:
            cache.get(f"k{i}")
        assert len(cache) <= 5


def test_delete_and_clear():
    cache = GenerationCache()
    cache.set("a", 1)
    cache.set("b", 2)

    assert cache.delete("a") is True
    assert cache.delete("a") is False
    cache.clear()
    assert len(cache) == 0


def test_stats_report_hits_and_oldest_age():
    clock = FakeClock()
    cache = GenerationCache(clock=clock)
    cache.set("a", 1)
    clock.advance(4)
    cache.set("b", 2)
    cache.get("a")
    cache.get("a")
    cache.get("zzz")

    stats = cache.stats()

    assert stats["size"] == 2
    assert stats["hits"] == 2
    assert stats["misses"] == 1
    assert stats["oldest_entry_age_seconds"] == 4.0
    assert stats["average_hits_per_entry"] == 1.0


def test_empty_cache_stats():
    stats = GenerationCache().stats()
    assert stats["size"] == 0
    assert stats["oldest_entry_age_seconds"] is None
    assert stats["average_hits_per_entry"] == 0


def test_cache_records_hit_and_miss_events():
    metrics = MetricsRecorder()
    cache = GenerationCache(metrics=metrics)
    cache.set("a", 1)
    cache.get("a")
    cache.get("b")

    assert metrics.count("cache_hits") == 1
    assert metrics.count("cache_misses") == 1


def test_invalid_configuration_raises():
    with pytest.raises(ValueError):
        GenerationCache(max_size=0)
    with pytest.raises(ValueError):
        GenerationCache(ttl_seconds=0)


def test_cache_key_ignores_case_and_whitespace():
    assert make_cache_key("Build a  TODO\napp") == make_cache_key("build a todo app")
    assert normalize_prompt("  Hello,\t  World!! ") == "hello, world!!"


def test_cache_key_keeps_symbols_that_change_meaning():
    assert make_cache_key("Build a C++ IDE") != make_cache_key("Build a C# IDE")
    assert make_cache_key("Build a TODO app!") != make_cache_key("Build a TODO app?")


def test_cache_key_depends_on_context_and_system_prefix():
    base = make_cache_key("prompt", "You are an analyst", "analysis")

    assert base != make_cache_key("prompt", "You are an analyst", "planning")
    assert base != make_cache_key("prompt", "You are a designer", "analysis")
    # Only the first 50 characters of the system message take part
    long_a = "x" * 50 + " first tail"
    long_b = "x" * 50 + " second tail"
    assert make_cache_key("prompt", long_a) == make_cache_key("prompt", long_b)
