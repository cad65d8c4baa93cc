"""Tests for the TTL cache."""

import pytest

from scene_engine.utils.cache import TTLCache


class TestTTLCache:
    """Test expiry, eviction and explicit invalidation."""

    def test_entry_expires_after_ttl(self, clock) -> None:
        cache: TTLCache[str, int] = TTLCache(capacity=4, ttl_seconds=10, clock=clock.time)
        cache.set("a", 1)

        clock.advance(9.9)
        assert cache.get("a") == 1

        clock.advance(0.2)
        assert cache.get("a") is None

    def test_least_recently_used_entry_is_evicted(self, clock) -> None:
        cache: TTLCache[str, int] = TTLCache(capacity=2, ttl_seconds=60, clock=clock.time)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.get("a")
        cache.set("c", 3)

        assert "a" in cache
        assert "b" not in cache
        assert "c" in cache

    def test_invalidate_and_clear(self, clock) -> None:
        cache: TTLCache[str, int] = TTLCache(capacity=4, ttl_seconds=60, clock=clock.time)
        cache.set("a", 1)
        cache.set("b", 2)

        assert cache.invalidate("a") is True
        assert cache.invalidate("a") is False
        assert len(cache) == 1

        cache.clear()
        assert len(cache) == 0

    def test_get_or_load_calls_loader_once(self, clock) -> None:
        cache: TTLCache[str, str] = TTLCache(capacity=4, ttl_seconds=60, clock=clock.time)
        calls: list[str] = []

        def loader(key: str) -> str:
            calls.append(key)
            return key.upper()

        assert cache.get_or_load("x", loader) == "X"
        assert cache.get_or_load("x", loader) == "X"
        assert calls == ["x"]

        clock.advance(61)
        cache.get_or_load("x", loader)
        assert calls == ["x", "x"]

    def test_rejects_invalid_bounds(self) -> None:
        with pytest.raises(ValueError):
            TTLCache(capacity=0, ttl_seconds=10)
        with pytest.raises(ValueError):
            TTLCache(capacity=1, ttl_seconds=0)
