# tests/core/test_cache.py
from h1ql.core import cache as cache_module
from h1ql.core.cache import TTLCache


def test_get_and_set():
    cache = TTLCache(maxsize=4)
    cache.set("a", 1, ttl_seconds=60)

    assert cache.get("a") == 1
    assert cache.get("b") is None


def test_entries_expire(monkeypatch):
    now = [1000.0]
    monkeypatch.setattr(cache_module.time, "time", lambda: now[0])

    cache = TTLCache(maxsize=4)
    cache.set("a", 1, ttl_seconds=10)
    now[0] += 11

    assert cache.get("a") is None
    assert len(cache) == 0


def test_oldest_entry_is_evicted_when_full():
    cache = TTLCache(maxsize=2)
    cache.set("a", 1, ttl_seconds=60)
    cache.set("b", 2, ttl_seconds=60)
    cache.set("c", 3, ttl_seconds=60)

    assert cache.get("a") is None
    assert cache.get("b") == 2
    assert cache.get("c") == 3


def test_zero_ttl_is_not_stored():
    cache = TTLCache(maxsize=2)
    cache.set("a", 1, ttl_seconds=0)
    assert len(cache) == 0
