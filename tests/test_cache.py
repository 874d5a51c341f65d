from __future__ import annotations

import pytest

from internalwiki.cache import MemoryCacheClient, build_cache_client, build_cache_key, cached_call, digest
from internalwiki.cache.client import RedisCacheClient
from internalwiki.config import get_settings


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class BrokenCache:
    def get(self, key: str) -> str | None:
        raise ConnectionError("cache down")

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        raise ConnectionError("cache down")


def test_memory_cache_expires_entries():
    clock = FakeClock()
    cache = MemoryCacheClient(clock=clock)
    cache.connect()
    cache.set("k", "v", ttl_seconds=10)
    assert cache.get("k") == "v"
    clock.now = 11
    assert cache.get("k") is None


def test_memory_cache_delete_pattern():
    cache = MemoryCacheClient()
    cache.set("cache:retrieval:acme:1", "a", 60)
    cache.set("cache:retrieval:acme:2", "b", 60)
    cache.set("cache:retrieval:globex:1", "c", 60)
    assert cache.delete_pattern("cache:retrieval:acme:*") == 2
    assert cache.get("cache:retrieval:globex:1") == "c"


def test_cached_call_reuses_value():
    calls: list[str] = []

    def compute(name: str) -> dict[str, str]:
        calls.append(name)
        return {"name": name}

    cache = MemoryCacheClient()
    wrapped = cached_call(compute, cache=cache, key_builder=lambda name: build_cache_key("lookup", name), ttl_seconds=60)
    assert wrapped("a") == {"name": "a"}
    assert wrapped("a") == {"name": "a"}
    assert calls == ["a"]
    assert cache.get("cache:lookup:a") is not None


def test_cached_call_falls_through_when_cache_fails():
    wrapped = cached_call(lambda value: value * 2, cache=BrokenCache(), key_builder=str, ttl_seconds=60)
    assert wrapped(21) == 42
    uncached = cached_call(lambda value: value + 1, cache=None, key_builder=str, ttl_seconds=60)
    assert uncached(1) == 2


def test_cache_key_helpers():
    assert build_cache_key("cache", "retrieval", None, "acme") == "cache:retrieval:acme"
    assert digest("same") == digest("same")
    assert len(digest("value", length=8)) == 8


def test_build_cache_client_picks_backend():
    assert isinstance(build_cache_client(get_settings({"redis_url": None})), MemoryCacheClient)
    redis_cache = build_cache_client(get_settings({"redis_url": "redis://localhost:6379/0"}))
    assert isinstance(redis_cache, RedisCacheClient)
    with pytest.raises(RuntimeError):
        _ = redis_cache.client
