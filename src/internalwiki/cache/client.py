"""Cache handles injected into retrieval and reporting components."""

from __future__ import annotations

import fnmatch
import threading
import time
from dataclasses import dataclass
from typing import Protocol

import redis

from internalwiki.config import Settings
from internalwiki.metrics.observability import get_logger

LOGGER = get_logger("cache")


class CacheClient(Protocol):
    """String key/value cache with TTLs and an explicit lifecycle."""

    def connect(self) -> None:
        """Open the underlying connection."""

    def close(self) -> None:
        """Release the underlying connection."""

    def get(self, key: str) -> str | None:
        """Return the cached value or None."""

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        """Store a value for ``ttl_seconds``."""

    def delete_pattern(self, pattern: str) -> int:
        """Delete keys matching a glob pattern and return how many were removed."""


@dataclass
class _Entry:
    value: str
    expires_at: float | None

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at


class MemoryCacheClient:
    """In-process cache used in tests and single-node deployments."""

    def __init__(self, clock=time.monotonic) -> None:
        self._entries: dict[str, _Entry] = {}
        self._lock = threading.Lock()
        self._clock = clock
        self._connected = False

    def connect(self) -> None:
        self._connected = True

    def close(self) -> None:
        with self._lock:
            self._entries.clear()
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    def get(self, key: str) -> str | None:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.is_expired(now):
                del self._entries[key]
                return None
            return entry.value

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds > 0 else None
        with self._lock:
            self._entries[key] = _Entry(value=value, expires_at=expires_at)

    def delete_pattern(self, pattern: str) -> int:
        with self._lock:
            matched = [key for key in self._entries if fnmatch.fnmatchcase(key, pattern)]
            for key in matched:
                del self._entries[key]
        return len(matched)


class RedisCacheClient:
    """Redis-backed cache; the connection is created on ``connect``."""

    def __init__(self, url: str, *, socket_timeout: float = 2.0) -> None:
        self._url = url
        self._socket_timeout = socket_timeout
        self._client: redis.Redis | None = None

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            raise RuntimeError("RedisCacheClient used before connect()")
        return self._client

    def connect(self) -> None:
        if self._client is not None:
            return
        self._client = redis.Redis.from_url(
            self._url,
            decode_responses=True,
            socket_timeout=self._socket_timeout,
            retry_on_timeout=True,
        )
        self._client.ping()
        LOGGER.info("cache.connected", backend="redis")

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None
            LOGGER.info("cache.closed", backend="redis")

    def get(self, key: str) -> str | None:
        return self.client.get(key)

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        if ttl_seconds > 0:
            self.client.setex(key, ttl_seconds, value)
        else:
            self.client.set(key, value)

    def delete_pattern(self, pattern: str) -> int:
        keys = list(self.client.scan_iter(match=pattern, count=500))
        if not keys:
            return 0
        return int(self.client.delete(*keys))


def build_cache_client(settings: Settings) -> CacheClient:
    """Redis when ``redis_url`` is configured, otherwise the in-process cache."""

    if settings.redis_url:
        return RedisCacheClient(settings.redis_url)
    return MemoryCacheClient()
