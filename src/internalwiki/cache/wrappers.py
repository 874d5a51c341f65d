"""Explicit cache-aside wrapper for expensive lookups."""

from __future__ import annotations

import hashlib
import json
from typing import Any, Callable, TypeVar

from internalwiki.cache.client import CacheClient
from internalwiki.metrics.observability import get_logger

R = TypeVar("R")

LOGGER = get_logger("cache")


def build_cache_key(prefix: str, *parts: str | None) -> str:
    return ":".join([prefix, *[part for part in parts if part]])


def digest(value: str, length: int = 16) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:length]


def cached_call(
    fn: Callable[..., R],
    *,
    cache: CacheClient | None,
    key_builder: Callable[..., str],
    ttl_seconds: int,
    key_prefix: str = "cache",
    serialize: Callable[[R], str] = json.dumps,
    deserialize: Callable[[str], Any] = json.loads,
) -> Callable[..., R]:
    """Wrap ``fn`` with a get-or-compute cache lookup.

    Without a cache handle the wrapped call goes straight to ``fn``. Cache
    failures are logged and the lookup falls through to ``fn`` as well.
    """

    def wrapper(*args: Any, **kwargs: Any) -> R:
        if cache is None:
            return fn(*args, **kwargs)
        cache_key = f"{key_prefix}:{key_builder(*args, **kwargs)}"
        try:
            cached_value = cache.get(cache_key)
        except Exception as exc:  # noqa: BLE001 - cache outages must not fail the call
            LOGGER.warning("cache.read_failed", key=cache_key, detail=str(exc))
            return fn(*args, **kwargs)
        if cached_value is not None:
            return deserialize(cached_value)
        result = fn(*args, **kwargs)
        try:
            cache.set(cache_key, serialize(result), ttl_seconds)
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("cache.write_failed", key=cache_key, detail=str(exc))
        return result

    wrapper.__wrapped__ = fn  # type: ignore[attr-defined]
    return wrapper
