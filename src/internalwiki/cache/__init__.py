"""Cache handles and the cache-aside wrapper."""

from .client import CacheClient, MemoryCacheClient, RedisCacheClient, build_cache_client
from .wrappers import build_cache_key, cached_call, digest

__all__ = [
    "CacheClient",
    "MemoryCacheClient",
    "RedisCacheClient",
    "build_cache_client",
    "build_cache_key",
    "cached_call",
    "digest",
]
