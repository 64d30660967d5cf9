"""Content-addressed response cache.

Identical requests (same path, byte-identical body) resolve to the same
cache key and are served from the stored upstream response for 30 days.
"""

from .backends import CacheBackend, CacheEntry, InMemoryCacheBackend, SQLiteCacheBackend
from .coordinator import (
    CACHE_CONTROL_VALUE,
    CacheCoordinator,
    Resolution,
    derive_cache_key,
)

__all__ = [
    "CACHE_CONTROL_VALUE",
    "CacheBackend",
    "CacheCoordinator",
    "CacheEntry",
    "InMemoryCacheBackend",
    "Resolution",
    "SQLiteCacheBackend",
    "derive_cache_key",
]
