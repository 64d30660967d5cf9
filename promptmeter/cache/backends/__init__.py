"""Storage backends for the response cache.

Usage:
    from promptmeter.cache.backends import InMemoryCacheBackend, SQLiteCacheBackend

    backend = SQLiteCacheBackend("promptmeter.db")
"""

from .base import CacheBackend, CacheEntry
from .memory import InMemoryCacheBackend
from .sqlite import SQLiteCacheBackend

__all__ = [
    "CacheBackend",
    "CacheEntry",
    "InMemoryCacheBackend",
    "SQLiteCacheBackend",
]
