"""In-memory cache backend.

Process-local and lost on restart; used by tests and ``--cache-backend
memory`` runs.
"""

from __future__ import annotations

import threading
from typing import Any

from .base import CacheEntry


class InMemoryCacheBackend:
    """Dict of cache key to CacheEntry behind a lock.

    Usage:
        backend = InMemoryCacheBackend()
        await backend.set("/v1/chat/completions/ab12...", entry)
        entry = await backend.get("/v1/chat/completions/ab12...")
    """

    def __init__(self) -> None:
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    async def get(self, key: str) -> CacheEntry | None:
        with self._lock:
            return self._entries.get(key)

    async def set(self, key: str, entry: CacheEntry) -> None:
        with self._lock:
            self._entries[key] = entry

    async def set_if_absent(self, key: str, entry: CacheEntry) -> bool:
        with self._lock:
            existing = self._entries.get(key)
            if existing is not None and not existing.is_expired(entry.created_at):
                return False
            self._entries[key] = entry
            return True

    async def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    async def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def count(self) -> int:
        with self._lock:
            return len(self._entries)

    def purge_expired(self, now: float) -> int:
        """Drop entries whose validity window has passed. Returns entries removed."""
        with self._lock:
            expired = [k for k, e in self._entries.items() if e.is_expired(now)]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            return {
                "backend_type": "memory",
                "entry_count": len(self._entries),
                "bytes_used": sum(len(e.body) for e in self._entries.values()),
            }
