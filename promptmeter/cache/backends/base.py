"""Base protocol and entry type for response cache backends.

Backends only store and fetch entries. Expiry checks, key derivation and
upstream calls belong to the CacheCoordinator.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable


@dataclass
class CacheEntry:
    """A stored upstream response.

    Immutable for its validity window: a second identical request inside
    ``ttl_seconds`` observes exactly this status, these headers and these
    body bytes.
    """

    status_code: int
    headers: dict[str, str]
    body: bytes
    created_at: float = field(default_factory=time.time)
    ttl_seconds: int = 30 * 24 * 60 * 60

    def is_expired(self, now: float | None = None) -> bool:
        now = time.time() if now is None else now
        return now - self.created_at >= self.ttl_seconds

    @property
    def expires_at(self) -> float:
        return self.created_at + self.ttl_seconds


@runtime_checkable
class CacheBackend(Protocol):
    """Protocol for response cache storage backends.

    Design Principles:
    - Simple CRUD operations only
    - No business logic (key derivation, expiry policy, upstream calls)
    - Thread-safety is implementation's responsibility
    - get() does NOT check TTL, the coordinator does

    Example implementation:
        class MyBackend:
            async def get(self, key: str) -> CacheEntry | None:
                return self._storage.get(key)

            async def set(self, key: str, entry: CacheEntry) -> None:
                self._storage[key] = entry

            # ... other methods
    """

    async def get(self, key: str) -> CacheEntry | None:
        """Retrieve an entry by cache key, or None."""
        ...

    async def set(self, key: str, entry: CacheEntry) -> None:
        """Store an entry, overwriting any entry under the same key."""
        ...

    async def set_if_absent(self, key: str, entry: CacheEntry) -> bool:
        """Store an entry unless a live one already holds the key.

        An entry counts as live when it has not expired at
        ``entry.created_at``. Returns True if ``entry`` was written.
        """
        ...

    async def delete(self, key: str) -> bool:
        """Delete an entry. Returns True if it existed."""
        ...

    async def clear(self) -> None:
        """Remove all entries."""
        ...

    def count(self) -> int:
        """Number of stored entries, expired ones included."""
        ...

    def purge_expired(self, now: float) -> int:
        """Delete entries expired at ``now``. Returns the number removed."""
        ...

    def get_stats(self) -> dict[str, Any]:
        """Backend statistics, at minimum "entry_count" and "backend_type"."""
        ...
