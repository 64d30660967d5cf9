"""SQLite cache backend.

Durable across restarts, so the 30-day validity window survives a
redeploy. Each operation opens its own connection and runs in a worker
thread, keeping the event loop free while SQLite does I/O.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from pathlib import Path
from threading import RLock
from typing import Any

from .base import CacheEntry

logger = logging.getLogger(__name__)


class SQLiteCacheBackend:
    """SQLite-backed response cache.

    Usage:
        backend = SQLiteCacheBackend("promptmeter.db")
        await backend.set(key, entry)
    """

    def __init__(self, db_path: str | Path):
        self._db_path = Path(db_path)
        self._lock = RLock()
        if self._db_path.parent and not self._db_path.parent.exists():
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path))
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self._lock, self._get_conn() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS response_cache (
                    cache_key TEXT PRIMARY KEY,
                    status_code INTEGER NOT NULL,
                    headers TEXT NOT NULL,
                    body BLOB NOT NULL,
                    created_at REAL NOT NULL,
                    ttl_seconds INTEGER NOT NULL
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_response_cache_created ON response_cache(created_at)"
            )

    def _get_sync(self, key: str) -> CacheEntry | None:
        with self._lock, self._get_conn() as conn:
            row = conn.execute(
                "SELECT * FROM response_cache WHERE cache_key = ?", (key,)
            ).fetchone()
        if row is None:
            return None
        return CacheEntry(
            status_code=row["status_code"],
            headers=json.loads(row["headers"]),
            body=bytes(row["body"]),
            created_at=row["created_at"],
            ttl_seconds=row["ttl_seconds"],
        )

    def _set_sync(self, key: str, entry: CacheEntry) -> None:
        with self._lock, self._get_conn() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO response_cache
                    (cache_key, status_code, headers, body, created_at, ttl_seconds)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    key,
                    entry.status_code,
                    json.dumps(entry.headers),
                    sqlite3.Binary(entry.body),
                    entry.created_at,
                    entry.ttl_seconds,
                ),
            )

    def _set_if_absent_sync(self, key: str, entry: CacheEntry) -> bool:
        with self._lock, self._get_conn() as conn:
            cursor = conn.execute(
                """
                INSERT INTO response_cache
                    (cache_key, status_code, headers, body, created_at, ttl_seconds)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(cache_key) DO UPDATE SET
                    status_code = excluded.status_code,
                    headers = excluded.headers,
                    body = excluded.body,
                    created_at = excluded.created_at,
                    ttl_seconds = excluded.ttl_seconds
                WHERE response_cache.created_at + response_cache.ttl_seconds
                    <= excluded.created_at
                """,
                (
                    key,
                    entry.status_code,
                    json.dumps(entry.headers),
                    sqlite3.Binary(entry.body),
                    entry.created_at,
                    entry.ttl_seconds,
                ),
            )
            return cursor.rowcount > 0

    def _delete_sync(self, key: str) -> bool:
        with self._lock, self._get_conn() as conn:
            cursor = conn.execute("DELETE FROM response_cache WHERE cache_key = ?", (key,))
            return cursor.rowcount > 0

    def _clear_sync(self) -> None:
        with self._lock, self._get_conn() as conn:
            conn.execute("DELETE FROM response_cache")

    async def get(self, key: str) -> CacheEntry | None:
        return await asyncio.to_thread(self._get_sync, key)

    async def set(self, key: str, entry: CacheEntry) -> None:
        await asyncio.to_thread(self._set_sync, key, entry)

    async def set_if_absent(self, key: str, entry: CacheEntry) -> bool:
        return await asyncio.to_thread(self._set_if_absent_sync, key, entry)

    async def delete(self, key: str) -> bool:
        return await asyncio.to_thread(self._delete_sync, key)

    async def clear(self) -> None:
        await asyncio.to_thread(self._clear_sync)

    def count(self) -> int:
        with self._lock, self._get_conn() as conn:
            return int(conn.execute("SELECT COUNT(*) FROM response_cache").fetchone()[0])

    def purge_expired(self, now: float) -> int:
        """Delete entries whose validity window has passed. Returns rows removed."""
        with self._lock, self._get_conn() as conn:
            cursor = conn.execute(
                "DELETE FROM response_cache WHERE created_at + ttl_seconds <= ?", (now,)
            )
            removed = cursor.rowcount
        if removed:
            logger.info(f"Purged {removed} expired cache entries")
        return removed

    def get_stats(self) -> dict[str, Any]:
        with self._lock, self._get_conn() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n, COALESCE(SUM(LENGTH(body)), 0) AS size FROM response_cache"
            ).fetchone()
        return {
            "backend_type": "sqlite",
            "entry_count": int(row["n"]),
            "bytes_used": int(row["size"]),
            "db_path": str(self._db_path),
        }
