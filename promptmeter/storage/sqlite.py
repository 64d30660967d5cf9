"""SQLite storage for the request log and API keys.

Both stores can share one database file. Every operation opens its own
connection, so instances are safe to use from worker threads.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime
from pathlib import Path
from threading import RLock
from typing import Any

from ..exceptions import StorageError
from .base import IdentityStore, LogStore
from .models import (
    FINALIZE_FIELDS,
    LOG_RECORD_FIELDS,
    PENDING_COMPLETION,
    ApiKey,
    LogRecord,
    utcnow,
)

logger = logging.getLogger(__name__)

_JSON_COLUMNS = ("request_headers", "response_headers")
_BOOL_COLUMNS = ("cache_hit", "streamed")


class _SQLiteBase:
    def __init__(self, db_path: str | Path):
        self._db_path = Path(db_path)
        self._lock = RLock()
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._init_db()
        except sqlite3.Error as e:
            raise StorageError(
                "Cannot initialise database", details={"path": str(self._db_path), "error": str(e)}
            ) from e

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path))
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        raise NotImplementedError

    @property
    def db_path(self) -> Path:
        return self._db_path


class SQLiteLogStore(_SQLiteBase, LogStore):
    """Request log in a ``requests`` table."""

    def _init_db(self) -> None:
        with self._lock, self._get_conn() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS requests (
                    id TEXT PRIMARY KEY,
                    ip TEXT,
                    url TEXT NOT NULL,
                    method TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    request_headers TEXT NOT NULL DEFAULT '{}',
                    request_body TEXT,
                    model TEXT,
                    status INTEGER,
                    response_headers TEXT,
                    response_body TEXT,
                    streamed_response_body TEXT,
                    cache_hit INTEGER NOT NULL DEFAULT 0,
                    streamed INTEGER NOT NULL DEFAULT 0,
                    prompt_tokens INTEGER,
                    completion_tokens INTEGER,
                    completion TEXT NOT NULL,
                    completion_id TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_requests_user ON requests(user_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_requests_created ON requests(created_at)")
            # Databases created before completion_id was logged
            columns = {row["name"] for row in conn.execute("PRAGMA table_info(requests)")}
            if "completion_id" not in columns:
                conn.execute("ALTER TABLE requests ADD COLUMN completion_id TEXT")

    @staticmethod
    def _to_row(values: dict[str, Any]) -> dict[str, Any]:
        row = dict(values)
        for column in _JSON_COLUMNS:
            if column in row and row[column] is not None:
                row[column] = json.dumps(row[column])
        for column in _BOOL_COLUMNS:
            if column in row:
                row[column] = int(bool(row[column]))
        for column in ("created_at", "updated_at"):
            if isinstance(row.get(column), datetime):
                row[column] = row[column].isoformat()
        return row

    @staticmethod
    def _from_row(row: sqlite3.Row) -> LogRecord:
        data = {name: row[name] for name in LOG_RECORD_FIELDS}
        for column in _JSON_COLUMNS:
            if data[column] is not None:
                data[column] = json.loads(data[column])
        for column in _BOOL_COLUMNS:
            data[column] = bool(data[column])
        data["created_at"] = datetime.fromisoformat(data["created_at"])
        data["updated_at"] = datetime.fromisoformat(data["updated_at"])
        return LogRecord(**data)

    def create(self, record: LogRecord) -> None:
        row = self._to_row(record.to_dict())
        columns = ", ".join(LOG_RECORD_FIELDS)
        placeholders = ", ".join(f":{name}" for name in LOG_RECORD_FIELDS)
        try:
            with self._lock, self._get_conn() as conn:
                conn.execute(f"INSERT INTO requests ({columns}) VALUES ({placeholders})", row)
        except sqlite3.Error as e:
            raise StorageError("Cannot insert request log", details={"id": record.id, "error": str(e)}) from e

    def update(self, record_id: str, **fields: Any) -> bool:
        unknown = set(fields) - FINALIZE_FIELDS
        if unknown:
            raise StorageError("Cannot update columns", details={"columns": sorted(unknown)})

        row = self._to_row(fields)
        row["updated_at"] = utcnow().isoformat()
        assignments = ", ".join(f"{name} = :{name}" for name in row)
        row["_id"] = record_id
        try:
            with self._lock, self._get_conn() as conn:
                cursor = conn.execute(f"UPDATE requests SET {assignments} WHERE id = :_id", row)
                return cursor.rowcount > 0
        except sqlite3.Error as e:
            raise StorageError("Cannot update request log", details={"id": record_id, "error": str(e)}) from e

    def get(self, record_id: str) -> LogRecord | None:
        with self._lock, self._get_conn() as conn:
            row = conn.execute("SELECT * FROM requests WHERE id = ?", (record_id,)).fetchone()
        return self._from_row(row) if row is not None else None

    def query(self, user_id: str | None = None, limit: int = 100, offset: int = 0) -> list[LogRecord]:
        sql = "SELECT * FROM requests"
        params: list[Any] = []
        if user_id is not None:
            sql += " WHERE user_id = ?"
            params.append(user_id)
        sql += " ORDER BY created_at DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])
        with self._lock, self._get_conn() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._from_row(row) for row in rows]

    def count(self, user_id: str | None = None) -> int:
        with self._lock, self._get_conn() as conn:
            if user_id is None:
                result = conn.execute("SELECT COUNT(*) FROM requests").fetchone()
            else:
                result = conn.execute(
                    "SELECT COUNT(*) FROM requests WHERE user_id = ?", (user_id,)
                ).fetchone()
        return int(result[0])

    def get_summary_stats(self) -> dict[str, Any]:
        with self._lock, self._get_conn() as conn:
            row = conn.execute(
                """
                SELECT
                    COUNT(*) AS total_requests,
                    COALESCE(SUM(cache_hit), 0) AS cache_hits,
                    COALESCE(SUM(streamed), 0) AS streamed,
                    COALESCE(SUM(completion = ?), 0) AS pending,
                    COALESCE(SUM(prompt_tokens), 0) AS prompt_tokens,
                    COALESCE(SUM(completion_tokens), 0) AS completion_tokens
                FROM requests
                """,
                (PENDING_COMPLETION,),
            ).fetchone()
        return {key: int(row[key]) for key in row.keys()}


class SQLiteIdentityStore(_SQLiteBase, IdentityStore):
    """API keys in an ``api_keys`` table, keyed by their SHA-256."""

    def _init_db(self) -> None:
        with self._lock, self._get_conn() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS api_keys (
                    hashed_key TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    label TEXT,
                    created_at TEXT NOT NULL
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_api_keys_user ON api_keys(user_id)")

    def lookup(self, hashed_key: str) -> str | None:
        try:
            with self._lock, self._get_conn() as conn:
                row = conn.execute(
                    "SELECT user_id FROM api_keys WHERE hashed_key = ?", (hashed_key,)
                ).fetchone()
        except sqlite3.Error as e:
            raise StorageError("Cannot look up API key", details={"error": str(e)}) from e
        return row["user_id"] if row is not None else None

    def add(self, hashed_key: str, user_id: str, label: str | None = None) -> ApiKey:
        api_key = ApiKey(hashed_key=hashed_key, user_id=user_id, label=label)
        with self._lock, self._get_conn() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO api_keys (hashed_key, user_id, label, created_at) "
                "VALUES (?, ?, ?, ?)",
                (hashed_key, user_id, label, api_key.created_at.isoformat()),
            )
        return api_key

    def revoke(self, hashed_key: str) -> bool:
        with self._lock, self._get_conn() as conn:
            cursor = conn.execute("DELETE FROM api_keys WHERE hashed_key = ?", (hashed_key,))
            return cursor.rowcount > 0

    def list_keys(self, user_id: str | None = None) -> list[ApiKey]:
        sql = "SELECT * FROM api_keys"
        params: tuple[Any, ...] = ()
        if user_id is not None:
            sql += " WHERE user_id = ?"
            params = (user_id,)
        sql += " ORDER BY created_at"
        with self._lock, self._get_conn() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [
            ApiKey(
                hashed_key=row["hashed_key"],
                user_id=row["user_id"],
                label=row["label"],
                created_at=datetime.fromisoformat(row["created_at"]),
            )
            for row in rows
        ]
