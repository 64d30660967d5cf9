"""In-memory stores, for tests and throwaway runs."""

from __future__ import annotations

import copy
import threading
from dataclasses import replace
from typing import Any

from ..exceptions import StorageError
from .base import IdentityStore, LogStore
from .models import FINALIZE_FIELDS, ApiKey, LogRecord, utcnow


class InMemoryLogStore(LogStore):
    """Thread-safe dict-backed request log."""

    def __init__(self) -> None:
        self._records: dict[str, LogRecord] = {}
        self._lock = threading.Lock()

    def create(self, record: LogRecord) -> None:
        with self._lock:
            if record.id in self._records:
                raise StorageError("Duplicate record id", details={"id": record.id})
            self._records[record.id] = copy.deepcopy(record)

    def update(self, record_id: str, **fields: Any) -> bool:
        unknown = set(fields) - FINALIZE_FIELDS
        if unknown:
            raise StorageError("Cannot update columns", details={"columns": sorted(unknown)})
        with self._lock:
            record = self._records.get(record_id)
            if record is None:
                return False
            self._records[record_id] = replace(record, **fields, updated_at=utcnow())
            return True

    def get(self, record_id: str) -> LogRecord | None:
        with self._lock:
            record = self._records.get(record_id)
            return copy.deepcopy(record) if record is not None else None

    def query(self, user_id: str | None = None, limit: int = 100, offset: int = 0) -> list[LogRecord]:
        with self._lock:
            records = [r for r in self._records.values() if user_id is None or r.user_id == user_id]
        records.sort(key=lambda r: r.created_at, reverse=True)
        return [copy.deepcopy(r) for r in records[offset : offset + limit]]

    def count(self, user_id: str | None = None) -> int:
        with self._lock:
            return sum(1 for r in self._records.values() if user_id is None or r.user_id == user_id)

    def get_summary_stats(self) -> dict[str, Any]:
        with self._lock:
            records = list(self._records.values())
        return {
            "total_requests": len(records),
            "cache_hits": sum(1 for r in records if r.cache_hit),
            "streamed": sum(1 for r in records if r.streamed),
            "pending": sum(1 for r in records if r.is_pending),
            "prompt_tokens": sum(r.prompt_tokens or 0 for r in records),
            "completion_tokens": sum(r.completion_tokens or 0 for r in records),
        }


class InMemoryIdentityStore(IdentityStore):
    """Dict-backed API key store."""

    def __init__(self, keys: dict[str, str] | None = None) -> None:
        self._keys: dict[str, ApiKey] = {}
        self._lock = threading.Lock()
        for hashed_key, user_id in (keys or {}).items():
            self.add(hashed_key, user_id)

    def lookup(self, hashed_key: str) -> str | None:
        with self._lock:
            api_key = self._keys.get(hashed_key)
            return api_key.user_id if api_key is not None else None

    def add(self, hashed_key: str, user_id: str, label: str | None = None) -> ApiKey:
        api_key = ApiKey(hashed_key=hashed_key, user_id=user_id, label=label)
        with self._lock:
            self._keys[hashed_key] = api_key
        return api_key

    def revoke(self, hashed_key: str) -> bool:
        with self._lock:
            return self._keys.pop(hashed_key, None) is not None

    def list_keys(self, user_id: str | None = None) -> list[ApiKey]:
        with self._lock:
            return [k for k in self._keys.values() if user_id is None or k.user_id == user_id]
