"""Persisted record shapes.

Field names here are the durable contract read by dashboards and billing
jobs; rename nothing without a migration.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from typing import Any

# Completion text of a row that has not been finalized (yet)
PENDING_COMPLETION = "[pending]"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class LogRecord:
    """One proxied request, end to end.

    Created provisionally before the upstream call with placeholder
    response fields, then updated once by finalize.
    """

    id: str
    ip: str | None
    url: str
    method: str
    user_id: str
    request_headers: dict[str, str] = field(default_factory=dict)
    request_body: str | None = None
    model: str | None = None

    # Filled in by finalize
    status: int | None = None
    response_headers: dict[str, str] | None = None
    response_body: str | None = None
    streamed_response_body: str | None = None
    cache_hit: bool = False
    streamed: bool = False
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    completion: str = PENDING_COMPLETION
    completion_id: str | None = None

    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_pending(self) -> bool:
        return self.completion == PENDING_COMPLETION

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        data["updated_at"] = self.updated_at.isoformat()
        return data


# Columns finalize may write
FINALIZE_FIELDS = frozenset(
    {
        "status",
        "response_headers",
        "response_body",
        "streamed_response_body",
        "cache_hit",
        "streamed",
        "prompt_tokens",
        "completion_tokens",
        "completion",
        "completion_id",
    }
)

LOG_RECORD_FIELDS = tuple(f.name for f in fields(LogRecord))


@dataclass
class ApiKey:
    """A hashed API key and the user it belongs to."""

    hashed_key: str
    user_id: str
    label: str | None = None
    created_at: datetime = field(default_factory=utcnow)
