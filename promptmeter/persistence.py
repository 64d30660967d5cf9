"""Two-phase request logging.

Every accepted request gets a provisional row before the upstream call and
exactly one terminal update once the response is known:

    record_id = await persistence.create_provisional(meta, user_id)
    ...  # upstream call, response sent to the caller
    await persistence.finalize(record_id, outcome)

A provisional failure aborts the request. A finalize failure is logged and
swallowed; the row keeps its ``[pending]`` completion so the gap is visible.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field

from .exceptions import FinalizeError, ProvisionalLogError
from .storage.base import LogStore
from .storage.models import LogRecord

logger = logging.getLogger(__name__)

REDACTED = "[redacted]"

# Caller credentials are never written to the log
REDACTED_HEADERS = frozenset({"authorization", "x-api-key", "api-key", "proxy-authorization"})


def snapshot_headers(headers: Mapping[str, str]) -> dict[str, str]:
    """Lower-cased copy of ``headers`` with credentials masked."""
    return {
        k.lower(): (REDACTED if k.lower() in REDACTED_HEADERS else v) for k, v in headers.items()
    }


@dataclass
class RequestMeta:
    """What is known about a request before the upstream is called."""

    ip: str | None
    url: str
    method: str
    request_headers: dict[str, str] = field(default_factory=dict)
    request_body: str | None = None
    model: str | None = None

    @classmethod
    def from_parts(
        cls,
        ip: str | None,
        url: str,
        method: str,
        headers: Mapping[str, str],
        body: bytes,
        model: str | None = None,
    ) -> RequestMeta:
        return cls(
            ip=ip,
            url=url,
            method=method.upper(),
            request_headers=snapshot_headers(headers),
            request_body=body.decode("utf-8", errors="replace") if body else None,
            model=model,
        )


@dataclass
class FinalizeOutcome:
    """Terminal values for a log row."""

    status: int
    response_headers: dict[str, str] = field(default_factory=dict)
    response_body: str | None = None
    streamed_response_body: str | None = None
    cache_hit: bool = False
    streamed: bool = False
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    completion: str = ""
    completion_id: str | None = None


class PersistenceCoordinator:
    """Writes the provisional row and its single terminal update.

    Store calls are blocking, so they run in a worker thread.

    Args:
        store: Row store for the request log.
        log_bodies: If False, request and response bodies are not stored.
    """

    def __init__(self, store: LogStore, log_bodies: bool = True):
        self.store = store
        self.log_bodies = log_bodies
        self._open: set[str] = set()

        self.provisional_failures = 0
        self.finalize_failures = 0
        self.finalized = 0

    async def create_provisional(self, meta: RequestMeta, user_id: str) -> str:
        """Write the provisional row and return its id.

        Raises:
            ProvisionalLogError: If the row cannot be written.
        """
        record = LogRecord(
            id=uuid.uuid4().hex,
            ip=meta.ip,
            url=meta.url,
            method=meta.method,
            user_id=user_id,
            request_headers=dict(meta.request_headers),
            request_body=meta.request_body if self.log_bodies else None,
            model=meta.model,
        )
        try:
            await asyncio.to_thread(self.store.create, record)
        except Exception as e:
            self.provisional_failures += 1
            logger.error(f"Provisional log write failed for {meta.method} {meta.url}: {e!r}")
            raise ProvisionalLogError(
                "Request could not be logged", details={"url": meta.url}
            ) from e

        self._open.add(record.id)
        logger.debug(f"[{record.id}] provisional row written for user {user_id}")
        return record.id

    async def finalize(self, record_id: str, outcome: FinalizeOutcome) -> bool:
        """Apply the terminal update to ``record_id``.

        Returns True if the row was updated. Never raises: a refused second
        call, a missing row, or a store failure is logged and swallowed.
        """
        try:
            await self._apply(record_id, outcome)
        except FinalizeError as e:
            self.finalize_failures += 1
            logger.error(f"[{record_id}] {e}")
            return False

        self.finalized += 1
        logger.debug(
            f"[{record_id}] finalized status={outcome.status} cache_hit={outcome.cache_hit} "
            f"streamed={outcome.streamed} tokens={outcome.prompt_tokens}/{outcome.completion_tokens}"
        )
        return True

    async def _apply(self, record_id: str, outcome: FinalizeOutcome) -> None:
        if record_id not in self._open:
            raise FinalizeError("Refusing finalize for an unknown or already finalized record")
        self._open.discard(record_id)

        values = asdict(outcome)
        if not self.log_bodies:
            values["response_body"] = None
            values["streamed_response_body"] = None

        try:
            updated = await asyncio.to_thread(self.store.update, record_id, **values)
        except Exception as e:
            raise FinalizeError("Terminal log update failed", details={"error": repr(e)}) from e
        if not updated:
            raise FinalizeError("Terminal log update matched no row")

    @property
    def pending(self) -> int:
        """Rows written provisionally and not finalized yet."""
        return len(self._open)

    def get_stats(self) -> dict[str, int]:
        return {
            "pending": self.pending,
            "finalized": self.finalized,
            "provisional_failures": self.provisional_failures,
            "finalize_failures": self.finalize_failures,
        }
