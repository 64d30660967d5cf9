"""Base storage interfaces for promptmeter."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from .models import ApiKey, LogRecord


class LogStore(ABC):
    """Abstract base class for the request log.

    Rows are written independently; no operation spans more than one row.
    """

    @abstractmethod
    def create(self, record: LogRecord) -> None:
        """
        Insert a new row.

        Args:
            record: The provisional LogRecord.

        Raises:
            StorageError: If the row cannot be written or the id exists.
        """
        pass

    @abstractmethod
    def update(self, record_id: str, **fields: Any) -> bool:
        """
        Update columns of an existing row and bump ``updated_at``.

        Args:
            record_id: Row identifier returned at provisional time.
            **fields: Column values, limited to FINALIZE_FIELDS.

        Returns:
            True if a row was updated, False if no such row exists.
        """
        pass

    @abstractmethod
    def get(self, record_id: str) -> LogRecord | None:
        """
        Get a row by id.

        Args:
            record_id: The record id.

        Returns:
            LogRecord or None if not found.
        """
        pass

    @abstractmethod
    def query(
        self,
        user_id: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[LogRecord]:
        """
        Rows newest first, optionally for one user.

        Args:
            user_id: Filter by user.
            limit: Maximum results to return.
            offset: Number of results to skip.
        """
        pass

    @abstractmethod
    def count(self, user_id: str | None = None) -> int:
        """Number of rows, optionally for one user."""
        pass

    @abstractmethod
    def get_summary_stats(self) -> dict[str, Any]:
        """
        Get summary statistics.

        Returns:
            Dict with total_requests, cache_hits, streamed, pending,
            prompt_tokens and completion_tokens.
        """
        pass

    def close(self) -> None:  # noqa: B027
        """Close storage connection if applicable."""
        pass

    def __enter__(self) -> LogStore:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()


class IdentityStore(ABC):
    """API key lookup. The proxy only reads; the CLI writes."""

    @abstractmethod
    def lookup(self, hashed_key: str) -> str | None:
        """Return the user id for a hashed key, or None."""
        pass

    @abstractmethod
    def add(self, hashed_key: str, user_id: str, label: str | None = None) -> ApiKey:
        """Register a hashed key for a user."""
        pass

    @abstractmethod
    def revoke(self, hashed_key: str) -> bool:
        """Remove a key. Returns True if it existed."""
        pass

    @abstractmethod
    def list_keys(self, user_id: str | None = None) -> list[ApiKey]:
        """Registered keys, optionally for one user."""
        pass

    def close(self) -> None:  # noqa: B027
        """Close storage connection if applicable."""
        pass

    def __enter__(self) -> IdentityStore:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()
