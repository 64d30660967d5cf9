"""Request log and API key storage."""

from .base import IdentityStore, LogStore
from .memory import InMemoryIdentityStore, InMemoryLogStore
from .models import FINALIZE_FIELDS, PENDING_COMPLETION, ApiKey, LogRecord
from .sqlite import SQLiteIdentityStore, SQLiteLogStore

__all__ = [
    "ApiKey",
    "FINALIZE_FIELDS",
    "IdentityStore",
    "InMemoryIdentityStore",
    "InMemoryLogStore",
    "LogRecord",
    "LogStore",
    "PENDING_COMPLETION",
    "SQLiteIdentityStore",
    "SQLiteLogStore",
]
