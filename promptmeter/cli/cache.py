"""Response cache CLI commands."""

from __future__ import annotations

import time

import click

from ..cache import SQLiteCacheBackend
from ._utils import db_path_option, format_bytes, print_stats, print_success
from .main import main


@main.group()
def cache() -> None:
    """Inspect and maintain the SQLite response cache.

    \b
    Examples:
        promptmeter cache stats    Entry count and size
        promptmeter cache purge    Delete expired entries
    """
    pass


@cache.command("stats")
@db_path_option
def cache_stats(db_path: str) -> None:
    """Show entry count and stored bytes."""
    stats = SQLiteCacheBackend(db_path).get_stats()
    stats["bytes_used"] = format_bytes(stats["bytes_used"])
    print_stats(stats, title="Response cache")


@cache.command("purge")
@db_path_option
def purge(db_path: str) -> None:
    """Delete entries older than their validity window.

    Expired entries are already ignored by the proxy; this only reclaims
    disk space.
    """
    removed = SQLiteCacheBackend(db_path).purge_expired(time.time())
    print_success(f"Removed {removed} expired entr{'y' if removed == 1 else 'ies'}")
