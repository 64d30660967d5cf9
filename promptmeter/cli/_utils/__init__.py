"""CLI utilities for formatting and shared options."""

from .formatting import (
    console,
    format_age,
    format_bytes,
    format_tokens,
    print_error,
    print_stats,
    print_success,
    print_table,
    print_warning,
    truncate,
)
from .options import db_path_option

__all__ = [
    "console",
    "db_path_option",
    "print_table",
    "print_stats",
    "print_error",
    "print_success",
    "print_warning",
    "truncate",
    "format_age",
    "format_bytes",
    "format_tokens",
]
