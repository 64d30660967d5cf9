"""Rich output helpers for the promptmeter CLI."""

from datetime import datetime, timezone
from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

console = Console()


def print_table(
    headers: list[str],
    rows: list[list[str]],
    title: str | None = None,
    right_align: tuple[str, ...] = (),
) -> None:
    """Print rows under ``headers``; columns named in ``right_align`` hold numbers."""
    table = Table(title=title)
    for header in headers:
        table.add_column(header, justify="right" if header in right_align else "left")
    for row in rows:
        table.add_row(*row)
    console.print(table)


def _format_value(value: Any) -> str:
    if isinstance(value, bool) or value is None:
        return str(value)
    if isinstance(value, int):
        return f"{value:,}"
    if isinstance(value, float):
        return f"{value:,.2f}"
    return str(value)


def print_stats(stats: dict[str, Any], title: str = "Statistics") -> None:
    """Print ``stats`` as ``name: value`` lines in a panel.

    One level of nesting is flattened to ``parent.child`` lines, which is
    the shape of the proxy's ``/stats`` sections.
    """
    lines = []
    for key, value in stats.items():
        items = value.items() if isinstance(value, dict) else [(None, value)]
        for sub_key, sub_value in items:
            name = key if sub_key is None else f"{key}.{sub_key}"
            lines.append(f"[bold]{name}:[/bold] {_format_value(sub_value)}")
    console.print(Panel("\n".join(lines), title=title))


def _print_message(label: str, style: str, msg: str) -> None:
    console.print(f"[bold {style}]{label}:[/bold {style}] {msg}")


def print_error(msg: str) -> None:
    _print_message("Error", "red", msg)


def print_success(msg: str) -> None:
    _print_message("Success", "green", msg)


def print_warning(msg: str) -> None:
    _print_message("Warning", "yellow", msg)


def truncate(text: str | None, max_len: int = 50) -> str:
    """Single-line preview of ``text``, cut to ``max_len`` with an ellipsis."""
    if not text:
        return ""
    text = text.replace("\n", " ")
    if len(text) <= max_len:
        return text
    return text[: max_len - 3] + "..."


def format_tokens(prompt_tokens: int | None, completion_tokens: int | None) -> str:
    """``prompt/completion`` token counts, ``-`` where a count is unknown."""

    def fmt(count: int | None) -> str:
        return "-" if count is None else str(count)

    return f"{fmt(prompt_tokens)}/{fmt(completion_tokens)}"


def format_age(dt: datetime) -> str:
    """Time since ``dt`` as "now", "30m", "5h" or "2d".

    Naive datetimes are read as UTC, which is how the stores write them.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    seconds = int((datetime.now(tz=timezone.utc) - dt).total_seconds())

    if seconds < 60:
        return "now"
    if seconds < 3600:
        return f"{seconds // 60}m"
    if seconds < 86400:
        return f"{seconds // 3600}h"
    return f"{seconds // 86400}d"


def format_bytes(num_bytes: int) -> str:
    """Byte count as "256 B", "1.5 KB", "12 MB" and so on."""
    value = float(max(num_bytes, 0))
    for unit in ("B", "KB", "MB"):
        if value < 1024:
            break
        value /= 1024
    else:
        unit = "GB"

    if unit == "B" or value >= 10:
        return f"{value:.0f} {unit}"
    return f"{value:.1f} {unit}"
