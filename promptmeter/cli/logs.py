"""Request log CLI commands."""

from __future__ import annotations

import json

import click

from ..storage import SQLiteLogStore
from ._utils import (
    db_path_option,
    format_age,
    format_tokens,
    print_stats,
    print_table,
    truncate,
)
from .main import main


@main.group()
def logs() -> None:
    """Inspect the request log.

    \b
    Examples:
        promptmeter logs recent               Show the 20 latest requests
        promptmeter logs recent -n 5 -u bob   Show bob's 5 latest requests
        promptmeter logs stats                Totals across all requests
    """
    pass


@logs.command("recent")
@db_path_option
@click.option("--limit", "-n", type=int, default=20, help="Maximum number of requests to show.")
@click.option("--user-id", "-u", default=None, help="Only requests from this user.")
@click.option("--json", "as_json", is_flag=True, help="Print full records as JSON lines.")
def recent(db_path: str, limit: int, user_id: str | None, as_json: bool) -> None:
    """Show the most recent requests, newest first."""
    with SQLiteLogStore(db_path) as store:
        records = store.query(user_id=user_id, limit=limit)

    if as_json:
        for record in records:
            click.echo(json.dumps(record.to_dict()))
        return

    if not records:
        click.echo("No requests logged.")
        return

    rows = []
    for r in records:
        flags = ",".join(f for f, on in (("cache", r.cache_hit), ("stream", r.streamed)) if on)
        rows.append(
            [
                r.id[:8],
                format_age(r.created_at),
                r.user_id,
                r.model or "",
                str(r.status) if r.status is not None else "-",
                flags,
                format_tokens(r.prompt_tokens, r.completion_tokens),
                truncate(r.completion, 40),
            ]
        )
    print_table(
        ["ID", "AGE", "USER", "MODEL", "STATUS", "FLAGS", "TOKENS", "COMPLETION"],
        rows,
        title=f"Requests ({len(records)} shown)",
        right_align=("STATUS", "TOKENS"),
    )


@logs.command("stats")
@db_path_option
def stats(db_path: str) -> None:
    """Show totals across the request log."""
    with SQLiteLogStore(db_path) as store:
        summary = store.get_summary_stats()
    print_stats(summary, title="Request log")
