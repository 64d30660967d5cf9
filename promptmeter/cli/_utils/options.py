"""Options shared by several commands."""

from typing import Any

import click


def db_path_option(fn: Any) -> Any:
    """Shared --db-path option, defaulting to $PROMPTMETER_DB_PATH."""
    return click.option(
        "--db-path",
        type=click.Path(dir_okay=False),
        envvar="PROMPTMETER_DB_PATH",
        default="promptmeter.db",
        help="Path to the promptmeter database file.",
        show_default=True,
    )(fn)
