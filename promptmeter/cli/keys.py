"""API key management CLI commands."""

from __future__ import annotations

import secrets

import click

from ..hashing import hash_api_key
from ..storage import SQLiteIdentityStore
from ._utils import (
    console,
    db_path_option,
    format_age,
    print_error,
    print_success,
    print_table,
    print_warning,
)
from .main import main

KEY_PREFIX = "pm-"


def generate_api_key() -> str:
    """A fresh random key. Only its hash is ever stored."""
    return KEY_PREFIX + secrets.token_urlsafe(32)


@main.group()
def keys() -> None:
    """Issue and revoke proxy API keys.

    \b
    Examples:
        promptmeter keys create --user-id alice    Issue a key for alice
        promptmeter keys list                      List issued keys
        promptmeter keys revoke <key>              Revoke a key
    """
    pass


@keys.command("create")
@db_path_option
@click.option("--user-id", "-u", required=True, help="User the key is billed to.")
@click.option("--label", "-l", default=None, help="Free-form note, e.g. the service using it.")
def create_key(db_path: str, user_id: str, label: str | None) -> None:
    """Create a key for a user and print it once."""
    api_key = generate_api_key()
    store = SQLiteIdentityStore(db_path)
    try:
        store.add(hash_api_key(api_key), user_id, label=label)
    finally:
        store.close()

    print_success(f"Created key for user '{user_id}'")
    console.print(f"\n  [bold]{api_key}[/bold]\n", highlight=False)
    print_warning("Store it now; it cannot be shown again.")


@keys.command("revoke")
@db_path_option
@click.argument("api_key")
def revoke_key(db_path: str, api_key: str) -> None:
    """Revoke a key. Accepts the key itself or its SHA-256 hash."""
    store = SQLiteIdentityStore(db_path)
    try:
        revoked = store.revoke(hash_api_key(api_key)) or store.revoke(api_key.strip())
    finally:
        store.close()

    if not revoked:
        print_error("No such key")
        raise SystemExit(1)
    print_success("Key revoked")


@keys.command("list")
@db_path_option
@click.option("--user-id", "-u", default=None, help="Only keys for this user.")
def list_keys(db_path: str, user_id: str | None) -> None:
    """List issued keys (hashes only)."""
    store = SQLiteIdentityStore(db_path)
    try:
        api_keys = store.list_keys(user_id)
    finally:
        store.close()

    if not api_keys:
        click.echo("No keys found.")
        return

    rows = [
        [k.hashed_key[:12], k.user_id, k.label or "", format_age(k.created_at)]
        for k in api_keys
    ]
    print_table(["HASH", "USER", "LABEL", "AGE"], rows, title=f"API keys ({len(api_keys)})")
