"""Tests for API key CLI commands.

These tests use real SQLite databases (temp files) - no mocks.
"""

from pathlib import Path

import pytest
from click.testing import CliRunner

from promptmeter.cli.keys import KEY_PREFIX, generate_api_key
from promptmeter.cli.main import main
from promptmeter.hashing import hash_api_key
from promptmeter.storage import SQLiteIdentityStore


@pytest.fixture
def runner() -> CliRunner:
    """Create a CLI test runner."""
    return CliRunner()


@pytest.fixture
def temp_db(tmp_path: Path) -> str:
    """Create a temporary database path."""
    return str(tmp_path / "keys.db")


def issued_key(output: str) -> str:
    """Pull the printed key out of ``keys create`` output."""
    for token in output.split():
        if token.startswith(KEY_PREFIX):
            return token
    raise AssertionError(f"no key in output: {output!r}")


class TestGenerateApiKey:
    def test_prefix_and_uniqueness(self):
        keys = {generate_api_key() for _ in range(20)}
        assert len(keys) == 20
        assert all(k.startswith(KEY_PREFIX) for k in keys)


class TestKeysCreate:
    def test_stores_only_the_hash(self, runner, temp_db):
        result = runner.invoke(main, ["keys", "create", "--db-path", temp_db, "-u", "alice"])

        assert result.exit_code == 0, result.output
        api_key = issued_key(result.output)

        store = SQLiteIdentityStore(temp_db)
        assert store.lookup(hash_api_key(api_key)) == "alice"
        (stored,) = store.list_keys()
        assert stored.hashed_key != api_key

    def test_label(self, runner, temp_db):
        runner.invoke(main, ["keys", "create", "--db-path", temp_db, "-u", "ci", "-l", "nightly"])
        (stored,) = SQLiteIdentityStore(temp_db).list_keys()
        assert stored.label == "nightly"

    def test_user_required(self, runner, temp_db):
        result = runner.invoke(main, ["keys", "create", "--db-path", temp_db])
        assert result.exit_code != 0

    def test_db_path_from_env(self, runner, temp_db):
        result = runner.invoke(
            main, ["keys", "create", "-u", "bob"], env={"PROMPTMETER_DB_PATH": temp_db}
        )
        assert result.exit_code == 0, result.output
        assert SQLiteIdentityStore(temp_db).list_keys(user_id="bob")


class TestKeysRevoke:
    def test_revoke_by_key(self, runner, temp_db):
        created = runner.invoke(main, ["keys", "create", "--db-path", temp_db, "-u", "alice"])
        api_key = issued_key(created.output)

        result = runner.invoke(main, ["keys", "revoke", "--db-path", temp_db, api_key])

        assert result.exit_code == 0, result.output
        assert SQLiteIdentityStore(temp_db).lookup(hash_api_key(api_key)) is None

    def test_revoke_by_hash(self, runner, temp_db):
        SQLiteIdentityStore(temp_db).add(hash_api_key("pm-known"), "alice")

        result = runner.invoke(
            main, ["keys", "revoke", "--db-path", temp_db, hash_api_key("pm-known")]
        )

        assert result.exit_code == 0, result.output
        assert SQLiteIdentityStore(temp_db).list_keys() == []

    def test_unknown_key_fails(self, runner, temp_db):
        result = runner.invoke(main, ["keys", "revoke", "--db-path", temp_db, "pm-nope"])
        assert result.exit_code == 1
        assert "No such key" in result.output


class TestKeysList:
    def test_empty(self, runner, temp_db):
        result = runner.invoke(main, ["keys", "list", "--db-path", temp_db])
        assert result.exit_code == 0
        assert "No keys found." in result.output

    def test_lists_users(self, runner, temp_db):
        store = SQLiteIdentityStore(temp_db)
        store.add(hash_api_key("pm-a"), "alice")
        store.add(hash_api_key("pm-b"), "bob")

        result = runner.invoke(main, ["keys", "list", "--db-path", temp_db])

        assert result.exit_code == 0, result.output
        assert "alice" in result.output
        assert "bob" in result.output
        assert "pm-a" not in result.output

    def test_filter_by_user(self, runner, temp_db):
        store = SQLiteIdentityStore(temp_db)
        store.add(hash_api_key("pm-a"), "alice")
        store.add(hash_api_key("pm-b"), "bob")

        result = runner.invoke(main, ["keys", "list", "--db-path", temp_db, "-u", "bob"])

        assert "bob" in result.output
        assert "alice" not in result.output
