import sqlite3

import pytest

from habitsync.errors import LocalStoreError
from habitsync.store.token_store import TokenStore


def test_token_survives_new_store_instance(db_path):
    TokenStore(db_path).set("HabitsZone", "token-1")

    reopened = TokenStore(db_path)
    assert reopened.get("HabitsZone") == "token-1"


def test_set_replaces_and_clear_removes(tokens):
    tokens.set("HabitsZone", "token-1")
    tokens.set("HabitsZone", "token-2")
    tokens.set("OtherZone", "token-9")

    assert tokens.get("HabitsZone") == "token-2"
    assert sorted(tokens.all()) == ["HabitsZone", "OtherZone"]

    tokens.clear("HabitsZone")
    assert tokens.get("HabitsZone") is None
    assert tokens.get("OtherZone") == "token-9"


def test_clear_missing_zone_is_noop(tokens):
    tokens.clear("NoSuchZone")
    assert tokens.all() == {}


def test_empty_token_rejected(tokens):
    with pytest.raises(ValueError):
        tokens.set("HabitsZone", "")


def test_sqlite_failures_surface_as_local_store_error(tmp_path):
    # A database without the change_tokens table.
    path = tmp_path / "bare.db"
    sqlite3.connect(path).close()
    broken = TokenStore(str(path))

    with pytest.raises(LocalStoreError, match="token_store_failed"):
        broken.get("HabitsZone")
    with pytest.raises(LocalStoreError):
        broken.set("HabitsZone", "token-1")
