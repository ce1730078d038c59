from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from typing import Optional

from habitsync.errors import LocalStoreError

from .db import get_conn

# Reserved key for the database-level cursor that reports which zones changed.
DATABASE_TOKEN_KEY = "__database__"


class TokenStore:
    """Durable map of zone -> opaque change token.

    `set` and `clear` are the only mutators. Each is a single statement in its
    own transaction, so a reader never observes a partially written token.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path

    @contextmanager
    def _db(self):
        try:
            conn = get_conn(self.db_path)
        except sqlite3.Error as e:
            raise LocalStoreError(f"token_store_open_failed: {e}") from e
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise LocalStoreError(f"token_store_failed: {e}") from e
        finally:
            conn.close()

    def get(self, zone: str) -> Optional[str]:
        with self._db() as conn:
            row = conn.execute("SELECT token FROM change_tokens WHERE zone=?", (zone,)).fetchone()
        return row["token"] if row else None

    def set(self, zone: str, token: str) -> None:
        if not token:
            raise ValueError("change_token_empty")
        with self._db() as conn:
            conn.execute(
                """
                INSERT INTO change_tokens(zone, token, updated_at) VALUES (?,?,CURRENT_TIMESTAMP)
                ON CONFLICT(zone) DO UPDATE SET token=excluded.token, updated_at=CURRENT_TIMESTAMP
                """,
                (zone, token),
            )

    def clear(self, zone: str) -> None:
        with self._db() as conn:
            conn.execute("DELETE FROM change_tokens WHERE zone=?", (zone,))

    def all(self) -> dict[str, dict]:
        with self._db() as conn:
            rows = conn.execute("SELECT zone, token, updated_at FROM change_tokens ORDER BY zone").fetchall()
        return {r["zone"]: {"token": r["token"], "updated_at": r["updated_at"]} for r in rows}
