from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Iterable, Optional

from habitsync.errors import LocalStoreError
from habitsync.models import Activity, EntityKind, LocalEntity, MutationEvent, Session, utcnow

from .db import get_conn

logger = logging.getLogger("local_store")

SYNC_COLUMNS = ("remote_ref", "remote_tag", "dirty", "last_modified_at")

COLUMNS: dict[EntityKind, tuple[str, ...]] = {
    EntityKind.activity: (
        "id",
        "name",
        "activity_type",
        "color",
        "sort_order",
        "is_active",
        "created_at",
        *SYNC_COLUMNS,
    ),
    EntityKind.session: (
        "id",
        "activity_id",
        "session_date",
        "duration",
        "numeric_value",
        "is_completed",
        "created_at",
        *SYNC_COLUMNS,
    ),
}

MODELS: dict[EntityKind, type[LocalEntity]] = {
    EntityKind.activity: Activity,
    EntityKind.session: Session,
}

MutationCallback = Callable[[MutationEvent], None]


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _to_row(kind: EntityKind, entity: LocalEntity) -> dict:
    data = entity.model_dump()
    row = {}
    for col in COLUMNS[kind]:
        value = data.get(col)
        if isinstance(value, datetime):
            value = _ts(value)
        elif isinstance(value, bool):
            value = int(value)
        row[col] = value
    return row


def _from_row(kind: EntityKind, row: sqlite3.Row) -> LocalEntity:
    return MODELS[kind].model_validate(dict(row))


def kind_of(entity: LocalEntity) -> EntityKind:
    return EntityKind.session if isinstance(entity, Session) else EntityKind.activity


class LocalStore:
    """Device-resident datastore of Activities and Sessions.

    Every write, whether from the presentation layer through `commit` or from
    the sync engine, goes through `write_lock`. Commits from the presentation
    layer are published to subscribers as `MutationEvent(origin="local")`;
    sync writes are published with `origin="sync"`.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.write_lock = threading.RLock()
        self._subscribers: list[MutationCallback] = []
        self._subscribers_lock = threading.Lock()

    @contextmanager
    def _read(self):
        try:
            conn = get_conn(self.db_path)
        except sqlite3.Error as e:
            raise LocalStoreError(f"local_store_open_failed: {e}") from e
        try:
            yield conn
        except sqlite3.Error as e:
            raise LocalStoreError(f"local_store_read_failed: {e}") from e
        finally:
            conn.close()

    @contextmanager
    def _write(self):
        with self.write_lock:
            try:
                conn = get_conn(self.db_path)
            except sqlite3.Error as e:
                raise LocalStoreError(f"local_store_open_failed: {e}") from e
            try:
                yield conn
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise LocalStoreError(f"local_store_write_failed: {e}") from e
            finally:
                conn.close()

    # --- reads ---

    def get(self, kind: EntityKind, entity_id: str) -> Optional[LocalEntity]:
        with self._read() as conn:
            row = conn.execute(f"SELECT * FROM {kind.table} WHERE id=?", (entity_id,)).fetchone()
        return _from_row(kind, row) if row else None

    def find_by_remote_ref(self, kind: EntityKind, remote_ref: str) -> Optional[LocalEntity]:
        with self._read() as conn:
            row = conn.execute(f"SELECT * FROM {kind.table} WHERE remote_ref=?", (remote_ref,)).fetchone()
        return _from_row(kind, row) if row else None

    def fetch_dirty(self, kind: EntityKind) -> list[LocalEntity]:
        with self._read() as conn:
            rows = conn.execute(
                f"SELECT * FROM {kind.table} WHERE dirty=1 ORDER BY last_modified_at, id"
            ).fetchall()
        return [_from_row(kind, r) for r in rows]

    def list_all(self, kind: EntityKind) -> list[LocalEntity]:
        with self._read() as conn:
            rows = conn.execute(f"SELECT * FROM {kind.table} ORDER BY created_at, id").fetchall()
        return [_from_row(kind, r) for r in rows]

    def count_dirty(self) -> dict[str, int]:
        with self._read() as conn:
            return {
                kind.value: conn.execute(f"SELECT COUNT(1) FROM {kind.table} WHERE dirty=1").fetchone()[0]
                for kind in EntityKind
            }

    # --- writes ---

    def _upsert_row(
        self, conn: sqlite3.Connection, kind: EntityKind, entity: LocalEntity, domain_only: bool = False
    ) -> bool:
        row = _to_row(kind, entity)
        existed = conn.execute(f"SELECT 1 FROM {kind.table} WHERE id=?", (entity.id,)).fetchone() is not None
        cols = list(row.keys())
        placeholders = ",".join("?" for _ in cols)
        # Presentation commits never overwrite sync bookkeeping of an existing row.
        skip = {"id", *SYNC_COLUMNS} if domain_only else {"id"}
        updates = ",".join(f"{c}=excluded.{c}" for c in cols if c not in skip)
        conn.execute(
            f"INSERT INTO {kind.table}({','.join(cols)}) VALUES ({placeholders}) "
            f"ON CONFLICT(id) DO UPDATE SET {updates}",
            tuple(row[c] for c in cols),
        )
        return existed

    def commit(
        self,
        inserted: Iterable[LocalEntity] = (),
        updated: Iterable[LocalEntity] = (),
    ) -> MutationEvent:
        """Persist presentation-layer changes in one transaction and publish them."""
        event = MutationEvent(origin="local", committed_at=utcnow())
        with self._write() as conn:
            for entity in inserted:
                kind = kind_of(entity)
                self._upsert_row(conn, kind, entity, domain_only=True)
                event.inserted.append((kind, entity.id))
            for entity in updated:
                kind = kind_of(entity)
                self._upsert_row(conn, kind, entity, domain_only=True)
                event.updated.append((kind, entity.id))
        self._publish(event)
        return event

    def upsert(self, entity: LocalEntity, origin: str = "sync") -> None:
        kind = kind_of(entity)
        with self._write() as conn:
            existed = self._upsert_row(conn, kind, entity)
        event = MutationEvent(origin=origin)
        if existed:
            event.updated.append((kind, entity.id))
        else:
            event.inserted.append((kind, entity.id))
        self._publish(event)

    def hard_delete(self, kind: EntityKind, entity_id: str) -> bool:
        with self._write() as conn:
            cur = conn.execute(f"DELETE FROM {kind.table} WHERE id=?", (entity_id,))
            removed = cur.rowcount > 0
        if removed:
            self._publish(MutationEvent(origin="sync", deleted=[(kind, entity_id)]))
        return removed

    def mark_dirty(self, kind: EntityKind, entity_ids: Iterable[str], at: datetime) -> int:
        ids = list(entity_ids)
        if not ids:
            return 0
        with self._write() as conn:
            cur = conn.executemany(
                f"UPDATE {kind.table} SET dirty=1, last_modified_at=? WHERE id=?",
                [(_ts(at), i) for i in ids],
            )
            return cur.rowcount

    def confirm_upload(
        self,
        kind: EntityKind,
        entity_id: str,
        remote_ref: str,
        remote_tag: Optional[str],
        snapshot_modified_at: Optional[datetime],
    ) -> bool:
        """Record a confirmed remote write.

        `remote_ref` is only set when the entity has none yet. The dirty flag is
        cleared only if `last_modified_at` still equals the upload snapshot;
        otherwise a newer local edit is pending and the entity stays dirty.
        Returns True when the dirty flag was cleared.
        """
        with self._write() as conn:
            conn.execute(
                f"""
                UPDATE {kind.table}
                   SET remote_ref = COALESCE(remote_ref, ?),
                       remote_tag = ?,
                       dirty = CASE WHEN last_modified_at IS ? THEN 0 ELSE dirty END
                 WHERE id=?
                """,
                (remote_ref, remote_tag, _ts(snapshot_modified_at), entity_id),
            )
            row = conn.execute(f"SELECT dirty FROM {kind.table} WHERE id=?", (entity_id,)).fetchone()
        return bool(row) and not row["dirty"]

    # --- mutation stream ---

    def subscribe_to_mutations(self, callback: MutationCallback) -> Callable[[], None]:
        with self._subscribers_lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._subscribers_lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def _publish(self, event: MutationEvent) -> None:
        with self._subscribers_lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                logger.exception("mutation_subscriber_failed origin=%s", event.origin)
