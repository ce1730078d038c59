from __future__ import annotations

import json
import threading
from contextlib import contextmanager
from typing import Optional

from pydantic import ValidationError

from habitsync.errors import RemoteFatalError
from habitsync.models import EntityKind, LocalEntity, RemoteRecord
from habitsync.store.local_store import MODELS, LocalStore

MUTABLE_FIELDS: dict[EntityKind, tuple[str, ...]] = {
    EntityKind.activity: ("name", "activity_type", "color", "sort_order", "is_active", "created_at"),
    EntityKind.session: ("activity_id", "session_date", "duration", "numeric_value", "is_completed", "created_at"),
}


class KeyedLocks:
    """One lock per key, created on demand and dropped once no holder or waiter remains."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}
        self._users: dict[str, int] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, key: str):
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            self._users[key] = self._users.get(key, 0) + 1
        try:
            with lock:
                yield
        finally:
            with self._guard:
                self._users[key] -= 1
                if not self._users[key]:
                    del self._users[key]
                    del self._locks[key]


class RecordApplier:
    def __init__(self, store: LocalStore, log_func):
        self.store = store
        self.log_func = log_func
        self._locks = KeyedLocks()

    def _log(self, level: str, message: str, detail: dict):
        self.log_func(level, "applier", message, json.dumps(detail, ensure_ascii=False, default=str))

    def _find_existing(self, kind: EntityKind, record: RemoteRecord) -> Optional[LocalEntity]:
        existing = self.store.get(kind, record.domain_id)
        if existing is None:
            existing = self.store.find_by_remote_ref(kind, record.record_id)
        return existing

    def _resolve_parent(self, record: RemoteRecord, data: dict) -> None:
        if data.get("activity_id"):
            return
        parent_ref = record.fields.get("activity_ref")
        parent = self.store.find_by_remote_ref(EntityKind.activity, parent_ref) if parent_ref else None
        if parent is None:
            raise RemoteFatalError(f"record_missing_activity_id: {record.record_id}")
        data["activity_id"] = parent.id

    def upsert(self, record: RemoteRecord) -> Optional[LocalEntity]:
        try:
            kind = EntityKind.from_record_type(record.record_type)
        except ValueError:
            self._log("WARNING", "unknown_record_type_skipped", {"record_id": record.record_id, "type": record.record_type})
            return None

        # Keyed on the local id, which is the domain id for entities created here, as in delete().
        resolved = self._find_existing(kind, record)
        local_id = resolved.id if resolved is not None else record.domain_id
        with self._locks.hold(f"{kind.value}:{local_id}"):
            existing = self._find_existing(kind, record)
            if existing is not None and record.change_tag and existing.remote_tag == record.change_tag:
                # Already at this server version (e.g. the echo of our own save).
                return existing
            data = existing.model_dump() if existing else {"id": record.domain_id}
            for name in MUTABLE_FIELDS[kind]:
                if name in record.fields:
                    data[name] = record.fields[name]
            if kind is EntityKind.session:
                self._resolve_parent(record, data)

            remote_ref = record.record_id
            if existing and existing.remote_ref and existing.remote_ref != record.record_id:
                # remote_ref is write-once for the lifetime of the local entity.
                self._log(
                    "WARNING",
                    "remote_ref_mismatch_kept_existing",
                    {"id": existing.id, "existing": existing.remote_ref, "incoming": record.record_id},
                )
                remote_ref = existing.remote_ref

            data["remote_ref"] = remote_ref
            data["remote_tag"] = record.change_tag
            data["dirty"] = False
            if record.modified_at is not None:
                data["last_modified_at"] = record.modified_at

            try:
                entity = MODELS[kind].model_validate(data)
            except ValidationError as e:
                raise RemoteFatalError(f"record_invalid: {record.record_id}: {e.error_count()} field error(s)") from e
            self.store.upsert(entity, origin="sync")
            return entity

    def delete(self, remote_id: str) -> bool:
        for kind in EntityKind:
            entity = self.store.find_by_remote_ref(kind, remote_id)
            if entity is None:
                continue
            with self._locks.hold(f"{kind.value}:{entity.id}"):
                removed = self.store.hard_delete(kind, entity.id)
            if removed:
                self._log("INFO", "local_entity_deleted", {"kind": kind.value, "id": entity.id, "remote_id": remote_id})
            return removed
        return False
