from __future__ import annotations

import json
import uuid

from habitsync.errors import LocalStoreError, RemoteConflictError, UploadFailedError
from habitsync.models import Activity, EntityKind, LocalEntity, RemoteRecord, Session
from habitsync.store.local_store import LocalStore

from .applier import RecordApplier
from .retry import RetryPolicy


def new_record_name(kind: EntityKind) -> str:
    return f"{kind.record_type}-{uuid.uuid4().hex}"


class UploadPipeline:
    """Pushes dirty entities to the remote store, parents before dependents."""

    def __init__(
        self,
        store: LocalStore,
        remote,
        applier: RecordApplier,
        retry: RetryPolicy,
        zone: str,
        log_func,
    ):
        self.store = store
        self.remote = remote
        self.applier = applier
        self.retry = retry
        self.zone = zone
        self.log_func = log_func

    def _log(self, level: str, message: str, detail: dict):
        self.log_func(level, "upload", message, json.dumps(detail, ensure_ascii=False, default=str))

    def build_record(self, kind: EntityKind, entity: LocalEntity, parent_ref: str | None = None) -> RemoteRecord:
        fields = entity.domain_fields()
        if parent_ref:
            fields["activity_ref"] = parent_ref
        return RemoteRecord(
            record_type=kind.record_type,
            record_id=entity.remote_ref or new_record_name(kind),
            zone=self.zone,
            fields=fields,
            change_tag=entity.remote_tag,
        )

    def _upload_one(self, kind: EntityKind, entity: LocalEntity, record: RemoteRecord, summary: dict) -> None:
        try:
            saved = self.retry.execute(lambda: self.remote.save(record), label=f"save:{kind.value}")
        except RemoteConflictError as e:
            # Server wins: overwrite local fields with the authoritative copy.
            self.applier.upsert(e.server_record)
            summary["conflicts_resolved"] += 1
            self._log("INFO", "conflict_resolved_server_wins", {"kind": kind.value, "id": entity.id, "record_id": e.server_record.record_id})
            return

        cleared = self.store.confirm_upload(
            kind,
            entity.id,
            remote_ref=saved.record_id,
            remote_tag=saved.change_tag,
            snapshot_modified_at=entity.last_modified_at,
        )
        summary["uploaded"] += 1
        if not cleared:
            summary["modified_during_upload"] += 1
            self._log("INFO", "entity_modified_during_upload", {"kind": kind.value, "id": entity.id})

    def _run_kind(self, kind: EntityKind, summary: dict, failures: list[dict]) -> None:
        for entity in self.store.fetch_dirty(kind):
            parent_ref = None
            if isinstance(entity, Session):
                parent = self.store.get(EntityKind.activity, entity.activity_id)
                if parent is None or not isinstance(parent, Activity) or not parent.remote_ref:
                    summary["skipped_children"] += 1
                    self._log("INFO", "child_skipped_parent_not_uploaded", {"id": entity.id, "activity_id": entity.activity_id})
                    continue
                parent_ref = parent.remote_ref

            record = self.build_record(kind, entity, parent_ref)
            try:
                self._upload_one(kind, entity, record, summary)
            except LocalStoreError:
                raise
            except Exception as e:
                failures.append({"kind": kind.value, "id": entity.id, "error": str(e)})
                self._log("ERROR", "upload_failed", {"kind": kind.value, "id": entity.id, "error": str(e)})

    def run(self) -> dict:
        summary = {
            "uploaded": 0,
            "conflicts_resolved": 0,
            "skipped_children": 0,
            "modified_during_upload": 0,
            "upload_failed": 0,
        }
        failures: list[dict] = []
        # Parents must be fully processed before any child is considered.
        self._run_kind(EntityKind.activity, summary, failures)
        self._run_kind(EntityKind.session, summary, failures)
        summary["upload_failed"] = len(failures)
        if failures:
            raise UploadFailedError(failures, summary)
        return summary
