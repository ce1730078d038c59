from __future__ import annotations

import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

import pytest

from habitsync.errors import RemoteConflictError, TokenExpiredError
from habitsync.models import DatabaseChanges, RemoteRecord, ZoneChanges
from habitsync.store.db import init_db
from habitsync.store.local_store import LocalStore
from habitsync.store.token_store import TokenStore
from habitsync.sync.retry import RetryPolicy

ZONE = "HabitsZone"


class FakeRecordStore:
    """In-memory remote record store with a sequence-numbered change log.

    Change tokens are the stringified sequence number of the last change seen.
    """

    def __init__(self):
        self.available = True
        self.calls: list[str] = []
        self.saved: list[RemoteRecord] = []
        self.records: dict[str, dict[str, RemoteRecord]] = {}
        self.log: list[tuple[int, str, str, str]] = []
        self.seq = 0
        self.expired_tokens: set[str] = set()
        self.fail_save: dict[str, Exception] = {}
        self.page_size: Optional[int] = None
        self.before_save: Optional[Callable[[RemoteRecord], None]] = None
        self.account_gate: Optional[threading.Event] = None
        self.account_entered = threading.Event()
        self.account_error: Optional[Exception] = None

    # --- helpers for simulating other devices ---

    def _next_tag(self) -> str:
        self.seq += 1
        return f"tag-{self.seq}"

    def server_put(self, record_type: str, record_id: str, fields: dict, zone: str = ZONE) -> RemoteRecord:
        tag = self._next_tag()
        record = RemoteRecord(
            record_type=record_type,
            record_id=record_id,
            zone=zone,
            fields=dict(fields),
            modified_at=datetime.now(timezone.utc),
            change_tag=tag,
        )
        self.records.setdefault(zone, {})[record_id] = record
        self.log.append((self.seq, zone, "changed", record_id))
        return record

    def server_delete(self, record_id: str, zone: str = ZONE) -> None:
        self.records.get(zone, {}).pop(record_id, None)
        self.seq += 1
        self.log.append((self.seq, zone, "deleted", record_id))

    def record_for(self, domain_id: str, zone: str = ZONE) -> Optional[RemoteRecord]:
        for record in self.records.get(zone, {}).values():
            if record.domain_id == domain_id:
                return record
        return None

    # --- RemoteStore protocol ---

    def account_available(self) -> bool:
        self.calls.append("account_available")
        self.account_entered.set()
        if self.account_gate is not None:
            self.account_gate.wait(timeout=5)
        if self.account_error is not None:
            raise self.account_error
        return self.available

    def ensure_zone(self, zone: str) -> None:
        self.calls.append("ensure_zone")
        self.records.setdefault(zone, {})

    def save(self, record: RemoteRecord) -> RemoteRecord:
        self.calls.append(f"save:{record.record_type}")
        if self.before_save is not None:
            self.before_save(record)
        err = self.fail_save.get(record.domain_id)
        if err is not None:
            raise err
        current = self.records.get(record.zone, {}).get(record.record_id)
        if current is not None and current.change_tag != record.change_tag:
            raise RemoteConflictError(current)
        self.saved.append(record)
        return self.server_put(record.record_type, record.record_id, record.fields, record.zone)

    def query_all(self, record_type: str, zone: str) -> list[RemoteRecord]:
        self.calls.append(f"query_all:{record_type}")
        return [r for r in self.records.get(zone, {}).values() if r.record_type == record_type]

    def fetch_zone_changes(self, zone: str, token: Optional[str]) -> ZoneChanges:
        self.calls.append("fetch_zone_changes")
        if token in self.expired_tokens:
            raise TokenExpiredError()
        since = int(token or 0)
        entries = [e for e in self.log if e[1] == zone and e[0] > since]
        more = False
        if self.page_size is not None and len(entries) > self.page_size:
            entries = entries[: self.page_size]
            more = True

        latest: dict[str, str] = {}
        for _seq, _zone, op, record_id in entries:
            latest[record_id] = op
        changed = []
        deleted = []
        for record_id, op in latest.items():
            record = self.records.get(zone, {}).get(record_id)
            if op == "deleted" or record is None:
                deleted.append(record_id)
            else:
                changed.append(record)
        last_seq = entries[-1][0] if entries else since
        return ZoneChanges(changed=changed, deleted_ids=deleted, new_token=str(last_seq), more_coming=more)

    def current_token(self, zone: str) -> Optional[str]:
        self.calls.append("current_token")
        return str(self.seq)


class ZonedFakeRecordStore(FakeRecordStore):
    """Fake that also reports which zones changed since a database-level token."""

    def fetch_database_changes(self, token: Optional[str]) -> DatabaseChanges:
        self.calls.append("fetch_database_changes")
        if token in self.expired_tokens:
            raise TokenExpiredError()
        since = int(token or 0)
        zones = sorted({zone for seq, zone, _op, _id in self.log if seq > since})
        return DatabaseChanges(changed_zones=zones, new_token=str(self.seq))


@pytest.fixture
def db_path(tmp_path: Path) -> str:
    path = str(tmp_path / "runtime" / "habitsync.db")
    init_db(path)
    return path


@pytest.fixture
def store(db_path: str) -> LocalStore:
    return LocalStore(db_path)


@pytest.fixture
def tokens(db_path: str) -> TokenStore:
    return TokenStore(db_path)


@pytest.fixture
def remote() -> FakeRecordStore:
    return FakeRecordStore()


@pytest.fixture
def zoned_remote() -> ZonedFakeRecordStore:
    return ZonedFakeRecordStore()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def retry(sleeps: list[float]) -> RetryPolicy:
    return RetryPolicy(max_attempts=3, base_delay_sec=1.0, sleep=sleeps.append)


@pytest.fixture
def log_records() -> list[tuple]:
    return []


@pytest.fixture
def log_func(log_records: list[tuple]):
    def _log(level: str, module: str, message: str, detail: Optional[str] = None):
        log_records.append((level, module, message, detail))

    return _log

