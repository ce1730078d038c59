from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from datetime import datetime, timezone
from typing import Any, Optional

from habitsync.core.logging_setup import make_log_func
from habitsync.errors import (
    AccountUnavailableError,
    RemoteTransientError,
    SyncError,
    TokenExpiredError,
    UploadFailedError,
)
from habitsync.models import SyncStatus
from habitsync.remote.base import RemoteStore, SupportsDatabaseChanges
from habitsync.store.db import get_conn
from habitsync.store.local_store import LocalStore
from habitsync.store.token_store import DATABASE_TOKEN_KEY, TokenStore

from .applier import RecordApplier
from .change_tracker import ChangeTracker
from .fetch import DeltaFetcher, FullFetcher
from .retry import RetryPolicy
from .upload import UploadPipeline

SCHEDULER_POLL_GRANULARITY_SEC = 1
SCHEDULER_MIN_INTERVAL_SEC = 10
SCHEDULER_MAX_INTERVAL_SEC = 86400


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _iso_from_ts(ts: Optional[float]) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def sanitize_interval(raw_value: object) -> int:
    try:
        value = int(raw_value or 0)
    except (TypeError, ValueError):
        return 0
    if value <= 0:
        return 0
    return max(SCHEDULER_MIN_INTERVAL_SEC, min(value, SCHEDULER_MAX_INTERVAL_SEC))


class SyncOrchestrator:
    """Single-flight driver of sync attempts.

    An attempt checks the account, uploads dirty entities, then for each zone
    either applies a delta since the stored change token or performs a full
    fetch and acquires a fresh token. Errors are recorded in `last_error` and
    never escape `start()`.
    """

    def __init__(
        self,
        store: LocalStore,
        remote: RemoteStore,
        tokens: TokenStore,
        retry: RetryPolicy,
        zones: list[str],
        log_func=None,
        debounce_sec: float = 2.0,
    ):
        if not zones:
            raise ValueError("zones_required")
        self.store = store
        self.remote = remote
        self.tokens = tokens
        self.retry = retry
        self.zones = list(zones)
        self.log_func = log_func = log_func or make_log_func()
        self.debounce_sec = debounce_sec

        self.applier = RecordApplier(store, log_func)
        # Local entities carry no zone; uploads go to the primary (first) zone.
        self.uploader = UploadPipeline(store, remote, self.applier, retry, self.zones[0], log_func)
        self.delta_fetcher = DeltaFetcher(remote, self.applier, tokens, retry, log_func)
        self.full_fetcher = FullFetcher(remote, self.applier, retry, log_func)
        self.tracker = ChangeTracker(store, log_func, on_settled=self.notify_local_commit)

        self._status_lock = threading.Lock()
        self.status = SyncStatus.idle
        self.last_error: Optional[str] = None
        self.last_synced_at: Optional[str] = None
        self.last_summary: Optional[dict] = None

        self._zones_ready: set[str] = set()
        self._debounce_lock = threading.Lock()
        self._debounce_timer: Optional[threading.Timer] = None
        self._local_change_pending = False

        self._scheduler_thread: Optional[threading.Thread] = None
        self._scheduler_stop: Optional[threading.Event] = None
        self._scheduler_state_lock = threading.Lock()
        self._scheduler_state: dict[str, Any] = {
            "running": False,
            "enabled": False,
            "interval_sec": 0,
            "next_run_at": None,
            "last_started_at": None,
            "last_finished_at": None,
            "last_result": None,
            "run_count": 0,
            "skipped_busy_count": 0,
        }

    def _log(self, level: str, message: str, detail: Optional[dict] = None):
        self.log_func(level, "sync", message, json.dumps(detail, ensure_ascii=False, default=str) if detail else None)

    def _db(self):
        return get_conn(self.store.db_path)

    # --- run history ---

    def _insert_sync_run(self, run_type: str) -> int:
        conn = self._db()
        cur = conn.cursor()
        cur.execute(
            "INSERT INTO sync_runs(run_type,status,started_at,summary_json) VALUES (?,?,?,?)",
            (run_type, "running", now_iso(), "{}"),
        )
        rid = cur.lastrowid
        conn.commit()
        conn.close()
        return rid

    def _finish_sync_run(self, run_id: int, status: str, summary: dict):
        conn = self._db()
        conn.execute(
            "UPDATE sync_runs SET status=?, finished_at=?, summary_json=? WHERE id=?",
            (status, now_iso(), json.dumps(summary, ensure_ascii=False, default=str), run_id),
        )
        conn.commit()
        conn.close()

    def recent_runs(self, limit: int = 50) -> list[dict]:
        limit = max(1, min(int(limit), 500))
        conn = self._db()
        rows = conn.execute(
            "SELECT id, run_type, status, started_at, finished_at, summary_json FROM sync_runs ORDER BY id DESC LIMIT ?",
            (limit,),
        ).fetchall()
        conn.close()
        items = []
        for r in rows:
            item = dict(r)
            try:
                item["summary"] = json.loads(item.pop("summary_json") or "{}")
            except json.JSONDecodeError:
                item["summary"] = {}
            items.append(item)
        return items

    # --- scheduler state ---

    def _scheduler_state_update(self, **kwargs) -> None:
        with self._scheduler_state_lock:
            self._scheduler_state.update(kwargs)

    def _scheduler_state_snapshot(self) -> dict[str, Any]:
        with self._scheduler_state_lock:
            snap = dict(self._scheduler_state)
        next_run_at = snap.get("next_run_at")
        snap["next_run_in_sec"] = None if next_run_at is None else max(int(next_run_at - time.time()), 0)
        for key in ("next_run_at", "last_started_at", "last_finished_at"):
            snap[key] = _iso_from_ts(snap.get(key))
        return snap

    def state_snapshot(self) -> dict[str, Any]:
        with self._status_lock:
            status = self.status
            last_error = self.last_error
            last_synced_at = self.last_synced_at
            last_summary = self.last_summary
        return {
            "status": status.value,
            "last_error": last_error,
            "last_synced_at": last_synced_at,
            "last_summary": last_summary,
            "zones": list(self.zones),
            "scheduler": self._scheduler_state_snapshot(),
        }

    # --- triggers ---

    def is_syncing(self) -> bool:
        with self._status_lock:
            return self.status is SyncStatus.syncing

    def _try_begin(self, run_type: str) -> bool:
        with self._status_lock:
            busy = self.status is SyncStatus.syncing
            if busy:
                if run_type == "local_change":
                    # Commits that land mid-attempt get one follow-up attempt.
                    self._local_change_pending = True
            else:
                self.status = SyncStatus.syncing
                self.last_error = None
        if busy:
            with self._scheduler_state_lock:
                self._scheduler_state["skipped_busy_count"] += 1
            self._log("INFO", "sync_skipped_busy", {"run_type": run_type})
        return not busy

    def start(self, run_type: str = "manual") -> Optional[dict]:
        """Run one attempt in the calling thread.

        Returns the run summary, or None when an attempt is already in flight.
        """
        if not self._try_begin(run_type):
            return None
        return self._run_attempt(run_type)

    def start_in_background(self, run_type: str = "manual") -> bool:
        if not self._try_begin(run_type):
            return False
        worker = threading.Thread(target=self._run_attempt, args=(run_type,), name=f"habitsync-{run_type}", daemon=True)
        worker.start()
        return True

    def notify_account_changed(self) -> bool:
        self._log("INFO", "account_changed")
        return self.start_in_background("account_changed")

    def notify_local_commit(self) -> None:
        """Debounced trigger: a quiet period of `debounce_sec` must pass after the last commit."""
        with self._debounce_lock:
            if self._debounce_timer is not None:
                self._debounce_timer.cancel()
            if self.debounce_sec <= 0:
                self._debounce_timer = None
                fire_now = True
            else:
                fire_now = False
                timer = threading.Timer(self.debounce_sec, self._fire_local_change)
                timer.daemon = True
                self._debounce_timer = timer
                timer.start()
        if fire_now:
            self._fire_local_change()

    def _fire_local_change(self) -> None:
        with self._debounce_lock:
            self._debounce_timer = None
        self.start_in_background("local_change")

    # --- attempt ---

    def _ensure_zones(self) -> None:
        for zone in self.zones:
            if zone in self._zones_ready:
                continue
            self.retry.execute(lambda z=zone: self.remote.ensure_zone(z), label=f"ensure_zone:{zone}")
            self._zones_ready.add(zone)
            self._log("INFO", "zone_ready", {"zone": zone})

    def _check_account(self) -> None:
        try:
            available = self.retry.execute(self.remote.account_available, label="account_available")
        except RemoteTransientError as e:
            self._log("WARNING", "account_probe_transient", {"error": str(e)})
            raise AccountUnavailableError(f"account_probe_transient: {e}") from e
        except Exception as e:
            self._log("WARNING", "account_probe_failed", {"error": str(e)})
            raise AccountUnavailableError(f"account_probe_failed: {e}") from e
        if not available:
            raise AccountUnavailableError()

    def _zones_to_fetch(self, summary: dict) -> tuple[list[str], Optional[str]]:
        """Zones worth fetching this attempt, and the database token to store once they are applied."""
        if not isinstance(self.remote, SupportsDatabaseChanges):
            return list(self.zones), None
        db_token = self.tokens.get(DATABASE_TOKEN_KEY)
        try:
            changes = self.retry.execute(
                lambda: self.remote.fetch_database_changes(db_token), label="database_changes"
            )
        except TokenExpiredError:
            self.tokens.clear(DATABASE_TOKEN_KEY)
            self._log("WARNING", "database_change_token_expired")
            return list(self.zones), None
        if changes is None:
            return list(self.zones), None
        if db_token is None:
            return list(self.zones), changes.new_token

        changed = set(changes.changed_zones)
        # A zone without its own token still needs its initial full fetch.
        zones = [z for z in self.zones if z in changed or self.tokens.get(z) is None]
        summary["zones_unchanged"] = len(self.zones) - len(zones)
        return zones, changes.new_token

    def _download_zone(self, zone: str, summary: dict) -> None:
        if self.tokens.get(zone) is not None:
            result = self.delta_fetcher.run(zone)
            summary["fetched_changed"] += result["fetched_changed"]
            summary["fetched_deleted"] += result["fetched_deleted"]
            if result["token_expired"]:
                summary["tokens_expired"] += 1
            return

        token = self.retry.execute(lambda: self.remote.current_token(zone), label=f"current_token:{zone}")
        result = self.full_fetcher.run(zone)
        summary["full_fetched"] += result["full_fetched"]
        if token:
            self.tokens.set(zone, token)
            self._log("INFO", "change_token_acquired", {"zone": zone})

    def _run_attempt(self, run_type: str) -> dict:
        summary: dict[str, Any] = {
            "run_id": None,
            "run_type": run_type,
            "uploaded": 0,
            "conflicts_resolved": 0,
            "skipped_children": 0,
            "modified_during_upload": 0,
            "upload_failed": 0,
            "fetched_changed": 0,
            "fetched_deleted": 0,
            "full_fetched": 0,
            "tokens_expired": 0,
            "zones_unchanged": 0,
            "errors": 0,
        }

        error: Optional[Exception] = None
        try:
            summary["run_id"] = self._insert_sync_run(run_type)
            self._log("INFO", "run_started", {"run_id": summary["run_id"], "run_type": run_type})

            self._check_account()

            self._ensure_zones()
            try:
                summary.update(self.uploader.run())
            except UploadFailedError as e:
                # Downloads are skipped so pending edits are not overwritten by stale server state.
                summary.update(e.summary)
                summary["failures"] = e.failures
                raise

            zones, db_token = self._zones_to_fetch(summary)
            for zone in zones:
                self._download_zone(zone, summary)
            if db_token:
                self.tokens.set(DATABASE_TOKEN_KEY, db_token)
        except Exception as e:
            error = e

        finished_at = now_iso()
        if error is None:
            status = SyncStatus.completed
            self._log("INFO", "run_success", summary)
        else:
            status = SyncStatus.failed
            summary["errors"] += 1
            summary["fatal_error"] = str(error)
            if isinstance(error, SyncError):
                self._log("ERROR", "run_failed", summary)
            else:
                logging.getLogger("sync").error("run_failed_unexpected: %s", error, exc_info=error)

        if summary["run_id"] is not None:
            try:
                self._finish_sync_run(summary["run_id"], "success" if error is None else "failed", summary)
            except sqlite3.Error as e:
                logging.getLogger("sync").error("sync_run_record_failed: %s", e)

        with self._status_lock:
            self.status = status
            self.last_summary = summary
            if error is None:
                self.last_synced_at = finished_at
            else:
                self.last_error = str(error)
            follow_up = self._local_change_pending
            self._local_change_pending = False
        if follow_up:
            self.start_in_background("local_change")
        return summary

    # --- automatic timer ---

    def enable_automatic(self, interval_sec: int) -> int:
        """Start (or retune) the periodic timer. Returns the effective interval; 0 disables."""
        effective = sanitize_interval(interval_sec)
        if effective == 0:
            self.disable()
            return 0

        self._scheduler_state_update(enabled=True, interval_sec=effective, next_run_at=time.time() + effective)
        if self._scheduler_thread is not None and self._scheduler_thread.is_alive():
            return effective

        stop_event = threading.Event()
        self._scheduler_stop = stop_event
        self._scheduler_thread = threading.Thread(
            target=self._scheduler_loop, args=(stop_event,), name="habitsync-scheduler", daemon=True
        )
        self._scheduler_thread.start()
        return effective

    def disable(self, timeout_sec: float = 5.0) -> None:
        """Stop the periodic timer. A running attempt is not aborted."""
        stop_event, thread = self._scheduler_stop, self._scheduler_thread
        self._scheduler_stop = None
        self._scheduler_thread = None
        if stop_event is not None:
            stop_event.set()
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout_sec)
        self._scheduler_state_update(enabled=False, running=False, interval_sec=0, next_run_at=None)

    def _scheduler_loop(self, stop_event: threading.Event) -> None:
        logger = logging.getLogger("scheduler")
        self._scheduler_state_update(running=True)
        logger.info("scheduler_started")
        try:
            while not stop_event.is_set():
                with self._scheduler_state_lock:
                    next_run_at = self._scheduler_state.get("next_run_at")
                    interval = int(self._scheduler_state.get("interval_sec") or 0)
                if not interval or next_run_at is None:
                    stop_event.wait(SCHEDULER_POLL_GRANULARITY_SEC)
                    continue

                wait_sec = next_run_at - time.time()
                if wait_sec > 0:
                    stop_event.wait(min(wait_sec, SCHEDULER_POLL_GRANULARITY_SEC))
                    continue

                self._scheduler_state_update(last_started_at=time.time())
                summary = self.start("scheduled")
                with self._scheduler_state_lock:
                    if summary is None:
                        self._scheduler_state["last_result"] = "skipped_busy"
                    else:
                        self._scheduler_state["run_count"] += 1
                        self._scheduler_state["last_result"] = "failed" if summary.get("fatal_error") else "success"
                    self._scheduler_state["last_finished_at"] = time.time()
                    self._scheduler_state["next_run_at"] = time.time() + interval
        finally:
            self._scheduler_state_update(running=False)
            logger.info("scheduler_stopped")

    # --- lifecycle ---

    def attach(self) -> None:
        self.tracker.attach()

    def shutdown(self) -> None:
        self.tracker.detach()
        with self._debounce_lock:
            if self._debounce_timer is not None:
                self._debounce_timer.cancel()
                self._debounce_timer = None
        self.disable()
