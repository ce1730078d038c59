from __future__ import annotations

import json
from typing import Optional

from habitsync.errors import TokenExpiredError
from habitsync.models import RECORD_TYPES, ZoneChanges
from habitsync.store.token_store import TokenStore

from .applier import RecordApplier
from .retry import RetryPolicy

# Upper bound on `more_coming` pages per attempt; the rest is picked up next attempt.
MAX_CHANGE_PAGES = 100


class DeltaFetcher:
    def __init__(self, remote, applier: RecordApplier, tokens: TokenStore, retry: RetryPolicy, log_func):
        self.remote = remote
        self.applier = applier
        self.tokens = tokens
        self.retry = retry
        self.log_func = log_func

    def _log(self, level: str, message: str, detail: dict):
        self.log_func(level, "delta_fetch", message, json.dumps(detail, ensure_ascii=False))

    def _apply(self, changes: ZoneChanges, summary: dict) -> None:
        for record in changes.changed:
            if self.applier.upsert(record) is not None:
                summary["fetched_changed"] += 1
        for remote_id in changes.deleted_ids:
            if self.applier.delete(remote_id):
                summary["fetched_deleted"] += 1

    def run(self, zone: str) -> dict:
        token: Optional[str] = self.tokens.get(zone)
        if token is None:
            raise RuntimeError(f"delta_fetch_without_token: {zone}")

        summary = {"zone": zone, "fetched_changed": 0, "fetched_deleted": 0, "pages": 0, "token_expired": False}
        for _ in range(MAX_CHANGE_PAGES):
            since = token
            try:
                changes = self.retry.execute(
                    lambda: self.remote.fetch_zone_changes(zone, since),
                    label=f"fetch_zone_changes:{zone}",
                )
            except TokenExpiredError:
                # Discard the cursor entirely; the next attempt does a full fetch.
                self.tokens.clear(zone)
                summary["token_expired"] = True
                self._log("WARNING", "change_token_expired_cleared", {"zone": zone})
                return summary

            self._apply(changes, summary)
            summary["pages"] += 1
            if changes.new_token:
                self.tokens.set(zone, changes.new_token)
                token = changes.new_token
            if not changes.more_coming or not changes.new_token:
                break

        self._log("INFO", "delta_fetch_done", summary)
        return summary


class FullFetcher:
    def __init__(self, remote, applier: RecordApplier, retry: RetryPolicy, log_func):
        self.remote = remote
        self.applier = applier
        self.retry = retry
        self.log_func = log_func

    def run(self, zone: str) -> dict:
        summary = {"zone": zone, "full_fetched": 0}
        for record_type in RECORD_TYPES:
            records = self.retry.execute(
                lambda rt=record_type: self.remote.query_all(rt, zone),
                label=f"query_all:{zone}:{record_type}",
            )
            for record in records:
                if self.applier.upsert(record) is not None:
                    summary["full_fetched"] += 1
        self.log_func("INFO", "full_fetch", "full_fetch_done", json.dumps(summary, ensure_ascii=False))
        return summary
