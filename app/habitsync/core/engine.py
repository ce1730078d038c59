from __future__ import annotations

from typing import Optional

from habitsync.remote.base import RemoteStore
from habitsync.remote.http_store import HttpRecordStore
from habitsync.store.db import init_db
from habitsync.store.local_store import LocalStore
from habitsync.store.token_store import TokenStore
from habitsync.sync.orchestrator import SyncOrchestrator
from habitsync.sync.retry import RetryPolicy

from .config import AppConfig
from .logging_setup import make_log_func


def build_engine(cfg: AppConfig, remote: Optional[RemoteStore] = None, log_func=None) -> SyncOrchestrator:
    """Wire an orchestrator from config. `remote` overrides the HTTP record store."""
    init_db(cfg.database.path)
    log_func = log_func or make_log_func()

    if remote is None:
        remote = HttpRecordStore(
            base_url=cfg.remote.base_url,
            api_token=cfg.remote.api_token,
            timeout=int(cfg.remote.timeout_sec),
        )
    retry = RetryPolicy(
        max_attempts=cfg.sync.retry_max_attempts,
        base_delay_sec=cfg.sync.retry_base_delay_sec,
        call_timeout_sec=cfg.sync.call_timeout_sec or None,
        log_func=log_func,
    )
    return SyncOrchestrator(
        store=LocalStore(cfg.database.path),
        remote=remote,
        tokens=TokenStore(cfg.database.path),
        retry=retry,
        zones=cfg.sync.zones,
        log_func=log_func,
        debounce_sec=cfg.sync.debounce_sec,
    )
