from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from fastapi import APIRouter, HTTPException
from fastapi.responses import JSONResponse

from habitsync.core.config import LAST_RUN_ONCE_PATH, load_config, save_config
from habitsync.core.engine import build_engine
from habitsync.sync.orchestrator import SyncOrchestrator, sanitize_interval

router = APIRouter(prefix="/api")

ENGINE_LOCK = threading.Lock()
_engine: Optional[SyncOrchestrator] = None


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def set_engine(engine: Optional[SyncOrchestrator]) -> None:
    global _engine
    with ENGINE_LOCK:
        _engine = engine


def get_engine() -> SyncOrchestrator:
    """Engine installed by the app lifespan, or one built lazily from config."""
    global _engine
    with ENGINE_LOCK:
        if _engine is None:
            _engine = build_engine(load_config())
        return _engine


def _scheduler_state_snapshot() -> dict[str, object]:
    with ENGINE_LOCK:
        engine = _engine
    if engine is None:
        return {"running": False, "enabled": False, "interval_sec": 0}
    return engine.state_snapshot()["scheduler"]


def _build_readiness_payload() -> dict:
    checks: dict[str, bool] = {
        "config_load": False,
        "remote_configured": False,
        "database_parent_ready": False,
        "log_parent_ready": False,
        "scheduler_running": False,
        "scheduler_enabled": False,
    }
    warnings: list[str] = []
    errors: list[str] = []
    scheduler = _scheduler_state_snapshot()
    checks["scheduler_running"] = bool(scheduler.get("running"))
    checks["scheduler_enabled"] = bool(scheduler.get("enabled"))

    cfg = None
    try:
        cfg = load_config()
        checks["config_load"] = True
    except Exception as e:
        errors.append(f"config_load_failed: {e}")

    if cfg is not None:
        checks["remote_configured"] = bool(cfg.remote.base_url)
        if not checks["remote_configured"]:
            warnings.append("remote_base_url_missing")

        try:
            Path(cfg.database.path).parent.mkdir(parents=True, exist_ok=True)
            checks["database_parent_ready"] = True
        except OSError as e:
            errors.append(f"database_parent_unavailable: {e}")

        try:
            Path(cfg.logging.file).parent.mkdir(parents=True, exist_ok=True)
            checks["log_parent_ready"] = True
        except OSError as e:
            errors.append(f"log_parent_unavailable: {e}")

    if checks["scheduler_enabled"] and not checks["scheduler_running"]:
        warnings.append("scheduler_enabled_but_not_running")

    ok = checks["config_load"] and checks["database_parent_ready"] and checks["log_parent_ready"]
    return {
        "ok": ok,
        "checked_at": _now_iso(),
        "checks": checks,
        "warnings": warnings,
        "errors": errors,
        "scheduler": scheduler,
    }


@router.get("/healthz")
def healthz():
    return {
        "ok": True,
        "status": "alive",
        "checked_at": _now_iso(),
    }


@router.get("/readyz")
def readyz():
    payload = _build_readiness_payload()
    return JSONResponse(status_code=200 if payload["ok"] else 503, content=payload)


@router.get("/config")
def get_config():
    cfg = load_config()
    data = cfg.model_dump()
    if data["remote"]["api_token"]:
        data["remote"]["api_token"] = "***"
    return {
        **data,
        "_scheduler": {
            "configured_poll_interval_sec": int(cfg.sync.poll_interval_sec or 0),
            "effective_poll_interval_sec": sanitize_interval(cfg.sync.poll_interval_sec),
            "auto_sync_enabled": int(cfg.sync.poll_interval_sec or 0) > 0,
        },
    }


@router.post("/config")
def update_config(payload: dict):
    cfg = load_config()
    merged = cfg.model_dump()
    for key, value in payload.items():
        if key in ("remote", "sync", "logging", "database") and isinstance(value, dict):
            merged.setdefault(key, {})
            merged[key].update(value)
        else:
            merged[key] = value

    try:
        cfg2 = cfg.model_validate(merged)
    except Exception as e:
        raise HTTPException(status_code=400, detail=f"invalid_config: {e}")
    save_config(cfg2)

    warnings: list[dict[str, object]] = []
    configured_interval = int(cfg2.sync.poll_interval_sec or 0)
    effective_interval = get_engine().enable_automatic(configured_interval)
    if configured_interval > 0 and configured_interval != effective_interval:
        warnings.append(
            {
                "code": "poll_interval_clamped",
                "configured_poll_interval_sec": configured_interval,
                "effective_poll_interval_sec": effective_interval,
            }
        )
    return {"ok": True, "warnings": warnings, "restart_required": ["remote", "database", "sync.zones"]}


@router.get("/status/sync")
def sync_status():
    return {"checked_at": _now_iso(), **get_engine().state_snapshot()}


@router.post("/actions/sync")
def sync_now(background: bool = False):
    """Run one sync attempt. With `background=true` the attempt is started and 202 returned."""
    engine = get_engine()
    if background:
        if not engine.start_in_background("manual_web"):
            raise HTTPException(status_code=409, detail="sync_busy")
        return JSONResponse(status_code=202, content={"ok": True, "accepted": True})

    summary = engine.start("manual_web")
    if summary is None:
        raise HTTPException(status_code=409, detail="sync_busy")
    LAST_RUN_ONCE_PATH.parent.mkdir(parents=True, exist_ok=True)
    LAST_RUN_ONCE_PATH.write_text(json.dumps(summary, ensure_ascii=False, indent=2, default=str), encoding="utf-8")
    return summary


@router.post("/actions/automatic")
def set_automatic(payload: dict):
    try:
        interval = int(payload.get("interval_sec", 0))
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail="interval_sec_invalid")
    if interval < 0:
        raise HTTPException(status_code=400, detail="interval_sec_invalid")

    effective = get_engine().enable_automatic(interval)
    logging.getLogger("scheduler").info("automatic_sync_set requested=%s effective=%s", interval, effective)
    return {"ok": True, "enabled": effective > 0, "interval_sec": effective}


@router.post("/events/account-changed")
def account_changed():
    started = get_engine().notify_account_changed()
    return {"ok": True, "started": started}


@router.get("/tokens")
def list_tokens():
    engine = get_engine()
    return {"zones": engine.zones, "tokens": engine.tokens.all()}


@router.delete("/tokens/{zone}")
def clear_token(zone: str):
    engine = get_engine()
    if engine.is_syncing():
        raise HTTPException(status_code=409, detail="sync_busy")
    existed = engine.tokens.get(zone) is not None
    engine.tokens.clear(zone)
    return {"ok": True, "zone": zone, "cleared": existed}


@router.get("/history")
def get_history(limit: int = 50):
    limit_sanitized = min(max(int(limit), 1), 500)
    items: list[dict[str, Any]] = get_engine().recent_runs(limit_sanitized)
    return {
        "limit": limit_sanitized,
        "count": len(items),
        "items": items,
    }
