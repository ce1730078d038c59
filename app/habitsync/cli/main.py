from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import typer
from rich.console import Console
from rich.table import Table

from habitsync.core.config import DEFAULT_CONFIG_PATH, LAST_RUN_ONCE_PATH, load_config
from habitsync.core.engine import build_engine
from habitsync.core.logging_setup import setup_logging
from habitsync.store.db import init_db
from habitsync.store.local_store import LocalStore
from habitsync.store.token_store import TokenStore
from habitsync.sync.orchestrator import sanitize_interval

app = typer.Typer(add_completion=False)
console = Console()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2, default=str))


def _write_last_run(summary: dict) -> None:
    LAST_RUN_ONCE_PATH.parent.mkdir(parents=True, exist_ok=True)
    LAST_RUN_ONCE_PATH.write_text(json.dumps(summary, ensure_ascii=False, indent=2, default=str), encoding="utf-8")


@app.command("config-show")
def config_show(path: Path = DEFAULT_CONFIG_PATH):
    """Show current config.yaml (api token masked)."""
    cfg = load_config(path)
    data = cfg.model_dump()
    if data["remote"]["api_token"]:
        data["remote"]["api_token"] = "***"
    _print_json(data)


@app.command()
def status():
    """Show runtime and local store summary."""
    cfg = load_config()
    init_db(cfg.database.path)
    dirty = LocalStore(cfg.database.path).count_dirty()
    tokens = TokenStore(cfg.database.path).all()

    table = Table(title="habitsync status")
    table.add_column("Key")
    table.add_column("Value")
    table.add_row("config", str(DEFAULT_CONFIG_PATH))
    table.add_row("remote", cfg.remote.base_url or "(unset)")
    table.add_row("zones", ", ".join(cfg.sync.zones))
    for zone in cfg.sync.zones:
        table.add_row(f"token[{zone}]", "present" if zone in tokens else "none (next run does full fetch)")
    table.add_row("dirty_activities", str(dirty.get("activity", 0)))
    table.add_row("dirty_sessions", str(dirty.get("session", 0)))
    poll_interval = sanitize_interval(cfg.sync.poll_interval_sec)
    table.add_row("auto_sync", "on" if poll_interval > 0 else "off")
    table.add_row("poll_interval_sec", str(poll_interval))
    table.add_row("db", cfg.database.path)
    table.add_row("log", cfg.logging.file)
    table.add_row("web", f"http://{cfg.web_bind_host}:{cfg.web_port}")
    console.print(table)


@app.command("config-validate")
def config_validate(
    path: Path = DEFAULT_CONFIG_PATH,
    strict: bool = typer.Option(False, "--strict", help="Return non-zero when validation fails."),
):
    """Validate config and runtime prerequisites."""
    out: dict[str, Any] = {
        "ok": True,
        "checked_at": _now_iso(),
        "config_path": str(path),
        "checks": {
            "config_exists": path.exists(),
            "remote_base_url_configured": False,
            "api_token_configured": False,
            "zones_configured": False,
            "web_bind_host_configured": False,
            "web_port_valid": False,
            "poll_interval_valid": False,
            "database_parent_ready": False,
            "log_parent_ready": False,
        },
        "warnings": [],
        "errors": [],
    }

    try:
        cfg = load_config(path)
    except Exception as e:
        out["ok"] = False
        out["errors"].append(f"load_config_failed: {e}")
        _print_json(out)
        if strict:
            raise typer.Exit(2)
        return

    out["checks"]["remote_base_url_configured"] = bool(cfg.remote.base_url.strip())
    if not out["checks"]["remote_base_url_configured"]:
        out["errors"].append("remote_base_url_missing")
    elif not cfg.remote.base_url.startswith(("http://", "https://")):
        out["errors"].append(f"remote_base_url_invalid: {cfg.remote.base_url}")

    out["checks"]["api_token_configured"] = bool(cfg.remote.api_token)
    if not out["checks"]["api_token_configured"]:
        out["warnings"].append("api_token_missing: requests will be sent without Authorization")

    zones = [z for z in cfg.sync.zones if z.strip()]
    out["checks"]["zones_configured"] = bool(zones)
    if not zones:
        out["errors"].append("zones_empty")
    elif len(set(zones)) != len(zones):
        out["warnings"].append("zones_duplicated")

    bind_host = str(cfg.web_bind_host or "").strip()
    out["checks"]["web_bind_host_configured"] = bool(bind_host)
    if not out["checks"]["web_bind_host_configured"]:
        out["errors"].append("web_bind_host_missing")

    port = int(cfg.web_port)
    out["checks"]["web_port_valid"] = 1 <= port <= 65535
    if not out["checks"]["web_port_valid"]:
        out["errors"].append(f"web_port_out_of_range: {port}")

    poll_interval = int(cfg.sync.poll_interval_sec or 0)
    out["checks"]["poll_interval_valid"] = 0 <= poll_interval <= 86400
    if not out["checks"]["poll_interval_valid"]:
        out["errors"].append(f"poll_interval_out_of_range: {poll_interval}")
    elif 0 < poll_interval < 10:
        out["warnings"].append(f"poll_interval_too_short: {poll_interval} (clamped to 10)")

    try:
        Path(cfg.database.path).parent.mkdir(parents=True, exist_ok=True)
        out["checks"]["database_parent_ready"] = True
    except OSError as e:
        out["errors"].append(f"database_parent_unavailable: {e}")

    try:
        Path(cfg.logging.file).parent.mkdir(parents=True, exist_ok=True)
        out["checks"]["log_parent_ready"] = True
    except OSError as e:
        out["errors"].append(f"log_parent_unavailable: {e}")

    out["ok"] = len(out["errors"]) == 0
    _print_json(out)
    if strict and not out["ok"]:
        raise typer.Exit(2)


@app.command("run-once")
def run_once(
    dry_run: bool = typer.Option(False, "--dry-run", help="Do local preflight only, no remote calls."),
    run_type: str = typer.Option("manual_cli", "--run-type", help="sync run_type label."),
):
    """Run one sync attempt and print summary JSON."""
    cfg = load_config()
    setup_logging(cfg.logging.level, cfg.logging.file)

    if dry_run:
        init_db(cfg.database.path)
        tokens = TokenStore(cfg.database.path).all()
        dirty = LocalStore(cfg.database.path).count_dirty()
        summary = {
            "dry_run": True,
            "run_type": run_type,
            "checked_at": _now_iso(),
            "zones": {z: ("delta" if z in tokens else "full_fetch") for z in cfg.sync.zones},
            "pending_upload": dirty,
            "notes": ["dry_run_skips_remote_operations"],
        }
        _write_last_run(summary)
        _print_json(summary)
        return

    engine = build_engine(cfg)
    summary = engine.start(run_type) or {"fatal_error": "sync_busy"}
    _write_last_run(summary)
    _print_json(summary)
    if summary.get("fatal_error") or int(summary.get("errors", 0)) > 0:
        raise typer.Exit(2)


@app.command("tokens-show")
def tokens_show():
    """Show stored change tokens per zone."""
    cfg = load_config()
    init_db(cfg.database.path)
    _print_json({"zones": cfg.sync.zones, "tokens": TokenStore(cfg.database.path).all()})


@app.command("tokens-clear")
def tokens_clear(
    zone: str = typer.Option(..., "--zone", help="Zone whose change token is discarded."),
):
    """Discard a zone's change token; the next attempt does a full fetch."""
    cfg = load_config()
    init_db(cfg.database.path)
    store = TokenStore(cfg.database.path)
    existed = store.get(zone) is not None
    store.clear(zone)
    _print_json({"ok": True, "zone": zone, "cleared": existed})


@app.command()
def history(limit: int = typer.Option(20, "--limit", min=1, max=500)):
    """Show recent sync attempts."""
    cfg = load_config()
    engine = build_engine(cfg)
    _print_json({"items": engine.recent_runs(limit)})


@app.command()
def serve():
    """Run the service API (uvicorn)."""
    from habitsync.web.main import main as web_main

    web_main()


def main():
    app()


if __name__ == "__main__":
    main()
