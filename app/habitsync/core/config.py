from __future__ import annotations

import os
from pathlib import Path

from pydantic import BaseModel, Field, field_validator

PROJECT_ROOT = Path(os.environ.get("HABITSYNC_HOME") or Path.home() / ".habitsync")
RUNTIME_DIR = PROJECT_ROOT / "runtime"
DEFAULT_CONFIG_PATH = PROJECT_ROOT / "config.yaml"
DEFAULT_CONFIG_TEMPLATE_PATH = PROJECT_ROOT / "config.yaml.example"
LAST_RUN_ONCE_PATH = RUNTIME_DIR / "last_run_once.json"


class RemoteConfig(BaseModel):
    base_url: str = ""
    api_token: str = ""
    timeout_sec: int = Field(default=30, ge=1, le=600)


class SyncConfig(BaseModel):
    zones: list[str] = Field(default_factory=lambda: ["HabitsZone"])
    # 0 means disabled; positive values are seconds between scheduled runs.
    poll_interval_sec: int = Field(default=300, ge=0, le=86400)
    # Quiet period after the last local commit before a sync is triggered.
    debounce_sec: float = Field(default=2.0, ge=0, le=300)
    retry_max_attempts: int = Field(default=3, ge=1, le=10)
    retry_base_delay_sec: float = Field(default=1.0, ge=0, le=60)
    # 0 disables the per-call thread timeout; the HTTP timeout still applies.
    call_timeout_sec: float = Field(default=0, ge=0, le=600)

    @field_validator("zones")
    @classmethod
    def _check_zones(cls, value: list[str]) -> list[str]:
        if not value:
            raise ValueError("zones_required")
        # Double-underscore names are reserved for internal change tokens.
        reserved = [z for z in value if not z or z.startswith("__")]
        if reserved:
            raise ValueError(f"zone_name_invalid: {reserved}")
        return value


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file: str = str(RUNTIME_DIR / "service.log")

    @field_validator("file")
    @classmethod
    def _expand_file(cls, value: str) -> str:
        return str(Path(value).expanduser())


class DatabaseConfig(BaseModel):
    path: str = str(RUNTIME_DIR / "habitsync.db")

    @field_validator("path")
    @classmethod
    def _expand_path(cls, value: str) -> str:
        return str(Path(value).expanduser())


class AppConfig(BaseModel):
    remote: RemoteConfig = Field(default_factory=RemoteConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)

    # Service API
    web_bind_host: str = "127.0.0.1"
    web_port: int = 8766


def ensure_runtime_dirs(cfg: AppConfig):
    Path(cfg.logging.file).parent.mkdir(parents=True, exist_ok=True)
    Path(cfg.database.path).parent.mkdir(parents=True, exist_ok=True)


def load_config(path: Path = DEFAULT_CONFIG_PATH) -> AppConfig:
    import yaml

    if not path.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
        if DEFAULT_CONFIG_TEMPLATE_PATH.exists():
            try:
                template_text = DEFAULT_CONFIG_TEMPLATE_PATH.read_text(encoding="utf-8")
                data = yaml.safe_load(template_text) or {}
                cfg = AppConfig.model_validate(data)
                path.write_text(template_text, encoding="utf-8")
            except Exception:
                cfg = AppConfig()
                path.write_text(yaml.safe_dump(cfg.model_dump(), allow_unicode=True, sort_keys=False), encoding="utf-8")
        else:
            cfg = AppConfig()
            path.write_text(yaml.safe_dump(cfg.model_dump(), allow_unicode=True, sort_keys=False), encoding="utf-8")
        ensure_runtime_dirs(cfg)
        return cfg

    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    cfg = AppConfig.model_validate(data)
    ensure_runtime_dirs(cfg)
    return cfg


def save_config(cfg: AppConfig, path: Path = DEFAULT_CONFIG_PATH):
    import yaml

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(cfg.model_dump(), allow_unicode=True, sort_keys=False), encoding="utf-8")
