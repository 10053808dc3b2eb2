from __future__ import annotations

import os
from pathlib import Path

from pydantic import BaseModel, Field

DEFAULT_FOLDER_TITLE = "My Tracks"


class DriveAuthConfig(BaseModel):
    # JSON file holding {"access_token": ...}; obtaining and refreshing it is
    # handled outside this service.
    token_file: str = ""
    timeout_sec: int = 30


class SyncConfig(BaseModel):
    # Identity the persisted cursor and pending deletions are keyed by.
    account: str = "default"
    folder_title: str = DEFAULT_FOLDER_TITLE
    # When set, skips the folder lookup by title.
    folder_id: str = ""
    page_size: int = Field(default=100, ge=1, le=1000)
    # Bounded pool for per-file snapshot fetches and per-track uploads.
    max_workers: int = Field(default=4, ge=1, le=32)
    # Failed new-file imports are retried on later cycles this many times.
    max_import_retry: int = Field(default=5, ge=0)


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file: str = str(Path("runtime") / "tracksync.log")


class DatabaseConfig(BaseModel):
    path: str = str(Path("runtime") / "tracksync.db")


class AppConfig(BaseModel):
    auth: DriveAuthConfig = Field(default_factory=DriveAuthConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)


PROJECT_ROOT = Path(os.environ.get("TRACKSYNC_HOME", ".")).expanduser()
RUNTIME_DIR = PROJECT_ROOT / "runtime"
DEFAULT_CONFIG_PATH = Path(os.environ.get("TRACKSYNC_CONFIG", str(PROJECT_ROOT / "config.yaml")))
DEFAULT_CONFIG_TEMPLATE_PATH = PROJECT_ROOT / "config.yaml.example"
LAST_RUN_ONCE_PATH = RUNTIME_DIR / "last_run_once.json"


def ensure_runtime_dirs(cfg: AppConfig):
    Path(cfg.logging.file).parent.mkdir(parents=True, exist_ok=True)
    Path(cfg.database.path).parent.mkdir(parents=True, exist_ok=True)


def _dump(cfg: AppConfig) -> str:
    import yaml

    return yaml.safe_dump(cfg.model_dump(), allow_unicode=True, sort_keys=False)


def load_config(path: Path = DEFAULT_CONFIG_PATH) -> AppConfig:
    import yaml

    if not path.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
        cfg = AppConfig()
        text = _dump(cfg)
        if DEFAULT_CONFIG_TEMPLATE_PATH.exists():
            template_text = DEFAULT_CONFIG_TEMPLATE_PATH.read_text(encoding="utf-8")
            try:
                cfg = AppConfig.model_validate(yaml.safe_load(template_text) or {})
                text = template_text
            except Exception:
                # Broken template: fall back to defaults rather than refusing to start.
                cfg = AppConfig()
        path.write_text(text, encoding="utf-8")
        ensure_runtime_dirs(cfg)
        return cfg

    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    cfg = AppConfig.model_validate(data)
    ensure_runtime_dirs(cfg)
    return cfg


def save_config(cfg: AppConfig, path: Path = DEFAULT_CONFIG_PATH):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(_dump(cfg), encoding="utf-8")
