# src/taskwarden/config.py

"""Centralized settings loaded from environment variables (+ optional .env).

Design goals:
- One Settings object for the whole app.
- Every value has a default; nothing is required at import time.

Environment variables (all prefixed TASKWARDEN_):
- APP_NAME, LOG_LEVEL
- DATA_DIR (default ~/.taskwarden), TASKS_FILE, LOGS_DIR
- AUTO_SAVE (true/false)
- GRACE_PERIOD_SECONDS, CONFLICT_SETTLE_SECONDS, RESTART_DELAY_SECONDS,
  LOG_OPEN_TIMEOUT_SECONDS
- LOG_TAIL_LINES
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

ENV_PREFIX = "TASKWARDEN"


def _k(suffix: str) -> str:
    """Build env var name with the project prefix."""
    return f"{ENV_PREFIX}_{suffix}"


load_dotenv(override=False)


def _env(name: str, default: str = "") -> str:
    v = os.getenv(name)
    return default if v is None else v


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_path(name: str, default: Path) -> Path:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return Path(raw).expanduser()


@dataclass(frozen=True, slots=True)
class Settings:
    # ---- App / logging ----
    app_name: str
    log_level: str

    # ---- Local data paths ----
    data_dir: Path
    tasks_file: Path
    logs_dir: Path

    # ---- Engine ----
    auto_save: bool
    grace_period_seconds: float
    conflict_settle_seconds: float
    restart_delay_seconds: float
    log_open_timeout_seconds: float
    log_tail_lines: int

    @staticmethod
    def from_env() -> "Settings":
        app_name = _env(_k("APP_NAME"), "taskwarden") or "taskwarden"
        log_level = _env(_k("LOG_LEVEL"), "INFO")

        data_dir = _env_path(_k("DATA_DIR"), Path.home() / ".taskwarden")
        tasks_file = _env_path(_k("TASKS_FILE"), data_dir / "tasks.json")
        logs_dir = _env_path(_k("LOGS_DIR"), data_dir / "logs")

        return Settings(
            app_name=app_name,
            log_level=log_level,
            data_dir=data_dir,
            tasks_file=tasks_file,
            logs_dir=logs_dir,
            auto_save=_env_bool(_k("AUTO_SAVE"), True),
            grace_period_seconds=_env_float(_k("GRACE_PERIOD_SECONDS"), 5.0),
            conflict_settle_seconds=_env_float(_k("CONFLICT_SETTLE_SECONDS"), 1.0),
            restart_delay_seconds=_env_float(_k("RESTART_DELAY_SECONDS"), 1.0),
            log_open_timeout_seconds=_env_float(_k("LOG_OPEN_TIMEOUT_SECONDS"), 5.0),
            log_tail_lines=_env_int(_k("LOG_TAIL_LINES"), 50),
        )


SETTINGS = Settings.from_env()


def get_settings() -> Settings:
    return SETTINGS
