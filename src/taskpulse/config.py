# src/taskpulse/config.py

"""Centralized settings loaded from environment variables (+ optional .env).

- One Settings object for the whole app.
- No secrets required at import time.
- Components receive settings explicitly; nothing in the core reads the environment.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

ENV_PREFIX = "TASKPULSE"


def _k(suffix: str) -> str:
    """Build env var name with the project prefix."""
    return f"{ENV_PREFIX}_{suffix}"


def _env(name: str, default: str = "") -> str:
    v = os.getenv(name)
    return default if v is None else v


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
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


def _env_float(name: str, default: float | None) -> float | None:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_list(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return tuple(item.strip() for item in raw.split(",") if item.strip())


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

    # ---- Local data paths (ignored by git) ----
    data_dir: Path
    tasks_db_path: Path
    owners_path: Path

    # ---- Heartbeat ----
    heartbeat_seconds: float
    dispatch_wait_seconds: float | None
    default_timezone: str

    # ---- Executor ----
    executor_url: str
    executor_token: str | None
    executor_timeout_seconds: float

    # ---- Matrix ----
    matrix_enabled: bool
    matrix_homeserver: str
    matrix_user_id: str
    matrix_password: str
    matrix_store_path: Path

    # ---- Schedule digest (owners with schedule_context) ----
    schedule_markers: tuple[str, ...] = ("PLANNING_KIND", "REPORT_KIND")
    schedule_horizon_hours: int = 168

    @staticmethod
    def from_env(*, load_env_file: bool = True) -> "Settings":
        if load_env_file:
            load_dotenv(override=False)

        data_dir = _env_path(_k("DATA_DIR"), Path(".local/taskpulse"))

        return Settings(
            app_name=_env(_k("APP_NAME"), "taskpulse") or "taskpulse",
            log_level=_env(_k("LOG_LEVEL"), "INFO").upper(),
            data_dir=data_dir,
            tasks_db_path=_env_path(_k("TASKS_DB_PATH"), data_dir / "tasks.sqlite3"),
            owners_path=_env_path(_k("OWNERS_PATH"), data_dir / "owners.json"),
            heartbeat_seconds=_env_float(_k("HEARTBEAT_SECONDS"), 30.0) or 30.0,
            dispatch_wait_seconds=_env_float(_k("DISPATCH_WAIT_SECONDS"), None),
            default_timezone=_env(_k("DEFAULT_TIMEZONE"), "UTC").strip() or "UTC",
            executor_url=_env(_k("EXECUTOR_URL"), "http://127.0.0.1:8700").strip().rstrip("/"),
            executor_token=_env(_k("EXECUTOR_TOKEN"), "").strip() or None,
            executor_timeout_seconds=_env_float(_k("EXECUTOR_TIMEOUT_SECONDS"), 600.0) or 600.0,
            matrix_enabled=_env_bool(_k("MATRIX_ENABLED"), False),
            matrix_homeserver=_env(_k("MATRIX_HOMESERVER"), "").strip(),
            matrix_user_id=_env(_k("MATRIX_USER_ID"), "").strip(),
            matrix_password=_env(_k("MATRIX_PASSWORD"), "").strip(),
            matrix_store_path=_env_path(_k("MATRIX_STORE_PATH"), data_dir / "matrix_store"),
            schedule_markers=_env_list(_k("SCHEDULE_MARKERS"), ("PLANNING_KIND", "REPORT_KIND")),
            schedule_horizon_hours=max(1, _env_int(_k("SCHEDULE_HORIZON_HOURS"), 168)),
        )


_SETTINGS: Settings | None = None


def get_settings() -> Settings:
    global _SETTINGS
    if _SETTINGS is None:
        _SETTINGS = Settings.from_env()
    return _SETTINGS
