# src/ontrack/config.py

"""Centralized settings loaded from environment variables (+ optional .env).

Design goals:
- One Settings object for the whole app (normal "settings layer").
- No secrets required at import time: the remote source is only built when configured.
- Components receive settings explicitly; get_settings() is for the composition root.
"""

from __future__ import annotations

import os
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache
from pathlib import Path
from typing import TypeVar

from dotenv import load_dotenv

from .tasks.intervals import DEFAULT_EPOCH
from .tasks.task_models import parse_ts

ENV_PREFIX = "ONTRACK"

_N = TypeVar("_N", int, float)


def _k(suffix: str) -> str:
    """Build env var name with the project prefix."""
    return f"{ENV_PREFIX}_{suffix}"


def _env(name: str, default: str = "") -> str:
    v = os.getenv(name)
    return default if v is None else v


def _first_env(*names: str, default: str | None = None) -> str | None:
    for n in names:
        v = os.getenv(n)
        if v is not None and v.strip() != "":
            return v
    return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_num(name: str, default: _N, cast: Callable[[str], _N]) -> _N:
    """Numeric env var; empty or unparsable values fall back to the default."""
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return cast(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    return _env_num(name, default, int)


def _env_float(name: str, default: float) -> float:
    return _env_num(name, default, float)


def _env_path(name: str, default: Path) -> Path:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return Path(raw).expanduser()


def _env_datetime(name: str, default: datetime) -> datetime:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return parse_ts(raw.strip())
    except ValueError:
        return default


@dataclass(frozen=True, slots=True)
class Settings:
    # ---- App / logging ----
    app_name: str
    log_level: str

    # ---- Connector flags ----
    console_enabled: bool
    matrix_enabled: bool

    # ---- Local data paths (ignored by git) ----
    data_dir: Path
    tasks_db_path: Path
    matrix_store_path: Path

    # ---- Schedule / sync tuning ----
    granularity_seconds: int
    interval_epoch: datetime
    min_sync_interval: float
    sync_interval: float
    clock_interval: float
    fallback_models: int

    # ---- Remote solver (Supabase) ----
    supabase_url: str
    supabase_api_key: str
    supabase_access_token: str
    supabase_user_id: str
    http_timeout: float

    # ---- Matrix ----
    matrix_homeserver: str
    matrix_user_id: str
    matrix_password: str
    matrix_notify_room: str

    @property
    def remote_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_api_key and self.supabase_user_id)

    @staticmethod
    def from_env() -> "Settings":
        app_name = _env(_k("APP_NAME"), "ontrack") or "ontrack"
        log_level = _env(_k("LOG_LEVEL"), "INFO")

        console_enabled = _env_bool(_k("CONSOLE_ENABLED"), True)
        matrix_enabled = _env_bool(_k("MATRIX_ENABLED"), False)

        data_dir = _env_path(_k("DATA_DIR"), Path(".local/ontrack"))
        tasks_db_path = _env_path(_k("TASKS_DB_PATH"), data_dir / "tasks.sqlite3")
        matrix_store_path = _env_path(_k("MATRIX_STORE_PATH"), data_dir / "matrix_store")

        granularity_seconds = max(1, _env_int(_k("GRANULARITY_SECONDS"), 300))
        interval_epoch = _env_datetime(_k("INTERVAL_EPOCH"), DEFAULT_EPOCH)
        min_sync_interval = _env_float(_k("MIN_SYNC_INTERVAL"), 2.0)
        sync_interval = _env_float(_k("SYNC_INTERVAL"), 60.0)
        clock_interval = _env_float(_k("CLOCK_INTERVAL"), 1.0)
        fallback_models = _env_int(_k("FALLBACK_MODELS"), 5)

        supabase_url = (_first_env(_k("SUPABASE_URL"), "SUPABASE_URL", default="") or "").strip()
        supabase_api_key = (_first_env(_k("SUPABASE_API_KEY"), "SUPABASE_ANON_KEY", default="") or "").strip()
        supabase_access_token = (_env(_k("SUPABASE_ACCESS_TOKEN"), "")).strip()
        supabase_user_id = (_env(_k("SUPABASE_USER_ID"), "")).strip()
        http_timeout = _env_float(_k("HTTP_TIMEOUT"), 30.0)

        matrix_homeserver = (_first_env(_k("MATRIX_HOMESERVER"), "MATRIX_HOMESERVER", default="") or "").strip()
        matrix_user_id = (_first_env(_k("MATRIX_USER_ID"), "MATRIX_USER_ID", default="") or "").strip()
        matrix_password = (_first_env(_k("MATRIX_PASSWORD"), "MATRIX_PASSWORD", default="") or "").strip()
        matrix_notify_room = (_env(_k("MATRIX_NOTIFY_ROOM"), "")).strip()

        return Settings(
            app_name=app_name,
            log_level=log_level,
            console_enabled=console_enabled,
            matrix_enabled=matrix_enabled,
            data_dir=data_dir,
            tasks_db_path=tasks_db_path,
            matrix_store_path=matrix_store_path,
            granularity_seconds=granularity_seconds,
            interval_epoch=interval_epoch,
            min_sync_interval=min_sync_interval,
            sync_interval=sync_interval,
            clock_interval=clock_interval,
            fallback_models=fallback_models,
            supabase_url=supabase_url,
            supabase_api_key=supabase_api_key,
            supabase_access_token=supabase_access_token,
            supabase_user_id=supabase_user_id,
            http_timeout=http_timeout,
            matrix_homeserver=matrix_homeserver,
            matrix_user_id=matrix_user_id,
            matrix_password=matrix_password,
            matrix_notify_room=matrix_notify_room,
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    # .env never overrides variables already set in the process environment
    load_dotenv(override=False)
    return Settings.from_env()
