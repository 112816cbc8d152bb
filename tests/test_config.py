# tests/test_config.py

from __future__ import annotations

import logging
import os
import re
import runpy
from datetime import UTC, datetime
from pathlib import Path

import pytest

import ontrack.config
from ontrack.cli.bootstrap import create_initial_state
from ontrack.config import Settings
from ontrack.logging_setup import _ConsoleNoiseFilter
from ontrack.remote.supabase_source import SupabaseSolutionSource
from ontrack.tasks.intervals import DEFAULT_EPOCH


@pytest.fixture()
def clean_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> pytest.MonkeyPatch:
    for name in list(os.environ):
        if name.startswith(("ONTRACK_", "SUPABASE_", "MATRIX_")):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("ONTRACK_DATA_DIR", str(tmp_path / "data"))
    return monkeypatch


def test_defaults(clean_env: pytest.MonkeyPatch, tmp_path: Path) -> None:
    s = Settings.from_env()

    assert s.app_name == "ontrack"
    assert s.console_enabled is True
    assert s.matrix_enabled is False
    assert s.tasks_db_path == tmp_path / "data" / "tasks.sqlite3"
    assert s.granularity_seconds == 300
    assert s.interval_epoch == DEFAULT_EPOCH
    assert (s.min_sync_interval, s.sync_interval, s.clock_interval) == (2.0, 60.0, 1.0)
    assert s.remote_configured is False


def test_overrides_and_bad_values(clean_env: pytest.MonkeyPatch) -> None:
    clean_env.setenv("ONTRACK_GRANULARITY_SECONDS", "900")
    clean_env.setenv("ONTRACK_SYNC_INTERVAL", "not-a-number")
    clean_env.setenv("ONTRACK_INTERVAL_EPOCH", "2024-01-01T00:00:00Z")
    clean_env.setenv("ONTRACK_MATRIX_ENABLED", "yes")

    s = Settings.from_env()

    assert s.granularity_seconds == 900
    assert s.sync_interval == 60.0
    assert s.interval_epoch == datetime(2024, 1, 1, tzinfo=UTC)
    assert s.matrix_enabled is True


def test_remote_needs_url_key_and_user(clean_env: pytest.MonkeyPatch) -> None:
    clean_env.setenv("SUPABASE_URL", "https://example.supabase.co")
    clean_env.setenv("SUPABASE_ANON_KEY", "anon")
    assert Settings.from_env().remote_configured is False

    clean_env.setenv("ONTRACK_SUPABASE_USER_ID", "user-1")
    s = Settings.from_env()
    assert s.remote_configured is True
    assert s.supabase_api_key == "anon"


@pytest.mark.asyncio
async def test_bootstrap_wires_remote_only_when_configured(clean_env: pytest.MonkeyPatch) -> None:
    offline = create_initial_state(settings=Settings.from_env())
    assert offline.source is None and offline.reconciler is None
    await offline.store.close()

    clean_env.setenv("ONTRACK_SUPABASE_URL", "https://example.supabase.co")
    clean_env.setenv("ONTRACK_SUPABASE_API_KEY", "anon")
    clean_env.setenv("ONTRACK_SUPABASE_USER_ID", "user-1")
    online = create_initial_state(settings=Settings.from_env())

    assert isinstance(online.source, SupabaseSolutionSource)
    assert online.reconciler is not None
    await online.source.aclose()
    await online.store.close()


def test_console_filter_keeps_app_logs_and_quiets_noise() -> None:
    noise = _ConsoleNoiseFilter()

    def record(name: str, level: int) -> logging.LogRecord:
        return logging.LogRecord(name, level, __file__, 1, "msg", None, None)

    assert noise.filter(record("ontrack.tasks.reconciler", logging.INFO)) is True
    assert noise.filter(record("ontrack.tasks.alerts", logging.INFO)) is False
    assert noise.filter(record("ontrack.connectors.matrix_notifier", logging.WARNING)) is True
    assert noise.filter(record("httpx", logging.WARNING)) is False
    assert noise.filter(record("nio", logging.ERROR)) is True


def test_every_variable_is_documented() -> None:
    documented = runpy.run_path(str(Path(__file__).parents[1] / "config.example.py"))["ENV_VARS"]
    source = Path(ontrack.config.__file__).read_text("utf-8")
    read = {f"ONTRACK_{suffix}" for suffix in re.findall(r'_k\("([A-Z_]+)"\)', source)}

    assert read
    assert read <= set(documented)
