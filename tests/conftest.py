# tests/conftest.py

from __future__ import annotations

from datetime import timedelta
from pathlib import Path
from types import SimpleNamespace

import pytest

from ontrack.core.state import AppState
from ontrack.tasks.blob_store import SqliteBlobStore
from ontrack.tasks.intervals import DEFAULT_EPOCH, IntervalCodec
from ontrack.tasks.reconciler import SyncReconciler
from ontrack.tasks.task_store import TaskStore

from .fakes import FakeClock, FakeMonotonic, FakeSolutionSource, RecordingSink


@pytest.fixture()
def settings(tmp_path: Path) -> SimpleNamespace:
    """
    Minimal settings object compatible with AppState and the composition root.

    We intentionally use a SimpleNamespace rather than importing real config,
    to keep unit tests isolated and deterministic.
    """
    return SimpleNamespace(
        app_name="ontrack-test",
        data_dir=tmp_path,
        tasks_db_path=tmp_path / "tasks.sqlite3",
        matrix_store_path=tmp_path / "matrix_store",
        granularity_seconds=300,
        interval_epoch=DEFAULT_EPOCH,
        min_sync_interval=2.0,
        sync_interval=60.0,
        clock_interval=1.0,
        fallback_models=5,
        console_enabled=False,
        matrix_enabled=False,
        remote_configured=False,
    )


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def monotonic() -> FakeMonotonic:
    return FakeMonotonic()


@pytest.fixture()
def store(settings: SimpleNamespace, clock: FakeClock) -> TaskStore:
    """
    A real TaskStore over SQLite in tmp_path.

    NOTE: the store opens lazily on first use, so sync fixtures are enough here.
    """
    return TaskStore(SqliteBlobStore(settings.tasks_db_path), clock=clock)


@pytest.fixture()
def source() -> FakeSolutionSource:
    return FakeSolutionSource()


@pytest.fixture()
def reconciler(store: TaskStore, source: FakeSolutionSource, monotonic: FakeMonotonic) -> SyncReconciler:
    return SyncReconciler(store, source, monotonic=monotonic)


@pytest.fixture()
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture()
def state(
    settings: SimpleNamespace,
    store: TaskStore,
    source: FakeSolutionSource,
    reconciler: SyncReconciler,
    sink: RecordingSink,
) -> AppState:
    return AppState(
        settings=settings,
        store=store,
        sink=sink,
        codec=IntervalCodec(granularity=timedelta(seconds=settings.granularity_seconds)),
        source=source,
        reconciler=reconciler,
    )
