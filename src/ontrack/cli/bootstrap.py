# src/ontrack/cli/bootstrap.py

"""
CLI bootstrap helpers.

This module is the "composition root":
- loads settings once,
- ensures local (gitignored) directories exist,
- wires concrete implementations into AppState (store/remote source/reconciler/sinks).
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import timedelta

from ..config import Settings, get_settings
from ..connectors.log_notifier import FanoutNotifier, LogNotifier
from ..core.state import AppState
from ..remote.supabase_source import SupabaseSolutionSource
from ..tasks.blob_store import SqliteBlobStore
from ..tasks.intervals import IntervalCodec
from ..tasks.reconciler import SyncReconciler
from ..tasks.task_store import TaskStore

logger = logging.getLogger(__name__)


def _ensure_local_dirs(settings: Settings) -> None:
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    settings.tasks_db_path.parent.mkdir(parents=True, exist_ok=True)
    if settings.matrix_enabled:
        settings.matrix_store_path.mkdir(parents=True, exist_ok=True)


def build_codec(settings: Settings) -> IntervalCodec:
    return IntervalCodec(
        epoch=settings.interval_epoch,
        granularity=timedelta(seconds=settings.granularity_seconds),
    )


def create_initial_state(
    *,
    settings: Settings | None = None,
    emit: Callable[[str], None] | None = None,
) -> AppState:
    """
    Create AppState from the provided settings.

    Keeping settings injectable makes the app easier to test and avoids hidden global config reads.
    If settings is None, falls back to get_settings(). The store is created closed; open() it
    on the event loop that will use it.
    """
    if settings is None:
        settings = get_settings()

    _ensure_local_dirs(settings)

    codec = build_codec(settings)
    store = TaskStore(SqliteBlobStore(settings.tasks_db_path))

    source: SupabaseSolutionSource | None = None
    reconciler: SyncReconciler | None = None
    if settings.remote_configured:
        source = SupabaseSolutionSource.from_settings(settings)
        reconciler = SyncReconciler(
            store,
            source,
            codec=codec,
            min_interval_seconds=settings.min_sync_interval,
        )
    else:
        logger.info("Remote solver not configured; running offline only.")

    return AppState(
        settings=settings,
        store=store,
        sink=FanoutNotifier([LogNotifier(emit)]),
        codec=codec,
        source=source,
        reconciler=reconciler,
    )
