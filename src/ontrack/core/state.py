# src/ontrack/core/state.py

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from typing import TYPE_CHECKING

from ..tasks.alerts import AlertTracker
from ..tasks.drivers import SyncTriggers
from ..tasks.intervals import IntervalCodec
from ..tasks.task_store import TaskStore
from .ports import NotificationSink, RemoteSolutionSource

if TYPE_CHECKING:
    from ..config import Settings
    from ..tasks.reconciler import SyncReconciler, SyncResult


@dataclass
class AppState:
    settings: Settings
    store: TaskStore
    sink: NotificationSink
    codec: IntervalCodec

    # None when no remote solver is configured (offline-only mode)
    source: RemoteSolutionSource | None = None
    reconciler: SyncReconciler | None = None
    last_sync: SyncResult | None = None

    alerts: AlertTracker = field(default_factory=AlertTracker)
    sync_triggers: SyncTriggers = field(default_factory=SyncTriggers)

    @property
    def granularity(self) -> timedelta:
        return self.codec.granularity
