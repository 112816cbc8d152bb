# src/ontrack/tasks/drivers.py

from __future__ import annotations

"""
Periodic drivers.

Two independent polling loops, owned by the composition root:
- run_clock_loop: re-reads the store every tick, evaluates the schedule and
  hands due notification triggers to a NotificationSink.
- run_sync_loop: runs SyncReconciler.sync() on a timer, or right away when
  something calls SyncTriggers.kick() (a user message in the Matrix room,
  SIGUSR1 from outside the process).

To stop a driver, cancel the coroutine/task.
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime

from ..core.ports import NotificationSink, TaskRepo
from .alerts import AlertTracker, NotificationTrigger, due_triggers
from .reconciler import SyncReconciler, SyncResult
from .task_models import utc_now

logger = logging.getLogger(__name__)


class SyncTriggers:
    """Out-of-band sync requests. Multiple kicks before the loop wakes collapse into one."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reasons: list[str] = []

    def kick(self, reason: str = "manual") -> None:
        self._reasons.append(reason)
        self._event.set()

    @property
    def pending(self) -> bool:
        return self._event.is_set()

    async def wait(self, timeout: float | None = None) -> list[str]:
        """Wait for a kick. Returns the collected reasons, or [] on timeout."""
        try:
            await asyncio.wait_for(self._event.wait(), timeout=timeout)
        except TimeoutError:
            return []
        return self.drain()

    def drain(self) -> list[str]:
        reasons, self._reasons = self._reasons, []
        self._event.clear()
        return reasons


async def clock_tick(
        store: TaskRepo,
        sink: NotificationSink,
        alerts: AlertTracker,
        now: datetime,
) -> list[NotificationTrigger]:
    """One evaluation pass. Returns the triggers that were delivered."""
    tasks = await store.get_all()
    by_id = {t.id: t for t in tasks}

    delivered: list[NotificationTrigger] = []
    for trigger in due_triggers(tasks, now, alerts):
        try:
            await sink.notify(trigger, by_id[trigger.task_id])
        except Exception:
            # already marked fired; a failed delivery is not retried
            logger.exception("notify failed task_id=%s kind=%s", trigger.task_id, trigger.kind.value)
            continue
        delivered.append(trigger)
    return delivered


async def run_clock_loop(
        store: TaskRepo,
        sink: NotificationSink,
        alerts: AlertTracker,
        *,
        interval_seconds: float = 1.0,
        clock: Callable[[], datetime] = utc_now,
) -> None:
    sleep_s = max(0.05, float(interval_seconds))
    logger.info("Clock loop started (interval=%.2fs)", sleep_s)

    while True:
        try:
            await clock_tick(store, sink, alerts, clock())
        except Exception:
            logger.exception("clock tick failed")

        await asyncio.sleep(sleep_s)


async def run_sync_loop(
        reconciler: SyncReconciler,
        triggers: SyncTriggers,
        *,
        interval_seconds: float = 60.0,
        on_result: Callable[[SyncResult], None] | None = None,
) -> None:
    """
    Sync once at startup, then every interval_seconds or on kick.

    A kick that lands inside the reconciler's throttle window is answered
    with "Sync throttled"; the next timer tick picks the change up.
    """
    sleep_s = max(0.5, float(interval_seconds))
    logger.info("Sync loop started (interval=%.1fs)", sleep_s)

    reasons = ["startup"]
    while True:
        logger.debug("Sync requested: %s", ", ".join(reasons) or "timer")
        try:
            result = await reconciler.sync()
            if not result.success:
                logger.info("Sync did not run cleanly: %s", result.error)
            if on_result is not None:
                on_result(result)
        except Exception:
            logger.exception("sync tick failed")

        reasons = await triggers.wait(timeout=sleep_s)
