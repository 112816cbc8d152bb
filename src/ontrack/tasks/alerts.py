# src/ontrack/tasks/alerts.py

from __future__ import annotations

"""
Notification triggers.

The clock loop asks due_triggers() every tick. A trigger is due when a task
boundary has just been crossed:
- start:    no task running, the next task starts within (now - 10s, now + 2s]
- complete: the running task ends within (now - 2s, now]

AlertTracker remembers what already fired (in memory only) so a trigger is
delivered at most once per process.
"""

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import StrEnum

from .schedule_clock import current_task, next_task
from .task_models import Task

logger = logging.getLogger(__name__)

START_LOOKBEHIND = timedelta(seconds=10)
START_LOOKAHEAD = timedelta(seconds=2)
COMPLETE_LOOKBEHIND = timedelta(seconds=2)

COMPLETION_SUFFIX = "_completion"


class TriggerKind(StrEnum):
    START = "start"
    COMPLETE = "complete"


@dataclass(frozen=True, slots=True)
class NotificationTrigger:
    task_id: str
    kind: TriggerKind
    trigger_at: datetime
    task_name: str

    @property
    def alert_key(self) -> str:
        return alert_key(self.task_id, self.kind)


def alert_key(task_id: str, kind: TriggerKind) -> str:
    return task_id if kind == TriggerKind.START else f"{task_id}{COMPLETION_SUFFIX}"


class AlertTracker:
    def __init__(self) -> None:
        self._fired: set[str] = set()

    def has_fired(self, trigger: NotificationTrigger) -> bool:
        return trigger.alert_key in self._fired

    def mark_fired(self, trigger: NotificationTrigger) -> None:
        self._fired.add(trigger.alert_key)

    def forget(self, task_id: str) -> None:
        """Drop both keys of a task (e.g. after the user deleted it)."""
        self._fired.discard(task_id)
        self._fired.discard(f"{task_id}{COMPLETION_SUFFIX}")

    def clear(self) -> None:
        self._fired.clear()

    def __len__(self) -> int:
        return len(self._fired)

    def __contains__(self, key: object) -> bool:
        return key in self._fired


def candidate_triggers(tasks: Iterable[Task], now: datetime) -> list[NotificationTrigger]:
    """Triggers whose window contains `now`, regardless of what already fired."""
    tasks = list(tasks)
    out: list[NotificationTrigger] = []

    running = current_task(tasks, now)
    if running is not None:
        if now - COMPLETE_LOOKBEHIND < running.end_time <= now:
            out.append(
                NotificationTrigger(
                    task_id=running.id,
                    kind=TriggerKind.COMPLETE,
                    trigger_at=running.end_time,
                    task_name=running.name,
                )
            )
        return out

    # next_task only looks at start_time > now; the start window reaches back 10s
    upcoming = next_task(tasks, now - START_LOOKBEHIND)
    if upcoming is not None and now - START_LOOKBEHIND < upcoming.start_time <= now + START_LOOKAHEAD:
        out.append(
            NotificationTrigger(
                task_id=upcoming.id,
                kind=TriggerKind.START,
                trigger_at=upcoming.start_time,
                task_name=upcoming.name,
            )
        )
    return out


def due_triggers(tasks: Iterable[Task], now: datetime, tracker: AlertTracker) -> list[NotificationTrigger]:
    """
    Triggers to deliver now. Marks them fired in `tracker`.

    A fired trigger is never re-armed, even if the task's timing changes later.
    """
    due: list[NotificationTrigger] = []
    for trigger in candidate_triggers(tasks, now):
        if tracker.has_fired(trigger):
            continue
        tracker.mark_fired(trigger)
        logger.info("Trigger due: %s %s (%s)", trigger.kind.value, trigger.task_id, trigger.task_name)
        due.append(trigger)
    return due
