# src/ontrack/tasks/transitions.py

from __future__ import annotations

"""
Task status transitions.

Every transition is a TaskStore update plus an Action record. The same
handlers serve the console/UI and notification action buttons
(via_notification=True), so both paths leave an identical audit trail.

  pending     -> in_progress | cancelled
  in_progress -> completed | paused | cancelled
  paused      -> in_progress (resume) | cancelled
  completed, cancelled: terminal
"""

import logging
from datetime import datetime

from ..core.ports import TaskRepo
from .errors import InvalidTransition
from .task_models import TERMINAL_TIMESTAMP_FIELD, ActionType, Task, TaskStatus, utc_now

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.CANCELLED}),
    TaskStatus.IN_PROGRESS: frozenset({TaskStatus.COMPLETED, TaskStatus.PAUSED, TaskStatus.CANCELLED}),
    TaskStatus.PAUSED: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.CANCELLED}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}


def check_transition(task: Task, target: TaskStatus) -> None:
    if target not in ALLOWED_TRANSITIONS[task.status]:
        raise InvalidTransition(task.id, task.status.value, target.value)


def _clock_text(now: datetime) -> str:
    return now.astimezone().strftime("%H:%M:%S")


def describe(verb: str, now: datetime, *, via_notification: bool) -> str:
    source = " via notification" if via_notification else ""
    return f"{verb}{source} at {_clock_text(now)}"


async def _transition(
    store: TaskRepo,
    task_id: str,
    target: TaskStatus,
    action_type: ActionType,
    verb: str,
    *,
    via_notification: bool,
    now: datetime | None,
) -> Task | None:
    task = await store.get_by_id(task_id)
    if task is None:
        logger.warning("Task not found for %s: %s", verb.lower(), task_id)
        return None

    try:
        check_transition(task, target)
    except InvalidTransition as e:
        logger.warning("Rejected transition: %s", e)
        return None

    now = now or utc_now()

    # the store pauses any other running task; remember which so the log says so
    displaced: list[Task] = []
    if target == TaskStatus.IN_PROGRESS:
        displaced = [t for t in await store.get_all() if t.status == TaskStatus.IN_PROGRESS and t.id != task_id]

    patch: dict[str, object] = {"status": target}
    stamp_field = TERMINAL_TIMESTAMP_FIELD.get(target)
    if stamp_field:
        patch[stamp_field] = now

    updated = await store.update(task_id, patch)
    if updated is None:
        return None

    for other in displaced:
        await store.record_action(
            ActionType.TASK_PAUSED,
            other.id,
            other.name,
            f"Auto-paused at {_clock_text(now)} ({updated.name} started)",
        )

    await store.record_action(
        action_type,
        updated.id,
        updated.name,
        describe(verb, now, via_notification=via_notification),
    )
    logger.info("%s task %s (%s)", verb, updated.id, updated.name)
    return updated


async def start_task(
    store: TaskRepo, task_id: str, *, via_notification: bool = False, now: datetime | None = None
) -> Task | None:
    return await _transition(
        store,
        task_id,
        TaskStatus.IN_PROGRESS,
        ActionType.TASK_STARTED,
        "Started",
        via_notification=via_notification,
        now=now,
    )


async def resume_task(
    store: TaskRepo, task_id: str, *, via_notification: bool = False, now: datetime | None = None
) -> Task | None:
    task = await store.get_by_id(task_id)
    if task is not None and task.status != TaskStatus.PAUSED:
        logger.warning("Cannot resume task %s: status is %s", task_id, task.status.value)
        return None
    return await _transition(
        store,
        task_id,
        TaskStatus.IN_PROGRESS,
        ActionType.TASK_RESUMED,
        "Resumed",
        via_notification=via_notification,
        now=now,
    )


async def pause_task(
    store: TaskRepo, task_id: str, *, via_notification: bool = False, now: datetime | None = None
) -> Task | None:
    return await _transition(
        store,
        task_id,
        TaskStatus.PAUSED,
        ActionType.TASK_PAUSED,
        "Paused",
        via_notification=via_notification,
        now=now,
    )


async def complete_task(
    store: TaskRepo, task_id: str, *, via_notification: bool = False, now: datetime | None = None
) -> Task | None:
    return await _transition(
        store,
        task_id,
        TaskStatus.COMPLETED,
        ActionType.TASK_COMPLETED,
        "Completed",
        via_notification=via_notification,
        now=now,
    )


async def cancel_task(
    store: TaskRepo, task_id: str, *, via_notification: bool = False, now: datetime | None = None
) -> Task | None:
    return await _transition(
        store,
        task_id,
        TaskStatus.CANCELLED,
        ActionType.TASK_CANCELLED,
        "Cancelled",
        via_notification=via_notification,
        now=now,
    )


async def skip_task(
    store: TaskRepo, task_id: str, *, via_notification: bool = False, now: datetime | None = None
) -> Task | None:
    """Drop a task that has not been started; recorded as task_skipped."""
    task = await store.get_by_id(task_id)
    if task is not None and task.status != TaskStatus.PENDING:
        logger.warning("Cannot skip task %s: status is %s", task_id, task.status.value)
        return None
    return await _transition(
        store,
        task_id,
        TaskStatus.CANCELLED,
        ActionType.TASK_SKIPPED,
        "Skipped",
        via_notification=via_notification,
        now=now,
    )
