# src/ontrack/tasks/schedule_clock.py

"""
Time-window evaluation.

Pure functions of (tasks, now): no I/O and no status changes, safe to call
every tick. Transitions are only ever made by explicit user or notification
actions (see transitions.py).
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta

from .intervals import DEFAULT_GRANULARITY
from .task_models import Task, TaskStatus

# statuses that never count as "next up"
_NOT_UPCOMING = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.CANCELLED, TaskStatus.IN_PROGRESS, TaskStatus.PAUSED}
)


@dataclass(frozen=True, slots=True)
class Countdown:
    hours: int
    minutes: int
    seconds: int
    total_seconds: float
    is_overtime: bool = False
    ready_to_complete: bool = False


@dataclass(frozen=True, slots=True)
class ScheduleView:
    now: datetime
    current: Task | None
    next: Task | None
    paused: list[Task]
    remaining: Countdown | None
    until_next: Countdown | None
    next_ready_to_start: bool


def _by_start(tasks: Iterable[Task]) -> list[Task]:
    return sorted(tasks, key=lambda t: t.start_time)


def current_task(tasks: Iterable[Task], now: datetime) -> Task | None:
    """The running task. If more than one is running, the first one wins."""
    for task in tasks:
        if task.status == TaskStatus.IN_PROGRESS:
            return task
    return None


def upcoming_tasks(tasks: Iterable[Task], now: datetime) -> list[Task]:
    return _by_start(t for t in tasks if t.status not in _NOT_UPCOMING and t.start_time > now)


def next_task(tasks: Iterable[Task], now: datetime) -> Task | None:
    upcoming = upcoming_tasks(tasks, now)
    return upcoming[0] if upcoming else None


def paused_tasks(tasks: Iterable[Task]) -> list[Task]:
    return _by_start(t for t in tasks if t.status == TaskStatus.PAUSED)


def ready_to_start(task: Task, now: datetime, granularity: timedelta = DEFAULT_GRANULARITY) -> bool:
    # a window that has fully elapsed is never startable
    if task.end_time <= now:
        return False
    if task.status in (TaskStatus.IN_PROGRESS, TaskStatus.COMPLETED):
        return False
    return task.start_time - now <= granularity / 2


def ready_to_complete(task: Task, now: datetime, granularity: timedelta = DEFAULT_GRANULARITY) -> bool:
    if task.status != TaskStatus.IN_PROGRESS:
        return False
    return task.end_time - now <= granularity / 2


def is_overtime(task: Task, now: datetime) -> bool:
    return task.status == TaskStatus.IN_PROGRESS and now >= task.end_time


def _split(delta: timedelta) -> tuple[int, int, int]:
    total = max(0, int(delta.total_seconds()))
    hours, rest = divmod(total, 3600)
    minutes, seconds = divmod(rest, 60)
    return hours, minutes, seconds


def remaining(task: Task, now: datetime, granularity: timedelta = DEFAULT_GRANULARITY) -> Countdown:
    """Time left until end_time, clamped to zero at/after the end."""
    overtime = is_overtime(task, now)
    left = max(timedelta(0), task.end_time - now)
    hours, minutes, seconds = _split(left)
    return Countdown(
        hours=hours,
        minutes=minutes,
        seconds=seconds,
        total_seconds=left.total_seconds(),
        is_overtime=overtime,
        ready_to_complete=overtime or ready_to_complete(task, now, granularity),
    )


def time_until(task: Task, now: datetime) -> Countdown:
    """Time left until start_time, clamped to zero."""
    left = max(timedelta(0), task.start_time - now)
    hours, minutes, seconds = _split(left)
    return Countdown(hours=hours, minutes=minutes, seconds=seconds, total_seconds=left.total_seconds())


def format_countdown(countdown: Countdown) -> str:
    return f"{countdown.hours:02d}:{countdown.minutes:02d}:{countdown.seconds:02d}"


def evaluate(
    tasks: list[Task],
    now: datetime,
    granularity: timedelta = DEFAULT_GRANULARITY,
) -> ScheduleView:
    current = current_task(tasks, now)
    upcoming = next_task(tasks, now)
    return ScheduleView(
        now=now,
        current=current,
        next=upcoming,
        paused=paused_tasks(tasks),
        remaining=remaining(current, now, granularity) if current else None,
        until_next=time_until(upcoming, now) if upcoming else None,
        next_ready_to_start=bool(upcoming and ready_to_start(upcoming, now, granularity)),
    )
