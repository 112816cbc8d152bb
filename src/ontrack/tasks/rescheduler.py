# src/ontrack/tasks/rescheduler.py

from __future__ import annotations

"""
Rescheduling of expired tasks.

An expired task is pushed back by a progressive delay (5, 15, 30 then 60
minutes, by how often it was already moved) into the first free slot
before the end of the local day. The remaining pending tasks are then
greedily repacked: higher priority first, earlier original start first.

Planning (reschedule_task, greedy_repack) is pure; apply_* writes through
the TaskStore and records task_rescheduled / task_skipped actions.
A task that cannot be fitted keeps its status; only the skip is logged.
"""

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, tzinfo

from ..core.ports import TaskRepo
from .task_models import ActionType, Task, TaskStatus, utc_now

logger = logging.getLogger(__name__)

DELAY_SCHEDULE_MINUTES = (5, 15, 30, 60)
MIN_TASK_GAP = timedelta(minutes=1)

# statuses that never block a slot
_NON_BLOCKING = frozenset({TaskStatus.CANCELLED})
# statuses repack must not move
_FIXED = frozenset({TaskStatus.COMPLETED, TaskStatus.IN_PROGRESS})
# only a task that never started can be pushed back
RESCHEDULABLE = frozenset({TaskStatus.PENDING})


@dataclass(slots=True)
class Placement:
    task: Task  # the task with its planned timing applied
    moved: bool


@dataclass(slots=True)
class RescheduleResult:
    success: bool
    message: str
    new_start_time: datetime | None = None
    new_end_time: datetime | None = None
    repacked: list[Placement] = field(default_factory=list)
    failed: list[Task] = field(default_factory=list)


def next_delay(reschedule_count: int) -> timedelta:
    count = max(0, reschedule_count)
    return timedelta(minutes=DELAY_SCHEDULE_MINUTES[min(count, len(DELAY_SCHEDULE_MINUTES) - 1)])


def end_of_day(moment: datetime, tz: tzinfo | None = None) -> datetime:
    """23:59:59.999 on the local calendar day of `moment` (tz=None: system local time)."""
    local = moment.astimezone(tz)
    return local.replace(hour=23, minute=59, second=59, microsecond=999000)


def _blocking(tasks: Iterable[Task], exclude_id: str | None) -> list[Task]:
    out = [t for t in tasks if t.id != exclude_id and t.status not in _NON_BLOCKING]
    out.sort(key=lambda t: t.start_time)
    return out


def is_slot_available(
        start: datetime,
        end: datetime,
        tasks: Iterable[Task],
        exclude_id: str | None = None,
) -> bool:
    return not any(start < t.end_time and end > t.start_time for t in _blocking(tasks, exclude_id))


def find_next_slot(
        duration: timedelta,
        start_after: datetime,
        tasks: Iterable[Task],
        exclude_id: str | None = None,
        *,
        tz: tzinfo | None = None,
) -> datetime | None:
    """Earliest whole-minute start >= start_after that fits before end of day, or None."""
    limit = end_of_day(start_after, tz)
    blocking = _blocking(tasks, exclude_id)

    candidate = start_after.replace(second=0, microsecond=0)
    if candidate < start_after:
        candidate += timedelta(minutes=1)

    while candidate + duration <= limit:
        if is_slot_available(candidate, candidate + duration, blocking):
            return candidate

        # jump past the first task still running at the candidate start
        blocker_end = next((t.end_time for t in blocking if t.end_time > candidate), None)
        if blocker_end is None:
            candidate += timedelta(minutes=1)
        else:
            candidate = blocker_end + MIN_TASK_GAP
    return None


def reschedule_task(
        task: Task,
        all_tasks: Iterable[Task],
        *,
        now: datetime | None = None,
        tz: tzinfo | None = None,
) -> RescheduleResult:
    """Propose new timing for one task. Nothing is written."""
    now = now or utc_now()
    all_tasks = list(all_tasks)
    attempt = task.reschedule_count + 1
    duration = task.end_time - task.start_time

    proposed_start = now + next_delay(task.reschedule_count)
    proposed_end = proposed_start + duration
    if proposed_end > end_of_day(now, tz):
        return RescheduleResult(False, f'Cannot reschedule "{task.name}" - would extend past end of day')

    if is_slot_available(proposed_start, proposed_end, all_tasks, task.id):
        return RescheduleResult(
            True,
            f'Task "{task.name}" rescheduled to {_clock_text(proposed_start)} (attempt {attempt})',
            new_start_time=proposed_start,
            new_end_time=proposed_end,
        )

    slot = find_next_slot(duration, proposed_start, all_tasks, task.id, tz=tz)
    if slot is not None:
        return RescheduleResult(
            True,
            f'Task "{task.name}" rescheduled to {_clock_text(slot)} (next available slot, attempt {attempt})',
            new_start_time=slot,
            new_end_time=slot + duration,
        )

    return RescheduleResult(False, f'Cannot reschedule "{task.name}" - no available slots before end of day')


def _repack_order(task: Task) -> tuple[int, datetime]:
    return -task.priority.weight, task.original_start_time or task.start_time


def greedy_repack(
        tasks: Iterable[Task],
        start_from: datetime | None = None,
        *,
        tz: tzinfo | None = None,
) -> RescheduleResult:
    """
    Re-place every pending task, highest priority first.

    Completed and running tasks stay where they are. A pending task whose
    window is still ahead and free keeps its timing; others go to the next
    free slot from start_from on.
    """
    start_from = start_from or utc_now()
    limit = end_of_day(start_from, tz)
    tasks = list(tasks)

    fixed = [t for t in tasks if t.status in _FIXED]
    pending = sorted((t for t in tasks if t.status == TaskStatus.PENDING), key=_repack_order)

    placed: list[Placement] = []
    failed: list[Task] = []
    for task in pending:
        blocking = fixed + [p.task for p in placed]

        if (
            task.end_time > start_from
            and task.start_time > start_from
            and is_slot_available(task.start_time, task.end_time, blocking, task.id)
        ):
            placed.append(Placement(task=replace(task), moved=False))
            continue

        duration = task.end_time - task.start_time
        slot = find_next_slot(duration, start_from, blocking, task.id, tz=tz)
        if slot is not None and slot + duration <= limit:
            placed.append(
                Placement(
                    task=replace(
                        task,
                        start_time=slot,
                        end_time=slot + duration,
                        original_start_time=task.original_start_time or task.start_time,
                        reschedule_count=task.reschedule_count + 1,
                        last_reschedule_at=start_from,
                    ),
                    moved=True,
                )
            )
            continue

        failed.append(task)

    if failed:
        names = ", ".join(t.name for t in failed)
        return RescheduleResult(
            False,
            f"Could not fit {len(failed)} task(s) into schedule: {names}",
            repacked=placed,
            failed=failed,
        )
    return RescheduleResult(True, f"Successfully repacked {len(placed)} task(s)", repacked=placed)


def _clock_text(moment: datetime) -> str:
    return moment.astimezone().strftime("%H:%M:%S")


async def apply_reschedule(
        store: TaskRepo,
        task: Task,
        new_start_time: datetime,
        new_end_time: datetime,
        *,
        now: datetime | None = None,
) -> Task | None:
    """Move a pending task. Records task_rescheduled; any other status is left alone (None)."""
    if task.status not in RESCHEDULABLE:
        logger.warning("Refusing to reschedule %s: status is %s", task.id, task.status.value)
        return None
    now = now or utc_now()
    attempt = task.reschedule_count + 1
    updated = await store.update(
        task.id,
        {
            "start_time": new_start_time,
            "end_time": new_end_time,
            "original_start_time": task.original_start_time or task.start_time,
            "reschedule_count": attempt,
            "last_reschedule_at": now,
        },
    )
    if updated is None:
        return None

    await store.record_action(
        ActionType.TASK_RESCHEDULED,
        task.id,
        task.name,
        f"Rescheduled to {_clock_text(new_start_time)} (attempt {attempt})",
    )
    return updated


async def apply_repack(store: TaskRepo, result: RescheduleResult) -> int:
    """Write repacked timing in one batch. Returns the number of tasks moved."""
    moved = [p.task for p in result.repacked if p.moved]
    if moved:
        await store.update_many(
            (
                t.id,
                {
                    "start_time": t.start_time,
                    "end_time": t.end_time,
                    "original_start_time": t.original_start_time,
                    "reschedule_count": t.reschedule_count,
                    "last_reschedule_at": t.last_reschedule_at,
                },
            )
            for t in moved
        )
        for t in moved:
            await store.record_action(
                ActionType.TASK_RESCHEDULED,
                t.id,
                t.name,
                f"Repacked to {_clock_text(t.start_time)}",
            )

    for t in result.failed:
        await store.record_action(
            ActionType.TASK_SKIPPED,
            t.id,
            t.name,
            "Could not fit into schedule after repack attempt",
        )
    return len(moved)


async def reschedule_and_repack(
        store: TaskRepo,
        expired: Task,
        *,
        now: datetime | None = None,
        tz: tzinfo | None = None,
) -> RescheduleResult:
    """Reschedule one expired task, then repack everything that is still pending."""
    current = await store.get_by_id(expired.id)
    if current is None:
        return RescheduleResult(False, f'Task "{expired.name}" no longer exists')
    if current.status not in RESCHEDULABLE:
        logger.info("Not rescheduling %s: status is %s", current.id, current.status.value)
        return RescheduleResult(False, f'Cannot reschedule "{current.name}" - task is {current.status.value}')

    now = now or utc_now()
    expired = current
    planned = reschedule_task(expired, await store.get_all(), now=now, tz=tz)

    if not planned.success or planned.new_start_time is None or planned.new_end_time is None:
        logger.info("Reschedule failed for %s: %s", expired.id, planned.message)
        await store.record_action(ActionType.TASK_SKIPPED, expired.id, expired.name, planned.message)
        return planned

    await apply_reschedule(store, expired, planned.new_start_time, planned.new_end_time, now=now)

    repack = greedy_repack(await store.get_all(), now, tz=tz)
    moved = await apply_repack(store, repack)
    logger.info("Rescheduled %s, repacked %d task(s), %d did not fit", expired.id, moved, len(repack.failed))

    return RescheduleResult(
        success=repack.success,
        message=f"{planned.message}. {repack.message}",
        new_start_time=planned.new_start_time,
        new_end_time=planned.new_end_time,
        repacked=repack.repacked,
        failed=repack.failed,
    )
