# src/ontrack/tasks/task_models.py

from __future__ import annotations

import secrets
import time
from collections.abc import Mapping
from dataclasses import dataclass, fields, replace
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any


class TaskStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    PAUSED = "paused"
    CANCELLED = "cancelled"

    @classmethod
    def from_db(cls, raw: str | None) -> TaskStatus:
        if not raw:
            return cls.PENDING
        try:
            return cls(raw)
        except ValueError:
            return cls.PENDING


class TaskPriority(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @classmethod
    def from_db(cls, raw: str | None) -> TaskPriority:
        if not raw:
            return cls.MEDIUM
        try:
            return cls(raw)
        except ValueError:
            return cls.MEDIUM

    @property
    def weight(self) -> int:
        return {"low": 1, "medium": 2, "high": 3}[self.value]


class ActionType(StrEnum):
    TASK_STARTED = "task_started"
    TASK_COMPLETED = "task_completed"
    TASK_SKIPPED = "task_skipped"
    TASK_PAUSED = "task_paused"
    TASK_CANCELLED = "task_cancelled"
    TASK_RESUMED = "task_resumed"
    TASK_RESCHEDULED = "task_rescheduled"


# status -> the one timestamp field that must be set while in that status
TERMINAL_TIMESTAMP_FIELD: dict[TaskStatus, str] = {
    TaskStatus.COMPLETED: "completed_at",
    TaskStatus.PAUSED: "paused_at",
    TaskStatus.CANCELLED: "cancelled_at",
}


@dataclass(slots=True)
class Task:
    id: str
    name: str
    start_time: datetime
    end_time: datetime
    duration: int  # seconds
    status: TaskStatus
    priority: TaskPriority
    created_at: datetime
    updated_at: datetime

    description: str | None = None
    completed_at: datetime | None = None
    paused_at: datetime | None = None
    cancelled_at: datetime | None = None

    # rescheduling bookkeeping
    original_start_time: datetime | None = None
    reschedule_count: int = 0
    last_reschedule_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class Action:
    id: str
    action_type: ActionType
    task_id: str
    task_name: str
    timestamp: datetime
    details: str | None = None


TASK_FIELDS = frozenset(f.name for f in fields(Task))
_IMMUTABLE_FIELDS = frozenset({"id", "created_at"})
_TIMESTAMP_FIELDS = frozenset(
    {
        "start_time",
        "end_time",
        "created_at",
        "updated_at",
        "completed_at",
        "paused_at",
        "cancelled_at",
        "original_start_time",
        "last_reschedule_at",
    }
)


# ---- time helpers ----


def utc_now() -> datetime:
    return datetime.now(UTC)


def parse_ts(raw: str | datetime) -> datetime:
    """Parse an ISO-8601 string (a trailing Z is accepted). Naive values are taken as UTC."""
    dt = raw if isinstance(raw, datetime) else datetime.fromisoformat(str(raw))
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def format_ts(dt: datetime) -> str:
    return parse_ts(dt).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def calculate_duration(start_time: datetime, end_time: datetime) -> int:
    return max(0, int((end_time - start_time).total_seconds()))


def _random_suffix() -> str:
    return secrets.token_hex(5)[:9]


def new_task_id() -> str:
    return f"internal_{int(time.time() * 1000)}_{_random_suffix()}"


def new_action_id() -> str:
    return f"action_{int(time.time() * 1000)}_{_random_suffix()}"


# ---- construction / patching ----


def coerce_fields(values: Mapping[str, Any]) -> dict[str, Any]:
    """
    Normalise a partial task mapping: enum strings -> enums, ISO strings -> datetimes.

    Unknown keys raise ValueError (a malformed record is a programming error).
    """
    out: dict[str, Any] = {}
    for key, value in values.items():
        if key not in TASK_FIELDS:
            raise ValueError(f"unknown task field: {key}")
        if value is not None:
            if key == "status":
                value = TaskStatus(value)
            elif key == "priority":
                value = TaskPriority(value)
            elif key in _TIMESTAMP_FIELDS:
                value = parse_ts(value)
            elif key in ("duration", "reschedule_count"):
                value = int(value)
        out[key] = value
    return out


def build_task(partial: Mapping[str, Any], *, now: datetime) -> Task:
    """Create a Task from a partial mapping, filling id/timestamps/defaults."""
    values = coerce_fields(partial)

    name = str(values.get("name") or "").strip()
    if not name:
        raise ValueError("name is required")
    start_time = values.get("start_time")
    end_time = values.get("end_time")
    if start_time is None or end_time is None:
        raise ValueError("start_time and end_time are required")
    if end_time <= start_time:
        raise ValueError("end_time must be after start_time")

    duration = values.get("duration") or calculate_duration(start_time, end_time)

    task = Task(
        id=str(values.get("id") or new_task_id()),
        name=name,
        start_time=start_time,
        end_time=end_time,
        duration=duration,
        status=values.get("status") or TaskStatus.PENDING,
        priority=values.get("priority") or TaskPriority.MEDIUM,
        created_at=values.get("created_at") or now,
        updated_at=now,
        description=values.get("description"),
        completed_at=values.get("completed_at"),
        paused_at=values.get("paused_at"),
        cancelled_at=values.get("cancelled_at"),
        original_start_time=values.get("original_start_time"),
        reschedule_count=values.get("reschedule_count") or 0,
        last_reschedule_at=values.get("last_reschedule_at"),
    )
    return normalize_status_timestamps(task, now)


def apply_patch(task: Task, patch: Mapping[str, Any], *, now: datetime) -> Task:
    """
    Merge a patch into a task. id/created_at are never patched.

    Duration is re-derived when timing changes and no explicit duration is given.
    """
    values = {k: v for k, v in coerce_fields(patch).items() if k not in _IMMUTABLE_FIELDS}
    values["updated_at"] = now

    updated = replace(task, **values)
    if updated.end_time <= updated.start_time:
        raise ValueError(f"task {task.id}: end_time must be after start_time")
    if ("start_time" in values or "end_time" in values) and "duration" not in values:
        updated.duration = calculate_duration(updated.start_time, updated.end_time)
    return normalize_status_timestamps(updated, now)


def normalize_status_timestamps(task: Task, now: datetime) -> Task:
    """
    Keep exactly the timestamp matching the status (pending/in_progress keep none).

    An already-set matching timestamp is preserved.
    """
    keep = TERMINAL_TIMESTAMP_FIELD.get(task.status)
    changes: dict[str, Any] = {}
    for field_name in TERMINAL_TIMESTAMP_FIELD.values():
        value = getattr(task, field_name)
        if field_name == keep:
            if value is None:
                changes[field_name] = now
        elif value is not None:
            changes[field_name] = None
    return replace(task, **changes) if changes else task


# ---- JSON (de)serialisation ----


def task_to_dict(task: Task) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for f in fields(Task):
        value = getattr(task, f.name)
        if value is None:
            continue
        if isinstance(value, datetime):
            value = format_ts(value)
        elif isinstance(value, StrEnum):
            value = value.value
        out[f.name] = value
    return out


def task_from_dict(raw: Mapping[str, Any]) -> Task:
    """Decode a persisted task. Raises KeyError/ValueError/TypeError on malformed input."""
    start_time = parse_ts(raw["start_time"])
    end_time = parse_ts(raw["end_time"])

    def opt_ts(key: str) -> datetime | None:
        value = raw.get(key)
        return parse_ts(value) if value else None

    created_at = opt_ts("created_at") or start_time
    return Task(
        id=str(raw["id"]),
        name=str(raw.get("name") or ""),
        start_time=start_time,
        end_time=end_time,
        duration=int(raw.get("duration") or calculate_duration(start_time, end_time)),
        status=TaskStatus.from_db(raw.get("status")),
        priority=TaskPriority.from_db(raw.get("priority")),
        created_at=created_at,
        updated_at=opt_ts("updated_at") or created_at,
        description=raw.get("description"),
        completed_at=opt_ts("completed_at"),
        paused_at=opt_ts("paused_at"),
        cancelled_at=opt_ts("cancelled_at"),
        original_start_time=opt_ts("original_start_time"),
        reschedule_count=int(raw.get("reschedule_count") or 0),
        last_reschedule_at=opt_ts("last_reschedule_at"),
    )


def action_to_dict(action: Action) -> dict[str, Any]:
    out: dict[str, Any] = {
        "id": action.id,
        "action_type": action.action_type.value,
        "task_id": action.task_id,
        "task_name": action.task_name,
        "timestamp": format_ts(action.timestamp),
    }
    if action.details is not None:
        out["details"] = action.details
    return out


def action_from_dict(raw: Mapping[str, Any]) -> Action:
    return Action(
        id=str(raw["id"]),
        action_type=ActionType(raw["action_type"]),
        task_id=str(raw["task_id"]),
        task_name=str(raw.get("task_name") or ""),
        timestamp=parse_ts(raw["timestamp"]),
        details=raw.get("details"),
    )
