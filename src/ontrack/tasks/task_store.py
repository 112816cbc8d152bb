# src/ontrack/tasks/task_store.py

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import replace
from datetime import datetime
from typing import Any

from ..core.ports import BlobBackend
from .errors import StorageError
from .task_models import (
    Action,
    ActionType,
    Task,
    TaskStatus,
    action_from_dict,
    action_to_dict,
    apply_patch,
    build_task,
    new_action_id,
    normalize_status_timestamps,
    task_from_dict,
    task_to_dict,
    utc_now,
)

logger = logging.getLogger(__name__)

TASKS_KEY = "internal_tasks"
ACTIONS_KEY = "internal_actions"
DELETED_TASKS_KEY = "internal_deleted_tasks"

# upsert never takes these from the caller for an existing task
_UPSERT_PRESERVED = frozenset({"id", "created_at", "updated_at"})


class TaskStore:
    """
    Local task/action store over three JSON blobs (tasks, actions, tombstones).

    Write-through: every mutating call persists the full affected collection
    before returning. Blob I/O runs in a worker thread; writes are serialised
    so the last snapshot written is always the latest in-memory state.

    Failure semantics:
    - read failures are logged and degrade to an empty collection
    - write failures raise StorageError and leave memory as it was
    """

    def __init__(
        self,
        backend: BlobBackend,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._backend = backend
        self._now = clock
        self._tasks: list[Task] = []
        self._actions: list[Action] = []
        self._deleted: set[str] = set()
        self._loaded = False
        self._write_lock = asyncio.Lock()

    # ---- lifecycle ----

    async def open(self) -> None:
        if self._loaded:
            return

        self._tasks = self._decode_all(await self._load_list(TASKS_KEY), task_from_dict, "task")
        self._actions = self._decode_all(await self._load_list(ACTIONS_KEY), action_from_dict, "action")
        self._deleted = {x for x in await self._load_list(DELETED_TASKS_KEY) if isinstance(x, str) and x}
        self._loaded = True

        logger.info(
            "TaskStore opened tasks=%d actions=%d tombstones=%d",
            len(self._tasks),
            len(self._actions),
            len(self._deleted),
        )

    async def close(self) -> None:
        # wait for an in-flight write to land before dropping state
        async with self._write_lock:
            self._tasks = []
            self._actions = []
            self._deleted = set()
            self._loaded = False
        logger.info("TaskStore closed")

    async def _ensure_open(self) -> None:
        if not self._loaded:
            await self.open()

    # ---- low-level helpers ----

    async def _load_list(self, key: str) -> list[Any]:
        try:
            raw = await asyncio.to_thread(self._backend.read, key)
        except StorageError:
            logger.exception("Failed to read %s; starting with an empty collection.", key)
            return []

        if not raw:
            return []
        try:
            val = json.loads(raw)
        except ValueError:
            logger.exception("Corrupt JSON in %s; starting with an empty collection.", key)
            return []
        if not isinstance(val, list):
            logger.warning("Blob %s is not a JSON array; ignoring it.", key)
            return []
        return val

    @staticmethod
    def _decode_all(items: list[Any], decode: Callable[[Any], Any], what: str) -> list[Any]:
        out = []
        for item in items:
            try:
                out.append(decode(item))
            except (KeyError, TypeError, ValueError):
                logger.warning("Skipping malformed %s record: %r", what, item)
        return out

    def _serialize(self, key: str) -> str:
        if key == TASKS_KEY:
            return json.dumps([task_to_dict(t) for t in self._tasks], ensure_ascii=False)
        if key == ACTIONS_KEY:
            return json.dumps([action_to_dict(a) for a in self._actions], ensure_ascii=False)
        if key == DELETED_TASKS_KEY:
            return json.dumps(sorted(self._deleted), ensure_ascii=False)
        raise KeyError(key)

    def _snapshot(self) -> tuple[list[Task], set[str], list[Action]]:
        return list(self._tasks), set(self._deleted), list(self._actions)

    async def _save(self, before: tuple[list[Task], set[str], list[Action]], *keys: str) -> None:
        """
        Persist keys; the caller holds _write_lock and took `before` under it.

        On StorageError memory goes back to `before` so it never runs ahead of disk.
        A key written before the failing one stays written.
        """
        try:
            for key in keys:
                payload = self._serialize(key)
                await asyncio.to_thread(self._backend.write, key, payload)
                logger.debug("Saved %s (%d bytes)", key, len(payload))
        except StorageError:
            self._tasks, self._deleted, self._actions = before
            logger.error("Write of %s failed; in-memory state rolled back", ", ".join(keys))
            raise

    def _index(self, task_id: str) -> int | None:
        for i, t in enumerate(self._tasks):
            if t.id == task_id:
                return i
        return None

    def _unmark_deleted(self, task_id: str) -> bool:
        if task_id in self._deleted:
            self._deleted.discard(task_id)
            return True
        return False

    def _pause_other_running(self, task: Task, now: datetime) -> list[str]:
        """At most one task may be in_progress: pause every other running task."""
        if task.status != TaskStatus.IN_PROGRESS:
            return []

        paused: list[str] = []
        for i, other in enumerate(self._tasks):
            if other.id == task.id or other.status != TaskStatus.IN_PROGRESS:
                continue
            self._tasks[i] = normalize_status_timestamps(
                replace(other, status=TaskStatus.PAUSED, paused_at=now, updated_at=now), now
            )
            paused.append(other.id)
            logger.info("Auto-paused task %s because task %s is now running", other.id, task.id)
        return paused

    def _store(self, task: Task, now: datetime) -> None:
        idx = self._index(task.id)
        if idx is None:
            self._tasks.append(task)
        else:
            self._tasks[idx] = task
        self._pause_other_running(task, now)

    # ---- tasks: reads ----

    async def get_all(self) -> list[Task]:
        await self._ensure_open()
        return [replace(t) for t in self._tasks]

    async def get_by_id(self, task_id: str) -> Task | None:
        await self._ensure_open()
        idx = self._index(task_id)
        return None if idx is None else replace(self._tasks[idx])

    async def get_by_status(self, status: TaskStatus) -> list[Task]:
        await self._ensure_open()
        out = [replace(t) for t in self._tasks if t.status == status]
        out.sort(key=lambda t: t.start_time)
        return out

    async def get_in_range(
        self,
        start: datetime,
        end: datetime,
        *,
        include_completed: bool = True,
    ) -> list[Task]:
        """Tasks overlapping [start, end), sorted by start_time."""
        await self._ensure_open()
        out = [
            replace(t)
            for t in self._tasks
            if t.start_time < end
            and t.end_time > start
            and (include_completed or t.status != TaskStatus.COMPLETED)
        ]
        out.sort(key=lambda t: t.start_time)
        return out

    async def is_deleted(self, task_id: str) -> bool:
        if not task_id:
            return False
        await self._ensure_open()
        return task_id in self._deleted

    async def deleted_ids(self) -> list[str]:
        await self._ensure_open()
        return sorted(self._deleted)

    # ---- tasks: writes ----

    async def add(self, partial: Mapping[str, Any]) -> Task:
        await self._ensure_open()
        now = self._now()
        task = build_task(partial, now=now)

        async with self._write_lock:
            if self._index(task.id) is not None:
                raise ValueError(f"task {task.id} already exists")
            before = self._snapshot()
            self._store(task, now)
            keys = [TASKS_KEY]
            if self._unmark_deleted(task.id):
                keys.append(DELETED_TASKS_KEY)
            await self._save(before, *keys)

        logger.info("Task added id=%s name=%r status=%s", task.id, task.name, task.status.value)
        return replace(task)

    async def update(self, task_id: str, patch: Mapping[str, Any]) -> Task | None:
        await self._ensure_open()
        async with self._write_lock:
            idx = self._index(task_id)
            if idx is None:
                logger.warning("Task not found for update: %s", task_id)
                return None

            now = self._now()
            before = self._snapshot()
            updated = apply_patch(self._tasks[idx], patch, now=now)
            self._store(updated, now)
            keys = [TASKS_KEY]
            if self._unmark_deleted(task_id):
                keys.append(DELETED_TASKS_KEY)
            await self._save(before, *keys)

        logger.debug("Task updated id=%s fields=%s", task_id, sorted(patch))
        return replace(updated)

    async def upsert(
        self,
        task: Task | Mapping[str, Any],
        *,
        skip_if_deleted: bool = False,
    ) -> Task | None:
        """
        Insert or update by id.

        skip_if_deleted=True drops the write for a tombstoned id (returns None);
        that is how reconciliation avoids resurrecting user-deleted tasks.
        Only explicit saves (skip_if_deleted=False) clear a tombstone.
        """
        await self._ensure_open()
        values = task_to_dict(task) if isinstance(task, Task) else dict(task)
        task_id = str(values.get("id") or "")
        if not task_id:
            raise ValueError("upsert requires an id")

        async with self._write_lock:
            if skip_if_deleted and task_id in self._deleted:
                logger.info("Skipping upsert for deleted task %s (%s)", task_id, values.get("name"))
                return None

            now = self._now()
            before = self._snapshot()
            idx = self._index(task_id)
            if idx is not None:
                patch = {k: v for k, v in values.items() if k not in _UPSERT_PRESERVED}
                stored = apply_patch(self._tasks[idx], patch, now=now)
            else:
                stored = build_task(values, now=now)

            self._store(stored, now)
            keys = [TASKS_KEY]
            if not skip_if_deleted and self._unmark_deleted(task_id):
                keys.append(DELETED_TASKS_KEY)
            await self._save(before, *keys)

        logger.debug("Task %s id=%s", "updated" if idx is not None else "inserted", task_id)
        return replace(stored)

    async def update_many(self, patches: Iterable[tuple[str, Mapping[str, Any]]]) -> list[Task]:
        await self._ensure_open()
        patches = list(patches)
        now = self._now()
        updated: list[Task] = []
        async with self._write_lock:
            before = self._snapshot()
            for task_id, patch in patches:
                idx = self._index(task_id)
                if idx is None:
                    logger.warning("Task not found for batch update: %s", task_id)
                    continue
                task = apply_patch(self._tasks[idx], patch, now=now)
                self._store(task, now)
                updated.append(replace(task))

            if updated:
                await self._save(before, TASKS_KEY)
                logger.info("Updated %d tasks", len(updated))
        return updated

    async def delete(self, task_id: str, *, tombstone: bool = True) -> bool:
        """
        Remove a task. tombstone=True (user delete) also suppresses later
        re-materialisation by reconciliation; the implicit prune path passes False.
        """
        await self._ensure_open()
        async with self._write_lock:
            idx = self._index(task_id)
            if idx is None:
                logger.warning("Task not found for deletion: %s", task_id)
                return False

            before = self._snapshot()
            removed = self._tasks.pop(idx)
            keys = [TASKS_KEY]
            if tombstone:
                self._deleted.add(task_id)
                keys.append(DELETED_TASKS_KEY)
            await self._save(before, *keys)

        logger.info("Task deleted id=%s name=%r tombstone=%s", task_id, removed.name, tombstone)
        return True

    async def delete_many(self, task_ids: Iterable[str], *, tombstone: bool = True) -> int:
        await self._ensure_open()
        wanted = set(task_ids)
        async with self._write_lock:
            kept = [t for t in self._tasks if t.id not in wanted]
            removed = [t.id for t in self._tasks if t.id in wanted]
            if not removed:
                return 0

            before = self._snapshot()
            self._tasks = kept
            keys = [TASKS_KEY]
            if tombstone:
                self._deleted.update(removed)
                keys.append(DELETED_TASKS_KEY)
            await self._save(before, *keys)

        logger.info("Deleted %d tasks tombstone=%s", len(removed), tombstone)
        return len(removed)

    async def clear_all(self) -> None:
        """Full reset: drops every task and the tombstone set."""
        await self._ensure_open()
        async with self._write_lock:
            before = self._snapshot()
            self._tasks = []
            self._deleted = set()
            await self._save(before, TASKS_KEY, DELETED_TASKS_KEY)
        logger.info("Cleared all tasks and deleted-task history")

    async def clear_deleted_history(self) -> None:
        await self._ensure_open()
        async with self._write_lock:
            if not self._deleted:
                return
            before = self._snapshot()
            self._deleted = set()
            await self._save(before, DELETED_TASKS_KEY)
        logger.info("Cleared deleted-task history")

    # ---- actions ----

    async def record_action(
        self,
        action_type: ActionType,
        task_id: str,
        task_name: str,
        details: str | None = None,
    ) -> Action:
        await self._ensure_open()
        action = Action(
            id=new_action_id(),
            action_type=ActionType(action_type),
            task_id=task_id,
            task_name=task_name,
            timestamp=self._now(),
            details=details,
        )
        async with self._write_lock:
            before = self._snapshot()
            self._actions.append(action)
            await self._save(before, ACTIONS_KEY)

        logger.info("Action recorded %s task=%s (%s)", action.action_type.value, task_id, details or "")
        return action

    async def get_actions(self) -> list[Action]:
        """All actions, newest first."""
        await self._ensure_open()
        return sorted(self._actions, key=lambda a: a.timestamp, reverse=True)

    async def get_actions_for_task(self, task_id: str) -> list[Action]:
        await self._ensure_open()
        return sorted(
            (a for a in self._actions if a.task_id == task_id),
            key=lambda a: a.timestamp,
            reverse=True,
        )

    async def clear_actions(self) -> None:
        await self._ensure_open()
        async with self._write_lock:
            before = self._snapshot()
            self._actions = []
            await self._save(before, ACTIONS_KEY)
        logger.info("Cleared all actions")
