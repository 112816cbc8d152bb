# src/ontrack/tasks/errors.py

from __future__ import annotations


class StorageError(Exception):
    """Reading or writing a persisted blob failed."""


class SyncError(Exception):
    """Base class for reconciliation failures (never escapes SyncReconciler.sync)."""


class RemoteSourceError(SyncError):
    """The remote solution source could not be fetched or parsed."""


class InvalidTransition(Exception):
    """A status change that the task state machine does not allow."""

    def __init__(self, task_id: str, current: str, target: str) -> None:
        super().__init__(f"task {task_id}: {current} -> {target} is not allowed")
        self.task_id = task_id
        self.current = current
        self.target = target
