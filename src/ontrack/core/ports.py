# src/ontrack/core/ports.py

from __future__ import annotations

"""
Ports (interfaces) used by the core.

The core depends on Protocols instead of concrete implementations.
This keeps storage, the remote solver and notification delivery swappable
and makes testing easier.
"""

from collections.abc import Iterable, Mapping
from typing import TYPE_CHECKING, Any, Awaitable, Protocol

if TYPE_CHECKING:
    from ..tasks.alerts import NotificationTrigger
    from ..tasks.snapshot import RemoteSnapshot
    from ..tasks.task_models import Action, ActionType, Task


class BlobBackend(Protocol):
    """Named JSON blobs. Both methods raise StorageError on I/O failure."""

    def read(self, key: str) -> str | None: ...
    def write(self, key: str, value: str) -> None: ...


class TaskRepo(Protocol):
    """The async TaskStore surface used by the reconciler, drivers and commands."""

    def get_all(self) -> Awaitable[list[Task]]: ...
    def get_by_id(self, task_id: str) -> Awaitable[Task | None]: ...
    def add(self, partial: Mapping[str, Any]) -> Awaitable[Task]: ...
    def update(self, task_id: str, patch: Mapping[str, Any]) -> Awaitable[Task | None]: ...
    def upsert(
            self,
            task: Task | Mapping[str, Any],
            *,
            skip_if_deleted: bool = False,
    ) -> Awaitable[Task | None]: ...
    def delete(self, task_id: str, *, tombstone: bool = True) -> Awaitable[bool]: ...
    def update_many(self, patches: Iterable[tuple[str, Mapping[str, Any]]]) -> Awaitable[list[Task]]: ...
    def delete_many(self, task_ids: Iterable[str], *, tombstone: bool = True) -> Awaitable[int]: ...
    def clear_all(self) -> Awaitable[None]: ...
    def is_deleted(self, task_id: str) -> Awaitable[bool]: ...

    def record_action(
            self,
            action_type: ActionType,
            task_id: str,
            task_name: str,
            details: str | None = None,
    ) -> Awaitable[Action]: ...
    def get_actions(self) -> Awaitable[list[Action]]: ...


class RemoteSolutionSource(Protocol):
    """
    The authoritative solver/timeline service.

    fetch_snapshot raises RemoteSourceError (or any exception) on failure;
    the reconciler turns that into a failed SyncResult.
    """

    def fetch_snapshot(self) -> Awaitable[RemoteSnapshot]: ...


class NotificationSink(Protocol):
    """
    Connector-side port: how the clock loop surfaces "start now" / "time's up".

    The connector decides transport and formatting.
    """

    def notify(self, trigger: NotificationTrigger, task: Task) -> Awaitable[None]: ...
