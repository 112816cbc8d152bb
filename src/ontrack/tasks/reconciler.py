# src/ontrack/tasks/reconciler.py

from __future__ import annotations

"""
Sync reconciler.

Pulls the remote solved timeline and merges it into the local TaskStore:
- status is sacred: running/completed tasks keep their status, only timing/name refresh
- pending tasks are disposable: a pending task missing remotely is pruned (no tombstone)
- tombstoned ids are never re-materialised
- paused/cancelled tasks are held as-is

All triggers (timer, foreground, push) funnel into sync(); an in-flight flag plus
a minimum interval keeps two passes from interleaving their read-modify-write.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from ..core.ports import RemoteSolutionSource, TaskRepo
from .intervals import IntervalCodec
from .snapshot import RemotePlacement, parse_snapshot
from .task_models import Task, TaskPriority, TaskStatus, calculate_duration

logger = logging.getLogger(__name__)

DEFAULT_MIN_SYNC_INTERVAL = 2.0


@dataclass(slots=True)
class SyncResult:
    success: bool
    task_count: int = 0  # newly materialised tasks only
    error: str | None = None

    updated: int = 0
    pruned: int = 0
    skipped: int = 0  # duplicate ids within the pass + tombstoned ids
    rejected: int = 0  # malformed remote rows

    @property
    def added(self) -> int:
        return self.task_count


class SyncReconciler:
    def __init__(
        self,
        store: TaskRepo,
        source: RemoteSolutionSource,
        *,
        codec: IntervalCodec | None = None,
        min_interval_seconds: float = DEFAULT_MIN_SYNC_INTERVAL,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._source = source
        self._codec = codec or IntervalCodec()
        self._min_interval = max(0.0, float(min_interval_seconds))
        self._monotonic = monotonic

        self._in_flight = False
        self._last_attempt: float | None = None

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    async def sync(self) -> SyncResult:
        """Run one reconciliation pass. Never raises; failures land in SyncResult.error."""
        # check-in-flight, check-throttle, set-in-flight: no await in between
        if self._in_flight:
            logger.info("Sync already in progress, skipping")
            return SyncResult(success=False, error="Sync already in progress")

        now = self._monotonic()
        if self._last_attempt is not None and now - self._last_attempt < self._min_interval:
            logger.info("Sync throttled, too soon since last attempt")
            return SyncResult(success=False, error="Sync throttled")

        self._in_flight = True
        self._last_attempt = now
        try:
            return await self._run()
        except Exception as e:
            logger.exception("Sync failed")
            return SyncResult(success=False, error=str(e) or e.__class__.__name__)
        finally:
            self._in_flight = False

    async def clear_timeline(self) -> bool:
        """
        Explicit full clear for "there is definitively no timeline".

        Distinct from per-id pruning; refuses to run while a pass is in flight.
        """
        if self._in_flight:
            logger.warning("clear_timeline refused: sync in progress")
            return False
        await self._store.clear_all()
        logger.info("Timeline cleared: all local tasks removed")
        return True

    # ---- merge ----

    async def _run(self) -> SyncResult:
        logger.info("Starting task sync")
        snapshot = await self._source.fetch_snapshot()
        placements, rejected = parse_snapshot(snapshot, self._codec)

        if not placements:
            # No data is not the same as "nothing scheduled": never prune here.
            logger.info(
                "No usable task solutions for model %s (rows=%d rejected=%d)",
                snapshot.model_id,
                len(snapshot.solutions),
                rejected,
            )
            return SyncResult(success=True, task_count=0, rejected=rejected)

        result = SyncResult(success=True, rejected=rejected)

        remote: dict[str, RemotePlacement] = {}
        for placement in placements:
            if placement.task_id in remote:
                result.skipped += 1
                logger.warning("Skipping duplicate task_id in same sync: %s", placement.task_id)
                continue
            remote[placement.task_id] = placement

        local = await self._store.get_all()
        started = [t for t in local if t.status == TaskStatus.IN_PROGRESS]
        completed = [t for t in local if t.status == TaskStatus.COMPLETED]
        pending = [t for t in local if t.status == TaskStatus.PENDING]
        logger.info(
            "Local categories started=%d completed=%d pending=%d held=%d remote=%d",
            len(started),
            len(completed),
            len(pending),
            len(local) - len(started) - len(completed) - len(pending),
            len(remote),
        )

        for task in started:
            placement = remote.get(task.id)
            if placement is None:
                logger.info("Started task not in timeline, preserving: %s", task.id)
            elif await self._refresh(task, placement, TaskStatus.IN_PROGRESS):
                result.updated += 1

        for task in completed:
            placement = remote.get(task.id)
            if placement is None:
                logger.debug("Completed task not in timeline, kept for history: %s", task.id)
            elif await self._refresh(task, placement, TaskStatus.COMPLETED):
                result.updated += 1

        prune: list[str] = []
        for task in pending:
            placement = remote.get(task.id)
            if placement is None:
                prune.append(task.id)
            elif await self._refresh(task, placement, TaskStatus.PENDING):
                result.updated += 1

        if prune:
            result.pruned = await self._prune(prune)

        local_ids = {t.id for t in local}
        for task_id, placement in remote.items():
            if task_id in local_ids:
                continue
            if await self._store.is_deleted(task_id):
                result.skipped += 1
                logger.info("Skipping deleted task from timeline: %s", task_id)
                continue
            if await self._add(placement):
                result.task_count += 1

        logger.info(
            "Sync complete: %d new, %d updated, %d pruned, %d skipped, %d rejected",
            result.task_count,
            result.updated,
            result.pruned,
            result.skipped,
            result.rejected,
        )
        return result

    async def _refresh(self, seen: Task, placement: RemotePlacement, status: TaskStatus) -> bool:
        """Refresh name/timing, forcing `status`. Returns True if something was written."""
        # re-read: a user action may have landed while this pass was awaiting I/O
        current = await self._store.get_by_id(seen.id)
        if current is None or current.status != seen.status:
            logger.info("Task %s changed during sync, leaving it alone", seen.id)
            return False

        if (
            current.name == placement.name
            and current.start_time == placement.start_time
            and current.end_time == placement.end_time
            and current.status == status
        ):
            return False

        written = await self._store.upsert(
            {
                "id": current.id,
                "name": placement.name,
                "start_time": placement.start_time,
                "end_time": placement.end_time,
                "duration": calculate_duration(placement.start_time, placement.end_time),
                "status": status,
            },
            skip_if_deleted=True,
        )
        if written is not None:
            logger.info("Updated %s task: %s (%s)", status.value, written.name, written.id)
        return written is not None

    async def _prune(self, task_ids: list[str]) -> int:
        current = {t.id: t for t in await self._store.get_all()}
        still_pending = [
            i for i in task_ids if i in current and current[i].status == TaskStatus.PENDING
        ]
        if not still_pending:
            return 0
        for task_id in still_pending:
            logger.info("Removing pending task not in timeline: %s", task_id)
        return await self._store.delete_many(still_pending, tombstone=False)

    async def _add(self, placement: RemotePlacement) -> bool:
        if await self._store.get_by_id(placement.task_id) is not None:
            return False
        created = await self._store.upsert(
            {
                "id": placement.task_id,
                "name": placement.name,
                "start_time": placement.start_time,
                "end_time": placement.end_time,
                "duration": calculate_duration(placement.start_time, placement.end_time),
                "status": TaskStatus.PENDING,
                "priority": TaskPriority.MEDIUM,
            },
            skip_if_deleted=True,
        )
        if created is not None:
            logger.info("Added new task: %s (%s) at %s", created.name, created.id, created.start_time)
        return created is not None
