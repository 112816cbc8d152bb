# tests/test_task_store.py

from __future__ import annotations

import json
from datetime import timedelta

import pytest

from ontrack.tasks.blob_store import SqliteBlobStore
from ontrack.tasks.errors import StorageError
from ontrack.tasks.task_models import ActionType, TaskPriority, TaskStatus
from ontrack.tasks.task_store import ACTIONS_KEY, DELETED_TASKS_KEY, TASKS_KEY, TaskStore

from .fakes import T0, FailingBlobBackend, FakeClock, MemoryBlobBackend, task_partial


@pytest.mark.asyncio
async def test_add_assigns_defaults_and_derives_duration(store: TaskStore, clock: FakeClock) -> None:
    task = await store.add({"name": "Write report", "start_time": T0, "end_time": T0 + timedelta(minutes=45)})

    assert task.id.startswith("internal_")
    assert task.status == TaskStatus.PENDING
    assert task.priority == TaskPriority.MEDIUM
    assert task.duration == 45 * 60
    assert task.created_at == clock.now
    assert task.updated_at == clock.now


@pytest.mark.asyncio
async def test_add_rejects_bad_input(store: TaskStore) -> None:
    with pytest.raises(ValueError):
        await store.add({"name": "x", "start_time": T0, "end_time": T0})
    with pytest.raises(ValueError):
        await store.add({"name": "", "start_time": T0, "end_time": T0 + timedelta(minutes=5)})

    await store.add(task_partial("a", T0))
    with pytest.raises(ValueError):
        await store.add(task_partial("a", T0))


@pytest.mark.asyncio
async def test_get_all_returns_copies(store: TaskStore) -> None:
    await store.add(task_partial("a", T0))
    tasks = await store.get_all()
    tasks[0].name = "mutated"

    again = await store.get_by_id("a")
    assert again is not None
    assert again.name == "A"


@pytest.mark.asyncio
async def test_update_merges_and_bumps_updated_at(store: TaskStore, clock: FakeClock) -> None:
    created = await store.add(task_partial("a", T0, minutes=30))
    clock.advance(minutes=1)

    updated = await store.update("a", {"end_time": T0 + timedelta(minutes=60), "created_at": T0 - timedelta(days=1)})

    assert updated is not None
    assert updated.duration == 3600
    assert updated.created_at == created.created_at
    assert updated.updated_at == clock.now


@pytest.mark.asyncio
async def test_update_unknown_id_returns_none(store: TaskStore) -> None:
    assert await store.update("missing", {"name": "x"}) is None


@pytest.mark.asyncio
async def test_update_rejects_unknown_fields(store: TaskStore) -> None:
    await store.add(task_partial("a", T0))
    with pytest.raises(ValueError):
        await store.update("a", {"colour": "red"})


@pytest.mark.asyncio
async def test_status_timestamps_follow_status(store: TaskStore, clock: FakeClock) -> None:
    await store.add(task_partial("a", T0))

    paused = await store.update("a", {"status": TaskStatus.PAUSED})
    assert paused is not None and paused.paused_at == clock.now

    clock.advance(minutes=5)
    completed = await store.update("a", {"status": TaskStatus.COMPLETED})
    assert completed is not None
    assert completed.paused_at is None
    assert completed.completed_at == clock.now


@pytest.mark.asyncio
async def test_only_one_task_runs_at_a_time(store: TaskStore) -> None:
    await store.add(task_partial("a", T0, status=TaskStatus.IN_PROGRESS))
    await store.add(task_partial("b", T0 + timedelta(hours=1)))

    await store.update("b", {"status": TaskStatus.IN_PROGRESS})

    a = await store.get_by_id("a")
    assert a is not None
    assert a.status == TaskStatus.PAUSED
    assert a.paused_at is not None
    assert [t.id for t in await store.get_by_status(TaskStatus.IN_PROGRESS)] == ["b"]


@pytest.mark.asyncio
async def test_delete_tombstones_and_upsert_respects_it(store: TaskStore) -> None:
    await store.add(task_partial("a", T0))

    assert await store.delete("a") is True
    assert await store.is_deleted("a") is True
    assert await store.get_by_id("a") is None

    assert await store.upsert(task_partial("a", T0), skip_if_deleted=True) is None
    assert await store.get_by_id("a") is None

    restored = await store.upsert(task_partial("a", T0))
    assert restored is not None
    assert await store.is_deleted("a") is False


@pytest.mark.asyncio
async def test_prune_delete_leaves_no_tombstone(store: TaskStore) -> None:
    await store.add(task_partial("a", T0))
    await store.add(task_partial("b", T0 + timedelta(hours=1)))

    assert await store.delete_many(["a", "b", "zzz"], tombstone=False) == 2
    assert await store.deleted_ids() == []
    assert await store.delete("missing") is False


@pytest.mark.asyncio
async def test_add_and_update_clear_tombstone(store: TaskStore) -> None:
    await store.add(task_partial("a", T0))
    await store.delete("a")
    await store.add(task_partial("a", T0))
    assert await store.is_deleted("a") is False


@pytest.mark.asyncio
async def test_upsert_keeps_created_at(store: TaskStore, clock: FakeClock) -> None:
    first = await store.add(task_partial("a", T0))
    clock.advance(hours=1)

    again = await store.upsert({**task_partial("a", T0, minutes=60, name="Renamed"), "created_at": clock.now})

    assert again is not None
    assert again.name == "Renamed"
    assert again.created_at == first.created_at
    assert again.duration == 3600


@pytest.mark.asyncio
async def test_update_many_writes_once(clock: FakeClock) -> None:
    backend = MemoryBlobBackend()
    store = TaskStore(backend, clock=clock)
    await store.add(task_partial("a", T0))
    await store.add(task_partial("b", T0 + timedelta(hours=1)))
    writes_before = backend.writes[TASKS_KEY]

    updated = await store.update_many([("a", {"name": "A2"}), ("b", {"name": "B2"}), ("nope", {"name": "x"})])

    assert [t.name for t in updated] == ["A2", "B2"]
    assert backend.writes[TASKS_KEY] == writes_before + 1


@pytest.mark.asyncio
async def test_clear_all_drops_tasks_and_tombstones(store: TaskStore) -> None:
    await store.add(task_partial("a", T0))
    await store.add(task_partial("b", T0))
    await store.delete("b")

    await store.clear_all()

    assert await store.get_all() == []
    assert await store.is_deleted("b") is False


@pytest.mark.asyncio
async def test_range_and_status_queries(store: TaskStore) -> None:
    await store.add(task_partial("late", T0 + timedelta(hours=3)))
    await store.add(task_partial("early", T0))
    await store.add(task_partial("done", T0 + timedelta(hours=1), status=TaskStatus.COMPLETED))

    window = await store.get_in_range(T0 + timedelta(minutes=10), T0 + timedelta(hours=2))
    assert [t.id for t in window] == ["early", "done"]

    open_only = await store.get_in_range(T0, T0 + timedelta(hours=4), include_completed=False)
    assert [t.id for t in open_only] == ["early", "late"]

    assert [t.id for t in await store.get_by_status(TaskStatus.PENDING)] == ["early", "late"]


@pytest.mark.asyncio
async def test_actions_newest_first_and_per_task(store: TaskStore, clock: FakeClock) -> None:
    await store.record_action(ActionType.TASK_STARTED, "a", "A", "Started at 09:00:00")
    clock.advance(seconds=30)
    await store.record_action(ActionType.TASK_PAUSED, "a", "A")
    clock.advance(seconds=30)
    await store.record_action(ActionType.TASK_STARTED, "b", "B")

    actions = await store.get_actions()
    assert [a.action_type for a in actions] == [
        ActionType.TASK_STARTED,
        ActionType.TASK_PAUSED,
        ActionType.TASK_STARTED,
    ]
    assert actions[0].task_id == "b"
    assert [a.action_type for a in await store.get_actions_for_task("a")] == [
        ActionType.TASK_PAUSED,
        ActionType.TASK_STARTED,
    ]

    await store.clear_actions()
    assert await store.get_actions() == []


@pytest.mark.asyncio
async def test_state_survives_reopen(tmp_path, clock: FakeClock) -> None:
    path = tmp_path / "persist.sqlite3"
    store = TaskStore(SqliteBlobStore(path), clock=clock)
    await store.add(task_partial("a", T0))
    await store.add(task_partial("b", T0))
    await store.delete("b")
    await store.record_action(ActionType.TASK_STARTED, "a", "A")
    await store.close()

    reopened = TaskStore(SqliteBlobStore(path), clock=clock)
    await reopened.open()

    assert [t.id for t in await reopened.get_all()] == ["a"]
    assert await reopened.is_deleted("b") is True
    assert len(await reopened.get_actions()) == 1


@pytest.mark.asyncio
async def test_malformed_records_are_skipped_on_load(clock: FakeClock) -> None:
    good = {
        "id": "ok",
        "name": "OK",
        "start_time": "2025-03-10T09:00:00.000Z",
        "end_time": "2025-03-10T09:30:00.000Z",
        "status": "something-new",
        "priority": "urgent",
    }
    backend = MemoryBlobBackend(
        {
            TASKS_KEY: json.dumps([good, {"id": "broken"}, "nope"]),
            ACTIONS_KEY: "{not json",
            DELETED_TASKS_KEY: json.dumps(["d1", 7, ""]),
        }
    )
    store = TaskStore(backend, clock=clock)

    tasks = await store.get_all()

    assert [t.id for t in tasks] == ["ok"]
    assert tasks[0].status == TaskStatus.PENDING
    assert tasks[0].priority == TaskPriority.MEDIUM
    assert tasks[0].duration == 1800
    assert await store.get_actions() == []
    assert await store.deleted_ids() == ["d1"]


@pytest.mark.asyncio
async def test_read_failure_degrades_to_empty_but_write_failure_raises(clock: FakeClock) -> None:
    store = TaskStore(FailingBlobBackend(), clock=clock)

    assert await store.get_all() == []
    with pytest.raises(StorageError):
        await store.add(task_partial("a", T0))


@pytest.mark.asyncio
async def test_failed_write_leaves_memory_matching_disk(clock: FakeClock) -> None:
    backend = FailingBlobBackend(fail_read=False, fail_write=False)
    store = TaskStore(backend, clock=clock)
    await store.add(task_partial("a", T0, status=TaskStatus.IN_PROGRESS))
    await store.add(task_partial("b", T0 + timedelta(hours=1)))
    await store.add(task_partial("c", T0 + timedelta(hours=2)))
    await store.delete("c")
    await store.record_action(ActionType.TASK_STARTED, "a", "A")

    backend.fail_write = True
    with pytest.raises(StorageError):
        await store.add(task_partial("x", T0))
    with pytest.raises(StorageError):
        await store.update("a", {"name": "Renamed"})
    with pytest.raises(StorageError):
        await store.update("b", {"status": TaskStatus.IN_PROGRESS})
    with pytest.raises(StorageError):
        await store.upsert(task_partial("c", T0))
    with pytest.raises(StorageError):
        await store.delete("a")
    with pytest.raises(StorageError):
        await store.delete_many(["a", "b"])
    with pytest.raises(StorageError):
        await store.record_action(ActionType.TASK_COMPLETED, "a", "A")
    with pytest.raises(StorageError):
        await store.clear_all()

    a = await store.get_by_id("a")
    b = await store.get_by_id("b")
    assert a is not None and b is not None
    assert (a.name, a.status) == ("A", TaskStatus.IN_PROGRESS)
    assert b.status == TaskStatus.PENDING
    assert await store.get_by_id("x") is None
    assert await store.get_by_id("c") is None
    assert await store.deleted_ids() == ["c"]
    assert [act.action_type for act in await store.get_actions()] == [ActionType.TASK_STARTED]

    backend.fail_write = False
    reopened = TaskStore(backend, clock=clock)
    def summary(tasks):
        return [(t.id, t.name, t.status) for t in tasks]

    assert summary(await reopened.get_all()) == summary(await store.get_all())
    assert await reopened.deleted_ids() == ["c"]
