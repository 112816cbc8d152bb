# tests/test_drivers.py

from __future__ import annotations

import asyncio
import logging
import os
import signal
from collections.abc import Callable

import pytest

from ontrack.cli.main import install_sync_signal
from ontrack.core.state import AppState
from ontrack.tasks.alerts import AlertTracker, TriggerKind
from ontrack.tasks.drivers import SyncTriggers, clock_tick, run_clock_loop, run_sync_loop
from ontrack.tasks.reconciler import SyncReconciler, SyncResult
from ontrack.tasks.task_store import TaskStore

from .fakes import T0, FakeClock, FakeMonotonic, FakeSolutionSource, RecordingSink, task_partial


async def _eventually(predicate: Callable[[], bool], attempts: int = 200) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("condition not reached")


@pytest.mark.asyncio
async def test_clock_tick_delivers_due_trigger_once(store: TaskStore, sink: RecordingSink) -> None:
    await store.add(task_partial("a", T0))
    alerts = AlertTracker()

    first = await clock_tick(store, sink, alerts, T0)
    second = await clock_tick(store, sink, alerts, T0)

    assert [(t.task_id, t.kind) for t in first] == [("a", TriggerKind.START)]
    assert second == []
    [(trigger, task)] = sink.delivered
    assert trigger.task_name == "A"
    assert task.id == "a"


@pytest.mark.asyncio
async def test_clock_tick_logs_sink_failure_and_does_not_retry(
    store: TaskStore, sink: RecordingSink, caplog: pytest.LogCaptureFixture
) -> None:
    await store.add(task_partial("a", T0))
    alerts = AlertTracker()
    sink.fail = True

    with caplog.at_level(logging.ERROR, logger="ontrack.tasks.drivers"):
        delivered = await clock_tick(store, sink, alerts, T0)

    assert delivered == []
    assert "notify failed" in caplog.text
    assert alerts.has_fired("a")

    sink.fail = False
    assert await clock_tick(store, sink, alerts, T0) == []


@pytest.mark.asyncio
async def test_sync_triggers_collapse_kicks() -> None:
    triggers = SyncTriggers()
    triggers.kick("foreground")
    triggers.kick()

    assert triggers.pending is True
    assert await triggers.wait(timeout=0.1) == ["foreground", "manual"]
    assert triggers.pending is False
    assert await triggers.wait(timeout=0.01) == []


@pytest.mark.asyncio
async def test_sync_loop_runs_at_startup_and_on_kick(
    source: FakeSolutionSource, reconciler: SyncReconciler, monotonic: FakeMonotonic
) -> None:
    triggers = SyncTriggers()
    results: list[SyncResult] = []
    loop = asyncio.create_task(
        run_sync_loop(reconciler, triggers, interval_seconds=60.0, on_result=results.append)
    )
    try:
        await _eventually(lambda: len(results) == 1)
        monotonic.advance(10)
        triggers.kick("remote push")
        await _eventually(lambda: len(results) == 2)
    finally:
        loop.cancel()
        with pytest.raises(asyncio.CancelledError):
            await loop

    assert all(r.success for r in results)
    assert source.calls == 2


@pytest.mark.asyncio
async def test_sync_loop_survives_failed_pass(
    source: FakeSolutionSource, reconciler: SyncReconciler, monotonic: FakeMonotonic
) -> None:
    source.error = RuntimeError("boom")
    triggers = SyncTriggers()
    results: list[SyncResult] = []
    loop = asyncio.create_task(run_sync_loop(reconciler, triggers, on_result=results.append))
    try:
        await _eventually(lambda: len(results) == 1)
        source.error = None
        monotonic.advance(10)
        triggers.kick()
        await _eventually(lambda: len(results) == 2)
    finally:
        loop.cancel()
        with pytest.raises(asyncio.CancelledError):
            await loop

    assert results[0].success is False
    assert results[1].success is True


@pytest.mark.asyncio
async def test_clock_loop_notifies_and_stops_on_cancel(
    store: TaskStore, sink: RecordingSink, clock: FakeClock
) -> None:
    await store.add(task_partial("a", T0))
    loop = asyncio.create_task(
        run_clock_loop(store, sink, AlertTracker(), interval_seconds=0.05, clock=clock)
    )
    try:
        await _eventually(lambda: len(sink.delivered) == 1)
    finally:
        loop.cancel()
        with pytest.raises(asyncio.CancelledError):
            await loop

    assert loop.cancelled()


@pytest.mark.asyncio
@pytest.mark.skipif(not hasattr(signal, "SIGUSR1"), reason="no SIGUSR1 on this platform")
async def test_sigusr1_kicks_the_sync_loop(state: AppState) -> None:
    loop = asyncio.get_running_loop()
    assert install_sync_signal(loop, state) is True
    try:
        os.kill(os.getpid(), signal.SIGUSR1)
        await _eventually(lambda: state.sync_triggers.pending)
    finally:
        loop.remove_signal_handler(signal.SIGUSR1)

    assert state.sync_triggers.drain() == ["SIGUSR1"]

    state.reconciler = None
    assert install_sync_signal(loop, state) is False
