# src/ontrack/cli/main.py

"""
CLI entrypoint.

Initializes logging, builds AppState, then runs everything on one event loop:
- clock loop (notification triggers),
- sync loop (remote timeline), when a remote source is configured,
- Matrix connector, when enabled,
- console command loop (optional).

Stops on /exit, EOF or SIGINT/SIGTERM by cancelling the background tasks.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal

from ..cli.bootstrap import create_initial_state
from ..config import get_settings
from ..connectors.console_connector import print_ts, run_console_loop
from ..connectors.log_notifier import FanoutNotifier
from ..core.state import AppState
from ..logging_setup import setup_logging
from ..tasks.drivers import run_clock_loop, run_sync_loop

logger = logging.getLogger(__name__)


async def _start_matrix(state: AppState) -> asyncio.Task | None:
    from ..connectors.matrix_client import create_matrix_client
    from ..connectors.matrix_notifier import MatrixNotifier, run_matrix_connector

    settings = state.settings
    if not settings.matrix_notify_room:
        logger.error("Matrix is enabled but ONTRACK_MATRIX_NOTIFY_ROOM is not set.")
        return None

    client = await create_matrix_client(settings)
    if client is None:
        logger.error("Matrix client creation failed; notifications stay local.")
        return None

    if isinstance(state.sink, FanoutNotifier):
        state.sink.add(MatrixNotifier(client, settings.matrix_notify_room))
    return asyncio.create_task(run_matrix_connector(state, client, settings.matrix_notify_room), name="matrix")


def install_sync_signal(loop: asyncio.AbstractEventLoop, state: AppState) -> bool:
    """SIGUSR1 asks the sync loop for an immediate pass (e.g. from a webhook or cron)."""
    sig = getattr(signal, "SIGUSR1", None)
    if sig is None or state.reconciler is None:
        return False
    try:
        loop.add_signal_handler(sig, state.sync_triggers.kick, "SIGUSR1")
    except (NotImplementedError, RuntimeError):
        return False
    return True


def _remember_sync(state: AppState):
    def on_result(result) -> None:
        state.last_sync = result

    return on_result


async def _shutdown(state: AppState, tasks: list[asyncio.Task]) -> None:
    """Best-effort shutdown (no exceptions should escape)."""
    for task in tasks:
        task.cancel()
    results = await asyncio.gather(*tasks, return_exceptions=True)
    for task, res in zip(tasks, results):
        if isinstance(res, Exception):
            logger.error("Background task %s ended with %r", task.get_name(), res)

    aclose = getattr(state.source, "aclose", None)
    if aclose is not None:
        try:
            await aclose()
        except Exception:
            logger.debug("Remote source close failed.", exc_info=True)

    try:
        await state.store.close()
    except Exception:
        logger.exception("Failed to close task store.")


async def run_app(state: AppState) -> None:
    settings = state.settings
    await state.store.open()

    background: list[asyncio.Task] = [
        asyncio.create_task(
            run_clock_loop(state.store, state.sink, state.alerts, interval_seconds=settings.clock_interval),
            name="clock",
        )
    ]
    if state.reconciler is not None:
        background.append(
            asyncio.create_task(
                run_sync_loop(
                    state.reconciler,
                    state.sync_triggers,
                    interval_seconds=settings.sync_interval,
                    on_result=_remember_sync(state),
                ),
                name="sync",
            )
        )
    if settings.matrix_enabled:
        matrix_task = await _start_matrix(state)
        if matrix_task is not None:
            background.append(matrix_task)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        # Some platforms do not support loop signal handlers.
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(sig, stop.set)
    if install_sync_signal(loop, state):
        logger.info("Send SIGUSR1 to pid %d to sync right away.", os.getpid())

    try:
        if settings.console_enabled:
            console = asyncio.create_task(run_console_loop(state), name="console")
            stopper = asyncio.create_task(stop.wait(), name="stop")
            await asyncio.wait({console, stopper}, return_when=asyncio.FIRST_COMPLETED)
            background.extend([console, stopper])
        else:
            logger.info("Console disabled. Running background loops only. Press Ctrl+C to stop.")
            await stop.wait()
        logger.info("Shutting down...")
    finally:
        await _shutdown(state, background)


def main() -> None:
    settings = get_settings()

    level_name = str(settings.log_level).upper()
    console_level = getattr(logging, level_name, logging.INFO)
    setup_logging(log_dir=settings.data_dir, console_level=console_level)

    logger.info("Starting %s...", settings.app_name)

    # IMPORTANT: reuse same settings object
    state = create_initial_state(settings=settings, emit=print_ts if settings.console_enabled else None)

    try:
        asyncio.run(run_app(state))
    except KeyboardInterrupt:
        pass
    logger.info("Bye.")


if __name__ == "__main__":
    main()
