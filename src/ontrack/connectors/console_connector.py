# src/ontrack/connectors/console_connector.py

from __future__ import annotations

import asyncio
import logging
import sys
import threading
from datetime import datetime

from ..cli.commands import CommandContext
from ..cli.commands import registry as command_registry
from ..core.state import AppState

logger = logging.getLogger(__name__)

_EOF = None


def _ts_local() -> str:
    return datetime.now().astimezone().strftime("%Y-%m-%d %H:%M:%S")


def print_ts(text: str) -> None:
    print(f"[{_ts_local()}] {text}", flush=True)


def _start_stdin_reader(loop: asyncio.AbstractEventLoop, queue: asyncio.Queue[str | None]) -> threading.Thread:
    """
    Read stdin lines in a daemon thread and hand them to the event loop.

    input() blocks; a daemon thread lets the process exit while it is waiting.
    """

    def reader() -> None:
        while True:
            try:
                line = sys.stdin.readline()
            except (OSError, ValueError):
                line = ""
            if not line:
                loop.call_soon_threadsafe(queue.put_nowait, _EOF)
                return
            loop.call_soon_threadsafe(queue.put_nowait, line.rstrip("\n"))

    thread = threading.Thread(target=reader, name="console-stdin", daemon=True)
    thread.start()
    return thread


async def handle_line(state: AppState, line: str) -> str | None:
    """Run one console line. Returns the reply to print, or None for nothing."""
    line = line.strip()
    if not line:
        return None
    if not line.startswith("/"):
        return "Commands start with '/'. Use /help to list available commands."

    try:
        return await command_registry.handle(state, line, CommandContext(emit=print_ts))
    except Exception:
        logger.exception("Command handler crashed.")
        return "Internal error while handling a command."


async def run_console_loop(state: AppState) -> None:
    """Interactive command loop. Returns on /exit, /quit or EOF."""
    logger.info("Console connector started.")
    print_ts("[CONSOLE] Use /help for commands. Use /exit to quit.\n")

    queue: asyncio.Queue[str | None] = asyncio.Queue()
    _start_stdin_reader(asyncio.get_running_loop(), queue)

    while True:
        line = await queue.get()
        if line is _EOF:
            logger.info("Console EOF received, exiting.")
            break

        if line.strip().lower() in ("/exit", "/quit"):
            logger.info("Console exit command received.")
            break

        reply = await handle_line(state, line)
        if reply is not None:
            print_ts(reply)

    logger.info("Console connector finished.")
