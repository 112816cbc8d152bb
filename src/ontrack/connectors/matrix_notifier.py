# src/ontrack/connectors/matrix_notifier.py

from __future__ import annotations

"""
Matrix transport for notification triggers.

MatrixNotifier posts "start now" / "time's up" messages into one room.
run_matrix_connector keeps the client synced and treats slash-command
replies in that room as notification actions (via_notification=True), the
chat equivalent of tapping an action button on a push notification.
"""

import asyncio
import contextlib
import logging
import time

from nio import AsyncClient, MatrixRoom, RoomMessageText, RoomSendError

from ..cli.commands import CommandContext
from ..cli.commands import registry as command_registry
from ..core.state import AppState
from ..tasks.alerts import NotificationTrigger
from ..tasks.task_models import Task
from .log_notifier import render_trigger

logger = logging.getLogger(__name__)


def _ms_now() -> int:
    return int(time.time() * 1000)


async def send_text(client: AsyncClient, *, room_id: str, text: str) -> None:
    resp = await client.room_send(
        room_id=room_id,
        message_type="m.room.message",
        content={"msgtype": "m.text", "body": text},
        ignore_unverified_devices=True,
    )
    if isinstance(resp, RoomSendError):
        raise RuntimeError(f"Matrix send to {room_id} failed: {resp.message}")


class MatrixNotifier:
    def __init__(self, client: AsyncClient, room_id: str) -> None:
        if not room_id:
            raise ValueError("Matrix notify room is not configured")
        self.client = client
        self.room_id = room_id

    async def notify(self, trigger: NotificationTrigger, task: Task) -> None:
        await send_text(self.client, room_id=self.room_id, text=render_trigger(trigger, task))
        logger.info("Trigger %s for task %s sent to %s", trigger.kind.value, task.id, self.room_id)


def make_message_callback(state: AppState, client: AsyncClient, room_id: str, startup_ts: int):
    async def message_callback(room: MatrixRoom, event: RoomMessageText) -> None:
        # Ignore history from before startup, our own messages and other rooms.
        ts = getattr(event, "server_timestamp", None)
        if ts is not None and ts <= startup_ts:
            return
        if event.sender == client.user_id or room.room_id != room_id:
            return

        # the user is looking at the room: pull the latest timeline now
        if state.reconciler is not None:
            state.sync_triggers.kick("matrix activity")

        body = (event.body or "").strip()
        if not body.startswith("/"):
            return

        logger.info("Matrix <%s> %s: %r", room.display_name, event.sender, body)
        try:
            resp = await command_registry.handle(state, body, CommandContext(via_notification=True))
        except Exception:
            logger.exception("Command handler crashed.")
            resp = "Internal error while handling a command."

        if resp:
            try:
                await send_text(client, room_id=room.room_id, text=resp)
            except Exception:
                logger.exception("Failed to send command reply.")

    return message_callback


async def run_matrix_connector(state: AppState, client: AsyncClient, room_id: str) -> None:
    """
    Sync loop for the notification room. To stop it, cancel the coroutine/task.

    The client is closed on exit.
    """
    startup_ts = _ms_now()
    client.add_event_callback(make_message_callback(state, client, room_id, startup_ts), RoomMessageText)

    try:
        logger.info("Matrix initial sync...")
        await client.sync(timeout=30000, full_state=True)
        logger.info("Matrix initial sync done. Joined rooms: %d", len(client.rooms))

        while True:
            await client.sync(timeout=30000, full_state=False)

    except asyncio.CancelledError:
        logger.info("Matrix connector cancelled.")
        raise
    except Exception:
        logger.exception("Matrix connector crashed.")
    finally:
        with contextlib.suppress(Exception):
            await client.close()
        logger.info("Matrix connector stopped.")
