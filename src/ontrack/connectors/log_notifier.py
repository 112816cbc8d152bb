# src/ontrack/connectors/log_notifier.py

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence

from ..core.ports import NotificationSink
from ..tasks.alerts import NotificationTrigger, TriggerKind
from ..tasks.task_models import Task

logger = logging.getLogger(__name__)


def _hhmm(task: Task, which: str) -> str:
    return getattr(task, which).astimezone().strftime("%H:%M")


def render_trigger(trigger: NotificationTrigger, task: Task) -> str:
    """Human text for a trigger, shared by every transport."""
    if trigger.kind == TriggerKind.START:
        return (
            f'Time to start "{task.name}" ({_hhmm(task, "start_time")}-{_hhmm(task, "end_time")}). '
            f"Reply /start {task.id} or /skip {task.id}."
        )
    return (
        f'Time\'s up for "{task.name}" (ended {_hhmm(task, "end_time")}). '
        f"Reply /complete {task.id} or /pause {task.id}."
    )


class LogNotifier:
    """Default sink: writes triggers to the log and, optionally, to the console."""

    def __init__(self, emit: Callable[[str], None] | None = None) -> None:
        self._emit = emit

    async def notify(self, trigger: NotificationTrigger, task: Task) -> None:
        text = render_trigger(trigger, task)
        logger.info("[%s] %s", trigger.kind.value, text)
        if self._emit is not None:
            self._emit(f"[{trigger.kind.value.upper()}] {text}")


class FanoutNotifier:
    """Deliver to several sinks; one failing sink does not stop the others."""

    def __init__(self, sinks: Sequence[NotificationSink]) -> None:
        self._sinks = list(sinks)

    def add(self, sink: NotificationSink) -> None:
        self._sinks.append(sink)

    async def notify(self, trigger: NotificationTrigger, task: Task) -> None:
        for sink in self._sinks:
            try:
                await sink.notify(trigger, task)
            except Exception:
                logger.exception("Sink %s failed for task %s", sink.__class__.__name__, task.id)
