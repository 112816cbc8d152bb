# src/ontrack/cli/commands.py

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from ..core.state import AppState
from ..tasks import transitions
from ..tasks.rescheduler import reschedule_and_repack
from ..tasks.schedule_clock import evaluate, format_countdown
from ..tasks.task_models import Task, TaskPriority, TaskStatus, parse_ts, utc_now

CommandEmitter = Callable[[str], None]

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class CommandContext:
    """Who is asking. Replies to a notification count as notification actions."""

    via_notification: bool = False
    emit: CommandEmitter | None = None


CommandHandler = Callable[[AppState, list[str], CommandContext], Awaitable[str]]


class CommandRegistry:
    """Simple slash-command registry used by connectors (/help, /status, ...)."""

    def __init__(self) -> None:
        self._handlers: dict[str, CommandHandler] = {}
        self._help: dict[str, str] = {}

    def register(
        self,
        name: str,
        handler: CommandHandler,
        help_text: str,
        aliases: list[str] | None = None,
    ) -> None:
        aliases = aliases or []
        key = name.lower()
        self._handlers[key] = handler
        self._help[key] = help_text
        for alias in aliases:
            self._handlers[alias.lower()] = handler

    async def handle(
        self,
        state: AppState,
        line: str,
        ctx: CommandContext | None = None,
    ) -> str | None:
        """
        Handle a string like "/command args".
        Returns a reply string or None if not a command.
        """
        if not line.startswith("/"):
            return None

        parts = line[1:].split()
        if not parts:
            return "Empty command. Use /help to list available commands."

        name = parts[0].lower()
        args = parts[1:]

        handler = self._handlers.get(name)
        if not handler:
            return f"Unknown command: /{name}. Use /help to list available commands."

        return await handler(state, args, ctx or CommandContext())

    def build_help(self) -> str:
        lines = ["Available commands:"]
        for name, help_text in self._help.items():
            lines.append(f"  /{name} - {help_text}")
        return "\n".join(lines)


registry = CommandRegistry()


# ---- formatting helpers ----


def _local(dt: datetime, fmt: str = "%H:%M") -> str:
    return dt.astimezone().strftime(fmt)


def _sorted(tasks: list[Task]) -> list[Task]:
    return sorted(tasks, key=lambda t: (t.start_time, t.id))


def format_task_line(index: int, task: Task) -> str:
    return (
        f"{index:>3}. [{task.status.value:<11}] {_local(task.start_time)}-{_local(task.end_time)} "
        f"{task.name} ({task.id})"
    )


async def resolve_task(state: AppState, ref: str) -> Task | None:
    """A task id, or the 1-based position shown by /list."""
    task = await state.store.get_by_id(ref)
    if task is not None:
        return task
    if ref.isdigit():
        tasks = _sorted(await state.store.get_all())
        idx = int(ref) - 1
        if 0 <= idx < len(tasks):
            return tasks[idx]
    return None


def parse_when(raw: str, *, now: datetime | None = None) -> datetime:
    """HH:MM (today, local time) or an ISO-8601 timestamp."""
    now = now or utc_now()
    if len(raw) <= 5 and ":" in raw:
        hours, minutes = (int(p) for p in raw.split(":", 1))
        local = now.astimezone()
        return local.replace(hour=hours, minute=minutes, second=0, microsecond=0)
    return parse_ts(raw)


# ---- commands ----


async def cmd_help(state: AppState, args: list[str], ctx: CommandContext) -> str:
    return registry.build_help()


async def cmd_status(state: AppState, args: list[str], ctx: CommandContext) -> str:
    tasks = await state.store.get_all()
    view = evaluate(tasks, utc_now(), state.granularity)

    lines = ["Status:"]
    if view.current and view.remaining:
        flag = " OVERTIME" if view.remaining.is_overtime else (
            " (ready to complete)" if view.remaining.ready_to_complete else ""
        )
        lines.append(f"  Now: {view.current.name}, {format_countdown(view.remaining)} left{flag}")
    else:
        lines.append("  Now: nothing running")

    if view.next and view.until_next:
        ready = " (ready to start)" if view.next_ready_to_start else ""
        lines.append(
            f"  Next: {view.next.name} at {_local(view.next.start_time)}, "
            f"in {format_countdown(view.until_next)}{ready}"
        )
    else:
        lines.append("  Next: nothing scheduled")

    if view.paused:
        lines.append(f"  Paused: {', '.join(t.name for t in view.paused)}")

    if state.reconciler is None:
        lines.append("  Remote: not configured (offline only)")
    elif state.last_sync is not None:
        res = state.last_sync
        outcome = "ok" if res.success else f"failed ({res.error})"
        lines.append(f"  Last sync: {outcome}, {res.task_count} new, {res.updated} updated, {res.pruned} pruned")
    return "\n".join(lines)


async def cmd_list(state: AppState, args: list[str], ctx: CommandContext) -> str:
    """
    /list      -> today's tasks that are not cancelled
    /list all  -> everything in the store
    """
    tasks = _sorted(await state.store.get_all())
    if not tasks:
        return "No tasks."

    show_all = bool(args) and args[0].lower() == "all"
    today = utc_now().astimezone().date()
    lines = []
    for i, task in enumerate(tasks, start=1):
        if not show_all and (
            task.status == TaskStatus.CANCELLED or task.start_time.astimezone().date() != today
        ):
            continue
        lines.append(format_task_line(i, task))
    if not lines:
        return "No tasks today. Use /list all to see everything."
    return "\n".join(lines)


async def cmd_next(state: AppState, args: list[str], ctx: CommandContext) -> str:
    view = evaluate(await state.store.get_all(), utc_now(), state.granularity)
    if view.next is None or view.until_next is None:
        return "Nothing scheduled."
    return f"Next: {view.next.name} ({view.next.id}) at {_local(view.next.start_time)}, in {format_countdown(view.until_next)}"


async def _target(state: AppState, args: list[str], default: Callable[[list[Task]], Task | None]) -> Task | None:
    if args:
        return await resolve_task(state, args[0])
    return default(await state.store.get_all())


def _first(status: TaskStatus) -> Callable[[list[Task]], Task | None]:
    def pick(tasks: list[Task]) -> Task | None:
        matching = _sorted([t for t in tasks if t.status == status])
        return matching[0] if matching else None

    return pick


def _transition_command(
    fn: Callable[..., Awaitable[Task | None]],
    verb: str,
    default: Callable[[list[Task]], Task | None],
) -> CommandHandler:
    async def handler(state: AppState, args: list[str], ctx: CommandContext) -> str:
        task = await _target(state, args, default)
        if task is None:
            return f"No task to {verb}." if not args else f"Task not found: {args[0]}"
        updated = await fn(state.store, task.id, via_notification=ctx.via_notification)
        if updated is None:
            return f'Cannot {verb} "{task.name}" (status: {task.status.value}).'
        return f'{verb.capitalize()}: "{updated.name}" -> {updated.status.value}'

    return handler


cmd_start = _transition_command(transitions.start_task, "start", _first(TaskStatus.PENDING))
cmd_pause = _transition_command(transitions.pause_task, "pause", _first(TaskStatus.IN_PROGRESS))
cmd_resume = _transition_command(transitions.resume_task, "resume", _first(TaskStatus.PAUSED))
cmd_complete = _transition_command(transitions.complete_task, "complete", _first(TaskStatus.IN_PROGRESS))
cmd_cancel = _transition_command(transitions.cancel_task, "cancel", _first(TaskStatus.IN_PROGRESS))
cmd_skip = _transition_command(transitions.skip_task, "skip", _first(TaskStatus.PENDING))


async def cmd_delete(state: AppState, args: list[str], ctx: CommandContext) -> str:
    if not args:
        return "Usage: /delete <id|#>"
    task = await resolve_task(state, args[0])
    if task is None:
        return f"Task not found: {args[0]}"
    await state.store.delete(task.id)
    state.alerts.forget(task.id)
    return f'Deleted "{task.name}". It will not come back on sync.'


async def cmd_sync(state: AppState, args: list[str], ctx: CommandContext) -> str:
    if state.reconciler is None:
        return "Remote source is not configured."
    if ctx.emit:
        ctx.emit("[SYNC] Syncing with the timeline...")
    result = await state.reconciler.sync()
    state.last_sync = result
    if not result.success:
        return f"Sync failed: {result.error}"
    return (
        f"Sync done: {result.task_count} new, {result.updated} updated, {result.pruned} pruned, "
        f"{result.skipped} skipped, {result.rejected} rejected."
    )


async def cmd_actions(state: AppState, args: list[str], ctx: CommandContext) -> str:
    """
    /actions        -> 10 most recent actions
    /actions <ref>  -> actions for one task
    """
    if args and not args[0].isdigit():
        task = await resolve_task(state, args[0])
        if task is None:
            return f"Task not found: {args[0]}"
        actions = await state.store.get_actions_for_task(task.id)
    else:
        limit = int(args[0]) if args else 10
        actions = (await state.store.get_actions())[:limit]

    if not actions:
        return "No actions recorded."
    return "\n".join(
        f"{_local(a.timestamp, '%H:%M:%S')} {a.action_type.value:<16} {a.task_name}"
        + (f" - {a.details}" if a.details else "")
        for a in actions
    )


async def cmd_add(state: AppState, args: list[str], ctx: CommandContext) -> str:
    """/add <start> <end> [low|medium|high] <name...>"""
    if len(args) < 3:
        return "Usage: /add <HH:MM|ISO start> <HH:MM|ISO end> [low|medium|high] <name>"
    try:
        start = parse_when(args[0])
        end = parse_when(args[1])
    except ValueError as e:
        return f"Bad time: {e}"
    if end <= start:
        end += timedelta(days=1)

    rest = args[2:]
    priority = TaskPriority.MEDIUM
    if len(rest) > 1 and rest[0].lower() in {p.value for p in TaskPriority}:
        priority = TaskPriority(rest[0].lower())
        rest = rest[1:]

    task = await state.store.add(
        {"name": " ".join(rest), "start_time": start, "end_time": end, "priority": priority}
    )
    return f'Added "{task.name}" {_local(task.start_time)}-{_local(task.end_time)} ({task.id})'


async def cmd_reschedule(state: AppState, args: list[str], ctx: CommandContext) -> str:
    if not args:
        return "Usage: /reschedule <id|#>"
    task = await resolve_task(state, args[0])
    if task is None:
        return f"Task not found: {args[0]}"
    result = await reschedule_and_repack(state.store, task)
    return result.message


registry.register("help", cmd_help, help_text="Show available commands.", aliases=["h", "?"])
registry.register("status", cmd_status, help_text="Show the running task, the next task and sync state.")
registry.register("list", cmd_list, help_text="List today's tasks: /list | /list all.", aliases=["ls"])
registry.register("next", cmd_next, help_text="Show the next task.")
registry.register("start", cmd_start, help_text="Start a task: /start [id|#].")
registry.register("pause", cmd_pause, help_text="Pause the running task: /pause [id|#].")
registry.register("resume", cmd_resume, help_text="Resume a paused task: /resume [id|#].")
registry.register("complete", cmd_complete, help_text="Complete the running task: /complete [id|#].", aliases=["done"])
registry.register("cancel", cmd_cancel, help_text="Cancel a task: /cancel [id|#].")
registry.register("skip", cmd_skip, help_text="Skip a task that has not started: /skip [id|#].")
registry.register("delete", cmd_delete, help_text="Delete a task for good: /delete <id|#>.", aliases=["rm"])
registry.register("sync", cmd_sync, help_text="Sync with the remote timeline now.")
registry.register("actions", cmd_actions, help_text="Show the action log: /actions [n|id].")
registry.register("add", cmd_add, help_text="Add a task: /add 14:00 14:30 [high] Write report.")
registry.register("reschedule", cmd_reschedule, help_text="Move an expired task to the next free slot.")
