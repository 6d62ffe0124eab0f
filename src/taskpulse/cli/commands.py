# src/taskpulse/cli/commands.py

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone

from ..core.owner_notes import OwnerNotes
from ..core.owners import Owner
from ..core.state import AppState
from ..errors import (
    ConfigurationError,
    InvalidTransitionError,
    RecurringTaskNotFoundError,
    StoreError,
    TaskNotFoundError,
)
from ..tasks import task_api
from ..tasks.task_models import PAYLOAD_KIND_SCHEDULED_MESSAGE, Task, TaskStatus, now_ms

CommandHandler = Callable[[AppState, Owner, list[str]], "str | Awaitable[str]"]

PREFIX = "!"

logger = logging.getLogger(__name__)


class CommandRegistry:
    """`!command` table used by chat connectors (!help, !status, ...)."""

    def __init__(self, parent: CommandRegistry | None = None) -> None:
        self._parent = parent
        self._handlers: dict[str, CommandHandler] = {}
        self._help: dict[str, str] = {}

    def register(
        self,
        name: str,
        handler: CommandHandler,
        help_text: str,
        aliases: list[str] | None = None,
    ) -> None:
        key = name.lower()
        self._handlers[key] = handler
        self._help[key] = help_text
        for alias in aliases or []:
            self._handlers[alias.lower()] = handler

    def extend(self) -> CommandRegistry:
        """A child table: its own commands first, then everything from this one."""
        return CommandRegistry(parent=self)

    def lookup(self, name: str) -> CommandHandler | None:
        handler = self._handlers.get(name)
        if handler is None and self._parent is not None:
            return self._parent.lookup(name)
        return handler

    def help_entries(self) -> dict[str, str]:
        entries = dict(self._parent.help_entries()) if self._parent is not None else {}
        entries.update(self._help)
        return entries

    def build_help(self) -> str:
        lines = ["Available commands:"]
        for name, help_text in self.help_entries().items():
            lines.append(f"  {PREFIX}{name} - {help_text}")
        return "\n".join(lines)

    async def handle(self, state: AppState, owner: Owner, line: str) -> str | None:
        """
        Handle a string like "!command args".
        Returns a reply string or None if not a command.
        """
        if not line.startswith(PREFIX):
            return None

        parts = line[len(PREFIX):].split()
        if not parts:
            return f"Empty command. Use {PREFIX}help to list available commands."

        name = parts[0].lower()
        args = parts[1:]

        handler = self.lookup(name)
        if handler is None:
            return f"Unknown command: {PREFIX}{name}. Use {PREFIX}help to list available commands."

        try:
            result = handler(state, owner, args)
            if inspect.isawaitable(result):
                result = await result
        except (
            TaskNotFoundError,
            RecurringTaskNotFoundError,
            InvalidTransitionError,
            ConfigurationError,
        ) as e:
            return f"Error: {e}"
        except (StoreError, OSError):
            logger.exception("Command %s failed owner=%s", name, owner.id)
            return "Internal error while handling a command."
        return result


registry = CommandRegistry()


def _fmt_ts(ms: int | None) -> str:
    if ms is None:
        return "-"
    return datetime.fromtimestamp(ms / 1000, timezone.utc).strftime("%Y-%m-%d %H:%M UTC")


def _task_line(task: Task) -> str:
    line = f"[{task.status.value}] {task.title} ({task.id})"
    if task.status == TaskStatus.WAITING and task.execute_at:
        line += f" at {_fmt_ts(task.execute_at)}"
    return line


def cmd_help(state: AppState, owner: Owner, args: list[str]) -> str:
    return commands_for(owner).build_help()


def cmd_status(state: AppState, owner: Owner, args: list[str]) -> str:
    counts = task_api.owner_summary(state.store, owner.id)
    nonzero = ", ".join(f"{k}={v}" for k, v in counts.items() if v) or "no tasks"
    busy = owner.id in state.driver.in_flight_owners()
    return (
        f"Status for {owner.name}:\n"
        f"  Auto dispatch: {'ON' if owner.auto_dispatch else 'OFF'}\n"
        f"  Dispatch in flight: {'yes' if busy else 'no'}\n"
        f"  Tasks: {nonzero}"
    )


def cmd_tasks(state: AppState, owner: Owner, args: list[str]) -> str:
    limit = 10
    if args and args[0].isdigit():
        limit = max(1, min(int(args[0]), 50))
    tasks = task_api.list_recent_tasks(state.store, limit, owner_id=owner.id)
    if not tasks:
        return "No tasks."
    return "\n".join(["Recent tasks:", *(f"  {_task_line(t)}" for t in tasks)])


def cmd_task(state: AppState, owner: Owner, args: list[str]) -> str:
    title = " ".join(args).strip()
    if not title:
        return f"Usage: {PREFIX}task <title>"
    task = task_api.create_task(state.store, owner.id, title)
    return f"Created task {task.id} ({task.status.value})."


async def cmd_run(state: AppState, owner: Owner, args: list[str]) -> str:
    report = await state.driver.force_run(owner.id)
    if report is None:
        return "A dispatch for this owner is already running."
    return (
        f"Run finished: completed={len(report.completed)} failed={len(report.failed)} "
        f"retrying={len(report.retried)}"
    )


def cmd_auto(state: AppState, owner: Owner, args: list[str]) -> str:
    if not args:
        return f"Auto dispatch is {'ON' if owner.auto_dispatch else 'OFF'}. Use {PREFIX}auto on|off."
    arg = args[0].lower()
    if arg in ("on", "1", "true", "yes"):
        state.owners.set_auto_dispatch(owner.id, True)
        return "Auto dispatch enabled."
    if arg in ("off", "0", "false", "no"):
        state.owners.set_auto_dispatch(owner.id, False)
        return "Auto dispatch disabled. Use !run to dispatch manually."
    return f"Usage: {PREFIX}auto on|off"


def _owned_task(state: AppState, owner: Owner, task_id: str) -> Task:
    task = state.store.require_task(task_id)
    if task.owner_id != owner.id:
        raise TaskNotFoundError(task_id)
    return task


def cmd_pause(state: AppState, owner: Owner, args: list[str]) -> str:
    if not args:
        return f"Usage: {PREFIX}pause <task id>"
    _owned_task(state, owner, args[0])
    task = task_api.pause_task(state.store, args[0])
    return f"Paused {task.title}."


def cmd_resume(state: AppState, owner: Owner, args: list[str]) -> str:
    if not args:
        return f"Usage: {PREFIX}resume <task id>"
    _owned_task(state, owner, args[0])
    task = task_api.resume_task(state.store, args[0])
    return f"Resumed {task.title}."


def cmd_recurring(state: AppState, owner: Owner, args: list[str]) -> str:
    if len(args) >= 2 and args[0].lower() in ("on", "off"):
        defn = state.store.require_recurring(args[1])
        if defn.owner_id != owner.id:
            return f"Error: Recurring task not found: {args[1]}"
        task_api.set_recurring_enabled(state.store, defn.id, args[0].lower() == "on")
        return f"Recurring task {defn.title} {'enabled' if args[0].lower() == 'on' else 'disabled'}."

    defs = task_api.list_recurring_tasks(state.store, owner.id)
    if not defs:
        return "No recurring tasks."
    lines = ["Recurring tasks:"]
    for d in defs:
        state_s = "on" if d.enabled else "off"
        lines.append(
            f"  [{state_s}] {d.title} {d.schedule_kind.value} next={_fmt_ts(d.next_run_at)} ({d.id})"
        )
    return "\n".join(lines)


registry.register("help", cmd_help, help_text="Show available commands.", aliases=["h", "?"])
registry.register("status", cmd_status, help_text="Show auto flag and task counts.")
registry.register("tasks", cmd_tasks, help_text="List recent tasks: !tasks [n].")
registry.register("task", cmd_task, help_text="Create a task: !task <title>.")
registry.register("run", cmd_run, help_text="Dispatch all READY tasks now.")
registry.register("auto", cmd_auto, help_text="Toggle automatic dispatch: !auto on|off.")
registry.register("pause", cmd_pause, help_text="Pause a READY task: !pause <id>.")
registry.register("resume", cmd_resume, help_text="Resume a paused task: !resume <id>.")
registry.register(
    "recurring", cmd_recurring, help_text="List recurring tasks, or !recurring on|off <id>."
)


def cmd_remind(state: AppState, owner: Owner, args: list[str]) -> str:
    """!remind <minutes> <text> -> a scheduled message task for later."""
    if len(args) < 2 or not args[0].isdigit():
        return f"Usage: {PREFIX}remind <minutes> <text>"
    text = " ".join(args[1:])
    task = task_api.create_task(
        state.store,
        owner.id,
        f"Reminder: {text[:60]}",
        description=text,
        payload={"kind": PAYLOAD_KIND_SCHEDULED_MESSAGE, "text": text},
        execute_at=now_ms() + int(args[0]) * 60_000,
    )
    return f"Reminder scheduled for {_fmt_ts(task.execute_at)} ({task.id})."


registry.register("remind", cmd_remind, help_text="Schedule a message: !remind <minutes> <text>.")


# ---- per-owner-kind tables ----


def _notes(state: AppState, owner: Owner) -> OwnerNotes:
    return OwnerNotes(
        state.settings.data_dir / "owners", owner.id, timezone=state.settings.default_timezone
    )


def cmd_log(state: AppState, owner: Owner, args: list[str]) -> str:
    entry = " ".join(args).strip()
    if not entry:
        return f"Usage: {PREFIX}log <entry>"
    _notes(state, owner).append_log(entry)
    return "Logged."


def cmd_read(state: AppState, owner: Owner, args: list[str]) -> str:
    text = _notes(state, owner).read_log()
    return f"Daily log:\n{text.rstrip() or '(empty)'}"


def cmd_context(state: AppState, owner: Owner, args: list[str]) -> str:
    notes = _notes(state, owner)
    if args and args[0].lower() == "set":
        text = " ".join(args[1:]).strip()
        if not text:
            return f"Usage: {PREFIX}context set <text>"
        notes.write_context(text)
        return "Context updated."
    current = notes.read_context()
    return f"Current context:\n{current}" if current else "No context defined."


context_registry = registry.extend()
context_registry.register("log", cmd_log, help_text="Append to today's log: !log <entry>.")
context_registry.register("read", cmd_read, help_text="Show today's log.")
context_registry.register(
    "context", cmd_context, help_text="Show the owner context, or !context set <text>."
)

KIND_REGISTRIES: dict[str, CommandRegistry] = {
    "context": context_registry,
}


def commands_for(owner: Owner) -> CommandRegistry:
    return KIND_REGISTRIES.get(owner.kind, registry)


async def handle_message(state: AppState, owner_id: str, text: str) -> str | None:
    """Route one chat message from an owner's channel. None means "not a command"."""
    owner = state.owners.get(owner_id)
    if owner is None:
        logger.warning("Command for unknown owner=%s ignored", owner_id)
        return None
    return await commands_for(owner).handle(state, owner, text.strip())
