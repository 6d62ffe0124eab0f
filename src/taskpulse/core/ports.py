# src/taskpulse/core/ports.py

from __future__ import annotations

"""
Ports (interfaces) used by the core.

The core depends on Protocols instead of concrete implementations.
This keeps the executor backend, chat transport and storage swappable and makes testing easier.
"""

from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from ..tasks.task_models import RecurringTaskDefinition, Task, TaskStatus


@dataclass(slots=True, frozen=True)
class ExecutorResult:
    """Acceptance only means the executor queued the work, not that it finished."""

    accepted: bool
    detail: str = ""


class AgentExecutor(Protocol):
    """External asynchronous execution service (an agent gateway reached over HTTP)."""

    def invoke(
            self,
            *,
            instruction: str,
            agent_id: str,
            model_hint: str | None,
            label: str,
    ) -> Awaitable[ExecutorResult]: ...


class Notifier(Protocol):
    """
    Human-visible notification channel, one logical channel per owner.

    Best-effort: callers log failures and never propagate them.
    """

    def notify(self, owner_id: str, message: str) -> Awaitable[None]: ...


ContextProvider = Callable[[Any, Any], Awaitable[str]]
# (owner, task) -> owner-specific instruction preamble (e.g. a precomputed schedule digest).


class TaskRepo(Protocol):
    # Evaluator / dispatcher API
    def get_task(self, task_id: str) -> Task | None: ...
    def require_task(self, task_id: str) -> Task: ...
    def get_statuses(self, task_ids: Iterable[str]) -> dict[str, TaskStatus]: ...
    def list_waiting(self) -> list[Task]: ...
    def list_by_status(self, status: TaskStatus) -> list[Task]: ...
    def list_by_owner_and_status(self, owner_id: str, status: TaskStatus) -> list[Task]: ...
    def try_transition(
            self,
            task_id: str,
            *,
            expected: Iterable[TaskStatus],
            new: TaskStatus,
            now: int | None = None,
    ) -> bool: ...
    def update_status(
            self,
            task_id: str,
            status: TaskStatus,
            error: str | None = None,
            *,
            now: int | None = None,
    ) -> Task: ...
    def update_task_fields(self, task_id: str, **fields: Any) -> Task: ...
    def record_outcome(self, task_id: str, status: TaskStatus, **fields: Any) -> Task: ...

    # Recurring scheduler API
    def list_due_recurring(self, now: int) -> list[RecurringTaskDefinition]: ...
    def record_recurring_fire(
            self,
            task: Task,
            definition_id: str,
            *,
            next_run_at: int,
            fired_at: int,
    ) -> Task: ...
