# src/taskpulse/errors.py

from __future__ import annotations

from typing import Any


class TaskPulseError(Exception):
    """Base error. `context` carries ids useful in log lines."""

    def __init__(self, message: str, *, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.context: dict[str, Any] = dict(context or {})


class ConfigurationError(TaskPulseError, ValueError):
    """Invalid input at creation time. Nothing is persisted."""


class StoreError(TaskPulseError):
    """Persistence layer failure."""


class TaskNotFoundError(StoreError, KeyError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}", context={"task_id": task_id})
        self.task_id = task_id

    def __str__(self) -> str:
        return str(self.args[0])


class RecurringTaskNotFoundError(StoreError, KeyError):
    def __init__(self, definition_id: str) -> None:
        super().__init__(
            f"Recurring task not found: {definition_id}",
            context={"recurring_task_id": definition_id},
        )
        self.definition_id = definition_id

    def __str__(self) -> str:
        return str(self.args[0])


class InvalidTransitionError(TaskPulseError):
    def __init__(self, task_id: str, old: str, new: str) -> None:
        super().__init__(
            f"Task {task_id}: transition {old} -> {new} is not allowed",
            context={"task_id": task_id, "old": old, "new": new},
        )


class TransientDispatchError(TaskPulseError):
    """Executor rejected the task, the transport failed, or the call timed out."""


class IsolatedOwnerError(TaskPulseError):
    """Unexpected failure inside one owner's dispatch loop."""
