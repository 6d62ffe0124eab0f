# src/taskpulse/tasks/task_models.py

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from ..errors import ConfigurationError


def now_ms() -> int:
    return int(time.time() * 1000)


class TaskStatus(StrEnum):
    """
    Task lifecycle status.

    Terminal: COMPLETED, FAILED (FAILED re-enters WAITING only through the retry policy).
    Operator-held: PAUSED, BLOCKED, NEEDS_REVIEW.
    """

    PENDING = "PENDING"
    WAITING = "WAITING"
    READY = "READY"
    EXECUTING = "EXECUTING"
    PAUSED = "PAUSED"
    BLOCKED = "BLOCKED"
    NEEDS_REVIEW = "NEEDS_REVIEW"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @classmethod
    def from_db(cls, raw: str | None) -> TaskStatus:
        if not raw:
            return cls.PENDING
        try:
            return cls(str(raw).upper())
        except ValueError:
            return cls.PENDING


class DependencyKind(StrEnum):
    HARD = "HARD"  # must be COMPLETED before promotion
    SOFT = "SOFT"  # informational

    @classmethod
    def parse(cls, raw: Any) -> DependencyKind:
        try:
            return cls(str(raw or "HARD").upper())
        except ValueError as e:
            raise ConfigurationError(f"Unknown dependency kind: {raw!r}") from e


class BackoffKind(StrEnum):
    FIXED = "FIXED"
    EXPONENTIAL = "EXPONENTIAL"


class ScheduleKind(StrEnum):
    INTERVAL = "INTERVAL"
    HOURLY = "HOURLY"
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"

    @classmethod
    def parse(cls, raw: Any) -> ScheduleKind:
        try:
            return cls(str(raw).upper())
        except ValueError as e:
            raise ConfigurationError(f"Unknown schedule kind: {raw!r}") from e


HOUR_MS = 60 * 60 * 1000
DAY_MS = 24 * HOUR_MS
WEEK_MS = 7 * DAY_MS

DERIVED_INTERVAL_MS: dict[ScheduleKind, int] = {
    ScheduleKind.HOURLY: HOUR_MS,
    ScheduleKind.DAILY: DAY_MS,
    ScheduleKind.WEEKLY: WEEK_MS,
}

TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED})

_ESCALATIONS = frozenset({TaskStatus.BLOCKED, TaskStatus.NEEDS_REVIEW})

ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.WAITING, TaskStatus.READY}) | _ESCALATIONS,
    TaskStatus.WAITING: frozenset({TaskStatus.READY}) | _ESCALATIONS,
    TaskStatus.READY: frozenset({TaskStatus.EXECUTING, TaskStatus.PAUSED}) | _ESCALATIONS,
    TaskStatus.EXECUTING: frozenset(
        {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.PAUSED}
    )
    | _ESCALATIONS,
    TaskStatus.PAUSED: frozenset({TaskStatus.READY}) | _ESCALATIONS,
    # Leaving BLOCKED / NEEDS_REVIEW is an operator action (resolve_task).
    TaskStatus.BLOCKED: frozenset({TaskStatus.READY, TaskStatus.NEEDS_REVIEW}),
    TaskStatus.NEEDS_REVIEW: frozenset({TaskStatus.READY, TaskStatus.BLOCKED}),
    TaskStatus.COMPLETED: _ESCALATIONS,
    TaskStatus.FAILED: frozenset({TaskStatus.WAITING}) | _ESCALATIONS,
}


def can_transition(old: TaskStatus, new: TaskStatus) -> bool:
    return new in ALLOWED_TRANSITIONS.get(old, frozenset())


@dataclass(slots=True, frozen=True)
class TaskDependency:
    task_id: str
    kind: DependencyKind = DependencyKind.HARD

    def to_dict(self) -> dict[str, str]:
        return {"task_id": self.task_id, "kind": self.kind.value}

    @classmethod
    def from_any(cls, raw: Any) -> TaskDependency:
        if isinstance(raw, TaskDependency):
            return raw
        if isinstance(raw, str):
            return cls(task_id=raw)
        if isinstance(raw, dict):
            task_id = raw.get("task_id") or raw.get("taskId")
            if not task_id:
                raise ConfigurationError(f"Dependency without task id: {raw!r}")
            return cls(task_id=str(task_id), kind=DependencyKind.parse(raw.get("kind") or raw.get("type")))
        raise ConfigurationError(f"Unsupported dependency value: {raw!r}")


def normalize_dependencies(raw: Any) -> list[TaskDependency]:
    """Ordered, de-duplicated by task id (first occurrence wins)."""
    out: list[TaskDependency] = []
    seen: set[str] = set()
    for item in raw or []:
        dep = TaskDependency.from_any(item)
        if dep.task_id in seen:
            continue
        seen.add(dep.task_id)
        out.append(dep)
    return out


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    max_attempts: int
    backoff_kind: BackoffKind = BackoffKind.FIXED
    backoff_ms: int = 60_000

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_attempts": self.max_attempts,
            "backoff_kind": self.backoff_kind.value,
            "backoff_ms": self.backoff_ms,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> RetryPolicy:
        max_attempts = raw.get("max_attempts", raw.get("maxAttempts", 1))
        backoff_kind = raw.get("backoff_kind", raw.get("backoffType", "FIXED"))
        backoff_ms = raw.get("backoff_ms", raw.get("backoffMs", 60_000))
        try:
            return cls(
                max_attempts=max(0, int(max_attempts)),
                backoff_kind=BackoffKind(str(backoff_kind).upper()),
                backoff_ms=max(0, int(backoff_ms)),
            )
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid retry policy: {raw!r}") from e


# ---- payload kinds ----

PAYLOAD_KIND_RECURRING = "recurring"
PAYLOAD_KIND_SCHEDULED_MESSAGE = "scheduled_message"


def _check_recurring_payload(payload: dict[str, Any]) -> None:
    ref = payload.get("recurring_task_id")
    if not isinstance(ref, str) or not ref.strip():
        raise ConfigurationError("recurring payload requires recurring_task_id")


def _check_message_payload(payload: dict[str, Any]) -> None:
    text = payload.get("text")
    if not isinstance(text, str) or not text.strip():
        raise ConfigurationError("scheduled_message payload requires text")


PAYLOAD_VALIDATORS = {
    PAYLOAD_KIND_RECURRING: _check_recurring_payload,
    PAYLOAD_KIND_SCHEDULED_MESSAGE: _check_message_payload,
}


def validate_payload(payload: Any) -> dict[str, Any]:
    """Known kinds are checked; anything else passes through as an open dict."""
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ConfigurationError("payload must be a JSON object")
    kind = payload.get("kind")
    check = PAYLOAD_VALIDATORS.get(kind) if isinstance(kind, str) else None
    if check is not None:
        check(payload)
    return payload


@dataclass(slots=True)
class Task:
    id: str
    owner_id: str
    title: str
    status: TaskStatus = TaskStatus.PENDING
    description: str = ""
    payload: dict[str, Any] = field(default_factory=dict)
    model_override: str | None = None
    dependencies: list[TaskDependency] = field(default_factory=list)
    execute_at: int | None = None
    created_at: int = 0
    updated_at: int = 0
    attempts: int = 0
    retry_policy: RetryPolicy | None = None
    error: str | None = None
    output: str | None = None

    @property
    def hard_dependencies(self) -> list[TaskDependency]:
        return [d for d in self.dependencies if d.kind == DependencyKind.HARD]

    @property
    def recurring_task_id(self) -> str | None:
        ref = (self.payload or {}).get("recurring_task_id")
        return ref if isinstance(ref, str) and ref else None

    @property
    def notify_on_complete(self) -> bool:
        # Completion notices are opt-out: payload {"notify_on_complete": false}.
        return (self.payload or {}).get("notify_on_complete", True) is not False


def is_recurring_instance(task: Task) -> bool:
    return task.recurring_task_id is not None


@dataclass(slots=True)
class RecurringTaskDefinition:
    id: str
    owner_id: str
    title: str
    schedule_kind: ScheduleKind
    interval_ms: int
    next_run_at: int
    description: str = ""
    model_override: str | None = None
    schedule_config: dict[str, Any] = field(default_factory=dict)
    payload: dict[str, Any] = field(default_factory=dict)
    last_run_at: int | None = None
    enabled: bool = True
    created_at: int = 0
    updated_at: int = 0
