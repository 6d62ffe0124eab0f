# src/taskpulse/tasks/task_api.py

"""
Administrative surface over the task store.

Chat commands and the CLI go through these helpers instead of touching the
store directly, so creation and operator actions apply the same rules as the
heartbeat (initial READY/WAITING decision, escalation targets, recurring
schedule derivation).
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

from ..errors import ConfigurationError, InvalidTransitionError
from .graph_evaluator import hard_dependency_statuses, is_eligible
from .recurring_scheduler import compute_next_run, derive_interval_ms, validate_schedule
from .task_models import (
    RecurringTaskDefinition,
    RetryPolicy,
    ScheduleKind,
    Task,
    TaskStatus,
    normalize_dependencies,
    now_ms,
)
from .task_store import TaskStore

logger = logging.getLogger(__name__)

_ESCALATION_TARGETS = (TaskStatus.BLOCKED, TaskStatus.NEEDS_REVIEW)


def create_task(
    store: TaskStore,
    owner_id: str,
    title: str,
    *,
    description: str = "",
    payload: dict[str, Any] | None = None,
    dependencies: list[Any] | None = None,
    execute_at: int | None = None,
    retry_policy: RetryPolicy | dict[str, Any] | None = None,
    model_override: str | None = None,
    task_id: str | None = None,
    now: int | None = None,
) -> Task:
    """
    Create a task and decide its initial status with the evaluator's gates:
    READY when every HARD dependency is COMPLETED and the time gate is open,
    WAITING otherwise.
    """
    ts = now_ms() if now is None else int(now)
    if isinstance(retry_policy, dict):
        retry_policy = RetryPolicy.from_dict(retry_policy)

    task = Task(
        id=task_id or uuid.uuid4().hex,
        owner_id=owner_id,
        title=title,
        status=TaskStatus.PENDING,
        description=description or "",
        payload=dict(payload or {}),
        model_override=model_override,
        dependencies=normalize_dependencies(dependencies or []),
        execute_at=None if execute_at is None else int(execute_at),
        created_at=ts,
        updated_at=ts,
        retry_policy=retry_policy,
    )

    deps = hard_dependency_statuses(store, task)
    task.status = TaskStatus.READY if is_eligible(task, deps, ts) else TaskStatus.WAITING
    store.create_task(task)
    logger.info("Task created id=%s owner=%s status=%s", task.id, owner_id, task.status.value)
    return task


def create_recurring_task(
    store: TaskStore,
    owner_id: str,
    title: str,
    schedule_kind: ScheduleKind | str,
    *,
    description: str = "",
    interval_ms: int | None = None,
    schedule_config: dict[str, Any] | None = None,
    payload: dict[str, Any] | None = None,
    model_override: str | None = None,
    next_run_at: int | None = None,
    enabled: bool = True,
    definition_id: str | None = None,
    default_tz: str = "UTC",
    now: int | None = None,
) -> RecurringTaskDefinition:
    """
    HOURLY/DAILY/WEEKLY get their fixed interval; INTERVAL requires one.
    Without an explicit next_run_at the first fire is the next schedule point.
    """
    ts = now_ms() if now is None else int(now)
    kind = ScheduleKind.parse(schedule_kind)
    cfg = dict(schedule_config or {})
    validate_schedule(kind, cfg, default_tz)

    defn = RecurringTaskDefinition(
        id=definition_id or uuid.uuid4().hex,
        owner_id=owner_id,
        title=title,
        schedule_kind=kind,
        interval_ms=derive_interval_ms(kind, interval_ms),
        next_run_at=0,
        description=description or "",
        model_override=model_override,
        schedule_config=cfg,
        payload=dict(payload or {}),
        enabled=enabled,
        created_at=ts,
        updated_at=ts,
    )
    defn.next_run_at = int(next_run_at) if next_run_at is not None else compute_next_run(defn, ts, default_tz)
    return store.create_recurring(defn)


# ---- operator actions ----


def pause_task(store: TaskStore, task_id: str, *, now: int | None = None) -> Task:
    return store.update_status(task_id, TaskStatus.PAUSED, now=now)


def resume_task(store: TaskStore, task_id: str, *, now: int | None = None) -> Task:
    task = store.require_task(task_id)
    if task.status != TaskStatus.PAUSED:
        raise InvalidTransitionError(task_id, task.status.value, TaskStatus.READY.value)
    return store.update_status(task_id, TaskStatus.READY, now=now)


def escalate_task(
    store: TaskStore,
    task_id: str,
    status: TaskStatus | str,
    reason: str | None = None,
    *,
    now: int | None = None,
) -> Task:
    target = TaskStatus(str(status).upper())
    if target not in _ESCALATION_TARGETS:
        raise ConfigurationError(f"Cannot escalate to {target.value}; use BLOCKED or NEEDS_REVIEW")
    return store.update_status(task_id, target, error=reason, now=now)


def resolve_task(store: TaskStore, task_id: str, *, now: int | None = None) -> Task:
    task = store.require_task(task_id)
    if task.status not in _ESCALATION_TARGETS:
        raise InvalidTransitionError(task_id, task.status.value, TaskStatus.READY.value)
    return store.update_status(task_id, TaskStatus.READY, now=now)


def override_task(store: TaskStore, task_id: str, **fields: Any) -> Task:
    """Set any field directly, bypassing the state machine."""
    if "status" in fields and fields["status"] is not None:
        fields["status"] = TaskStatus(str(fields["status"]).upper())
    if isinstance(fields.get("retry_policy"), dict):
        fields["retry_policy"] = RetryPolicy.from_dict(fields["retry_policy"])
    task = store.update_task_fields(task_id, **fields)
    logger.warning("Task %s overridden fields=%s", task_id, ",".join(sorted(fields)))
    return task


# ---- read surface ----


def list_recent_tasks(store: TaskStore, limit: int = 20, owner_id: str | None = None) -> list[Task]:
    return store.list_all(limit=max(1, int(limit)), owner_id=owner_id)


def list_recurring_tasks(store: TaskStore, owner_id: str | None = None) -> list[RecurringTaskDefinition]:
    return store.list_recurring(owner_id)


def set_recurring_enabled(store: TaskStore, definition_id: str, enabled: bool) -> RecurringTaskDefinition:
    return store.set_recurring_enabled(definition_id, enabled)


def owner_summary(store: TaskStore, owner_id: str) -> dict[str, int]:
    counts = store.count_by_status(owner_id)
    return {status.value: counts.get(status, 0) for status in TaskStatus}
