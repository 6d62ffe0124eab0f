# src/taskpulse/tasks/graph_evaluator.py

"""
WAITING -> READY promotion.

A task is eligible when both gates pass:
- time gate: execute_at is None or execute_at <= now
- dependency gate: every HARD dependency is COMPLETED

SOFT dependencies never gate. A dependency on an unknown/deleted task is
treated as unmet forever; only an operator override releases such a task.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping

from ..core.ports import TaskRepo
from ..errors import InvalidTransitionError, StoreError, TaskNotFoundError
from .task_models import Task, TaskStatus, now_ms

logger = logging.getLogger(__name__)


def time_gate_open(task: Task, now: int) -> bool:
    return task.execute_at is None or task.execute_at <= now


def dependencies_met(task: Task, dep_statuses: Mapping[str, TaskStatus]) -> bool:
    return all(dep_statuses.get(d.task_id) == TaskStatus.COMPLETED for d in task.hard_dependencies)


def is_eligible(task: Task, dep_statuses: Mapping[str, TaskStatus], now: int) -> bool:
    return time_gate_open(task, now) and dependencies_met(task, dep_statuses)


def hard_dependency_statuses(store: TaskRepo, task: Task) -> dict[str, TaskStatus]:
    ids = [d.task_id for d in task.hard_dependencies]
    return store.get_statuses(ids) if ids else {}


def _promote(store: TaskRepo, task: Task, now: int) -> bool:
    # Conditional on the status we read, so a concurrent operator change wins.
    return store.try_transition(task.id, expected=[task.status], new=TaskStatus.READY, now=now)


def evaluate_graph(store: TaskRepo, now: int | None = None) -> list[str]:
    """
    Run one evaluation pass. Returns the ids promoted to READY.

    Only WAITING tasks (and legacy PENDING rows, which are settled into READY or
    WAITING) are scanned, so a second pass with no state change is a no-op.
    """
    ts = now_ms() if now is None else int(now)
    promoted: list[str] = []

    pending = store.list_by_status(TaskStatus.PENDING)
    waiting = store.list_waiting()

    for task in [*pending, *waiting]:
        try:
            statuses = hard_dependency_statuses(store, task)
            if is_eligible(task, statuses, ts):
                if _promote(store, task, ts):
                    promoted.append(task.id)
                    logger.info("Promoting task %s (%s) to READY", task.id, task.title)
            elif task.status == TaskStatus.PENDING:
                store.try_transition(
                    task.id, expected=[TaskStatus.PENDING], new=TaskStatus.WAITING, now=ts
                )
        except (TaskNotFoundError, InvalidTransitionError):
            # Deleted or moved by someone else since the scan.
            logger.debug("Task %s changed during evaluation; skipping", task.id)
        except StoreError:
            logger.exception("Evaluation failed for task %s; will retry next tick", task.id)

    if promoted:
        logger.info("Graph evaluation promoted %d task(s)", len(promoted))
    return promoted
