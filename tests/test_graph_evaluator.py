# tests/test_graph_evaluator.py

from __future__ import annotations

from taskpulse.tasks import task_api
from taskpulse.tasks.graph_evaluator import evaluate_graph, is_eligible
from taskpulse.tasks.task_models import DependencyKind, Task, TaskDependency, TaskStatus
from taskpulse.tasks.task_store import TaskStore

T0 = 1_700_000_000_000


def test_task_without_gates_is_ready_on_creation(store: TaskStore) -> None:
    task = task_api.create_task(store, "alpha", "now", now=T0)
    assert task.status == TaskStatus.READY
    assert store.require_task(task.id).status == TaskStatus.READY


def test_time_gate(store: TaskStore) -> None:
    task = task_api.create_task(store, "alpha", "later", execute_at=T0 + 60_000, now=T0)
    assert task.status == TaskStatus.WAITING

    assert evaluate_graph(store, T0) == []
    assert store.require_task(task.id).status == TaskStatus.WAITING

    assert evaluate_graph(store, T0 + 60_001) == [task.id]
    assert store.require_task(task.id).status == TaskStatus.READY


def test_execute_at_equal_to_now_is_open(store: TaskStore) -> None:
    task = task_api.create_task(store, "alpha", "edge", execute_at=T0 + 10, now=T0)
    assert evaluate_graph(store, T0 + 10) == [task.id]


def test_hard_dependency_blocks_until_completed(store: TaskStore) -> None:
    dep = task_api.create_task(store, "alpha", "dep", now=T0)
    task = task_api.create_task(store, "alpha", "child", dependencies=[dep.id], now=T0)
    assert task.status == TaskStatus.WAITING

    for i in range(3):
        assert evaluate_graph(store, T0 + i) == []
    store.update_status(dep.id, TaskStatus.EXECUTING)
    assert evaluate_graph(store, T0 + 5) == []

    store.update_status(dep.id, TaskStatus.COMPLETED)
    assert evaluate_graph(store, T0 + 6) == [task.id]
    assert store.require_task(task.id).status == TaskStatus.READY


def test_failed_dependency_keeps_waiting(store: TaskStore) -> None:
    dep = task_api.create_task(store, "alpha", "dep", now=T0)
    task = task_api.create_task(store, "alpha", "child", dependencies=[dep.id], now=T0)
    store.update_status(dep.id, TaskStatus.EXECUTING)
    store.update_status(dep.id, TaskStatus.FAILED, error="boom")

    assert evaluate_graph(store, T0 + 1) == []
    assert store.require_task(task.id).status == TaskStatus.WAITING


def test_soft_dependency_never_blocks(store: TaskStore) -> None:
    dep = task_api.create_task(store, "alpha", "dep", execute_at=T0 + 999_999, now=T0)
    task = task_api.create_task(
        store,
        "alpha",
        "child",
        dependencies=[{"task_id": dep.id, "kind": "SOFT"}],
        now=T0,
    )
    assert task.status == TaskStatus.READY


def test_unknown_dependency_is_unmet(store: TaskStore) -> None:
    task = task_api.create_task(store, "alpha", "orphan", dependencies=["ghost"], now=T0)
    assert task.status == TaskStatus.WAITING
    assert evaluate_graph(store, T0 + 10**9) == []


def test_evaluation_is_idempotent(store: TaskStore) -> None:
    task_api.create_task(store, "alpha", "a", execute_at=T0 + 1, now=T0)
    task_api.create_task(store, "alpha", "b", execute_at=T0 + 1, now=T0)

    first = evaluate_graph(store, T0 + 2)
    assert len(first) == 2
    snapshot = {t.id: (t.status, t.updated_at) for t in store.list_all()}

    assert evaluate_graph(store, T0 + 3) == []
    assert {t.id: (t.status, t.updated_at) for t in store.list_all()} == snapshot


def test_paused_and_escalated_tasks_are_not_promoted(store: TaskStore) -> None:
    paused = task_api.create_task(store, "alpha", "p", now=T0)
    task_api.pause_task(store, paused.id)
    blocked = task_api.create_task(store, "alpha", "b", execute_at=T0 + 1, now=T0)
    task_api.escalate_task(store, blocked.id, TaskStatus.BLOCKED, "needs input")

    assert evaluate_graph(store, T0 + 10) == []
    assert store.require_task(paused.id).status == TaskStatus.PAUSED
    assert store.require_task(blocked.id).status == TaskStatus.BLOCKED


def test_legacy_pending_rows_are_settled(store: TaskStore) -> None:
    store.create_task(Task(id="p1", owner_id="alpha", title="now", created_at=T0))
    store.create_task(Task(id="p2", owner_id="alpha", title="later", execute_at=T0 + 100, created_at=T0))

    assert evaluate_graph(store, T0) == ["p1"]
    assert store.require_task("p1").status == TaskStatus.READY
    assert store.require_task("p2").status == TaskStatus.WAITING


def test_is_eligible_pure() -> None:
    task = Task(
        id="t",
        owner_id="o",
        title="x",
        dependencies=[TaskDependency("d1"), TaskDependency("d2", DependencyKind.SOFT)],
    )
    assert not is_eligible(task, {}, T0)
    assert is_eligible(task, {"d1": TaskStatus.COMPLETED}, T0)
    assert not is_eligible(task, {"d1": TaskStatus.READY, "d2": TaskStatus.COMPLETED}, T0)
