# tests/test_heartbeat.py

from __future__ import annotations

import asyncio

import pytest

from taskpulse.core.owners import OwnerRegistry
from taskpulse.core.ports import ExecutorResult
from taskpulse.heartbeat import HeartbeatDriver
from taskpulse.tasks import task_api
from taskpulse.tasks.task_models import TaskStatus
from taskpulse.tasks.task_store import TaskStore

from .conftest import make_owner
from .fakes import FakeClock, FakeExecutor, FakeNotifier


def _driver(store, owners, executor, notifier, clock, **kw) -> HeartbeatDriver:
    kw.setdefault("dispatch_wait_seconds", 0.2)
    return HeartbeatDriver(store, owners, executor, notifier, interval_seconds=0.05, clock=clock, **kw)


class CrashingExecutor:
    """Raises for one agent, accepts everything else."""

    def __init__(self, crash_agent: str) -> None:
        self.crash_agent = crash_agent

    async def invoke(self, *, instruction, agent_id, model_hint, label) -> ExecutorResult:
        if agent_id == self.crash_agent:
            raise RuntimeError("executor bug")
        return ExecutorResult(accepted=True, detail="ok")


@pytest.mark.asyncio
async def test_hung_owner_does_not_block_others(
    store: TaskStore, notifier: FakeNotifier, clock: FakeClock
) -> None:
    owners = OwnerRegistry([make_owner("alpha"), make_owner("gamma")])
    executor = FakeExecutor(hang_agents={"alpha-agent"})
    driver = _driver(store, owners, executor, notifier, clock)

    stuck = task_api.create_task(store, "alpha", "stuck", now=clock())
    free = task_api.create_task(store, "gamma", "free", now=clock())

    try:
        report = await driver.tick()
        assert store.require_task(free.id).status == TaskStatus.COMPLETED
        assert report.dispatches["gamma"].completed == [free.id]
        assert report.in_flight == ["alpha"]
        assert store.require_task(stuck.id).status == TaskStatus.EXECUTING

        # Next tick: alpha is still busy and skipped, gamma keeps going.
        more = task_api.create_task(store, "gamma", "more", now=clock())
        report = await driver.tick()
        assert "alpha" not in report.dispatches
        assert report.dispatches["gamma"].completed == [more.id]
        assert len([c for c in executor.calls if c.agent_id == "alpha-agent"]) == 1
    finally:
        await driver.stop()

    assert driver.in_flight_owners() == []


@pytest.mark.asyncio
async def test_released_owner_is_collected_on_later_tick(
    store: TaskStore, notifier: FakeNotifier, clock: FakeClock
) -> None:
    owners = OwnerRegistry([make_owner("alpha")])
    executor = FakeExecutor(["hang"])
    driver = _driver(store, owners, executor, notifier, clock, dispatch_wait_seconds=0.05)
    task = task_api.create_task(store, "alpha", "slow", now=clock())

    report = await driver.tick()
    assert report.in_flight == ["alpha"]

    executor.release()
    await asyncio.sleep(0.05)
    report = await driver.tick()
    assert report.in_flight == []
    assert store.require_task(task.id).status == TaskStatus.COMPLETED
    await driver.stop()


@pytest.mark.asyncio
async def test_unexpected_owner_error_is_isolated(
    store: TaskStore, notifier: FakeNotifier, clock: FakeClock
) -> None:
    owners = OwnerRegistry([make_owner("alpha"), make_owner("gamma")])
    driver = _driver(store, owners, CrashingExecutor("alpha-agent"), notifier, clock)
    bad = task_api.create_task(store, "alpha", "bad", now=clock())
    good = task_api.create_task(store, "gamma", "good", now=clock())

    report = await driver.tick()

    assert report.errors == ["alpha"]
    assert store.require_task(bad.id).status == TaskStatus.FAILED
    assert store.require_task(good.id).status == TaskStatus.COMPLETED


@pytest.mark.asyncio
async def test_recurring_instance_is_dispatched_in_the_same_tick(
    store: TaskStore, executor: FakeExecutor, notifier: FakeNotifier, clock: FakeClock
) -> None:
    owners = OwnerRegistry([make_owner("beta", auto=False)])
    driver = _driver(store, owners, executor, notifier, clock)
    defn = task_api.create_recurring_task(
        store, "beta", "digest", "INTERVAL", interval_ms=60_000, next_run_at=clock(), now=clock()
    )

    report = await driver.tick()

    assert len(report.spawned) == 1
    assert report.dispatches["beta"].completed == report.spawned
    assert store.require_task(report.spawned[0]).recurring_task_id == defn.id


@pytest.mark.asyncio
async def test_promotion_then_dispatch_in_one_tick(
    store: TaskStore, executor: FakeExecutor, notifier: FakeNotifier, clock: FakeClock
) -> None:
    owners = OwnerRegistry([make_owner("alpha")])
    driver = _driver(store, owners, executor, notifier, clock)
    task = task_api.create_task(store, "alpha", "later", execute_at=clock() + 1000, now=clock())

    report = await driver.tick()
    assert report.promoted == []
    assert store.require_task(task.id).status == TaskStatus.WAITING

    clock.advance(1000)
    report = await driver.tick()
    assert report.promoted == [task.id]
    assert report.dispatches["alpha"].completed == [task.id]


@pytest.mark.asyncio
async def test_idle_ticks_change_nothing(
    store: TaskStore, executor: FakeExecutor, notifier: FakeNotifier, clock: FakeClock
) -> None:
    owners = OwnerRegistry([make_owner("beta", auto=False)])
    driver = _driver(store, owners, executor, notifier, clock)
    task_api.create_task(store, "beta", "manual", now=clock())
    before = [(t.id, t.status, t.updated_at) for t in store.list_all()]

    for _ in range(2):
        report = await driver.tick()
        assert report.promoted == [] and report.spawned == []
        assert report.dispatches["beta"].dispatched == 0

    assert [(t.id, t.status, t.updated_at) for t in store.list_all()] == before
    assert executor.calls == []


@pytest.mark.asyncio
async def test_force_run_dispatches_manual_owner(
    store: TaskStore, executor: FakeExecutor, notifier: FakeNotifier, clock: FakeClock
) -> None:
    owners = OwnerRegistry([make_owner("beta", auto=False)])
    driver = _driver(store, owners, executor, notifier, clock)
    task = task_api.create_task(store, "beta", "manual", now=clock())

    report = await driver.force_run("beta")

    assert report is not None
    assert report.completed == [task.id]
