# tests/test_dispatcher.py

from __future__ import annotations

import pytest

from taskpulse.core.owners import Owner, OwnerRegistry
from taskpulse.core.ports import ExecutorResult
from taskpulse.dispatch.dispatcher import OwnerDispatcher, build_instruction
from taskpulse.errors import IsolatedOwnerError, StoreError
from taskpulse.tasks import task_api
from taskpulse.tasks.graph_evaluator import evaluate_graph
from taskpulse.tasks.recurring_scheduler import run_recurring
from taskpulse.tasks.task_models import BackoffKind, RetryPolicy, Task, TaskStatus
from taskpulse.tasks.task_store import TaskStore

from .conftest import make_owner
from .fakes import FakeClock, FakeExecutor, FakeNotifier


def _dispatcher(owner: Owner, store, executor, notifier, clock, **kw) -> OwnerDispatcher:
    return OwnerDispatcher(owner, store, executor, notifier, clock=clock, **kw)


@pytest.mark.asyncio
async def test_auto_owner_completes_ready_task(
    store: TaskStore, executor: FakeExecutor, notifier: FakeNotifier, clock: FakeClock
) -> None:
    owner = make_owner("alpha", auto=True)
    owner.model_hint = "default-model"
    task = task_api.create_task(store, "alpha", "write report", description="weekly", now=clock())

    report = await _dispatcher(owner, store, executor, notifier, clock).run()

    assert report.completed == [task.id]
    done = store.require_task(task.id)
    assert done.status == TaskStatus.COMPLETED
    assert done.output == "ok"
    assert notifier.sent == [("alpha", "Task completed: write report\n\nok")]

    (call,) = executor.calls
    assert call.agent_id == "alpha-agent"
    assert call.model_hint == "default-model"
    assert call.label == "write report"
    assert "write report" in call.instruction and "weekly" in call.instruction


@pytest.mark.asyncio
async def test_task_model_override_wins(
    store: TaskStore, executor: FakeExecutor, notifier: FakeNotifier, clock: FakeClock
) -> None:
    owner = make_owner("alpha")
    owner.model_hint = "default-model"
    task_api.create_task(store, "alpha", "t", model_override="special", now=clock())

    await _dispatcher(owner, store, executor, notifier, clock).run()
    assert executor.calls[0].model_hint == "special"


@pytest.mark.asyncio
async def test_manual_owner_waits_for_force(
    store: TaskStore, executor: FakeExecutor, notifier: FakeNotifier, clock: FakeClock
) -> None:
    owner = make_owner("beta", auto=False)
    task = task_api.create_task(store, "beta", "manual", now=clock())
    dispatcher = _dispatcher(owner, store, executor, notifier, clock)

    report = await dispatcher.run()
    assert report.skipped == [task.id]
    assert executor.calls == []
    assert store.require_task(task.id).status == TaskStatus.READY

    report = await dispatcher.run(force=True)
    assert report.completed == [task.id]


@pytest.mark.asyncio
async def test_recurring_instances_run_without_auto_flag(
    store: TaskStore, executor: FakeExecutor, notifier: FakeNotifier, clock: FakeClock
) -> None:
    owner = make_owner("beta", auto=False)
    task_api.create_recurring_task(
        store, "beta", "digest", "INTERVAL", interval_ms=60_000, next_run_at=clock(), now=clock()
    )
    manual = task_api.create_task(store, "beta", "manual", now=clock())
    (spawned,) = run_recurring(store, clock())

    report = await _dispatcher(owner, store, executor, notifier, clock).run()

    assert report.completed == [spawned]
    assert report.skipped == [manual.id]


@pytest.mark.asyncio
async def test_rejection_fails_task_and_notifies_once(
    store: TaskStore, notifier: FakeNotifier, clock: FakeClock
) -> None:
    executor = FakeExecutor([ExecutorResult(accepted=False, detail="agent busy")])
    task = task_api.create_task(store, "alpha", "doomed", now=clock())

    report = await _dispatcher(make_owner("alpha"), store, executor, notifier, clock).run()

    assert report.failed == [task.id]
    failed = store.require_task(task.id)
    assert failed.status == TaskStatus.FAILED
    assert "agent busy" in (failed.error or "")
    assert failed.attempts == 1
    assert len(notifier.sent) == 1
    owner_id, message = notifier.sent[0]
    assert owner_id == "alpha"
    assert "doomed" in message and task.id in message


@pytest.mark.asyncio
async def test_retry_policy_requeues_then_fails(
    store: TaskStore, notifier: FakeNotifier, clock: FakeClock
) -> None:
    rejected = ExecutorResult(accepted=False, detail="nope")
    executor = FakeExecutor([rejected, rejected, rejected])
    task = task_api.create_task(
        store,
        "alpha",
        "flaky",
        retry_policy=RetryPolicy(3, BackoffKind.EXPONENTIAL, 1000),
        now=clock(),
    )
    dispatcher = _dispatcher(make_owner("alpha"), store, executor, notifier, clock)

    report = await dispatcher.run()
    assert report.retried == [task.id]
    t = store.require_task(task.id)
    assert t.status == TaskStatus.WAITING
    assert t.attempts == 1
    assert t.execute_at == clock() + 1000
    assert notifier.sent == []

    # Not due yet.
    assert evaluate_graph(store, clock.advance(999)) == []
    assert evaluate_graph(store, clock.advance(1)) == [task.id]

    await dispatcher.run()
    t = store.require_task(task.id)
    assert t.status == TaskStatus.WAITING
    assert t.attempts == 2
    assert t.execute_at == clock() + 2000

    evaluate_graph(store, clock.advance(2000))
    report = await dispatcher.run()
    assert report.failed == [task.id]
    t = store.require_task(task.id)
    assert t.status == TaskStatus.FAILED
    assert t.attempts == 3
    assert len(notifier.sent) == 1


@pytest.mark.asyncio
async def test_executor_timeout_is_a_failure(
    store: TaskStore, notifier: FakeNotifier, clock: FakeClock
) -> None:
    executor = FakeExecutor(["hang"])
    task = task_api.create_task(store, "alpha", "slow", now=clock())

    await _dispatcher(
        make_owner("alpha"), store, executor, notifier, clock, timeout_seconds=0.05
    ).run()

    failed = store.require_task(task.id)
    assert failed.status == TaskStatus.FAILED
    assert "timed out" in (failed.error or "")


@pytest.mark.asyncio
async def test_unexpected_executor_error_is_isolated(
    store: TaskStore, notifier: FakeNotifier, clock: FakeClock
) -> None:
    executor = FakeExecutor([RuntimeError("kaboom")])
    first = task_api.create_task(store, "alpha", "first", now=clock())
    second = task_api.create_task(store, "alpha", "second", now=clock() + 1)

    with pytest.raises(IsolatedOwnerError):
        await _dispatcher(make_owner("alpha"), store, executor, notifier, clock).run()

    assert store.require_task(first.id).status == TaskStatus.FAILED
    assert "kaboom" in (store.require_task(first.id).error or "")
    # The rest of this owner's queue waits for the next tick.
    assert store.require_task(second.id).status == TaskStatus.READY


@pytest.mark.asyncio
async def test_owner_without_agent_fails_task(
    store: TaskStore, executor: FakeExecutor, notifier: FakeNotifier, clock: FakeClock
) -> None:
    owner = Owner(id="alpha", name="Alpha", auto_dispatch=True)
    task = task_api.create_task(store, "alpha", "orphan", now=clock())

    await _dispatcher(owner, store, executor, notifier, clock).run()

    assert executor.calls == []
    assert store.require_task(task.id).status == TaskStatus.FAILED
    assert len(notifier.sent) == 1


@pytest.mark.asyncio
async def test_notifier_failure_does_not_propagate(store: TaskStore, clock: FakeClock) -> None:
    executor = FakeExecutor([ExecutorResult(accepted=False, detail="no")])
    notifier = FakeNotifier(fail=True)
    task = task_api.create_task(store, "alpha", "t", now=clock())

    report = await _dispatcher(make_owner("alpha"), store, executor, notifier, clock).run()
    assert report.failed == [task.id]


@pytest.mark.asyncio
async def test_claimed_task_is_not_dispatched_twice(
    store: TaskStore, executor: FakeExecutor, notifier: FakeNotifier, clock: FakeClock
) -> None:
    task = task_api.create_task(store, "alpha", "t", now=clock())
    snapshot = store.require_task(task.id)
    store.try_transition(task.id, expected=[TaskStatus.READY], new=TaskStatus.EXECUTING)

    outcome = await _dispatcher(make_owner("alpha"), store, executor, notifier, clock).dispatch(snapshot)

    assert outcome is None
    assert executor.calls == []


@pytest.mark.asyncio
async def test_context_provider_feeds_instruction(
    store: TaskStore, executor: FakeExecutor, notifier: FakeNotifier, clock: FakeClock
) -> None:
    owner = make_owner("alpha")
    registry = OwnerRegistry()

    async def schedule_digest(o, t) -> str:
        return "Today: two meetings."

    registry.register(owner, schedule_digest)
    task_api.create_task(store, "alpha", "plan day", now=clock())

    await _dispatcher(owner, store, executor, notifier, clock, registry=registry).run()
    assert "Today: two meetings." in executor.calls[0].instruction


def test_build_instruction_mentions_channel() -> None:
    owner = make_owner("alpha")
    task = Task(id="t", owner_id="alpha", title="Summarize", description="the inbox")
    text = build_instruction(owner, task)
    assert "Summarize" in text
    assert "the inbox" in text
    assert owner.channel_id in text


@pytest.mark.asyncio
async def test_completion_notice_can_be_turned_off(
    store: TaskStore, executor: FakeExecutor, notifier: FakeNotifier, clock: FakeClock
) -> None:
    task = task_api.create_task(
        store, "alpha", "quiet", payload={"notify_on_complete": False}, now=clock()
    )

    report = await _dispatcher(make_owner("alpha"), store, executor, notifier, clock).run()

    assert report.completed == [task.id]
    assert notifier.sent == []


@pytest.mark.asyncio
async def test_completion_notice_truncates_long_output(
    store: TaskStore, notifier: FakeNotifier, clock: FakeClock
) -> None:
    executor = FakeExecutor([ExecutorResult(accepted=True, detail="x" * 1500)])
    task_api.create_task(store, "alpha", "verbose", now=clock())

    await _dispatcher(make_owner("alpha"), store, executor, notifier, clock).run()

    (_, message) = notifier.sent[0]
    assert message.startswith("Task completed: verbose\n\n")
    assert message.endswith("x" * 1000 + "...")


class WriteCountingStore(TaskStore):
    """Counts every write made after the claim."""

    def __init__(self, *args, **kwargs) -> None:
        self.writes: list[str] = []
        super().__init__(*args, **kwargs)

    def update_status(self, *args, **kwargs):
        self.writes.append("update_status")
        return super().update_status(*args, **kwargs)

    def update_task_fields(self, *args, **kwargs):
        self.writes.append("update_task_fields")
        return super().update_task_fields(*args, **kwargs)

    def record_outcome(self, *args, **kwargs):
        self.writes.append("record_outcome")
        return super().record_outcome(*args, **kwargs)


@pytest.mark.asyncio
@pytest.mark.parametrize("accepted", [True, False])
async def test_each_outcome_is_a_single_write(
    tmp_path, notifier: FakeNotifier, clock: FakeClock, accepted: bool
) -> None:
    store = WriteCountingStore(tmp_path / "counting.sqlite3")
    executor = FakeExecutor([ExecutorResult(accepted=accepted, detail="d")])
    task_api.create_task(
        store, "alpha", "t", retry_policy={"max_attempts": 3, "backoff_ms": 500}, now=clock()
    )

    await _dispatcher(make_owner("alpha"), store, executor, notifier, clock).run()

    assert store.writes == ["record_outcome"]


class BrokenOutcomeStore(TaskStore):
    def record_outcome(self, *args, **kwargs):
        raise StoreError("record_outcome failed: disk I/O error")


@pytest.mark.asyncio
async def test_unrecorded_failure_still_notifies_once(
    tmp_path, notifier: FakeNotifier, clock: FakeClock
) -> None:
    store = BrokenOutcomeStore(tmp_path / "broken.sqlite3")
    executor = FakeExecutor([ExecutorResult(accepted=False, detail="agent busy")])
    task = task_api.create_task(
        store, "alpha", "flaky", retry_policy={"max_attempts": 3}, now=clock()
    )

    report = await _dispatcher(make_owner("alpha"), store, executor, notifier, clock).run()

    assert report.failed == [task.id]
    stuck = store.require_task(task.id)
    # Nothing partial was written.
    assert stuck.status == TaskStatus.EXECUTING
    assert stuck.attempts == 0
    assert stuck.error is None
    assert len(notifier.sent) == 1
    _, message = notifier.sent[0]
    assert "could not be saved" in message and "agent busy" in message


@pytest.mark.asyncio
async def test_unrecorded_completion_notifies(
    tmp_path, executor: FakeExecutor, notifier: FakeNotifier, clock: FakeClock
) -> None:
    store = BrokenOutcomeStore(tmp_path / "broken.sqlite3")
    task = task_api.create_task(store, "alpha", "handed off", now=clock())

    report = await _dispatcher(make_owner("alpha"), store, executor, notifier, clock).run()

    assert report.completed == []
    assert store.require_task(task.id).status == TaskStatus.EXECUTING
    assert len(notifier.sent) == 1
    assert "could not be saved" in notifier.sent[0][1]
