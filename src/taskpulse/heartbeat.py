# src/taskpulse/heartbeat.py

from __future__ import annotations

"""
Heartbeat driver.

One tick:
1. Graph evaluator (WAITING -> READY)
2. Recurring scheduler (spawn due instances)
3. One dispatcher per owner, concurrently

Steps 1 and 2 finish before any dispatcher starts. Dispatchers for different
owners never wait on each other: an owner whose previous dispatch is still in
flight (e.g. a hung executor call) is skipped until it finishes, while every
other owner keeps ticking.

To stop the loop, cancel run_forever() or call stop().
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from .core.owners import Owner, OwnerRegistry
from .core.ports import AgentExecutor, Notifier, TaskRepo
from .dispatch.dispatcher import DispatchReport, OwnerDispatcher
from .errors import IsolatedOwnerError, StoreError
from .tasks.graph_evaluator import evaluate_graph
from .tasks.recurring_scheduler import run_recurring
from .tasks.task_models import now_ms

logger = logging.getLogger(__name__)


def _reap(task: asyncio.Task) -> None:
    # Owner failures are already logged; mark late exceptions as retrieved.
    if not task.cancelled():
        task.exception()


@dataclass(slots=True)
class TickReport:
    now: int
    promoted: list[str] = field(default_factory=list)
    spawned: list[str] = field(default_factory=list)
    dispatches: dict[str, DispatchReport] = field(default_factory=dict)
    in_flight: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


class HeartbeatDriver:
    def __init__(
        self,
        store: TaskRepo,
        owners: OwnerRegistry,
        executor: AgentExecutor,
        notifier: Notifier,
        *,
        interval_seconds: float = 30.0,
        dispatch_wait_seconds: float | None = None,
        executor_timeout_seconds: float | None = None,
        default_tz: str = "UTC",
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._store = store
        self._owners = owners
        self._executor = executor
        self._notifier = notifier
        self._interval = max(0.01, float(interval_seconds))
        self._dispatch_wait = (
            self._interval if dispatch_wait_seconds is None else max(0.0, float(dispatch_wait_seconds))
        )
        self._executor_timeout = executor_timeout_seconds
        self._default_tz = default_tz
        self._clock = clock
        self._in_flight: dict[str, asyncio.Task[DispatchReport]] = {}

    @property
    def interval_seconds(self) -> float:
        return self._interval

    def in_flight_owners(self) -> list[str]:
        return [oid for oid, t in self._in_flight.items() if not t.done()]

    def _dispatcher(self, owner: Owner) -> OwnerDispatcher:
        return OwnerDispatcher(
            owner,
            self._store,
            self._executor,
            self._notifier,
            registry=self._owners,
            timeout_seconds=self._executor_timeout,
            clock=self._clock,
        )

    async def _run_owner(self, owner: Owner, force: bool) -> DispatchReport:
        try:
            return await self._dispatcher(owner).run(force=force)
        except asyncio.CancelledError:
            raise
        except IsolatedOwnerError:
            logger.exception("Dispatch loop failed owner=%s", owner.id)
            raise
        except Exception as e:
            logger.exception("Dispatch loop failed owner=%s", owner.id)
            raise IsolatedOwnerError(
                f"Dispatch loop for owner {owner.id} failed: {e}", context={"owner_id": owner.id}
            ) from e

    def _launch(self, owner: Owner, *, force: bool) -> asyncio.Task[DispatchReport] | None:
        current = self._in_flight.get(owner.id)
        if current is not None and not current.done():
            logger.warning("Owner %s still dispatching from an earlier tick; skipping", owner.id)
            return None
        task = asyncio.create_task(self._run_owner(owner, force), name=f"dispatch:{owner.id}")
        task.add_done_callback(_reap)
        self._in_flight[owner.id] = task
        return task

    def _collect(self, owner_id: str, task: asyncio.Task[DispatchReport], report: TickReport) -> None:
        if task.cancelled():
            report.errors.append(owner_id)
            return
        exc = task.exception()
        if exc is not None:
            report.errors.append(owner_id)
            return
        report.dispatches[owner_id] = task.result()

    async def tick(self, now: int | None = None) -> TickReport:
        ts = self._clock() if now is None else int(now)
        report = TickReport(now=ts)
        logger.debug("Heartbeat tick now=%s", ts)

        try:
            report.promoted = evaluate_graph(self._store, ts)
        except StoreError:
            logger.exception("Graph evaluation failed; retrying next tick")
            report.errors.append("evaluator")

        try:
            report.spawned = run_recurring(self._store, ts, default_tz=self._default_tz)
        except StoreError:
            logger.exception("Recurring scheduling failed; retrying next tick")
            report.errors.append("scheduler")

        launched: dict[str, asyncio.Task[DispatchReport]] = {}
        for owner in self._owners.all():
            task = self._launch(owner, force=False)
            if task is not None:
                launched[owner.id] = task

        if launched:
            timeout = self._dispatch_wait if self._dispatch_wait > 0 else None
            await asyncio.wait(launched.values(), timeout=timeout)

        for owner_id, task in launched.items():
            if task.done():
                self._collect(owner_id, task, report)
        report.in_flight = self.in_flight_owners()
        if report.in_flight:
            logger.warning("Dispatch still in flight owners=%s", ",".join(report.in_flight))
        return report

    async def force_run(self, owner_id: str) -> DispatchReport | None:
        """Dispatch all READY tasks of one owner now, ignoring its auto flag."""
        owner = self._owners.require(owner_id)
        logger.info("Force run triggered owner=%s", owner_id)
        task = self._launch(owner, force=True)
        if task is None:
            return None
        return await task

    async def run_forever(self) -> None:
        logger.info("Starting heartbeat loop interval=%.1fs owners=%d", self._interval, len(self._owners))
        try:
            while True:
                try:
                    await self.tick()
                except Exception:
                    logger.exception("Heartbeat tick failed")
                await asyncio.sleep(self._interval)
        finally:
            await self.stop()

    async def stop(self) -> None:
        pending = [t for t in self._in_flight.values() if not t.done()]
        for t in pending:
            t.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.info("Cancelled %d in-flight dispatch(es)", len(pending))
        self._in_flight.clear()
