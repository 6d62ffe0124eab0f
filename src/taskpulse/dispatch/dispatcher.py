# src/taskpulse/dispatch/dispatcher.py

from __future__ import annotations

"""
Per-owner dispatcher.

Each run:
- fetches the owner's READY tasks,
- applies the dispatch policy (auto flag, forced run, recurring-originated work),
- claims each task (READY -> EXECUTING) and hands it to the executor,
- records COMPLETED on acceptance, FAILED otherwise (with retry requeue when the
  task's retry policy allows it),
- tells the owner about completions (unless the task opts out) and terminal failures.

Tasks of one owner are processed strictly one after another.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field, replace

from ..core.owners import Owner, OwnerRegistry
from ..core.ports import AgentExecutor, Notifier, TaskRepo
from ..errors import (
    ConfigurationError,
    InvalidTransitionError,
    IsolatedOwnerError,
    StoreError,
    TaskNotFoundError,
    TransientDispatchError,
)
from ..tasks.retry import next_retry_at
from ..tasks.task_models import Task, TaskStatus, is_recurring_instance, now_ms

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class DispatchReport:
    owner_id: str
    completed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    retried: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    @property
    def dispatched(self) -> int:
        return len(self.completed) + len(self.failed) + len(self.retried)


def build_instruction(owner: Owner, task: Task, preamble: str = "") -> str:
    parts: list[str] = [f"You are executing a task for {owner.name}."]
    if owner.description:
        parts.append(f"Context: {owner.description}")
    parts.append(f"Your task is: {task.title}")
    if task.description:
        parts.append(f"Task details: {task.description}")
    if preamble:
        parts.append(preamble.strip())
    if owner.channel_id:
        parts.append(
            f"When finished, send a short summary to channel {owner.channel_id}."
        )
    return "\n\n".join(parts)


def should_dispatch(owner: Owner, task: Task, *, force: bool) -> bool:
    # Recurring-originated work always runs, regardless of the auto flag.
    return owner.auto_dispatch or force or is_recurring_instance(task)


def format_failure_notice(task: Task, error: str) -> str:
    return f"Task failed: {task.title} ({task.id})\nError: {error}"


COMPLETION_DETAIL_LIMIT = 1000


def format_completion_notice(task: Task, detail: str) -> str:
    text = (detail or "").strip()
    if len(text) > COMPLETION_DETAIL_LIMIT:
        text = text[:COMPLETION_DETAIL_LIMIT] + "..."
    head = f"Task completed: {task.title}"
    return f"{head}\n\n{text}" if text else head


def format_unrecorded_notice(task: Task, outcome: str, store_error: str) -> str:
    return (
        f"Task {outcome} but its status could not be saved: {task.title} ({task.id})\n"
        f"Store error: {store_error}\n"
        "The task is still marked EXECUTING; resolve it manually."
    )


class OwnerDispatcher:
    def __init__(
        self,
        owner: Owner,
        store: TaskRepo,
        executor: AgentExecutor,
        notifier: Notifier,
        *,
        registry: OwnerRegistry | None = None,
        timeout_seconds: float | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.owner = owner
        self._store = store
        self._executor = executor
        self._notifier = notifier
        self._registry = registry
        self._timeout = timeout_seconds if timeout_seconds and timeout_seconds > 0 else None
        self._clock = clock

    async def run(self, *, force: bool = False) -> DispatchReport:
        report = DispatchReport(owner_id=self.owner.id)
        tasks = self._store.list_by_owner_and_status(self.owner.id, TaskStatus.READY)
        if not tasks:
            return report

        logger.info("Found ready tasks owner=%s count=%d force=%s", self.owner.id, len(tasks), force)

        for task in tasks:
            if not should_dispatch(self.owner, task, force=force):
                report.skipped.append(task.id)
                continue

            outcome = await self.dispatch(task)
            if outcome == TaskStatus.COMPLETED:
                report.completed.append(task.id)
            elif outcome == TaskStatus.FAILED:
                report.failed.append(task.id)
            elif outcome == TaskStatus.WAITING:
                report.retried.append(task.id)
            else:
                report.skipped.append(task.id)

        return report

    async def dispatch(self, task: Task) -> TaskStatus | None:
        """
        Dispatch one READY task. Returns its resulting status, or None if it
        could not be claimed (already taken or changed by an operator).
        """
        if not self._store.try_transition(
            task.id, expected=[TaskStatus.READY], new=TaskStatus.EXECUTING, now=self._clock()
        ):
            logger.info("Task %s no longer READY; not dispatching", task.id)
            return None

        try:
            result_detail = await self._invoke(task)
        except (TransientDispatchError, ConfigurationError) as e:
            logger.warning("Dispatch failed task=%s owner=%s: %s", task.id, self.owner.id, e)
            return await self._fail(task, str(e))
        except Exception as e:
            logger.exception("Unexpected executor error task=%s owner=%s", task.id, self.owner.id)
            await self._fail(task, f"{type(e).__name__}: {e}")
            raise IsolatedOwnerError(
                f"Dispatch loop for owner {self.owner.id} aborted",
                context={"owner_id": self.owner.id, "task_id": task.id},
            ) from e

        try:
            done = self._store.record_outcome(
                task.id, TaskStatus.COMPLETED, output=result_detail, now=self._clock()
            )
        except (InvalidTransitionError, TaskNotFoundError) as e:
            # Operator paused/escalated/deleted it while the executor was working.
            logger.warning("Task %s accepted by executor but not completed: %s", task.id, e)
            return None
        except StoreError as e:
            logger.error("Task %s accepted by executor but outcome not recorded: %s", task.id, e)
            await self._notify(format_unrecorded_notice(task, "completed", str(e)))
            return None

        logger.info("Task execution handed off task=%s owner=%s", task.id, self.owner.id)
        if done.notify_on_complete:
            await self._notify(format_completion_notice(done, result_detail))
        return TaskStatus.COMPLETED

    async def _invoke(self, task: Task) -> str:
        if not self.owner.agent_id:
            raise ConfigurationError(f"Owner {self.owner.id} has no agent configured")

        preamble = ""
        if self._registry is not None:
            preamble = await self._registry.context_for(self.owner, task)
        instruction = build_instruction(self.owner, task, preamble)

        logger.info(
            "Executing task=%s owner=%s agent=%s instruction_len=%d",
            task.id,
            self.owner.id,
            self.owner.agent_id,
            len(instruction),
        )

        call = self._executor.invoke(
            instruction=instruction,
            agent_id=self.owner.agent_id,
            model_hint=task.model_override or self.owner.model_hint,
            label=task.title,
        )
        try:
            if self._timeout is None:
                result = await call
            else:
                result = await asyncio.wait_for(call, timeout=self._timeout)
        except asyncio.TimeoutError as e:
            raise TransientDispatchError(
                f"Executor timed out after {self._timeout:g}s",
                context={"task_id": task.id},
            ) from e

        if not result.accepted:
            raise TransientDispatchError(
                f"Executor rejected task: {result.detail or 'no detail'}",
                context={"task_id": task.id},
            )
        return result.detail

    async def _fail(self, task: Task, error: str) -> TaskStatus | None:
        now = self._clock()
        attempts = task.attempts + 1
        retry_at = next_retry_at(replace(task, attempts=attempts), now)
        try:
            failed = self._store.record_outcome(
                task.id,
                TaskStatus.FAILED,
                error=error,
                attempts=attempts,
                requeue_at=retry_at,
                now=now,
            )
        except (InvalidTransitionError, TaskNotFoundError) as e:
            logger.warning("Task %s could not be marked FAILED: %s", task.id, e)
            return None
        except StoreError as e:
            # Nothing was written: the task is still EXECUTING and needs a human.
            logger.error("Task %s failed and its outcome was not recorded: %s", task.id, e)
            await self._notify(format_unrecorded_notice(task, f"failed ({error})", str(e)))
            return TaskStatus.FAILED

        if retry_at is not None:
            logger.warning(
                "Task %s scheduled for retry attempt=%d/%d execute_at=%s",
                task.id,
                failed.attempts,
                failed.retry_policy.max_attempts if failed.retry_policy else 0,
                retry_at,
            )
            return TaskStatus.WAITING

        await self._notify(format_failure_notice(failed, error))
        return TaskStatus.FAILED

    async def _notify(self, message: str) -> None:
        try:
            await self._notifier.notify(self.owner.id, message)
        except Exception:
            logger.exception("Failed to notify owner=%s", self.owner.id)
