# src/taskpulse/core/schedule_digest.py

"""
Schedule digest for schedule-sensitive owners.

A task whose description carries one of the planning/report markers gets a
merged view of what is coming up as its instruction preamble:
- scheduled tasks (WAITING with an execute_at),
- the next run of every enabled recurring definition,
across all owners, within a horizon, in a fixed order.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ..errors import ConfigurationError
from ..tasks.task_models import Task, TaskStatus, now_ms
from ..tasks.task_store import TaskStore
from .owners import Owner

logger = logging.getLogger(__name__)

DEFAULT_MARKERS = ("PLANNING_KIND", "REPORT_KIND")


class ScheduleDigestProvider:
    """Context provider: `await provider(owner, task)` -> preamble or ""."""

    def __init__(
        self,
        store: TaskStore,
        *,
        markers: Iterable[str] = DEFAULT_MARKERS,
        timezone: str = "UTC",
        horizon_hours: int = 168,
        limit: int = 50,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._store = store
        self._markers = tuple(m for m in markers if m)
        try:
            self._tz = ZoneInfo(timezone)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ConfigurationError(f"Unknown time zone for schedule digest: {timezone!r}") from e
        self._horizon_hours = max(1, int(horizon_hours))
        self._limit = max(1, int(limit))
        self._clock = clock

    def wants_schedule(self, task: Task) -> bool:
        """No markers configured means every task of the owner gets the digest."""
        if not self._markers:
            return True
        text = task.description or ""
        return any(marker in text for marker in self._markers)

    async def __call__(self, owner: Owner, task: Task) -> str:
        if not self.wants_schedule(task):
            return ""
        digest = self.build(self._clock())
        logger.debug("Schedule digest for owner=%s task=%s len=%d", owner.id, task.id, len(digest))
        return digest

    def _fmt(self, ms: int) -> str:
        return datetime.fromtimestamp(ms / 1000, self._tz).strftime("%a %Y-%m-%d %H:%M")

    def build(self, now: int) -> str:
        until = int(now) + self._horizon_hours * 3_600_000
        entries: list[tuple[int, str, str]] = []

        for task in self._store.list_by_status(TaskStatus.WAITING):
            if task.execute_at is not None and now <= task.execute_at <= until:
                entries.append((task.execute_at, task.owner_id, task.title))

        # Overdue definitions fire on the next tick; show them at their due time.
        for defn in self._store.list_recurring():
            if defn.enabled and defn.next_run_at <= until:
                entries.append((defn.next_run_at, defn.owner_id, f"{defn.title} (recurring)"))

        entries.sort()
        header = f"Merged schedule ({self._tz.key}), next {self._horizon_hours}h:"
        if not entries:
            return f"{header}\n(nothing scheduled)"

        lines = [header]
        for ts, owner_id, title in entries[: self._limit]:
            lines.append(f"- {self._fmt(ts)} [{owner_id}] {title}")
        if len(entries) > self._limit:
            lines.append(f"... and {len(entries) - self._limit} more")
        return "\n".join(lines)
