# src/taskpulse/tasks/recurring_scheduler.py

"""
Recurring task scheduler.

Each tick, every enabled definition with next_run_at <= now:
- spawns one READY task instance tagged with the definition id,
- advances next_run_at from the actual fire time (not the previous target),
- persists both in one store transaction.

A tick that runs late shifts the schedule by the delay; that drift is accepted.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, time, timedelta, timezone
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ..core.ports import TaskRepo
from ..errors import ConfigurationError, StoreError
from .task_models import (
    DERIVED_INTERVAL_MS,
    PAYLOAD_KIND_RECURRING,
    RecurringTaskDefinition,
    ScheduleKind,
    Task,
    TaskStatus,
    now_ms,
)

logger = logging.getLogger(__name__)


def _config_int(cfg: dict[str, Any], key: str, default: int, lo: int, hi: int) -> int:
    raw = cfg.get(key, default)
    try:
        val = int(raw)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"schedule_config.{key} must be an integer, got {raw!r}") from e
    if not lo <= val <= hi:
        raise ConfigurationError(f"schedule_config.{key} must be in [{lo}, {hi}], got {val}")
    return val


def _zone(cfg: dict[str, Any], default_tz: str) -> ZoneInfo:
    name = cfg.get("timezone") or default_tz or "UTC"
    try:
        return ZoneInfo(str(name))
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ConfigurationError(f"Unknown timezone: {name!r}") from e


def derive_interval_ms(kind: ScheduleKind, interval_ms: int | None) -> int:
    """INTERVAL needs an explicit positive value; the other kinds have a fixed period."""
    if kind == ScheduleKind.INTERVAL:
        if interval_ms is None or int(interval_ms) <= 0:
            raise ConfigurationError("INTERVAL schedule requires a positive interval_ms")
        return int(interval_ms)
    return DERIVED_INTERVAL_MS[kind]


def validate_schedule(kind: ScheduleKind, cfg: dict[str, Any], default_tz: str = "UTC") -> None:
    if kind == ScheduleKind.INTERVAL:
        return
    _zone(cfg, default_tz)
    _config_int(cfg, "minute", 0, 0, 59)
    if kind in (ScheduleKind.DAILY, ScheduleKind.WEEKLY):
        _config_int(cfg, "hour", 0, 0, 23)
    if kind == ScheduleKind.WEEKLY:
        _config_int(cfg, "day", 1, 0, 6)


def _to_ms(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


def compute_next_run(
    defn: RecurringTaskDefinition,
    now: int,
    default_tz: str = "UTC",
) -> int:
    """
    Next fire time strictly after `now`.

    schedule_config keys:
      minute (HOURLY/DAILY/WEEKLY), hour (DAILY/WEEKLY),
      day (WEEKLY; 0=Sunday .. 6=Saturday, default 1), timezone (optional).
    """
    kind = defn.schedule_kind
    if kind == ScheduleKind.INTERVAL:
        return int(now) + derive_interval_ms(kind, defn.interval_ms)

    cfg = defn.schedule_config or {}
    tz = _zone(cfg, default_tz)
    current = datetime.fromtimestamp(now / 1000, tz)
    minute = _config_int(cfg, "minute", 0, 0, 59)

    if kind == ScheduleKind.HOURLY:
        # Step in UTC: local wall-clock hours repeat or vanish around DST changes.
        candidate = current.replace(minute=minute, second=0, microsecond=0).astimezone(timezone.utc)
        if candidate <= current.astimezone(timezone.utc):
            candidate += timedelta(hours=1)
        return _to_ms(candidate)

    hour = _config_int(cfg, "hour", 0, 0, 23)
    at = time(hour, minute)

    if kind == ScheduleKind.DAILY:
        candidate = datetime.combine(current.date(), at, tzinfo=tz)
        if candidate <= current:
            candidate = datetime.combine(current.date() + timedelta(days=1), at, tzinfo=tz)
        return _to_ms(candidate)

    target_day = _config_int(cfg, "day", 1, 0, 6)
    today = (current.weekday() + 1) % 7  # Sunday = 0
    days_until = (target_day - today) % 7
    candidate = datetime.combine(current.date() + timedelta(days=days_until), at, tzinfo=tz)
    if candidate <= current:
        candidate = datetime.combine(
            current.date() + timedelta(days=days_until + 7), at, tzinfo=tz
        )
    return _to_ms(candidate)


def build_instance(defn: RecurringTaskDefinition, now: int) -> Task:
    payload = dict(defn.payload or {})
    payload["kind"] = PAYLOAD_KIND_RECURRING
    payload["recurring_task_id"] = defn.id
    return Task(
        id=uuid.uuid4().hex,
        owner_id=defn.owner_id,
        title=defn.title,
        status=TaskStatus.READY,
        description=defn.description,
        payload=payload,
        model_override=defn.model_override,
        execute_at=int(now),
        created_at=int(now),
        updated_at=int(now),
    )


def run_recurring(
    store: TaskRepo,
    now: int | None = None,
    *,
    default_tz: str = "UTC",
) -> list[str]:
    """
    Fire every due definition once. Returns the spawned task ids.

    A definition that fails (bad config, store error) is logged and left with
    its old next_run_at, so it is retried on the next tick.
    """
    ts = now_ms() if now is None else int(now)
    spawned: list[str] = []

    due = store.list_due_recurring(ts)
    if not due:
        return spawned

    logger.info("Processing due recurring tasks count=%d", len(due))

    for defn in due:
        try:
            next_run = compute_next_run(defn, ts, default_tz)
            task = build_instance(defn, ts)
            store.record_recurring_fire(task, defn.id, next_run_at=next_run, fired_at=ts)
        except (ConfigurationError, StoreError):
            logger.exception("Failed to process recurring task %s", defn.id)
            continue

        spawned.append(task.id)
        logger.info(
            "Recurring task %s fired -> task %s owner=%s next_run_at=%s",
            defn.id,
            task.id,
            defn.owner_id,
            next_run,
        )

    return spawned
