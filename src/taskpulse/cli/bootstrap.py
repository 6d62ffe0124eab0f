# src/taskpulse/cli/bootstrap.py

"""
Composition root:
- ensures local (gitignored) directories exist,
- loads the owner registry,
- attaches the schedule digest to owners flagged schedule_context,
- wires store, executor, notifier and heartbeat driver into AppState.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from ..config import Settings, get_settings
from ..connectors.log_notifier import LogNotifier
from ..core.owners import OwnerRegistry, load_owners
from ..core.ports import AgentExecutor, Notifier
from ..core.schedule_digest import ScheduleDigestProvider
from ..core.state import AppState
from ..executor.http_executor import HttpAgentExecutor
from ..heartbeat import HeartbeatDriver
from ..tasks.task_store import TaskStore

if TYPE_CHECKING:
    from nio import AsyncClient

logger = logging.getLogger(__name__)


def _ensure_local_dirs(settings: Settings) -> None:
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    settings.tasks_db_path.parent.mkdir(parents=True, exist_ok=True)


def _attach_schedule_digest(settings: Settings, store: TaskStore, owners: OwnerRegistry) -> None:
    digest: ScheduleDigestProvider | None = None
    for owner in owners.all():
        if not owner.schedule_context or owners.has_context_provider(owner.id):
            continue
        if digest is None:
            digest = ScheduleDigestProvider(
                store,
                markers=settings.schedule_markers,
                timezone=settings.default_timezone,
                horizon_hours=settings.schedule_horizon_hours,
            )
        owners.set_context_provider(owner.id, digest)
        logger.info("Schedule digest enabled for owner=%s", owner.id)


def create_app_state(
    settings: Settings | None = None,
    *,
    owners: OwnerRegistry | None = None,
    executor: AgentExecutor | None = None,
    notifier: Notifier | None = None,
    matrix_client: AsyncClient | None = None,
) -> AppState:
    """
    Build AppState from settings. Any component can be injected (tests, embedding).

    Without an explicit notifier, a Matrix client yields a MatrixNotifier and
    everything else falls back to LogNotifier.
    """
    if settings is None:
        settings = get_settings()

    _ensure_local_dirs(settings)

    store = TaskStore(settings.tasks_db_path)

    if owners is None:
        owners = OwnerRegistry(load_owners(settings.owners_path))
    if not len(owners):
        logger.warning("No owners registered; the heartbeat will only evaluate and schedule")
    _attach_schedule_digest(settings, store, owners)

    if executor is None:
        executor = HttpAgentExecutor(
            settings.executor_url,
            token=settings.executor_token,
            timeout_seconds=settings.executor_timeout_seconds,
        )

    if notifier is None:
        if matrix_client is not None:
            from ..connectors.matrix_connector import MatrixNotifier

            notifier = MatrixNotifier(matrix_client, owners)
        else:
            notifier = LogNotifier()

    driver = HeartbeatDriver(
        store,
        owners,
        executor,
        notifier,
        interval_seconds=settings.heartbeat_seconds,
        dispatch_wait_seconds=settings.dispatch_wait_seconds,
        executor_timeout_seconds=settings.executor_timeout_seconds,
        default_tz=settings.default_timezone,
    )

    return AppState(
        settings=settings,
        store=store,
        owners=owners,
        executor=executor,
        notifier=notifier,
        driver=driver,
    )
