# src/taskpulse/core/state.py

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from .owners import OwnerRegistry
from .ports import AgentExecutor, Notifier

if TYPE_CHECKING:
    from ..config import Settings
    from ..heartbeat import HeartbeatDriver
    from ..tasks.task_store import TaskStore


@dataclass
class AppState:
    """Everything a connector or command needs, built once by the composition root."""

    settings: Settings
    store: TaskStore
    owners: OwnerRegistry
    executor: AgentExecutor
    notifier: Notifier
    driver: HeartbeatDriver
