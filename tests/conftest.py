# tests/conftest.py

from __future__ import annotations

from pathlib import Path

import pytest

from taskpulse.config import Settings
from taskpulse.core.owners import Owner, OwnerRegistry
from taskpulse.tasks.task_store import TaskStore

from .fakes import FakeClock, FakeExecutor, FakeNotifier


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    """Settings built directly, so tests never read the developer's environment."""
    return Settings(
        app_name="taskpulse-test",
        log_level="DEBUG",
        data_dir=tmp_path,
        tasks_db_path=tmp_path / "tasks.sqlite3",
        owners_path=tmp_path / "owners.json",
        heartbeat_seconds=0.05,
        dispatch_wait_seconds=0.2,
        default_timezone="UTC",
        executor_url="http://executor.test",
        executor_token=None,
        executor_timeout_seconds=5.0,
        matrix_enabled=False,
        matrix_homeserver="",
        matrix_user_id="",
        matrix_password="",
        matrix_store_path=tmp_path / "matrix_store",
    )


@pytest.fixture()
def store(tmp_path: Path) -> TaskStore:
    return TaskStore(tmp_path / "tasks.sqlite3")


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture()
def notifier() -> FakeNotifier:
    return FakeNotifier()


def make_owner(owner_id: str = "alpha", *, auto: bool = True, kind: str = "generic") -> Owner:
    return Owner(
        id=owner_id,
        name=owner_id.title(),
        kind=kind,
        agent_id=f"{owner_id}-agent",
        channel_id=f"!{owner_id}:example.org",
        auto_dispatch=auto,
    )


@pytest.fixture()
def owners() -> OwnerRegistry:
    return OwnerRegistry([make_owner("alpha", auto=True), make_owner("beta", auto=False)])
