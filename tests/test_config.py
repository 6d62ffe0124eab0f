# tests/test_config.py

from __future__ import annotations

import json
from pathlib import Path

import pytest

from taskpulse.config import Settings
from taskpulse.core.owners import load_owners
from taskpulse.errors import ConfigurationError


def test_settings_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in ("DATA_DIR", "HEARTBEAT_SECONDS", "DISPATCH_WAIT_SECONDS", "EXECUTOR_TOKEN", "MATRIX_ENABLED"):
        monkeypatch.delenv(f"TASKPULSE_{key}", raising=False)

    s = Settings.from_env(load_env_file=False)

    assert s.data_dir == Path(".local/taskpulse")
    assert s.tasks_db_path == Path(".local/taskpulse/tasks.sqlite3")
    assert s.heartbeat_seconds == 30.0
    assert s.dispatch_wait_seconds is None
    assert s.executor_token is None
    assert s.matrix_enabled is False


def test_settings_from_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("TASKPULSE_DATA_DIR", str(tmp_path))
    monkeypatch.setenv("TASKPULSE_HEARTBEAT_SECONDS", "5")
    monkeypatch.setenv("TASKPULSE_DISPATCH_WAIT_SECONDS", "not-a-number")
    monkeypatch.setenv("TASKPULSE_EXECUTOR_URL", "http://gw.local/")
    monkeypatch.setenv("TASKPULSE_MATRIX_ENABLED", "yes")
    monkeypatch.setenv("TASKPULSE_LOG_LEVEL", "debug")

    s = Settings.from_env(load_env_file=False)

    assert s.tasks_db_path == tmp_path / "tasks.sqlite3"
    assert s.owners_path == tmp_path / "owners.json"
    assert s.heartbeat_seconds == 5.0
    assert s.dispatch_wait_seconds is None
    assert s.executor_url == "http://gw.local"
    assert s.matrix_enabled is True
    assert s.log_level == "DEBUG"


def test_load_owners(tmp_path: Path) -> None:
    path = tmp_path / "owners.json"
    path.write_text(
        json.dumps({"owners": [{"id": "alpha", "agent_id": "a", "auto_dispatch": True}, {"id": "beta"}]}),
        "utf-8",
    )

    owners = load_owners(path)

    assert [o.id for o in owners] == ["alpha", "beta"]
    assert owners[0].auto_dispatch is True
    assert owners[1].name == "beta"
    assert owners[1].auto_dispatch is False


def test_load_owners_missing_and_invalid(tmp_path: Path) -> None:
    assert load_owners(tmp_path / "missing.json") == []

    bad = tmp_path / "bad.json"
    bad.write_text("{not json", "utf-8")
    with pytest.raises(ConfigurationError):
        load_owners(bad)

    no_id = tmp_path / "no_id.json"
    no_id.write_text(json.dumps([{"name": "anon"}]), "utf-8")
    with pytest.raises(ConfigurationError):
        load_owners(no_id)


def test_schedule_digest_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("TASKPULSE_SCHEDULE_MARKERS", raising=False)
    monkeypatch.setenv("TASKPULSE_SCHEDULE_HORIZON_HOURS", "0")
    s = Settings.from_env(load_env_file=False)
    assert s.schedule_markers == ("PLANNING_KIND", "REPORT_KIND")
    assert s.schedule_horizon_hours == 1

    monkeypatch.setenv("TASKPULSE_SCHEDULE_MARKERS", " PLAN_WEEK , ,DIGEST")
    s = Settings.from_env(load_env_file=False)
    assert s.schedule_markers == ("PLAN_WEEK", "DIGEST")


def test_owner_schedule_context_flag(tmp_path: Path) -> None:
    path = tmp_path / "owners.json"
    path.write_text(
        json.dumps([{"id": "planner", "schedule_context": True}, {"id": "other"}]), "utf-8"
    )
    planner, other = load_owners(path)
    assert planner.schedule_context is True
    assert other.schedule_context is False
