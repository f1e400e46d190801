from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from taskgate.config import TaskgateSettings, get_settings


@pytest.fixture(autouse=True)
def _isolated_settings(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def test_defaults_match_operational_limits() -> None:
    settings = TaskgateSettings()

    assert settings.capacity == 1
    assert settings.session_timeout_seconds == 30 * 60
    assert settings.confirmation_ttl_seconds == 5 * 60
    assert settings.poll_interval_seconds == 2.0
    assert settings.heartbeat_interval_seconds == 120.0
    assert settings.kill_grace_seconds == 5.0
    assert settings.agent_max_iterations == 50
    assert settings.log_level == "INFO"


def test_environment_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TASKGATE_CAPACITY", "3")
    monkeypatch.setenv("TASKGATE_SESSION_TIMEOUT", "90")
    monkeypatch.setenv("TASKGATE_LOG_LEVEL", " debug ")
    monkeypatch.setenv("AGENT_PATH", "/opt/agent/bin/claude")

    settings = TaskgateSettings()

    assert settings.capacity == 3
    assert settings.session_timeout_seconds == 90
    assert settings.log_level == "DEBUG"
    assert settings.agent_path == "/opt/agent/bin/claude"


def test_workspace_paths_accept_path_separated_string() -> None:
    settings = TaskgateSettings(TASKGATE_WORKSPACE_PATHS="one:two")

    assert settings.workspace_paths == (Path("one"), Path("two"))


@pytest.mark.parametrize(
    "overrides",
    [
        {"TASKGATE_CAPACITY": 0},
        {"TASKGATE_CONFIRMATION_TTL": 0},
        {"TASKGATE_POLL_INTERVAL": -1},
        {"TASKGATE_KILL_GRACE": -0.5},
        {"TASKGATE_LOG_LEVEL": "chatty"},
    ],
)
def test_invalid_values_rejected(overrides: dict[str, object]) -> None:
    with pytest.raises(ValidationError):
        TaskgateSettings(**overrides)


def test_get_settings_resolves_paths(tmp_path: Path) -> None:
    settings = get_settings()

    assert settings.log_dir == (tmp_path / "storage" / "logs").resolve()
    assert settings.chroma_persist_path.is_absolute()
    assert all(path.is_absolute() for path in settings.workspace_paths)
    assert get_settings() is settings
