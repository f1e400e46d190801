"""Configuration management for Taskgate."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
import os

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class TaskgateSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    agent_path: str | None = Field(default=None, validation_alias="AGENT_PATH")
    agent_max_iterations: int = Field(default=50, validation_alias="AGENT_MAX_ITERATIONS")
    log_dir: Path = Field(default=Path("./storage/logs"), validation_alias="TASKGATE_LOG_DIR")
    chroma_persist_path: Path = Field(
        default=Path("./storage/chroma"), validation_alias="CHROMA_PERSIST_PATH"
    )
    workspace_paths: tuple[Path, ...] = Field(
        default=(Path("workspaces"),), validation_alias="TASKGATE_WORKSPACE_PATHS"
    )
    capacity: int = Field(default=1, validation_alias="TASKGATE_CAPACITY")
    session_timeout_seconds: float = Field(
        default=30 * 60, validation_alias="TASKGATE_SESSION_TIMEOUT"
    )
    confirmation_ttl_seconds: float = Field(
        default=5 * 60, validation_alias="TASKGATE_CONFIRMATION_TTL"
    )
    poll_interval_seconds: float = Field(default=2.0, validation_alias="TASKGATE_POLL_INTERVAL")
    heartbeat_interval_seconds: float = Field(
        default=120.0, validation_alias="TASKGATE_HEARTBEAT_INTERVAL"
    )
    deadline_check_interval_seconds: float = Field(
        default=5.0, validation_alias="TASKGATE_DEADLINE_CHECK_INTERVAL"
    )
    kill_grace_seconds: float = Field(default=5.0, validation_alias="TASKGATE_KILL_GRACE")
    log_level: str = Field(default="INFO", validation_alias="TASKGATE_LOG_LEVEL")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "TASKGATE_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("workspace_paths", mode="before")
    @classmethod
    def _parse_workspace_paths(cls, value):
        if value is None or value == "":
            return (Path("workspaces"),)
        if isinstance(value, (list, tuple)):
            return tuple(Path(str(item)) for item in value)
        if isinstance(value, str):
            parts = [part.strip() for part in value.split(os.pathsep) if part.strip()]
            return tuple(Path(part) for part in parts) or (Path("workspaces"),)
        raise TypeError(
            "TASKGATE_WORKSPACE_PATHS must be a list of paths or a path-separated string"
        )

    @field_validator("capacity", "agent_max_iterations")
    @classmethod
    def _validate_positive_int(cls, value: int) -> int:
        if value < 1:
            raise ValueError("TASKGATE_CAPACITY and AGENT_MAX_ITERATIONS must be >= 1")
        return value

    @field_validator(
        "session_timeout_seconds",
        "confirmation_ttl_seconds",
        "poll_interval_seconds",
        "heartbeat_interval_seconds",
        "deadline_check_interval_seconds",
    )
    @classmethod
    def _validate_positive_interval(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("Timeouts and intervals must be > 0 seconds")
        return value

    @field_validator("kill_grace_seconds")
    @classmethod
    def _validate_kill_grace(cls, value: float) -> float:
        if value < 0:
            raise ValueError("TASKGATE_KILL_GRACE must be >= 0")
        return value


@lru_cache(maxsize=1)
def get_settings() -> TaskgateSettings:
    """Return cached settings instance."""

    settings = TaskgateSettings()
    settings.log_dir = settings.log_dir.expanduser().resolve()
    settings.chroma_persist_path = settings.chroma_persist_path.expanduser().resolve()
    settings.workspace_paths = tuple(
        path.expanduser().resolve() for path in settings.workspace_paths
    )
    return settings


__all__ = ["TaskgateSettings", "get_settings"]
