"""Workspace profile models."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator


class WorkspaceProfile(BaseModel):
    """A named checkout the agent may be launched in."""

    id: str = Field(..., description="Target name used by callers, e.g. the repository name.")
    path: Path = Field(..., description="Working directory handed to the agent.")
    description: str = Field(default="", description="Human-friendly summary of the workspace.")
    timeout_minutes: float | None = Field(
        default=None,
        description="Overrides the default session deadline for this workspace.",
    )
    max_iterations: int | None = Field(
        default=None,
        description="Overrides the agent iteration budget for this workspace.",
    )
    agent_flags: list[str] = Field(
        default_factory=list,
        description="Extra command line flags passed to the agent.",
    )
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("id")
    @classmethod
    def _normalize_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Workspace id must not be empty")
        return normalized

    @field_validator("timeout_minutes")
    @classmethod
    def _validate_timeout(cls, value: float | None) -> float | None:
        if value is not None and value <= 0:
            raise ValueError("timeout_minutes must be > 0")
        return value

    @field_validator("max_iterations")
    @classmethod
    def _validate_iterations(cls, value: int | None) -> int | None:
        if value is not None and value < 1:
            raise ValueError("max_iterations must be >= 1")
        return value

    @field_validator("agent_flags", mode="before")
    @classmethod
    def _ensure_list(cls, value: Any):  # type: ignore[override]
        if value is None:
            return []
        if isinstance(value, (list, tuple)):
            return [str(item) for item in value]
        raise TypeError("agent_flags must be a sequence of strings")

    @property
    def timeout_seconds(self) -> float | None:
        return self.timeout_minutes * 60 if self.timeout_minutes is not None else None


__all__ = ["WorkspaceProfile"]
