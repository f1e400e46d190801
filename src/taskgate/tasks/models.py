"""Task records and submission payloads."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ..errors import TaskgateError
from ..storage.models import SessionStatus

TaskStatus = SessionStatus

SESSION_KIND = "agent_session"


@dataclass(slots=True)
class Task:
    """A unit of work owned by the :class:`~taskgate.tasks.queue.TaskQueue`."""

    task_id: str
    kind: str
    payload: dict[str, Any]
    created_at: datetime
    status: TaskStatus = TaskStatus.QUEUED
    timeout: float | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    deadline: datetime | None = None
    session_id: str | None = None
    result_ref: str | None = None
    summary: str | None = None
    error: TaskgateError | None = None
    on_progress: Callable[[str], Any] | None = field(default=None, repr=False, compare=False)
    on_terminal: Callable[["Task"], Any] | None = field(default=None, repr=False, compare=False)

    @property
    def terminal(self) -> bool:
        return self.status.terminal

    @property
    def reason(self) -> str | None:
        return str(self.error) if self.error is not None else None

    @property
    def conversation_id(self) -> str | None:
        return self.payload.get("conversation_id")

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "kind": self.kind,
            "status": self.status.value,
            "session_id": self.session_id,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "deadline": self.deadline.isoformat() if self.deadline else None,
            "result_ref": self.result_ref,
            "reason": self.reason,
            "error_type": type(self.error).__name__ if self.error is not None else None,
        }


class SessionRequest(BaseModel):
    """Payload accepted for ``agent_session`` tasks."""

    model_config = ConfigDict(extra="ignore")

    conversation_id: str = Field(..., description="Conversation the session is bound to.")
    owner_id: str = Field(..., description="User who approved the session.")
    description: str = Field(..., description="Task description handed to the agent.")
    target: str = Field(default="", description="Workspace id, usually a repository name.")
    workdir: Path | None = Field(
        default=None,
        description="Explicit working directory; otherwise resolved from the workspace.",
    )

    @field_validator("conversation_id", "owner_id", "description", mode="before")
    @classmethod
    def _require_text(cls, value: Any) -> str:
        if value is None:
            raise ValueError("must not be empty")
        normalized = str(value).strip()
        if not normalized:
            raise ValueError("must not be empty")
        return normalized

    @field_validator("target", mode="before")
    @classmethod
    def _normalize_target(cls, value: Any) -> str:
        return str(value or "").strip()

    @model_validator(mode="after")
    def _require_location(self) -> "SessionRequest":
        if not self.target and self.workdir is None:
            raise ValueError("either target or workdir is required")
        return self


@dataclass(slots=True)
class QueueStatus:
    queued: int
    running: int
    capacity: int

    def to_dict(self) -> dict[str, int]:
        return {"queued": self.queued, "running": self.running, "capacity": self.capacity}


@dataclass(slots=True)
class SessionSummary:
    session_id: str
    status: SessionStatus
    started_at: datetime | None
    target: str
    description: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "status": self.status.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "target": self.target,
            "description": self.description,
        }


__all__ = [
    "QueueStatus",
    "SESSION_KIND",
    "SessionRequest",
    "SessionSummary",
    "Task",
    "TaskStatus",
]
