"""Data models for persistent session tracking."""

from __future__ import annotations

from dataclasses import asdict, dataclass, fields, replace
from datetime import datetime
from enum import Enum
from typing import Any, Mapping


class SessionStatus(str, Enum):
    """Lifecycle states shared by tasks and the sessions they drive."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"

    @property
    def terminal(self) -> bool:
        return self not in ACTIVE_STATUSES


ACTIVE_STATUSES = frozenset({SessionStatus.QUEUED, SessionStatus.RUNNING})

_DATETIME_FIELDS = ("created_at", "started_at", "completed_at")


@dataclass(slots=True)
class Session:
    """One invocation of the external agent, bound to a conversation while active."""

    session_id: str
    conversation_id: str
    owner_id: str
    target: str
    description: str
    status: SessionStatus
    created_at: datetime
    workdir: str | None = None
    task_id: str | None = None
    process_id: int | None = None
    log_path: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    result_ref: str | None = None
    summary: str | None = None
    reason: str | None = None

    @property
    def active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def merged(self, patch: Mapping[str, Any]) -> "Session":
        """Return a copy with ``patch`` applied; unknown keys are rejected."""

        known = {field.name for field in fields(self)}
        unknown = set(patch) - known
        if unknown:
            raise ValueError(f"Unknown session fields: {sorted(unknown)}")
        changes = dict(patch)
        if "status" in changes:
            changes["status"] = SessionStatus(changes["status"])
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["status"] = self.status.value
        for name in _DATETIME_FIELDS:
            value = payload[name]
            payload[name] = value.isoformat() if value is not None else None
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Session":
        known = {field.name for field in fields(cls)}
        data = {key: value for key, value in payload.items() if key in known}
        data["status"] = SessionStatus(data["status"])
        for name in _DATETIME_FIELDS:
            value = data.get(name)
            if isinstance(value, str):
                data[name] = datetime.fromisoformat(value)
        return cls(**data)


__all__ = ["ACTIVE_STATUSES", "Session", "SessionStatus"]
