"""Error taxonomy for the task execution core."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from .storage.models import Session


class TaskgateError(RuntimeError):
    """Base class for Taskgate errors."""


class TaskValidationError(TaskgateError):
    """Raised synchronously when a submission is malformed."""


class ConflictError(TaskgateError):
    """Raised synchronously when a conversation already has an active session."""

    def __init__(self, message: str, *, session: "Session | None" = None) -> None:
        super().__init__(message)
        self.session = session


class SpawnError(TaskgateError):
    """The external agent process could not be launched."""


class AgentNotFoundError(SpawnError):
    """The agent executable cannot be located."""


class MonitorError(TaskgateError):
    """The session log became unreadable or the process vanished."""


class AgentFailedError(TaskgateError):
    """The agent process exited without reporting success."""


class TaskTimeoutError(TaskgateError):
    """A running task exceeded its deadline."""


class TaskCancelledError(TaskgateError):
    """A task was cancelled by the user."""


__all__ = [
    "AgentFailedError",
    "AgentNotFoundError",
    "ConflictError",
    "MonitorError",
    "SpawnError",
    "TaskCancelledError",
    "TaskTimeoutError",
    "TaskValidationError",
    "TaskgateError",
]
