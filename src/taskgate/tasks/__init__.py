"""Task queue and task records."""

from .models import SESSION_KIND, QueueStatus, SessionRequest, SessionSummary, Task, TaskStatus
from .queue import Handler, TaskQueue

__all__ = [
    "Handler",
    "QueueStatus",
    "SESSION_KIND",
    "SessionRequest",
    "SessionSummary",
    "Task",
    "TaskQueue",
    "TaskStatus",
]
