"""Storage abstractions for Taskgate."""

from .base import SessionStore, StoreUnavailableError
from .chroma import ChromaSessionStore, SessionSnapshot
from .memory import InMemorySessionStore
from .models import ACTIVE_STATUSES, Session, SessionStatus

__all__ = [
    "ACTIVE_STATUSES",
    "ChromaSessionStore",
    "InMemorySessionStore",
    "Session",
    "SessionSnapshot",
    "SessionStatus",
    "SessionStore",
    "StoreUnavailableError",
]
