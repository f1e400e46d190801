"""Session store contract consumed by the task queue."""

from __future__ import annotations

from typing import Any, Mapping, Protocol

from .models import Session


class StoreUnavailableError(RuntimeError):
    """Raised when the backing persistence engine cannot be constructed."""


class SessionStore(Protocol):
    """Minimal data-access contract for agent sessions.

    The store does not enforce the one-active-session-per-conversation rule;
    callers must check :meth:`get_active` before saving a new session.
    """

    def get(self, session_id: str) -> Session | None:
        ...

    def get_active(self, conversation_id: str) -> Session | None:
        """Return the queued or running session for a conversation, if any."""
        ...

    def list_active(self) -> list[Session]:
        ...

    def save(self, session: Session) -> Session:
        ...

    def update(self, session_id: str, patch: Mapping[str, Any]) -> Session | None:
        """Merge ``patch`` into a stored session. Repeating a patch is harmless."""
        ...

    def history(self, conversation_id: str, limit: int = 5) -> list[Session]:
        """Return sessions for a conversation, most recent first."""
        ...


__all__ = ["SessionStore", "StoreUnavailableError"]
