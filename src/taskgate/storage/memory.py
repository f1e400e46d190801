"""In-process session store."""

from __future__ import annotations

from typing import Any, Mapping

from .models import Session


class InMemorySessionStore:
    """Dict-backed :class:`~taskgate.storage.base.SessionStore`."""

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def get_active(self, conversation_id: str) -> Session | None:
        candidates = [
            session
            for session in self._sessions.values()
            if session.conversation_id == conversation_id and session.active
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda session: session.created_at)

    def list_active(self) -> list[Session]:
        active = [session for session in self._sessions.values() if session.active]
        return sorted(active, key=lambda session: session.created_at)

    def save(self, session: Session) -> Session:
        self._sessions[session.session_id] = session
        return session

    def update(self, session_id: str, patch: Mapping[str, Any]) -> Session | None:
        existing = self._sessions.get(session_id)
        if existing is None:
            return None
        updated = existing.merged(patch)
        self._sessions[session_id] = updated
        return updated

    def history(self, conversation_id: str, limit: int = 5) -> list[Session]:
        matches = [
            session
            for session in self._sessions.values()
            if session.conversation_id == conversation_id
        ]
        matches.sort(key=lambda session: session.created_at, reverse=True)
        return matches[:limit] if limit else matches


__all__ = ["InMemorySessionStore"]
