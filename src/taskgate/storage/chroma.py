"""Chroma-based session persistence."""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Protocol

from .base import StoreUnavailableError
from .models import Session

SNAPSHOT_EVENT = "session_snapshot"


class CollectionProtocol(Protocol):
    """Protocol for the minimal Chroma collection API used by Taskgate."""

    def add(
        self,
        *,
        documents: Iterable[str],
        metadatas: Iterable[dict[str, Any]],
        ids: Iterable[str],
    ) -> None:
        ...

    def get(
        self,
        *,
        ids: Iterable[str] | None = None,
        where: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> dict[str, list[Any]]:
        ...


class ClientProtocol(Protocol):
    """Protocol for the minimal Chroma client API used by Taskgate."""

    def get_or_create_collection(self, name: str) -> CollectionProtocol:
        ...


@dataclass(slots=True)
class SessionSnapshot:
    """One persisted revision of a session."""

    id: str
    revision: int
    session: Session
    timestamp: datetime


class ChromaSessionStore:
    """Persist sessions as append-only snapshot events in ChromaDB.

    Every write appends the full session with a higher ``revision``; reads
    replay the newest revision per session. The replay runs once and is then
    served from memory, so a single process should own the collection.
    """

    def __init__(
        self,
        path: Path,
        *,
        collection_name: str = "taskgate_sessions",
        client_factory: Callable[[], ClientProtocol] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._path = Path(path)
        self._collection_name = collection_name
        self._client_factory = client_factory or self._default_client_factory
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._client: ClientProtocol | None = None
        self._collection: CollectionProtocol | None = None
        self._sessions: dict[str, Session] | None = None
        self._revisions: dict[str, int] = {}

    def _default_client_factory(self) -> ClientProtocol:
        try:
            import chromadb
        except ImportError as exc:  # pragma: no cover - depends on environment
            raise StoreUnavailableError(
                "chromadb package is not installed; install taskgate with its runtime dependencies"
            ) from exc

        return chromadb.PersistentClient(path=str(self._path))

    def _ensure_collection(self) -> CollectionProtocol:
        if self._collection is None:
            client = self._client or self._client_factory()
            self._client = client
            self._collection = client.get_or_create_collection(self._collection_name)
        return self._collection

    def _convert_result(self, result: dict[str, list[Any]]) -> list[SessionSnapshot]:
        snapshots: list[SessionSnapshot] = []
        ids = result.get("ids", [])
        documents = result.get("documents", [])
        metadatas = result.get("metadatas", [])
        for event_id, document, metadata in zip(ids, documents, metadatas):
            doc = json.loads(document)
            timestamp_raw = metadata.get("timestamp")
            timestamp = (
                datetime.fromisoformat(timestamp_raw)
                if isinstance(timestamp_raw, str)
                else self._clock()
            )
            snapshots.append(
                SessionSnapshot(
                    id=event_id,
                    revision=int(doc.get("revision", 0)),
                    session=Session.from_dict(doc["session"]),
                    timestamp=timestamp,
                )
            )
        snapshots.sort(key=lambda snapshot: snapshot.revision)
        return snapshots

    def _load(self) -> dict[str, Session]:
        if self._sessions is None:
            collection = self._ensure_collection()
            result = collection.get(where={"event_type": SNAPSHOT_EVENT})
            sessions: dict[str, Session] = {}
            for snapshot in self._convert_result(result):
                session_id = snapshot.session.session_id
                if snapshot.revision >= self._revisions.get(session_id, 0):
                    self._revisions[session_id] = snapshot.revision
                    sessions[session_id] = snapshot.session
            self._sessions = sessions
        return self._sessions

    def _write(self, session: Session) -> Session:
        sessions = self._load()
        collection = self._ensure_collection()
        revision = self._revisions.get(session.session_id, 0) + 1
        timestamp = self._clock()

        document = json.dumps({"revision": revision, "session": session.to_dict()})
        metadata = {
            "event_type": SNAPSHOT_EVENT,
            "session_id": session.session_id,
            "conversation_id": session.conversation_id,
            "status": session.status.value,
            "revision": revision,
            "timestamp": timestamp.isoformat(),
        }
        collection.add(
            documents=[document],
            metadatas=[metadata],
            ids=[f"{session.session_id}:{uuid.uuid4().hex}"],
        )

        self._revisions[session.session_id] = revision
        sessions[session.session_id] = session
        return session

    def ping(self) -> bool:
        """Verify that the underlying collection can be obtained."""

        self._ensure_collection()
        return True

    def get(self, session_id: str) -> Session | None:
        return self._load().get(session_id)

    def get_active(self, conversation_id: str) -> Session | None:
        candidates = [
            session
            for session in self._load().values()
            if session.conversation_id == conversation_id and session.active
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda session: session.created_at)

    def list_active(self) -> list[Session]:
        active = [session for session in self._load().values() if session.active]
        return sorted(active, key=lambda session: session.created_at)

    def save(self, session: Session) -> Session:
        return self._write(session)

    def update(self, session_id: str, patch: Mapping[str, Any]) -> Session | None:
        existing = self._load().get(session_id)
        if existing is None:
            return None
        updated = existing.merged(patch)
        if updated == existing:
            return existing
        return self._write(updated)

    def history(self, conversation_id: str, limit: int = 5) -> list[Session]:
        matches = [
            session
            for session in self._load().values()
            if session.conversation_id == conversation_id
        ]
        matches.sort(key=lambda session: session.created_at, reverse=True)
        return matches[:limit] if limit else matches

    def all_sessions(self) -> list[Session]:
        return sorted(self._load().values(), key=lambda session: session.created_at)

    def snapshots(self, session_id: str) -> list[SessionSnapshot]:
        """Return every persisted revision of a session, oldest first."""

        collection = self._ensure_collection()
        result = collection.get(where={"session_id": session_id})
        return self._convert_result(result)


__all__ = ["ChromaSessionStore", "SessionSnapshot"]
