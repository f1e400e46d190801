from __future__ import annotations

import json
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest

from taskgate.storage import (
    ChromaSessionStore,
    InMemorySessionStore,
    Session,
    SessionStatus,
    StoreUnavailableError,
)

BASE = datetime(2025, 1, 1, tzinfo=timezone.utc)


@dataclass
class _Record:
    document: str
    metadata: dict[str, Any]
    id: str


class StubCollection:
    def __init__(self) -> None:
        self.records: list[_Record] = []

    def add(self, *, documents, metadatas, ids) -> None:  # type: ignore[override]
        for document, metadata, record_id in zip(documents, metadatas, ids):
            self.records.append(_Record(document=document, metadata=dict(metadata), id=record_id))

    def get(self, *, ids=None, where=None, limit=None):  # type: ignore[override]
        filtered = self.records
        if where:
            for key, value in where.items():
                filtered = [record for record in filtered if record.metadata.get(key) == value]
        if limit is not None:
            filtered = filtered[:limit]
        return {
            "ids": [record.id for record in filtered],
            "documents": [record.document for record in filtered],
            "metadatas": [record.metadata for record in filtered],
        }


class StubClient:
    def __init__(self) -> None:
        self.collections = defaultdict(StubCollection)

    def get_or_create_collection(self, name: str) -> StubCollection:
        return self.collections[name]


def _session(session_id: str, conversation_id: str = "c1", *, minutes: int = 0, **overrides) -> Session:
    values: dict[str, Any] = {
        "session_id": session_id,
        "conversation_id": conversation_id,
        "owner_id": "u1",
        "target": "webapp",
        "description": "fix the login bug",
        "status": SessionStatus.QUEUED,
        "created_at": BASE + timedelta(minutes=minutes),
    }
    values.update(overrides)
    return Session(**values)


def _chroma(client: StubClient, tmp_path: Path) -> ChromaSessionStore:
    return ChromaSessionStore(tmp_path, client_factory=lambda: client, clock=lambda: BASE)


@pytest.fixture(params=["memory", "chroma"])
def store(request: pytest.FixtureRequest, tmp_path: Path):
    if request.param == "memory":
        return InMemorySessionStore()
    return _chroma(StubClient(), tmp_path)


def test_get_active_ignores_terminal_sessions(store) -> None:
    store.save(_session("s1", status=SessionStatus.COMPLETED))
    assert store.get_active("c1") is None

    store.save(_session("s2", minutes=1))
    store.update("s2", {"status": "running", "process_id": 4242})

    active = store.get_active("c1")
    assert active is not None
    assert active.session_id == "s2"
    assert active.status is SessionStatus.RUNNING
    assert active.process_id == 4242


def test_update_is_idempotent_and_ignores_unknown_sessions(store) -> None:
    store.save(_session("s1"))
    patch = {"status": SessionStatus.FAILED, "reason": "Agent exited with code 1"}

    first = store.update("s1", patch)
    second = store.update("s1", patch)

    assert first == second
    assert store.get("s1").reason == "Agent exited with code 1"
    assert store.update("missing", patch) is None


def test_update_rejects_unknown_fields(store) -> None:
    store.save(_session("s1"))
    with pytest.raises(ValueError):
        store.update("s1", {"colour": "blue"})


def test_history_is_newest_first_and_limited(store) -> None:
    for index in range(7):
        store.save(_session(f"s{index}", minutes=index, status=SessionStatus.COMPLETED))
    store.save(_session("other", "c2", minutes=10))

    history = store.history("c1")

    assert [session.session_id for session in history] == ["s6", "s5", "s4", "s3", "s2"]
    assert len(store.history("c1", limit=2)) == 2
    assert [session.session_id for session in store.history("c2")] == ["other"]


def test_list_active_orders_by_creation(store) -> None:
    store.save(_session("late", "c2", minutes=5))
    store.save(_session("early", "c1", minutes=1, status=SessionStatus.RUNNING))
    store.save(_session("done", "c3", status=SessionStatus.TIMED_OUT))

    assert [session.session_id for session in store.list_active()] == ["early", "late"]


def test_chroma_store_replays_latest_revision(tmp_path: Path) -> None:
    client = StubClient()
    writer = _chroma(client, tmp_path)
    writer.save(_session("s1"))
    writer.update("s1", {"status": SessionStatus.RUNNING, "started_at": BASE})
    writer.update(
        "s1",
        {
            "status": SessionStatus.COMPLETED,
            "completed_at": BASE + timedelta(minutes=9),
            "result_ref": "https://github.com/acme/webapp/pull/12",
        },
    )

    reader = _chroma(client, tmp_path)
    session = reader.get("s1")

    assert session is not None
    assert session.status is SessionStatus.COMPLETED
    assert session.started_at == BASE
    assert session.result_ref == "https://github.com/acme/webapp/pull/12"
    assert reader.get_active("c1") is None
    assert [snapshot.revision for snapshot in reader.snapshots("s1")] == [1, 2, 3]


def test_chroma_store_skips_unchanged_updates(tmp_path: Path) -> None:
    client = StubClient()
    store = _chroma(client, tmp_path)
    store.save(_session("s1"))
    store.update("s1", {"status": SessionStatus.RUNNING})
    store.update("s1", {"status": SessionStatus.RUNNING})

    records = client.collections["taskgate_sessions"].records
    assert len(records) == 2
    assert records[-1].metadata["status"] == "running"
    assert records[-1].metadata["event_type"] == "session_snapshot"
    assert json.loads(records[-1].document)["revision"] == 2


def test_chroma_store_surfaces_unavailable_client(tmp_path: Path) -> None:
    def broken_factory():
        raise StoreUnavailableError("chromadb missing")

    store = ChromaSessionStore(tmp_path, client_factory=broken_factory)

    with pytest.raises(StoreUnavailableError):
        store.ping()


def test_session_round_trips_through_dict() -> None:
    session = _session(
        "s1",
        status=SessionStatus.RUNNING,
        started_at=BASE + timedelta(seconds=5),
        process_id=77,
        log_path="/tmp/s1.log",
    )

    restored = Session.from_dict(json.loads(json.dumps(session.to_dict())))

    assert restored == session
