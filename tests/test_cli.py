from __future__ import annotations

import argparse
import importlib.util
import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from taskgate.storage import InMemorySessionStore, Session, SessionStatus, StoreUnavailableError

BASE = datetime(2025, 1, 1, tzinfo=timezone.utc)


def load_diag(name: str):
    module_path = Path(__file__).resolve().parents[1] / "scripts" / "taskgate_diag.py"
    spec = importlib.util.spec_from_file_location(name, module_path)
    assert spec and spec.loader
    diag = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(diag)
    return diag


class StubStore(InMemorySessionStore):
    def all_sessions(self) -> list[Session]:
        return sorted(self._sessions.values(), key=lambda session: session.created_at)


def _populated_store() -> StubStore:
    store = StubStore()
    rows = [
        ("s1", "c1", SessionStatus.COMPLETED, 0, 10, "https://github.com/acme/app/pull/1", None),
        ("s2", "c1", SessionStatus.FAILED, 20, 25, None, "tests failed"),
        ("s3", "c2", SessionStatus.TIMED_OUT, 30, 60, None, "Deadline of 1800s exceeded"),
        ("s4", "c1", SessionStatus.RUNNING, 70, None, None, None),
    ]
    for session_id, conversation_id, status, start, end, result_ref, reason in rows:
        store.save(
            Session(
                session_id=session_id,
                conversation_id=conversation_id,
                owner_id="u1",
                target="app",
                description=f"task {session_id}",
                status=status,
                created_at=BASE + timedelta(minutes=start),
                started_at=BASE + timedelta(minutes=start),
                completed_at=BASE + timedelta(minutes=end) if end is not None else None,
                result_ref=result_ref,
                reason=reason,
                process_id=4242 if status is SessionStatus.RUNNING else None,
            )
        )
    return store


def test_load_store_reports_unavailable_chroma(monkeypatch, capsys) -> None:
    diag = load_diag("taskgate_diag_unavailable")

    class BrokenStore:
        def __init__(self, *_, **__):
            pass

        def ping(self):
            raise StoreUnavailableError("chromadb package is not installed")

    monkeypatch.setattr(diag, "ChromaSessionStore", BrokenStore)

    with pytest.raises(SystemExit) as excinfo:
        diag.load_store(diag.TaskgateSettings())

    assert excinfo.value.code == 1
    assert "Chroma unavailable" in capsys.readouterr().out


def test_metrics_counts_sessions(monkeypatch, capsys) -> None:
    diag = load_diag("taskgate_diag_metrics")
    monkeypatch.setattr(diag, "load_store", lambda _settings: _populated_store())

    diag.cmd_metrics(argparse.Namespace())

    payload = json.loads(capsys.readouterr().out)
    assert payload["sessions_total"] == 4
    assert payload["status_counts"] == {"completed": 1, "failed": 1, "timed_out": 1, "running": 1}
    assert payload["active"] == 1
    assert payload["with_result"] == 1
    assert payload["failure_reasons"] == {"tests failed": 1, "Deadline of 1800s exceeded": 1}
    assert payload["average_duration_seconds"] == 900.0


def test_sessions_filters_by_conversation(monkeypatch, capsys) -> None:
    diag = load_diag("taskgate_diag_sessions")
    monkeypatch.setattr(diag, "load_store", lambda _settings: _populated_store())

    diag.cmd_sessions(argparse.Namespace(conversation_id="c1", limit=2))

    payload = json.loads(capsys.readouterr().out)
    assert [entry["session_id"] for entry in payload] == ["s4", "s2"]


def test_sessions_without_conversation_lists_newest(monkeypatch, capsys) -> None:
    diag = load_diag("taskgate_diag_all_sessions")
    monkeypatch.setattr(diag, "load_store", lambda _settings: _populated_store())

    diag.cmd_sessions(argparse.Namespace(conversation_id=None, limit=3))

    payload = json.loads(capsys.readouterr().out)
    assert [entry["session_id"] for entry in payload] == ["s4", "s3", "s2"]


def test_active_lists_running_sessions(monkeypatch, capsys) -> None:
    diag = load_diag("taskgate_diag_active")
    monkeypatch.setattr(diag, "load_store", lambda _settings: _populated_store())

    diag.cmd_active(argparse.Namespace(json=False))

    assert capsys.readouterr().out.strip() == "s4 [running] c1 pid=4242"


def test_parser_exposes_subcommands() -> None:
    diag = load_diag("taskgate_diag_parser")
    parser = diag.build_parser()

    args = parser.parse_args(["sessions", "--conversation-id", "c9", "--limit", "3"])
    assert args.conversation_id == "c9"
    assert args.limit == 3
    assert parser.parse_args(["snapshots", "s1"]).session_id == "s1"
