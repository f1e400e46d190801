"""Taskgate diagnostics CLI."""

from __future__ import annotations

import argparse
import json

from taskgate.config import TaskgateSettings
from taskgate.storage import ChromaSessionStore, StoreUnavailableError


def load_store(settings: TaskgateSettings) -> ChromaSessionStore:
    try:
        store = ChromaSessionStore(settings.chroma_persist_path)
        store.ping()
        return store
    except StoreUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)


def cmd_sessions(args: argparse.Namespace) -> None:
    settings = TaskgateSettings()
    store = load_store(settings)
    if args.conversation_id:
        sessions = store.history(args.conversation_id, args.limit)
    else:
        sessions = list(reversed(store.all_sessions()))
        if args.limit:
            sessions = sessions[: args.limit]
    print(json.dumps([session.to_dict() for session in sessions], indent=2))


def cmd_active(args: argparse.Namespace) -> None:
    settings = TaskgateSettings()
    store = load_store(settings)
    sessions = store.list_active()
    if args.json:
        print(json.dumps([session.to_dict() for session in sessions], indent=2))
    else:
        for session in sessions:
            print(
                f"{session.session_id} [{session.status.value}] "
                f"{session.conversation_id} pid={session.process_id}"
            )


def cmd_snapshots(args: argparse.Namespace) -> None:
    settings = TaskgateSettings()
    store = load_store(settings)
    payload = [
        {
            "revision": snapshot.revision,
            "status": snapshot.session.status.value,
            "timestamp": snapshot.timestamp.isoformat(),
        }
        for snapshot in store.snapshots(args.session_id)
    ]
    print(json.dumps(payload, indent=2))


def cmd_metrics(args: argparse.Namespace) -> None:
    settings = TaskgateSettings()
    store = load_store(settings)
    sessions = store.all_sessions()

    status_counts: dict[str, int] = {}
    failure_reasons: dict[str, int] = {}
    durations: list[float] = []
    for session in sessions:
        status = session.status.value
        status_counts[status] = status_counts.get(status, 0) + 1
        if session.reason and session.status.terminal and status != "completed":
            failure_reasons[session.reason] = failure_reasons.get(session.reason, 0) + 1
        if session.started_at and session.completed_at:
            durations.append((session.completed_at - session.started_at).total_seconds())

    metrics = {
        "sessions_total": len(sessions),
        "status_counts": status_counts,
        "active": sum(1 for session in sessions if session.active),
        "with_result": sum(1 for session in sessions if session.result_ref),
        "failure_reasons": failure_reasons,
        "average_duration_seconds": round(sum(durations) / len(durations), 1) if durations else None,
    }

    print(json.dumps(metrics, indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Taskgate diagnostics")
    sub = parser.add_subparsers(dest="cmd")

    p_sessions = sub.add_parser("sessions", help="List recorded sessions, newest first")
    p_sessions.add_argument("--conversation-id")
    p_sessions.add_argument("--limit", type=int, default=5)
    p_sessions.set_defaults(func=cmd_sessions)

    p_active = sub.add_parser("active", help="List queued and running sessions")
    p_active.add_argument("--json", action="store_true", help="Output JSON")
    p_active.set_defaults(func=cmd_active)

    p_snapshots = sub.add_parser("snapshots", help="Show every stored revision of a session")
    p_snapshots.add_argument("session_id")
    p_snapshots.set_defaults(func=cmd_snapshots)

    p_metrics = sub.add_parser("metrics", help="Show session counts by status")
    p_metrics.set_defaults(func=cmd_metrics)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()
