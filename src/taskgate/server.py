"""FastMCP server bootstrap for Taskgate."""

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Optional

from fastmcp import Context, FastMCP

from . import __version__
from .agent import AgentLauncher, ProcessMonitor
from .config import TaskgateSettings, get_settings
from .confirmation import ConfirmationManager
from .errors import AgentNotFoundError
from .storage import ChromaSessionStore, InMemorySessionStore, SessionStore, StoreUnavailableError
from .tasks import TaskQueue
from .tools import register_tools
from .workspaces import WorkspaceLoadError, WorkspaceLoader

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    """Configure root logging for the Taskgate server."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


def _build_store(settings: TaskgateSettings, metadata: dict[str, Any]) -> SessionStore:
    try:
        store = ChromaSessionStore(settings.chroma_persist_path)
        store.ping()
    except StoreUnavailableError as exc:
        metadata["error"] = str(exc)
    except Exception as exc:  # chromadb raises its own error types on a corrupt directory
        metadata["error"] = f"{type(exc).__name__}: {exc}"
    else:
        metadata["available"] = True
        return store

    logger.warning(
        "Chroma unavailable; sessions will not survive a restart",
        extra={"path": str(settings.chroma_persist_path), "error": metadata["error"]},
    )
    metadata["backend"] = "memory"
    return InMemorySessionStore()


def create_server(
    settings: Optional[TaskgateSettings] = None,
    *,
    store: SessionStore | None = None,
    launcher: AgentLauncher | None = None,
) -> FastMCP:
    """Wire the confirmation handshake and task queue into a FastMCP server."""

    settings = settings or get_settings()

    store_metadata: dict[str, Any] = {
        "available": store is not None,
        "backend": "chroma",
        "path": str(settings.chroma_persist_path),
        "error": None,
    }
    if store is None:
        store = _build_store(settings, store_metadata)
    else:
        store_metadata["backend"] = type(store).__name__

    agent_metadata: dict[str, Any] = {
        "available": launcher is not None,
        "path": settings.agent_path,
        "executable": str(launcher.executable) if launcher is not None else None,
        "error": None,
    }
    if launcher is None:
        try:
            launcher = AgentLauncher(
                Path(settings.agent_path) if settings.agent_path else None,
                max_iterations=settings.agent_max_iterations,
            )
            agent_metadata["available"] = True
            agent_metadata["executable"] = str(launcher.executable)
        except AgentNotFoundError as exc:
            agent_metadata["error"] = str(exc)
            logger.warning("Agent executable unavailable", extra={"error": str(exc)})

    workspaces = WorkspaceLoader(settings.workspace_paths)
    confirmations = ConfirmationManager(ttl_seconds=settings.confirmation_ttl_seconds)

    queue: TaskQueue | None = None
    if launcher is not None:
        monitor = ProcessMonitor(
            probe=launcher.probe,
            poll_interval=settings.poll_interval_seconds,
            heartbeat_interval=settings.heartbeat_interval_seconds,
        )
        queue = TaskQueue(
            store,
            launcher,
            monitor,
            capacity=settings.capacity,
            log_dir=settings.log_dir,
            session_timeout=settings.session_timeout_seconds,
            deadline_check_interval=settings.deadline_check_interval_seconds,
            kill_grace=settings.kill_grace_seconds,
            workspaces=workspaces,
        )

    reconcile_counts: dict[str, int] = {}

    @asynccontextmanager
    async def lifespan(_: FastMCP) -> AsyncIterator[None]:
        if queue is not None:
            reconcile_counts.update(await queue.start())
        try:
            yield
        finally:
            confirmations.clear()
            if queue is not None:
                await queue.shutdown()

    server = FastMCP(
        name="Taskgate MCP",
        version=__version__,
        instructions=(
            "Taskgate runs long-lived coding agent sessions behind an explicit "
            "yes/no confirmation. Stage an action, pass the user's reply, then "
            "follow progress with session_status."
        ),
        lifespan=lifespan,
    )

    handles = None
    if queue is not None:
        handles = register_tools(server, confirmations=confirmations, queue=queue, settings=settings)

    @server.resource(
        "resource://taskgate/status",
        name="taskgate_status",
        title="Taskgate Status",
        description="Provides the current runtime status for the Taskgate server.",
        mime_type="application/json",
        tags={"status", "health"},
    )
    def status_resource(context: Context) -> str:
        """Return a JSON string summarizing basic runtime state."""

        try:
            workspace_ids = sorted(workspaces.load_all().keys())
            workspace_error: str | None = None
        except WorkspaceLoadError as exc:
            workspace_ids = []
            workspace_error = str(exc)

        active_sessions: list[dict[str, Any]] = []
        storage_error = None
        try:
            active_sessions = [
                {
                    "session_id": session.session_id,
                    "conversation_id": session.conversation_id,
                    "status": session.status.value,
                    "target": session.target,
                }
                for session in store.list_active()
            ]
        except Exception as exc:  # status must render even if storage is broken
            storage_error = str(exc)

        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "server_version": __version__,
            "log_level": settings.log_level,
            "workspaces": {
                "count": len(workspace_ids),
                "ids": workspace_ids,
                "error": workspace_error,
            },
            "agent": agent_metadata,
            "storage": {
                **store_metadata,
                "active_sessions": active_sessions,
                "error": storage_error or store_metadata["error"],
            },
            "queue": queue.status().to_dict() if queue is not None else None,
            "reconciled": reconcile_counts,
            "pending_confirmations": len(confirmations.snapshot()),
            "request_id": getattr(context, "request_id", None),
        }
        return json.dumps(payload)

    setattr(server, "session_store", store)
    setattr(server, "store_metadata", store_metadata)
    setattr(server, "agent_launcher", launcher)
    setattr(server, "agent_metadata", agent_metadata)
    setattr(server, "confirmations", confirmations)
    setattr(server, "task_queue", queue)
    setattr(server, "tool_handles", handles)
    return server


def main() -> None:
    """Entry point for running the Taskgate MCP server via CLI."""

    settings = get_settings()
    configure_logging(settings.log_level)

    server = create_server(settings)
    logger.info(
        "Launching Taskgate MCP server",
        extra={
            "version": __version__,
            "log_level": settings.log_level,
            "agent_available": getattr(server, "agent_metadata", {}).get("available"),
            "chroma_available": getattr(server, "store_metadata", {}).get("available"),
        },
    )
    server.run()


if __name__ == "__main__":
    main()
