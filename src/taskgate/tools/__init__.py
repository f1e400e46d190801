"""Tool registration for the Taskgate MCP server."""

from __future__ import annotations

import logging
from collections import OrderedDict, deque
from dataclasses import dataclass
from typing import Any

from fastmcp import Context, FastMCP

from ..config import TaskgateSettings
from ..confirmation import ConfirmationManager, Verdict, requires_confirmation
from ..errors import ConflictError, TaskValidationError
from ..tasks import SESSION_KIND, Task, TaskQueue

PROGRESS_HISTORY = 20
OUTCOME_HISTORY = 100


@dataclass(slots=True)
class ToolHandles:
    stage_action: Any
    reply: Any
    queue_status: Any
    session_status: Any
    session_history: Any
    cancel_task: Any
    cancel_session: Any
    progress_state: dict[str, deque[str]]
    outcome_state: OrderedDict[str, dict[str, Any]]


def _conflict_payload(exc: ConflictError) -> dict[str, Any]:
    session = exc.session
    return {
        "status": "conflict",
        "error": str(exc),
        "active_session": session.to_dict() if session is not None else None,
    }


def register_tools(
    server: FastMCP,
    *,
    confirmations: ConfirmationManager,
    queue: TaskQueue,
    settings: TaskgateSettings,
) -> ToolHandles:
    """Register Taskgate's MCP tools on the server."""

    progress_state: dict[str, deque[str]] = {}
    outcome_state: OrderedDict[str, dict[str, Any]] = OrderedDict()

    def _record_progress(task_id: str, message: str) -> None:
        progress_state.setdefault(task_id, deque(maxlen=PROGRESS_HISTORY)).append(message)

    def _record_outcome(task: Task) -> None:
        outcome = task.to_dict()
        outcome["progress"] = list(progress_state.pop(task.task_id, ()))
        outcome_state[task.task_id] = outcome
        while len(outcome_state) > OUTCOME_HISTORY:
            outcome_state.popitem(last=False)
        logger.info(
            "Session outcome recorded",
            extra={"task_id": task.task_id, "status": task.status.value, "session_id": task.session_id},
        )

    def _submit_session(
        owner_id: str,
        params: dict[str, Any],
        context: Context | None,
    ) -> dict[str, Any]:
        payload = {**params, "owner_id": owner_id}
        task_ref: dict[str, str] = {}

        def _on_progress(message: str) -> None:
            task_id = task_ref.get("task_id")
            if task_id is not None:
                _record_progress(task_id, message)

        try:
            task_id = queue.submit(
                SESSION_KIND,
                payload,
                on_progress=_on_progress,
                on_terminal=_record_outcome,
            )
        except ConflictError as exc:
            _emit_log(context, "warning", "Session conflict", extra={"owner_id": owner_id})
            return _conflict_payload(exc)
        except TaskValidationError as exc:
            _emit_log(context, "warning", "Session rejected", extra={"owner_id": owner_id, "error": str(exc)})
            return {"status": "rejected", "error": str(exc)}

        task_ref["task_id"] = task_id
        task = queue.get(task_id)
        _emit_log(
            context,
            "info",
            "Session submitted",
            extra={"task_id": task_id, "session_id": task.session_id if task else None},
        )
        return {
            "status": "submitted",
            "task_id": task_id,
            "session_id": task.session_id if task else None,
            "queue": queue.status().to_dict(),
        }

    def _stage_action(
        owner_id: str,
        action: str,
        params: dict[str, Any] | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Stage an action for explicit approval by its owner."""

        params = dict(params or {})
        if not requires_confirmation(action):
            _emit_log(context, "debug", "Action needs no confirmation", extra={"action": action})
            return {"status": "not_required", "action": action, "params": params}

        if action == SESSION_KIND:
            conversation_id = str(params.get("conversation_id") or "")
            active = queue.session_status(conversation_id) if conversation_id else None
            if active is not None:
                return {
                    "status": "conflict",
                    "error": f"Conversation {conversation_id} already has an active session",
                    "active_session": active.to_dict(),
                }

        pending = confirmations.stage(owner_id, action, params)
        remaining = confirmations.time_remaining(owner_id)
        _emit_log(context, "info", "Staged action", extra={"owner_id": owner_id, "action": action})
        return {
            "status": "pending",
            "action": pending.action,
            "params": pending.params,
            "expires_at": pending.expires_at.isoformat(),
            "seconds_remaining": int(remaining.total_seconds()) if remaining else 0,
        }

    def _reply(
        owner_id: str,
        text: str,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Resolve an owner's yes/no reply against their pending action."""

        verdict = confirmations.classify(text)
        if verdict is Verdict.NONE:
            return {"verdict": verdict.value, "pending": confirmations.has_pending(owner_id)}

        if verdict is Verdict.DENY:
            denied = confirmations.deny(owner_id)
            _emit_log(context, "info", "Reply denied action", extra={"owner_id": owner_id, "denied": denied})
            return {"verdict": verdict.value, "status": "denied" if denied else "absent"}

        result = confirmations.consume(owner_id)
        if not result.ok or result.pending is None:
            return {"verdict": verdict.value, "status": result.status}

        pending = result.pending
        response: dict[str, Any] = {"verdict": verdict.value, "action": pending.action}
        if pending.action == SESSION_KIND:
            response.update(_submit_session(owner_id, pending.params, context))
        else:
            response.update({"status": "consumed", "params": pending.params})
        return response

    tool_stage = server.tool(
        name="stage_action",
        description=(
            "Propose an action on behalf of a user. Risky actions are held until the "
            "user replies yes; read-only actions return immediately as not_required."
        ),
    )(_stage_action)

    tool_reply = server.tool(
        name="reply",
        description=(
            "Pass the user's reply. Approval consumes the pending action exactly once; "
            "approved agent_session actions are queued for execution."
        ),
    )(_reply)

    def _queue_status(context: Context | None = None) -> dict[str, Any]:
        """Report queue depth and capacity."""

        payload = queue.status().to_dict()
        _emit_log(context, "debug", "Queue status", extra=payload)
        return payload

    def _session_status(conversation_id: str, context: Context | None = None) -> dict[str, Any]:
        """Describe the active session of a conversation, if any."""

        summary = queue.session_status(conversation_id)
        if summary is None:
            return {"conversation_id": conversation_id, "active": False}
        task = queue.find_active_task(conversation_id)
        return {
            "conversation_id": conversation_id,
            "active": True,
            "session": summary.to_dict(),
            "task_id": task.task_id if task else None,
            "progress": list(progress_state.get(task.task_id, ())) if task else [],
        }

    def _session_history(
        conversation_id: str,
        limit: int = 5,
        context: Context | None = None,
    ) -> list[dict[str, Any]]:
        """List recent sessions for a conversation, newest first."""

        sessions = queue.history(conversation_id, limit)
        _emit_log(
            context,
            "debug",
            "Session history",
            extra={"conversation_id": conversation_id, "count": len(sessions)},
        )
        return [session.to_dict() for session in sessions]

    tool_queue_status = server.tool(
        name="queue_status",
        description="Return queued and running task counts and the configured capacity.",
    )(_queue_status)

    tool_session_status = server.tool(
        name="session_status",
        description="Show the active agent session for a conversation with recent progress.",
    )(_session_status)

    tool_session_history = server.tool(
        name="session_history",
        description="List a conversation's recent agent sessions, including result links.",
    )(_session_history)

    async def _cancel_task(task_id: str, context: Context | None = None) -> dict[str, Any]:
        """Cancel a queued or running task."""

        cancelled = await queue.cancel(task_id)
        task = queue.get(task_id)
        _emit_log(context, "warning", "Cancel requested", extra={"task_id": task_id, "cancelled": cancelled})
        return {
            "task_id": task_id,
            "cancelled": cancelled,
            "status": task.status.value if task else None,
        }

    async def _cancel_session(conversation_id: str, context: Context | None = None) -> dict[str, Any]:
        """Cancel the active session of a conversation."""

        task = queue.find_active_task(conversation_id)
        cancelled = await queue.cancel_conversation(conversation_id)
        _emit_log(
            context,
            "warning",
            "Session cancel requested",
            extra={"conversation_id": conversation_id, "cancelled": cancelled},
        )
        return {
            "conversation_id": conversation_id,
            "cancelled": cancelled,
            "task_id": task.task_id if task else None,
            "session_id": task.session_id if task else None,
        }

    tool_cancel_task = server.tool(
        name="cancel_task",
        description="Cancel a task by id; running agents get SIGTERM, then SIGKILL after the grace period.",
        annotations={
            "safety": {
                "level": "caution",
                "notes": f"Agents are killed after {settings.kill_grace_seconds:g}s if they ignore SIGTERM",
            }
        },
    )(_cancel_task)

    tool_cancel_session = server.tool(
        name="cancel_session",
        description="Cancel the active agent session of a conversation.",
    )(_cancel_session)

    return ToolHandles(
        stage_action=tool_stage,
        reply=tool_reply,
        queue_status=tool_queue_status,
        session_status=tool_session_status,
        session_history=tool_session_history,
        cancel_task=tool_cancel_task,
        cancel_session=tool_cancel_session,
        progress_state=progress_state,
        outcome_state=outcome_state,
    )


__all__ = ["register_tools", "ToolHandles"]

logger = logging.getLogger(__name__)


def _emit_log(
    context: Context | None,
    level: str,
    message: str,
    *,
    extra: dict[str, Any] | None = None,
) -> None:
    """Best-effort logging that prefers the MCP context logger when available."""

    payload = extra or {}

    if context is not None:
        ctx_logger = getattr(context, "logger", None)
        if ctx_logger is not None:
            log_method = getattr(ctx_logger, level, None)
            if callable(log_method):
                log_method(message, extra=payload)
                return

    fallback = getattr(logger, level, logger.info)
    fallback(message, extra=payload)
