"""Bounded-concurrency task queue for agent sessions.

Every running task occupies one capacity slot. A task reaches exactly one
terminal state: natural completion, cancellation, timeout and monitor errors
all go through :meth:`TaskQueue._claim`, which is synchronous, so whichever
path claims first owns the transition and the others become no-ops.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from functools import partial
from pathlib import Path
from typing import Any, Awaitable, Callable, Mapping
from uuid import uuid4

from pydantic import ValidationError

from ..agent import AgentLauncher, MonitorOutcome, ProcessMonitor, ProcessState, ProgressEvent
from ..errors import (
    ConflictError,
    MonitorError,
    SpawnError,
    TaskCancelledError,
    TaskTimeoutError,
    TaskValidationError,
    TaskgateError,
)
from ..storage import Session, SessionStatus, SessionStore
from ..workspaces import WorkspaceLoadError, WorkspaceLoader, WorkspaceProfile
from .models import (
    SESSION_KIND,
    QueueStatus,
    SessionRequest,
    SessionSummary,
    Task,
    TaskStatus,
)

logger = logging.getLogger(__name__)

Handler = Callable[[Task], Awaitable[str | None]]


@dataclass(slots=True)
class _Running:
    task: Task
    closing: bool = False
    pid: int | None = None
    job: asyncio.Task[None] | None = None
    spawned: asyncio.Event = field(default_factory=asyncio.Event)


def _new_session_id(now: datetime) -> str:
    return f"session-{now.strftime('%Y%m%d%H%M%S')}-{uuid4().hex[:6]}"


class TaskQueue:
    """Accepts submissions, enforces capacity and one active session per conversation."""

    def __init__(
        self,
        store: SessionStore,
        launcher: AgentLauncher,
        monitor: ProcessMonitor,
        *,
        capacity: int = 1,
        log_dir: Path = Path("./storage/logs"),
        session_timeout: float = 30 * 60,
        deadline_check_interval: float = 5.0,
        kill_grace: float = 5.0,
        workspaces: WorkspaceLoader | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self._store = store
        self._launcher = launcher
        self._monitor = monitor
        self._capacity = capacity
        self._log_dir = Path(log_dir)
        self._session_timeout = session_timeout
        self._deadline_check_interval = deadline_check_interval
        self._kill_grace = kill_grace
        self._workspaces = workspaces
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self._handlers: dict[str, Handler] = {}
        self._tasks: dict[str, Task] = {}
        self._queue: deque[Task] = deque()
        self._running: dict[str, _Running] = {}
        self._conversations: dict[str, str] = {}
        self._background: set[asyncio.Task[Any]] = set()
        self._unsaved: dict[str, dict[str, Any]] = {}
        self._sweeper: asyncio.Task[None] | None = None

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def running_count(self) -> int:
        return len(self._running)

    def register_handler(self, kind: str, handler: Handler) -> None:
        """Run ``handler`` for tasks of ``kind`` under the same capacity rules."""

        if kind == SESSION_KIND:
            raise ValueError(f"'{SESSION_KIND}' tasks are handled by the agent launcher")
        self._handlers[kind] = handler

    # -- submission -----------------------------------------------------

    def submit(
        self,
        kind: str,
        payload: Mapping[str, Any],
        *,
        timeout: float | None = None,
        on_progress: Callable[[str], Any] | None = None,
        on_terminal: Callable[[Task], Any] | None = None,
    ) -> str:
        """Queue a task and return its id.

        Raises :class:`TaskValidationError` for malformed submissions and
        :class:`ConflictError` when the conversation already has an active
        session; in both cases nothing is queued.
        """

        if timeout is not None and timeout <= 0:
            raise TaskValidationError("timeout must be > 0 seconds")
        if not isinstance(payload, Mapping):
            raise TaskValidationError("payload must be a mapping")

        now = self._clock()
        task_id = uuid4().hex
        if kind == SESSION_KIND:
            task = self._prepare_session(task_id, payload, timeout=timeout, now=now)
        elif kind in self._handlers:
            task = Task(task_id=task_id, kind=kind, payload=dict(payload), created_at=now, timeout=timeout)
        else:
            raise TaskValidationError(f"Unknown task kind '{kind}'")

        task.on_progress = on_progress
        task.on_terminal = on_terminal
        self._tasks[task_id] = task
        self._queue.append(task)
        logger.info(
            "Task queued",
            extra={"task_id": task_id, "kind": kind, "session_id": task.session_id},
        )
        self._pump()
        return task_id

    def _prepare_session(
        self,
        task_id: str,
        payload: Mapping[str, Any],
        *,
        timeout: float | None,
        now: datetime,
    ) -> Task:
        try:
            request = SessionRequest.model_validate(dict(payload))
        except ValidationError as exc:
            raise TaskValidationError(f"Invalid session request: {exc}") from exc

        workspace = self._resolve_workspace(request)
        workdir = request.workdir or (workspace.path if workspace else None)
        if workdir is None:
            raise TaskValidationError(f"Unknown target '{request.target}'")

        active_task_id = self._conversations.get(request.conversation_id)
        if active_task_id is not None:
            active = self._store.get(self._tasks[active_task_id].session_id or "")
            raise ConflictError(
                f"Conversation {request.conversation_id} already has an active session",
                session=active,
            )
        self._flush_unsaved()
        active = self._store.get_active(request.conversation_id)
        if active is not None and self._is_stale(active):
            logger.warning(
                "Ignoring stale active session",
                extra={"session_id": active.session_id, "task_id": active.task_id},
            )
            active = None
        if active is not None:
            raise ConflictError(
                f"Conversation {request.conversation_id} already has an active session",
                session=active,
            )

        effective_timeout = timeout
        if effective_timeout is None and workspace is not None:
            effective_timeout = workspace.timeout_seconds
        if effective_timeout is None:
            effective_timeout = self._session_timeout

        session_id = _new_session_id(now)
        task_payload = {
            "conversation_id": request.conversation_id,
            "owner_id": request.owner_id,
            "target": request.target,
            "description": request.description,
            "workdir": str(workdir),
            "agent_flags": list(workspace.agent_flags) if workspace else [],
            "max_iterations": workspace.max_iterations if workspace else None,
        }
        task = Task(
            task_id=task_id,
            kind=SESSION_KIND,
            payload=task_payload,
            created_at=now,
            timeout=effective_timeout,
            session_id=session_id,
        )
        self._store.save(
            Session(
                session_id=session_id,
                conversation_id=request.conversation_id,
                owner_id=request.owner_id,
                target=request.target,
                description=request.description,
                status=SessionStatus.QUEUED,
                created_at=now,
                workdir=str(workdir),
                task_id=task_id,
            )
        )
        self._conversations[request.conversation_id] = task_id
        return task

    def _resolve_workspace(self, request: SessionRequest) -> WorkspaceProfile | None:
        if not request.target or self._workspaces is None:
            return None
        try:
            return self._workspaces.get(request.target)
        except WorkspaceLoadError as exc:
            raise TaskValidationError(f"Workspace configuration is invalid: {exc}") from exc

    # -- worker ---------------------------------------------------------

    def _pump(self) -> None:
        """Start queued tasks while capacity allows; needs a running event loop."""

        self._flush_unsaved()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._ensure_sweeper(loop)

        while self._queue and len(self._running) < self._capacity:
            task = self._queue.popleft()
            now = self._clock()
            task.status = TaskStatus.RUNNING
            task.started_at = now
            if task.timeout is not None:
                task.deadline = now + timedelta(seconds=task.timeout)
            run = _Running(task=task)
            self._running[task.task_id] = run
            run.job = loop.create_task(self._execute(run), name=f"task:{task.task_id}")
            logger.info(
                "Task started",
                extra={"task_id": task.task_id, "kind": task.kind, "running": len(self._running)},
            )

    async def _execute(self, run: _Running) -> None:
        task = run.task
        try:
            if task.kind == SESSION_KIND:
                await self._start_session(run)
            else:
                await self._run_handler(run)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Task execution crashed", extra={"task_id": task.task_id})
            run.spawned.set()
            if self._claim(task) is not None:
                error = exc if isinstance(exc, TaskgateError) else TaskgateError(f"Task crashed: {exc}")
                if run.pid is not None:
                    await self._terminate(run, TaskStatus.FAILED, error)
                else:
                    self._finalize(task, TaskStatus.FAILED, error=error)

    async def _start_session(self, run: _Running) -> None:
        task = run.task
        session_id = task.session_id or ""
        payload = task.payload
        log_path = self._log_dir / f"{session_id}.log"
        try:
            launched = await self._launcher.launch(
                session_id,
                Path(payload["workdir"]),
                payload["description"],
                log_path,
                flags=payload.get("agent_flags") or None,
                max_iterations=payload.get("max_iterations"),
            )
        except SpawnError as exc:
            logger.error("Agent spawn failed", extra={"task_id": task.task_id, "error": str(exc)})
            run.spawned.set()
            if self._claim(task) is not None:
                self._finalize(task, TaskStatus.FAILED, error=exc)
            return

        run.pid = launched.pid
        run.spawned.set()
        patch: dict[str, Any] = {"process_id": launched.pid, "log_path": str(launched.log_path)}
        if not run.closing:
            patch.update({"status": SessionStatus.RUNNING, "started_at": task.started_at})
        self._store.update(session_id, patch)
        if run.closing:
            return

        self._monitor.start(
            session_id,
            launched.pid,
            launched.log_path,
            on_progress=partial(self._on_progress, task),
            on_terminal=partial(self._on_monitor_terminal, task),
        )

    async def _run_handler(self, run: _Running) -> None:
        task = run.task
        run.spawned.set()
        handler = self._handlers[task.kind]
        try:
            result = await handler(task)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Task handler failed", extra={"task_id": task.task_id, "error": str(exc)})
            if self._claim(task) is not None:
                self._finalize(task, TaskStatus.FAILED, error=TaskgateError(f"Handler failed: {exc}"))
            return
        if self._claim(task) is not None:
            self._finalize(task, TaskStatus.COMPLETED, result_ref=result)

    # -- termination ----------------------------------------------------

    def _claim(self, task: Task) -> _Running | None:
        run = self._running.get(task.task_id)
        if run is None or run.closing or task.terminal:
            return None
        run.closing = True
        return run

    async def _terminate(
        self,
        run: _Running,
        status: TaskStatus,
        error: TaskgateError,
        *,
        summary: str | None = None,
    ) -> None:
        """Stop supervision, kill the process, then finalize. Caller must hold the claim."""

        task = run.task
        if task.session_id:
            self._monitor.stop(task.session_id)

        if task.kind == SESSION_KIND:
            await run.spawned.wait()
            if run.pid is not None:
                try:
                    await self._launcher.terminate(run.pid, grace=self._kill_grace)
                except OSError as exc:
                    logger.warning(
                        "Failed to terminate agent",
                        extra={"task_id": task.task_id, "pid": run.pid, "error": str(exc)},
                    )
        elif run.job is not None and not run.job.done() and run.job is not asyncio.current_task():
            run.job.cancel()
            await asyncio.wait([run.job])

        self._finalize(task, status, pid=run.pid, error=error, summary=summary)

    def _finalize(
        self,
        task: Task,
        status: TaskStatus,
        *,
        pid: int | None = None,
        error: TaskgateError | None = None,
        result_ref: str | None = None,
        summary: str | None = None,
    ) -> None:
        if task.terminal:
            return
        now = self._clock()
        task.status = status
        task.completed_at = now
        task.error = error
        task.result_ref = result_ref
        task.summary = summary
        self._running.pop(task.task_id, None)

        conversation_id = task.conversation_id
        if conversation_id and self._conversations.get(conversation_id) == task.task_id:
            del self._conversations[conversation_id]

        if task.session_id:
            if pid is not None:
                self._launcher.release(pid)
            started = task.started_at
            patch: dict[str, Any] = {
                "status": status,
                "completed_at": now,
                "result_ref": result_ref,
                "summary": summary,
                "reason": task.reason,
            }
            if started is not None:
                patch["started_at"] = started
            try:
                self._store.update(task.session_id, patch)
            except Exception:  # the in-memory transition already happened
                logger.exception("Failed to persist session outcome", extra={"session_id": task.session_id})
                self._unsaved[task.session_id] = patch

        log = logger.info if status is TaskStatus.COMPLETED else logger.warning
        log(
            "Task finished",
            extra={
                "task_id": task.task_id,
                "status": status.value,
                "reason": task.reason,
                "running": len(self._running),
            },
        )
        if task.on_terminal is not None:
            self._call_sink(task.on_terminal, task)
        self._pump()

    def _flush_unsaved(self) -> None:
        """Retry terminal writes the store rejected earlier."""

        for session_id, patch in list(self._unsaved.items()):
            try:
                self._store.update(session_id, patch)
            except Exception as exc:
                logger.debug("Session outcome still unsaved", extra={"session_id": session_id, "error": str(exc)})
                continue
            del self._unsaved[session_id]
            logger.info("Persisted deferred session outcome", extra={"session_id": session_id})

    def _is_stale(self, session: Session) -> bool:
        task = self._tasks.get(session.task_id or "")
        return task is not None and task.terminal

    # -- monitor callbacks ----------------------------------------------

    def _on_progress(self, task: Task, event: ProgressEvent) -> None:
        if task.on_progress is not None and not task.terminal:
            self._call_sink(task.on_progress, event.message)

    def _on_monitor_terminal(self, task: Task, outcome: MonitorOutcome) -> None:
        run = self._claim(task)
        if run is None:
            return
        if outcome.success:
            self._finalize(
                task,
                TaskStatus.COMPLETED,
                pid=run.pid,
                result_ref=outcome.result_ref,
                summary=outcome.summary,
            )
        elif isinstance(outcome.error, MonitorError):
            self._spawn_background(
                self._terminate(run, TaskStatus.FAILED, outcome.error, summary=outcome.summary)
            )
        else:
            self._finalize(
                task,
                TaskStatus.FAILED,
                pid=run.pid,
                error=outcome.error,
                result_ref=outcome.result_ref,
                summary=outcome.summary,
            )

    def _call_sink(self, sink: Callable[[Any], Any], value: Any) -> None:
        try:
            result = sink(value)
        except Exception:
            logger.exception("Task callback failed")
            return
        if inspect.isawaitable(result):
            self._spawn_background(result)

    def _spawn_background(self, awaitable: Awaitable[Any]) -> None:
        job = asyncio.ensure_future(awaitable)
        self._background.add(job)
        job.add_done_callback(self._background.discard)

    # -- cancellation and deadlines -------------------------------------

    async def cancel(self, task_id: str) -> bool:
        """Cancel a queued or running task; False if it is unknown or already finishing."""

        task = self._tasks.get(task_id)
        if task is None or task.terminal:
            return False

        if task.status is TaskStatus.QUEUED:
            try:
                self._queue.remove(task)
            except ValueError:
                return False
            logger.info("Cancelled queued task", extra={"task_id": task_id})
            self._finalize(task, TaskStatus.CANCELLED, error=TaskCancelledError("Cancelled before start"))
            return True

        run = self._claim(task)
        if run is None:
            return False
        await self._terminate(run, TaskStatus.CANCELLED, TaskCancelledError("Cancelled by user"))
        return True

    async def cancel_conversation(self, conversation_id: str) -> bool:
        task = self.find_active_task(conversation_id)
        if task is None:
            return False
        return await self.cancel(task.task_id)

    async def sweep_deadlines(self) -> int:
        """Time out running tasks whose deadline has passed; return how many."""

        now = self._clock()
        claimed: list[_Running] = []
        for run in list(self._running.values()):
            deadline = run.task.deadline
            if deadline is None or deadline > now:
                continue
            owned = self._claim(run.task)
            if owned is not None:
                claimed.append(owned)

        for run in claimed:
            logger.warning(
                "Task timed out",
                extra={"task_id": run.task.task_id, "timeout": run.task.timeout},
            )
        await asyncio.gather(
            *(
                self._terminate(
                    run,
                    TaskStatus.TIMED_OUT,
                    TaskTimeoutError(f"Deadline of {run.task.timeout:g}s exceeded"),
                )
                for run in claimed
            )
        )
        return len(claimed)

    def _ensure_sweeper(self, loop: asyncio.AbstractEventLoop) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = loop.create_task(self._deadline_loop(), name="taskgate:deadlines")

    async def _deadline_loop(self) -> None:
        while True:
            await asyncio.sleep(self._deadline_check_interval)
            self._flush_unsaved()
            try:
                await self.sweep_deadlines()
            except Exception:
                logger.exception("Deadline sweep failed")

    # -- lifecycle ------------------------------------------------------

    async def start(self) -> dict[str, int]:
        """Reconcile persisted sessions and begin dispatching."""

        counts = await self.reconcile()
        self._ensure_sweeper(asyncio.get_running_loop())
        self._pump()
        return counts

    async def shutdown(self) -> None:
        """Stop background work; agent processes are left running for reattachment."""

        if self._sweeper is not None:
            self._sweeper.cancel()
            await asyncio.wait([self._sweeper])
            self._sweeper = None

        for run in list(self._running.values()):
            if run.task.kind == SESSION_KIND:
                continue
            owned = self._claim(run.task)
            if owned is not None:
                await self._terminate(owned, TaskStatus.CANCELLED, TaskCancelledError("Queue shut down"))

        stopped = self._monitor.stop_all()
        if self._background:
            await asyncio.wait(list(self._background), timeout=self._kill_grace + 1)
        logger.info("Task queue shut down", extra={"monitors_stopped": stopped})

    async def reconcile(self) -> dict[str, int]:
        """Rebuild in-memory state from active sessions left by a previous process."""

        counts = {"reattached": 0, "completed": 0, "failed": 0, "requeued": 0}
        for session in self._store.list_active():
            if session.task_id and session.task_id in self._tasks:
                continue

            if session.status is SessionStatus.RUNNING:
                state = self._launcher.probe(session.process_id) if session.process_id else None
                if state is not None and state.alive and session.log_path:
                    self._reattach(session)
                    counts["reattached"] += 1
                elif self._settle_exited(session, state):
                    counts["completed"] += 1
                else:
                    error = MonitorError("Agent process lost across restart")
                    self._store.update(
                        session.session_id,
                        {
                            "status": SessionStatus.FAILED,
                            "completed_at": self._clock(),
                            "reason": str(error),
                        },
                    )
                    logger.warning(
                        "Marked orphaned session failed",
                        extra={"session_id": session.session_id, "pid": session.process_id},
                    )
                    counts["failed"] += 1
            else:
                task = self._rebuild_task(session)
                self._tasks[task.task_id] = task
                self._queue.append(task)
                self._conversations[session.conversation_id] = task.task_id
                counts["requeued"] += 1

        if any(counts.values()):
            logger.info("Reconciled sessions", extra=counts)
        self._pump()
        return counts

    def _settle_exited(self, session: Session, state: ProcessState | None) -> bool:
        """Mark a session whose agent exited while we were down completed if its log says so."""

        if not session.log_path:
            return False
        try:
            outcome = self._monitor.inspect(
                session.session_id,
                session.process_id or 0,
                session.log_path,
                state or ProcessState(alive=False),
            )
        except OSError as exc:
            logger.debug("Session log unavailable", extra={"session_id": session.session_id, "error": str(exc)})
            return False
        if not outcome.success:
            return False
        self._store.update(
            session.session_id,
            {
                "status": SessionStatus.COMPLETED,
                "completed_at": self._clock(),
                "result_ref": outcome.result_ref,
                "summary": outcome.summary,
            },
        )
        logger.info(
            "Settled session finished across restart",
            extra={"session_id": session.session_id, "result_ref": outcome.result_ref},
        )
        return True

    def _rebuild_task(self, session: Session) -> Task:
        workspace: WorkspaceProfile | None = None
        if session.target and self._workspaces is not None:
            try:
                workspace = self._workspaces.get(session.target)
            except WorkspaceLoadError as exc:
                logger.warning("Workspace lookup failed", extra={"target": session.target, "error": str(exc)})
        timeout = (workspace.timeout_seconds if workspace else None) or self._session_timeout
        task_id = session.task_id or uuid4().hex
        if session.task_id is None:
            self._store.update(session.session_id, {"task_id": task_id})
        return Task(
            task_id=task_id,
            kind=SESSION_KIND,
            payload={
                "conversation_id": session.conversation_id,
                "owner_id": session.owner_id,
                "target": session.target,
                "description": session.description,
                "workdir": session.workdir or (str(workspace.path) if workspace else "."),
                "agent_flags": list(workspace.agent_flags) if workspace else [],
                "max_iterations": workspace.max_iterations if workspace else None,
            },
            created_at=session.created_at,
            timeout=timeout,
            session_id=session.session_id,
        )

    def _reattach(self, session: Session) -> None:
        task = self._rebuild_task(session)
        started = session.started_at or self._clock()
        task.status = TaskStatus.RUNNING
        task.started_at = started
        if task.timeout is not None:
            task.deadline = started + timedelta(seconds=task.timeout)

        run = _Running(task=task, pid=session.process_id)
        run.spawned.set()
        self._tasks[task.task_id] = task
        self._running[task.task_id] = run
        self._conversations[session.conversation_id] = task.task_id
        if len(self._running) > self._capacity:
            logger.warning(
                "Reattached sessions exceed capacity",
                extra={"running": len(self._running), "capacity": self._capacity},
            )

        self._monitor.start(
            session.session_id,
            session.process_id or 0,
            Path(session.log_path or ""),
            on_progress=partial(self._on_progress, task),
            on_terminal=partial(self._on_monitor_terminal, task),
        )
        logger.info(
            "Reattached session",
            extra={"session_id": session.session_id, "pid": session.process_id},
        )

    # -- queries --------------------------------------------------------

    def get(self, task_id: str) -> Task | None:
        return self._tasks.get(task_id)

    def find_active_task(self, conversation_id: str) -> Task | None:
        task_id = self._conversations.get(conversation_id)
        return self._tasks.get(task_id) if task_id else None

    def status(self) -> QueueStatus:
        return QueueStatus(queued=len(self._queue), running=len(self._running), capacity=self._capacity)

    def session_status(self, conversation_id: str) -> SessionSummary | None:
        self._flush_unsaved()
        session = self._store.get_active(conversation_id)
        if session is None or self._is_stale(session):
            return None
        return SessionSummary(
            session_id=session.session_id,
            status=session.status,
            started_at=session.started_at,
            target=session.target,
            description=session.description,
        )

    def history(self, conversation_id: str, limit: int = 5) -> list[Session]:
        return self._store.history(conversation_id, limit)


__all__ = ["Handler", "TaskQueue"]
