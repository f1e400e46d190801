"""Supervise spawned agent processes by tailing their log files.

The agent is an opaque external tool, so its log file doubles as the event
stream: each handle keeps a byte cursor into the log and every tick reads only
what was appended since. Completion is detected through the liveness probe,
after which the remaining tail is read once and the terminal callback fires.
"""

from __future__ import annotations

import asyncio
import codecs
import logging
import os
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Literal

from ..errors import AgentFailedError, MonitorError, TaskgateError
from .utils import ProcessState, probe_pid

logger = logging.getLogger(__name__)

MILESTONES: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"Reading.*files", re.IGNORECASE), "Reading project files"),
    (re.compile(r"Planning.*changes", re.IGNORECASE), "Planning changes"),
    (re.compile(r"Creating.*files", re.IGNORECASE), "Creating files"),
    (re.compile(r"Modifying.*files", re.IGNORECASE), "Modifying files"),
    (re.compile(r"Running.*tests", re.IGNORECASE), "Running tests"),
    (re.compile(r"Creating.*PR", re.IGNORECASE), "Creating pull request"),
    (re.compile(r"Error:", re.IGNORECASE), "ERROR detected"),
)
SUCCESS_RE = re.compile(r"PR created|Task complete|Successfully", re.IGNORECASE)
PR_URL_RE = re.compile(r"https://github\.com/[^\s]+/pull/\d+")
ERROR_RE = re.compile(r"Error: (.+)", re.IGNORECASE)

SUMMARY_CHARS = 500


@dataclass(slots=True)
class ProgressEvent:
    session_id: str
    kind: Literal["milestone", "heartbeat"]
    message: str
    elapsed: float


@dataclass(slots=True)
class MonitorOutcome:
    """Terminal verdict for a monitored session."""

    session_id: str
    success: bool
    returncode: int | None = None
    result_ref: str | None = None
    summary: str | None = None
    error: TaskgateError | None = None

    @property
    def reason(self) -> str | None:
        return str(self.error) if self.error is not None else None


ProgressCallback = Callable[[ProgressEvent], Any]
TerminalCallback = Callable[[MonitorOutcome], Any]


@dataclass(slots=True)
class MonitorHandle:
    session_id: str
    process_id: int
    log_path: Path
    on_progress: ProgressCallback
    on_terminal: TerminalCallback
    started_at: float
    last_progress_at: float
    read_offset: int = 0
    partial: str = ""
    tail: str = ""
    result_ref: str | None = None
    last_error: str | None = None
    success_marker: bool = False
    finished: bool = False
    task: asyncio.Task[None] | None = None
    decoder: codecs.IncrementalDecoder = field(
        default_factory=lambda: codecs.getincrementaldecoder("utf-8")(errors="replace")
    )


def format_elapsed(seconds: float) -> str:
    total = int(seconds)
    return f"{total // 60}m {total % 60}s"


class ProcessMonitor:
    """Poll agent logs and liveness; fire ``on_terminal`` exactly once per handle."""

    def __init__(
        self,
        *,
        probe: Callable[[int], ProcessState] = probe_pid,
        poll_interval: float = 2.0,
        heartbeat_interval: float = 120.0,
        tail_chars: int = 4000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._probe = probe
        self._poll_interval = poll_interval
        self._heartbeat_interval = heartbeat_interval
        self._tail_chars = tail_chars
        self._clock = clock
        self._handles: dict[str, MonitorHandle] = {}

    def start(
        self,
        session_id: str,
        process_id: int,
        log_path: Path | str,
        on_progress: ProgressCallback,
        on_terminal: TerminalCallback,
        *,
        run_loop: bool = True,
    ) -> MonitorHandle:
        """Attach to a process. With ``run_loop=False`` ticks are driven via :meth:`poll`."""

        if session_id in self._handles:
            logger.warning("Replacing existing monitor", extra={"session_id": session_id})
            self.stop(session_id)

        now = self._clock()
        handle = MonitorHandle(
            session_id=session_id,
            process_id=process_id,
            log_path=Path(log_path),
            on_progress=on_progress,
            on_terminal=on_terminal,
            started_at=now,
            last_progress_at=now,
        )
        self._handles[session_id] = handle
        if run_loop:
            handle.task = asyncio.get_running_loop().create_task(
                self._run(handle), name=f"monitor:{session_id}"
            )
        logger.info(
            "Started monitoring",
            extra={"session_id": session_id, "pid": process_id, "log_path": str(log_path)},
        )
        return handle

    def stop(self, session_id: str) -> bool:
        handle = self._handles.pop(session_id, None)
        if handle is None:
            return False
        handle.finished = True
        if handle.task is not None and handle.task is not asyncio.current_task():
            handle.task.cancel()
        logger.info("Stopped monitoring", extra={"session_id": session_id})
        return True

    def stop_all(self) -> int:
        session_ids = list(self._handles)
        for session_id in session_ids:
            self.stop(session_id)
        return len(session_ids)

    def active_sessions(self) -> list[str]:
        return list(self._handles)

    def get(self, session_id: str) -> MonitorHandle | None:
        return self._handles.get(session_id)

    async def _run(self, handle: MonitorHandle) -> None:
        while not handle.finished:
            self._tick(handle)
            if handle.finished:
                break
            await asyncio.sleep(self._poll_interval)

    def poll(self, session_id: str) -> bool:
        """Run one tick for ``session_id``; return False if it is not monitored."""

        handle = self._handles.get(session_id)
        if handle is None or handle.finished:
            return False
        self._tick(handle)
        return True

    def _tick(self, handle: MonitorHandle) -> None:
        state = self._probe(handle.process_id)
        final = not state.alive
        try:
            text = self._read_new(handle, final=final)
        except OSError as exc:
            logger.error(
                "Session log unreadable",
                extra={"session_id": handle.session_id, "log_path": str(handle.log_path), "error": str(exc)},
            )
            self._finish(
                handle,
                MonitorOutcome(
                    session_id=handle.session_id,
                    success=False,
                    returncode=state.returncode,
                    summary=self._summary(handle),
                    error=MonitorError(f"Session log unreadable: {exc}"),
                ),
            )
            return

        self._consume(handle, text, final=final)
        if handle.finished:
            return
        if final:
            self._finish(handle, self._outcome(handle, state))
            return

        now = self._clock()
        if now - handle.last_progress_at >= self._heartbeat_interval:
            elapsed = now - handle.started_at
            self._emit(
                handle,
                ProgressEvent(
                    session_id=handle.session_id,
                    kind="heartbeat",
                    message=f"Still working ({format_elapsed(elapsed)})",
                    elapsed=elapsed,
                ),
            )
            handle.last_progress_at = now

    def inspect(
        self,
        session_id: str,
        process_id: int,
        log_path: Path | str,
        state: ProcessState,
    ) -> MonitorOutcome:
        """Read a finished session's whole log once and judge it without attaching."""

        now = self._clock()
        handle = MonitorHandle(
            session_id=session_id,
            process_id=process_id,
            log_path=Path(log_path),
            on_progress=lambda _event: None,
            on_terminal=lambda _outcome: None,
            started_at=now,
            last_progress_at=now,
        )
        text = self._read_new(handle, final=True)
        self._consume(handle, text, final=True)
        return self._outcome(handle, state)

    def _read_new(self, handle: MonitorHandle, *, final: bool) -> str:
        with handle.log_path.open("rb") as log_file:
            size = os.fstat(log_file.fileno()).st_size
            if size < handle.read_offset:
                logger.warning(
                    "Session log truncated; rereading from start",
                    extra={"session_id": handle.session_id, "offset": handle.read_offset, "size": size},
                )
                handle.read_offset = 0
            log_file.seek(handle.read_offset)
            data = log_file.read(size - handle.read_offset)
        handle.read_offset += len(data)
        return handle.decoder.decode(data, final=final)

    def _consume(self, handle: MonitorHandle, text: str, *, final: bool) -> None:
        if text:
            handle.tail = (handle.tail + text)[-self._tail_chars :]
        lines = (handle.partial + text).split("\n")
        if final:
            handle.partial = ""
        else:
            handle.partial = lines.pop()

        for line in lines:
            if not line.strip():
                continue
            url = PR_URL_RE.search(line)
            if url:
                handle.result_ref = url.group(0)
            error = ERROR_RE.search(line)
            if error:
                handle.last_error = error.group(1).strip()
            if SUCCESS_RE.search(line):
                handle.success_marker = True
            for pattern, message in MILESTONES:
                if pattern.search(line):
                    now = self._clock()
                    self._emit(
                        handle,
                        ProgressEvent(
                            session_id=handle.session_id,
                            kind="milestone",
                            message=message,
                            elapsed=now - handle.started_at,
                        ),
                    )
                    handle.last_progress_at = now
                    break
            if handle.finished:
                return

    def _outcome(self, handle: MonitorHandle, state: ProcessState) -> MonitorOutcome:
        if state.returncode is not None:
            success = state.returncode == 0
        else:
            success = handle.success_marker

        error: TaskgateError | None = None
        if not success:
            if handle.last_error:
                error = AgentFailedError(handle.last_error)
            elif state.returncode is not None:
                error = AgentFailedError(f"Agent exited with code {state.returncode}")
            else:
                error = AgentFailedError("Agent exited without reporting success")

        return MonitorOutcome(
            session_id=handle.session_id,
            success=success,
            returncode=state.returncode,
            result_ref=handle.result_ref,
            summary=self._summary(handle),
            error=error,
        )

    @staticmethod
    def _summary(handle: MonitorHandle) -> str | None:
        summary = handle.tail[-SUMMARY_CHARS:].strip()
        return summary or None

    def _emit(self, handle: MonitorHandle, event: ProgressEvent) -> None:
        try:
            handle.on_progress(event)
        except Exception:  # callback faults must not kill supervision
            logger.exception("Progress callback failed", extra={"session_id": handle.session_id})

    def _finish(self, handle: MonitorHandle, outcome: MonitorOutcome) -> None:
        if handle.finished:
            return
        handle.finished = True
        if self._handles.get(handle.session_id) is handle:
            del self._handles[handle.session_id]
        logger.info(
            "Session finished",
            extra={
                "session_id": handle.session_id,
                "success": outcome.success,
                "returncode": outcome.returncode,
                "reason": outcome.reason,
            },
        )
        try:
            handle.on_terminal(outcome)
        except Exception:
            logger.exception("Terminal callback failed", extra={"session_id": handle.session_id})


__all__ = [
    "MILESTONES",
    "MonitorHandle",
    "MonitorOutcome",
    "ProcessMonitor",
    "ProgressEvent",
    "format_elapsed",
]
