"""Async launcher for the external coding agent."""

from __future__ import annotations

import asyncio
import logging
import shutil
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

from ..errors import AgentNotFoundError, SpawnError
from .utils import ProcessState, probe_pid, sanitize_environment, signal_process_group

logger = logging.getLogger(__name__)

DEFAULT_EXECUTABLE = "claude"


@dataclass(slots=True)
class LaunchedProcess:
    """Holds the identity of a freshly spawned agent process."""

    pid: int
    log_path: Path
    args: tuple[str, ...]


class AgentLauncher:
    """Spawn agent sessions detached from the caller, logging to a file.

    The pid is returned as soon as the process exists; supervision happens
    separately through :meth:`probe` and the log file.
    """

    def __init__(
        self,
        executable: Path | None = None,
        *,
        max_iterations: int = 50,
        flags: Sequence[str] | None = None,
    ) -> None:
        self._executable_path = self._resolve_executable(executable)
        self._max_iterations = max_iterations
        self._flags = tuple(flags or ())
        self._children: dict[int, asyncio.subprocess.Process] = {}

    @staticmethod
    def _resolve_executable(explicit: Path | None) -> Path:
        if explicit is not None:
            candidate = Path(explicit)
            if candidate.exists() and candidate.is_file():
                return candidate
            raise AgentNotFoundError(f"Agent executable not found at {candidate}")

        binary = shutil.which(DEFAULT_EXECUTABLE)
        if binary is None:
            raise AgentNotFoundError(f"Agent executable '{DEFAULT_EXECUTABLE}' not found on PATH")
        return Path(binary)

    @property
    def executable(self) -> Path:
        return self._executable_path

    def build_args(
        self,
        workdir: Path,
        description: str,
        *,
        flags: Sequence[str] | None = None,
        max_iterations: int | None = None,
    ) -> list[str]:
        iterations = max_iterations or self._max_iterations
        return [
            str(self._executable_path),
            *self._flags,
            *(flags or ()),
            "--task",
            description,
            "--repo",
            str(workdir),
            "--max-iterations",
            str(iterations),
        ]

    async def launch(
        self,
        session_id: str,
        workdir: Path,
        description: str,
        log_path: Path,
        *,
        flags: Sequence[str] | None = None,
        max_iterations: int | None = None,
    ) -> LaunchedProcess:
        """Start the agent and return its pid without waiting for it."""

        cmd = self.build_args(workdir, description, flags=flags, max_iterations=max_iterations)
        log_path = Path(log_path)
        try:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            with log_path.open("wb") as log_file:
                process = await asyncio.create_subprocess_exec(
                    *cmd,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=log_file,
                    stderr=asyncio.subprocess.STDOUT,
                    cwd=str(workdir),
                    env=sanitize_environment({"TASKGATE_SESSION_ID": session_id}),
                    start_new_session=True,
                )
        except OSError as exc:
            raise SpawnError(f"Failed to launch agent for session {session_id}: {exc}") from exc

        self._children[process.pid] = process
        logger.info(
            "Spawned agent",
            extra={"session_id": session_id, "pid": process.pid, "log_path": str(log_path)},
        )
        return LaunchedProcess(pid=process.pid, log_path=log_path, args=tuple(cmd))

    def probe(self, pid: int) -> ProcessState:
        process = self._children.get(pid)
        if process is None:
            return probe_pid(pid)
        returncode = process.returncode
        return ProcessState(alive=returncode is None, returncode=returncode)

    async def terminate(self, pid: int, grace: float = 5.0) -> bool:
        """SIGTERM the agent's process group, escalating to SIGKILL after ``grace``."""

        if not self.probe(pid).alive:
            return False
        if not signal_process_group(pid, signal.SIGTERM):
            return False

        loop = asyncio.get_running_loop()
        deadline = loop.time() + grace
        while loop.time() < deadline:
            if not self.probe(pid).alive:
                logger.info("Agent terminated", extra={"pid": pid})
                return True
            await asyncio.sleep(min(0.1, max(deadline - loop.time(), 0)))

        if self.probe(pid).alive:
            signal_process_group(pid, signal.SIGKILL)
            logger.warning("Agent killed after grace period", extra={"pid": pid, "grace": grace})
        return True

    def release(self, pid: int) -> None:
        """Forget a finished child so its pid is no longer tracked."""

        self._children.pop(pid, None)


class FakeAgentLauncher(AgentLauncher):
    """Test double that simulates agent processes and their log output."""

    def __init__(self, *, spawn_error: SpawnError | None = None) -> None:  # type: ignore[override]
        self._executable_path = Path("/tmp/fake-agent")
        self._max_iterations = 50
        self._flags = ()
        self._children = {}
        self._spawn_error = spawn_error
        self._states: dict[int, ProcessState] = {}
        self._logs: dict[int, Path] = {}
        self._next_pid = 40000
        self.launches: list[dict[str, object]] = []
        self.terminated: list[int] = []

    async def launch(  # type: ignore[override]
        self,
        session_id: str,
        workdir: Path,
        description: str,
        log_path: Path,
        *,
        flags: Sequence[str] | None = None,
        max_iterations: int | None = None,
    ) -> LaunchedProcess:
        if self._spawn_error is not None:
            raise self._spawn_error
        self._next_pid += 1
        pid = self._next_pid
        log_path = Path(log_path)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        log_path.write_bytes(b"")
        self._states[pid] = ProcessState(alive=True)
        self._logs[pid] = log_path
        cmd = self.build_args(workdir, description, flags=flags, max_iterations=max_iterations)
        self.launches.append(
            {"session_id": session_id, "pid": pid, "workdir": str(workdir), "description": description}
        )
        return LaunchedProcess(pid=pid, log_path=log_path, args=tuple(cmd))

    def adopt(self, pid: int, log_path: Path, *, alive: bool = True) -> None:
        """Register a pre-existing process, as if it survived a restart."""

        self._states[pid] = ProcessState(alive=alive)
        self._logs[pid] = Path(log_path)

    def write(self, pid: int, text: str) -> None:
        with self._logs[pid].open("a", encoding="utf-8") as handle:
            handle.write(text)

    def finish(self, pid: int, returncode: int = 0, text: str = "") -> None:
        if text:
            self.write(pid, text)
        self._states[pid] = ProcessState(alive=False, returncode=returncode)

    def probe(self, pid: int) -> ProcessState:  # type: ignore[override]
        return self._states.get(pid, ProcessState(alive=False))

    async def terminate(self, pid: int, grace: float = 5.0) -> bool:  # type: ignore[override]
        if not self.probe(pid).alive:
            return False
        self._states[pid] = ProcessState(alive=False, returncode=-signal.SIGTERM)
        self.terminated.append(pid)
        return True

    def release(self, pid: int) -> None:  # type: ignore[override]
        self._children.pop(pid, None)


__all__ = ["AgentLauncher", "FakeAgentLauncher", "LaunchedProcess"]
