"""Process helpers for the agent launcher and monitor."""

from __future__ import annotations

import os
import signal
from dataclasses import dataclass
from typing import Mapping

_SANITIZED_VARS = {
    "PYTHONHOME",
    "PYTHONPATH",
    "VIRTUAL_ENV",
    "PIP_RESPECT_VIRTUALENV",
}


@dataclass(slots=True, frozen=True)
class ProcessState:
    """Liveness of a process; ``returncode`` is None when unknown or still running."""

    alive: bool
    returncode: int | None = None


def sanitize_environment(additional: Mapping[str, str] | None = None) -> dict[str, str]:
    """Return a sanitized environment suitable for subprocess execution."""

    env = dict(os.environ)
    for key in _SANITIZED_VARS:
        env.pop(key, None)
    if additional:
        env.update(additional)
    return env


def probe_pid(pid: int) -> ProcessState:
    """Probe an arbitrary pid with signal 0.

    Children of this process are reaped first so a zombie is reported dead
    together with its exit code.
    """

    try:
        reaped, status = os.waitpid(pid, os.WNOHANG)
    except ChildProcessError:
        pass
    else:
        if reaped == pid:
            return ProcessState(alive=False, returncode=os.waitstatus_to_exitcode(status))
        return ProcessState(alive=True)

    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return ProcessState(alive=False)
    except PermissionError:
        return ProcessState(alive=True)
    return ProcessState(alive=True)


def signal_process_group(pid: int, sig: signal.Signals) -> bool:
    """Signal the process group led by ``pid``, falling back to the pid itself."""

    try:
        os.killpg(pid, sig)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        pass
    try:
        os.kill(pid, sig)
        return True
    except ProcessLookupError:
        return False


__all__ = ["ProcessState", "probe_pid", "sanitize_environment", "signal_process_group"]
