"""Agent process launch and supervision."""

from .launcher import AgentLauncher, FakeAgentLauncher, LaunchedProcess
from .monitor import MonitorHandle, MonitorOutcome, ProcessMonitor, ProgressEvent
from .utils import ProcessState, probe_pid

__all__ = [
    "AgentLauncher",
    "FakeAgentLauncher",
    "LaunchedProcess",
    "MonitorHandle",
    "MonitorOutcome",
    "ProcessMonitor",
    "ProcessState",
    "ProgressEvent",
    "probe_pid",
]
