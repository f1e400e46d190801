from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from taskgate.agent import MonitorOutcome, ProcessMonitor, ProcessState, ProgressEvent
from taskgate.agent.monitor import format_elapsed
from taskgate.errors import AgentFailedError, MonitorError


class FakeProcesses:
    def __init__(self) -> None:
        self.states: dict[int, ProcessState] = {}

    def __call__(self, pid: int) -> ProcessState:
        return self.states.get(pid, ProcessState(alive=True))

    def exit(self, pid: int, returncode: int | None) -> None:
        self.states[pid] = ProcessState(alive=False, returncode=returncode)


class FakeTime:
    def __init__(self) -> None:
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value


class Recorder:
    def __init__(self) -> None:
        self.events: list[ProgressEvent] = []
        self.outcomes: list[MonitorOutcome] = []

    def progress(self, event: ProgressEvent) -> None:
        self.events.append(event)

    def terminal(self, outcome: MonitorOutcome) -> None:
        self.outcomes.append(outcome)


def _append(path: Path, data: bytes) -> None:
    with path.open("ab") as handle:
        handle.write(data)


def _monitor(processes: FakeProcesses, clock: FakeTime | None = None) -> ProcessMonitor:
    return ProcessMonitor(
        probe=processes,
        poll_interval=0.01,
        heartbeat_interval=120.0,
        clock=clock or FakeTime(),
    )


def test_reads_each_appended_byte_once(tmp_path: Path) -> None:
    log_path = tmp_path / "session.log"
    log_path.write_bytes(b"")
    processes = FakeProcesses()
    recorder = Recorder()
    monitor = _monitor(processes)
    monitor.start("s1", 101, log_path, recorder.progress, recorder.terminal, run_loop=False)

    _append(log_path, b"Reading project files\n")
    monitor.poll("s1")
    _append(log_path, b"Planning the changes\nRunning unit ")
    monitor.poll("s1")
    _append(log_path, b"tests\n")
    monitor.poll("s1")

    assert [event.message for event in recorder.events] == [
        "Reading project files",
        "Planning changes",
        "Running tests",
    ]
    handle = monitor.get("s1")
    assert handle is not None
    assert handle.read_offset == log_path.stat().st_size
    assert handle.partial == ""


def test_multibyte_characters_split_across_reads(tmp_path: Path) -> None:
    log_path = tmp_path / "session.log"
    log_path.write_bytes(b"")
    processes = FakeProcesses()
    recorder = Recorder()
    monitor = _monitor(processes)
    monitor.start("s1", 101, log_path, recorder.progress, recorder.terminal, run_loop=False)

    encoded = "Creating files: café.py\n".encode("utf-8")
    split = encoded.index("é".encode("utf-8")) + 1
    _append(log_path, encoded[:split])
    monitor.poll("s1")
    _append(log_path, encoded[split:])
    monitor.poll("s1")

    assert [event.message for event in recorder.events] == ["Creating files"]
    assert "café.py" in monitor.get("s1").tail  # type: ignore[union-attr]


def test_successful_exit_reports_pull_request(tmp_path: Path) -> None:
    log_path = tmp_path / "session.log"
    log_path.write_text("Creating PR\n", encoding="utf-8")
    processes = FakeProcesses()
    recorder = Recorder()
    monitor = _monitor(processes)
    monitor.start("s1", 101, log_path, recorder.progress, recorder.terminal, run_loop=False)
    monitor.poll("s1")

    _append(log_path, b"PR created: https://github.com/acme/webapp/pull/42\nTask complete")
    processes.exit(101, 0)
    monitor.poll("s1")

    assert len(recorder.outcomes) == 1
    outcome = recorder.outcomes[0]
    assert outcome.success
    assert outcome.result_ref == "https://github.com/acme/webapp/pull/42"
    assert outcome.summary is not None and outcome.summary.endswith("Task complete")
    assert monitor.active_sessions() == []
    assert monitor.poll("s1") is False


def test_failed_exit_uses_last_error_line(tmp_path: Path) -> None:
    log_path = tmp_path / "session.log"
    log_path.write_text("Error: npm ERR! missing script\nError: tests failed\n", encoding="utf-8")
    processes = FakeProcesses()
    processes.exit(101, 1)
    recorder = Recorder()
    monitor = _monitor(processes)
    monitor.start("s1", 101, log_path, recorder.progress, recorder.terminal, run_loop=False)

    monitor.poll("s1")

    outcome = recorder.outcomes[0]
    assert not outcome.success
    assert isinstance(outcome.error, AgentFailedError)
    assert outcome.reason == "tests failed"
    assert [event.message for event in recorder.events] == ["ERROR detected", "ERROR detected"]


def test_unknown_exit_code_falls_back_to_success_marker(tmp_path: Path) -> None:
    log_path = tmp_path / "session.log"
    log_path.write_text("working\n", encoding="utf-8")
    processes = FakeProcesses()
    processes.exit(101, None)
    recorder = Recorder()
    monitor = _monitor(processes)
    monitor.start("s1", 101, log_path, recorder.progress, recorder.terminal, run_loop=False)

    monitor.poll("s1")

    outcome = recorder.outcomes[0]
    assert not outcome.success
    assert outcome.reason == "Agent exited without reporting success"


def test_unreadable_log_reports_monitor_error_once(tmp_path: Path) -> None:
    log_path = tmp_path / "missing" / "session.log"
    processes = FakeProcesses()
    recorder = Recorder()
    monitor = _monitor(processes)
    monitor.start("s1", 101, log_path, recorder.progress, recorder.terminal, run_loop=False)

    monitor.poll("s1")
    monitor.poll("s1")

    assert len(recorder.outcomes) == 1
    assert isinstance(recorder.outcomes[0].error, MonitorError)
    assert monitor.get("s1") is None


def test_heartbeat_after_quiet_period(tmp_path: Path) -> None:
    log_path = tmp_path / "session.log"
    log_path.write_bytes(b"")
    processes = FakeProcesses()
    clock = FakeTime()
    recorder = Recorder()
    monitor = _monitor(processes, clock)
    monitor.start("s1", 101, log_path, recorder.progress, recorder.terminal, run_loop=False)

    clock.value += 60
    monitor.poll("s1")
    assert recorder.events == []

    clock.value += 65
    monitor.poll("s1")

    assert [event.kind for event in recorder.events] == ["heartbeat"]
    assert recorder.events[0].message == "Still working (2m 5s)"

    for _ in range(5):
        clock.value += 2
        monitor.poll("s1")
    assert len(recorder.events) == 1

    clock.value += 110
    monitor.poll("s1")

    assert [event.message for event in recorder.events] == [
        "Still working (2m 5s)",
        "Still working (4m 5s)",
    ]


def test_inspect_judges_finished_log_without_attaching(tmp_path: Path) -> None:
    log_path = tmp_path / "session.log"
    log_path.write_text(
        "Creating PR\nPR created: https://github.com/acme/app/pull/7\n", encoding="utf-8"
    )
    monitor = _monitor(FakeProcesses())

    outcome = monitor.inspect("s1", 101, log_path, ProcessState(alive=False))

    assert outcome.success
    assert outcome.result_ref == "https://github.com/acme/app/pull/7"
    assert monitor.get("s1") is None


def test_truncated_log_is_reread_from_start(tmp_path: Path) -> None:
    log_path = tmp_path / "session.log"
    log_path.write_text("Reading all files\n", encoding="utf-8")
    processes = FakeProcesses()
    recorder = Recorder()
    monitor = _monitor(processes)
    monitor.start("s1", 101, log_path, recorder.progress, recorder.terminal, run_loop=False)
    monitor.poll("s1")

    log_path.write_text("Running tests\n", encoding="utf-8")
    monitor.poll("s1")

    assert [event.message for event in recorder.events] == ["Reading project files", "Running tests"]


def test_stop_is_idempotent_and_silences_terminal(tmp_path: Path) -> None:
    log_path = tmp_path / "session.log"
    log_path.write_bytes(b"")
    processes = FakeProcesses()
    recorder = Recorder()
    monitor = _monitor(processes)
    monitor.start("s1", 101, log_path, recorder.progress, recorder.terminal, run_loop=False)

    assert monitor.stop("s1") is True
    assert monitor.stop("s1") is False
    processes.exit(101, 0)
    assert monitor.poll("s1") is False
    assert recorder.outcomes == []


def test_callback_errors_do_not_stop_supervision(tmp_path: Path) -> None:
    log_path = tmp_path / "session.log"
    log_path.write_text("Running tests\n", encoding="utf-8")
    processes = FakeProcesses()
    recorder = Recorder()

    def exploding(_: ProgressEvent) -> None:
        raise RuntimeError("sink down")

    monitor = _monitor(processes)
    monitor.start("s1", 101, log_path, exploding, recorder.terminal, run_loop=False)
    monitor.poll("s1")
    processes.exit(101, 0)
    monitor.poll("s1")

    assert recorder.outcomes and recorder.outcomes[0].success


def test_background_loop_fires_terminal(tmp_path: Path) -> None:
    log_path = tmp_path / "session.log"
    log_path.write_bytes(b"")
    processes = FakeProcesses()

    async def scenario() -> MonitorOutcome:
        done: asyncio.Future[MonitorOutcome] = asyncio.get_running_loop().create_future()
        monitor = _monitor(processes)
        monitor.start("s1", 101, log_path, lambda event: None, done.set_result)
        _append(log_path, b"Task complete\n")
        processes.exit(101, 0)
        return await asyncio.wait_for(done, timeout=2)

    outcome = asyncio.run(scenario())
    assert outcome.success


@pytest.mark.parametrize(("seconds", "expected"), [(0, "0m 0s"), (59.9, "0m 59s"), (125, "2m 5s")])
def test_format_elapsed(seconds: float, expected: str) -> None:
    assert format_elapsed(seconds) == expected
