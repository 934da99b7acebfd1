"""Shared fixtures for procwatch tests."""

from collections.abc import Sequence
from pathlib import Path

import pytest
import structlog

from procwatch.errors import KillCommandFailure, ProcessGoneError
from procwatch.proctable import format_start_time

BASE_START = 1_700_000_000


def ps_line(pid: int, start_time: int, command: str = "python -m procwatch.cli run") -> str:
    """Build one line the way ``ps -o pid=,lstart=,args=`` prints it."""
    return f"{pid:>7} {format_start_time(start_time)} {command}"


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakePlatform:
    """In-memory stand-in for the OS: a process table, spawns and kills."""

    name = "fake"

    def __init__(self) -> None:
        self.processes: dict[int, tuple[int, str]] = {}
        self.spawned: list[list[str]] = []
        self.sinks: list[tuple[Path, Path]] = []
        self.kills: list[int] = []
        self.failing_kills: set[int] = set()
        self.vanishing: set[int] = set()
        self.next_pid = 4000
        self.spawn_output: str | None = None
        self.exit_on_spawn = False

    def add_process(self, pid: int, start_time: int, command: str = "python job.py") -> None:
        self.processes[pid] = (start_time, command)

    def spawn_detached(self, argv: Sequence[str], stdout: Path, stderr: Path) -> str:
        self.spawned.append(list(argv))
        self.sinks.append((stdout, stderr))
        if self.spawn_output is not None:
            return self.spawn_output
        pid = self.next_pid
        self.next_pid += 1
        if not self.exit_on_spawn:
            self.add_process(pid, BASE_START + pid, " ".join(argv))
        return f"{pid}\n"

    def kill(self, pid: int) -> None:
        self.kills.append(pid)
        if pid in self.vanishing:
            self.processes.pop(pid, None)
        if pid in self.failing_kills:
            raise KillCommandFailure(pid, "operation not permitted")
        if self.processes.pop(pid, None) is None:
            raise ProcessGoneError(pid)

    def list_processes(self) -> list[str]:
        return [
            ps_line(pid, start_time, command)
            for pid, (start_time, command) in sorted(self.processes.items())
        ]


@pytest.fixture(autouse=True)
def reset_structlog():
    """Undo any structlog configuration a test (or the CLI) applied."""
    yield
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def platform() -> FakePlatform:
    return FakePlatform()
