"""Data models for procwatch."""

from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


@dataclass(slots=True, frozen=True)
class Job:
    """A callable reference plus the single value it will be called with."""

    callback: Callable[..., Any]
    value: Any = None


@dataclass(slots=True, frozen=True, order=True)
class ProcessFingerprint:
    """
    Identity of one process instance.

    A pid alone is reused by the OS over time; the pair of pid and start time
    (whole seconds) is not.
    """

    pid: int
    start_time: int

    @property
    def id(self) -> str:
        """Stable string rendering used as the queue correlation key."""
        return f"{self.pid}.{self.start_time}"

    @classmethod
    def from_id(cls, value: str) -> "ProcessFingerprint":
        """
        Parse a ``"<pid>.<start_time>"`` string.

        Raises:
            ValueError: If the string is not two dot-separated integers.
        """
        pid, sep, start_time = str(value).partition(".")
        if not sep:
            raise ValueError(f"Invalid fingerprint id: {value!r}")
        return cls(pid=int(pid), start_time=int(start_time))

    def __str__(self) -> str:
        return self.id


@dataclass(slots=True, frozen=True)
class ProcessEntry:
    """One row of a process table snapshot."""

    fingerprint: ProcessFingerprint
    command_line: str

    @property
    def pid(self) -> int:
        return self.fingerprint.pid

    @property
    def start_time(self) -> int:
        return self.fingerprint.start_time


@dataclass(slots=True, frozen=True)
class ProcessTableSnapshot:
    """Immutable process table read from the OS at one instant."""

    entries: tuple[ProcessEntry, ...] = ()

    def __iter__(self) -> Iterator[ProcessEntry]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    def __contains__(self, fingerprint: object) -> bool:
        return any(entry.fingerprint == fingerprint for entry in self.entries)

    def find_by_pid(self, pid: int) -> ProcessEntry | None:
        """Return the entry currently holding ``pid``, if any."""
        for entry in self.entries:
            if entry.pid == pid:
                return entry
        return None


@dataclass(slots=True, frozen=True)
class KillRequest:
    """A scheduled intent to kill one process instance after a delay."""

    fingerprint: ProcessFingerprint
    delay_seconds: int

    def to_message(self) -> dict[str, Any]:
        """Render the queue message body."""
        return {
            "fingerprint_id": self.fingerprint.id,
            "delay_seconds": self.delay_seconds,
        }

    @classmethod
    def from_message(cls, body: dict[str, Any]) -> "KillRequest":
        """
        Rebuild a request from a queue message body.

        Raises:
            ValueError: If the body is missing fields or holds malformed values.
        """
        try:
            fingerprint = ProcessFingerprint.from_id(body["fingerprint_id"])
            delay_seconds = int(body.get("delay_seconds", 0))
        except (KeyError, TypeError, AttributeError) as exc:
            raise ValueError(f"Malformed kill request: {body!r}") from exc
        return cls(fingerprint=fingerprint, delay_seconds=delay_seconds)


@dataclass(slots=True, frozen=True)
class LaunchResult:
    """What a caller gets back from a detached launch."""

    pid: int
    stdout: Path
    stderr: Path
    strategy: str
    token: str
    kill_request: KillRequest | None = None

    @property
    def kill_scheduled(self) -> bool:
        return self.kill_request is not None


@dataclass(slots=True)
class WatchdogReport:
    """Counters collected during one watchdog pass."""

    received: int = 0
    killed: int = 0
    already_gone: int = 0
    failed: int = 0
    dropped: int = 0
    failures: list[ProcessFingerprint] = field(default_factory=list)

    @property
    def acknowledged(self) -> int:
        """Messages deleted from the queue during the pass."""
        return self.killed + self.already_gone + self.dropped
