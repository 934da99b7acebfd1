"""Exception hierarchy for procwatch."""

from typing import Any


class ProcwatchError(Exception):
    """Base class for every error raised by procwatch."""


class ConfigurationError(ProcwatchError):
    """Settings are missing or inconsistent."""


class SerializationError(ProcwatchError):
    """A job cannot be encoded into, or decoded from, a transportable payload."""


class LaunchError(ProcwatchError):
    """Spawning the child did not yield a usable pid."""


class SchedulingError(ProcwatchError):
    """
    The kill request could not be enqueued after a successful launch.

    The launch itself stands; ``result`` holds its ``LaunchResult`` so the
    caller can still track the process, which will not be auto-killed.
    """

    def __init__(self, message: str, result: Any = None) -> None:
        super().__init__(message)
        self.result = result


class ProcessTableError(ProcwatchError):
    """The OS process listing could not be read."""


class ProcessTableParseError(ProcessTableError):
    """A line of the OS process listing does not match the expected format."""

    def __init__(self, line: str, fields: dict[str, str] | None = None) -> None:
        self.line = line
        self.fields = dict(fields or {})
        detail = "".join(f"[{value}]" for value in self.fields.values())
        super().__init__(f"Cannot parse process info: [{line}]{detail}")


class QueueError(ProcwatchError):
    """The delay queue failed to enqueue, deliver or delete a message."""


class KillCommandFailure(ProcwatchError):
    """Delivering the kill signal to a matched process failed."""

    def __init__(self, pid: int, reason: str) -> None:
        self.pid = pid
        self.reason = reason
        super().__init__(f"Failed to kill process {pid}: {reason}")


class ProcessGoneError(KillCommandFailure):
    """The target exited before the kill signal reached it."""

    def __init__(self, pid: int) -> None:
        super().__init__(pid, "no such process")
