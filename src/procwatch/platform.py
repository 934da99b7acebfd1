"""OS process capabilities used by the launcher and the watchdog."""

import os
import shlex
import subprocess
from collections.abc import Sequence
from pathlib import Path
from typing import Protocol

import psutil

from procwatch.errors import KillCommandFailure, LaunchError, ProcessGoneError, ProcessTableError

# pid, full start timestamp and command line, without a header row
PS_COMMAND = ("ps", "-e", "-o", "pid=", "-o", "lstart=", "-o", "args=")


class ProcessPlatform(Protocol):
    """The three things procwatch needs from an operating system."""

    name: str

    def spawn_detached(self, argv: Sequence[str], stdout: Path, stderr: Path) -> str:
        """Start ``argv`` without waiting for it and return its pid as raw text."""
        ...

    def kill(self, pid: int) -> None:
        """
        Forcefully terminate ``pid``.

        Raises:
            ProcessGoneError: If ``pid`` no longer exists.
            KillCommandFailure: If the signal could not be delivered.
        """
        ...

    def list_processes(self) -> list[str]:
        """Return the raw process listing, one line per process."""
        ...


class PosixPlatform:
    """
    POSIX implementation built on ``/bin/sh``, ``ps`` and psutil.

    Children are started in the background of a short-lived shell that echoes
    ``$!``; once the shell exits the child is re-parented to init, so the
    caller never has to reap it.
    """

    name = "posix"

    def __init__(self, shell: str = "/bin/sh", timeout: float = 10.0) -> None:
        """
        Initialize the PosixPlatform.

        Args:
            shell: Shell used for detached spawns.
            timeout: Upper bound (seconds) for the spawn shell and ``ps``.
        """
        self._shell = shell
        self._timeout = timeout

    def build_spawn_command(self, argv: Sequence[str], stdout: Path, stderr: Path) -> str:
        """Build the shell line that backgrounds ``argv`` and prints its pid."""
        return (
            f"{shlex.join(argv)} </dev/null"
            f" 1>>{shlex.quote(str(stdout))} 2>>{shlex.quote(str(stderr))}"
            " & echo $!"
        )

    def spawn_detached(self, argv: Sequence[str], stdout: Path, stderr: Path) -> str:
        command = self.build_spawn_command(argv, stdout, stderr)
        try:
            completed = subprocess.run(
                [self._shell, "-c", command],
                capture_output=True,
                text=True,
                timeout=self._timeout,
                start_new_session=True,
                check=False,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            raise LaunchError(f"Cannot spawn {argv[0]!r}: {exc}") from exc
        if completed.returncode != 0:
            raise LaunchError(
                f"Spawn shell exited with {completed.returncode}: {completed.stderr.strip()}"
            )
        return completed.stdout

    def kill(self, pid: int) -> None:
        try:
            psutil.Process(pid).kill()
        except psutil.NoSuchProcess as exc:
            raise ProcessGoneError(pid) from exc
        except psutil.AccessDenied as exc:
            raise KillCommandFailure(pid, "access denied") from exc
        except OSError as exc:
            raise KillCommandFailure(pid, str(exc)) from exc

    def list_processes(self) -> list[str]:
        # lstart in the C locale and in UTC, whatever the caller's TZ
        env = {**os.environ, "LC_ALL": "C", "TZ": "UTC"}
        try:
            completed = subprocess.run(
                PS_COMMAND,
                capture_output=True,
                text=True,
                timeout=self._timeout,
                env=env,
                check=False,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            raise ProcessTableError(f"Cannot list processes: {exc}") from exc
        if completed.returncode != 0:
            raise ProcessTableError(
                f"ps exited with {completed.returncode}: {completed.stderr.strip()}"
            )
        return [line for line in completed.stdout.splitlines() if line.strip()]
