"""Fire jobs as detached processes, optionally with a wall-clock budget."""

import dataclasses
import os
import sys
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from procwatch.errors import (
    ConfigurationError,
    LaunchError,
    ProcessTableError,
    QueueError,
    SchedulingError,
)
from procwatch.logging import get_logger
from procwatch.models import Job, KillRequest, LaunchResult
from procwatch.platform import PosixPlatform, ProcessPlatform
from procwatch.proctable import ProcessTableReader
from procwatch.queue import DelayQueue
from procwatch.serializer import serialize_job
from procwatch.settings import ProcwatchSettings

ENTRY_MODULE = "procwatch.cli"


@dataclass(slots=True, frozen=True)
class LauncherConfig:
    """Everything the launcher needs from its environment, fixed at construction."""

    output_sink: Path = Path(os.devnull)
    pass_through_name: str = "APP_ENV"
    pass_through_value: str = ""
    pass_through_set: bool = False
    python_executable: str = sys.executable
    entry_module: str = ENTRY_MODULE

    @classmethod
    def from_settings(
        cls,
        settings: ProcwatchSettings,
        environ: Mapping[str, str] | None = None,
    ) -> "LauncherConfig":
        """
        Resolve the pass-through variable and output sink once.

        Raises:
            ConfigurationError: If the pass-through variable is unset and
                ``settings.require_pass_through`` is true.
        """
        environ = os.environ if environ is None else environ
        name = settings.pass_through_env
        value = environ.get(name)
        if value is None and settings.require_pass_through:
            raise ConfigurationError(f"Environment variable {name} is required but not set")
        return cls(
            output_sink=settings.output_stream or Path(os.devnull),
            pass_through_name=name,
            pass_through_value=value or "",
            pass_through_set=value is not None,
        )


def new_token() -> str:
    """Generate a correlation token for one launch."""
    return uuid.uuid4().hex


def parse_pid(raw: str | None) -> int:
    """
    Extract the pid the spawn shell echoed.

    Raises:
        LaunchError: If there is no positive integer to read.
    """
    text = (raw or "").strip()
    try:
        pid = int(text)
    except ValueError:
        raise LaunchError(f"Spawn did not report a pid: {text!r}") from None
    if pid <= 0:
        raise LaunchError(f"Spawn reported an invalid pid: {pid}")
    return pid


class ProcessLauncher:
    """
    Launches jobs in detached child processes.

    The child runs ``python -m procwatch.cli run <payload> <token> NAME=VALUE``
    and is never waited on. When a time budget is given, the child's
    fingerprint is looked up right after the spawn and a kill request is
    enqueued with the budget as its delay.
    """

    strategy = "process"

    def __init__(
        self,
        config: LauncherConfig | None = None,
        queue: DelayQueue | None = None,
        reader: ProcessTableReader | None = None,
        platform: ProcessPlatform | None = None,
        logger: Any = None,
    ) -> None:
        """
        Initialize the ProcessLauncher.

        Args:
            config: Output sink, pass-through variable and interpreter.
            queue: Deferred kill queue. Without one, time budgets are refused.
            reader: Process table reader used to fingerprint new children.
            platform: Spawns the child.
            logger: structlog logger; a module logger by default.
        """
        self._config = config or LauncherConfig()
        self._queue = queue
        self._platform = platform or PosixPlatform()
        self._reader = reader or ProcessTableReader(platform=self._platform)
        self._logger = logger or get_logger(__name__)
        if not self._config.pass_through_set:
            self._logger.warning(
                "launch_env_unset",
                name=self._config.pass_through_name,
            )

    @property
    def config(self) -> LauncherConfig:
        return self._config

    def build_argv(self, payload: str, token: str) -> list[str]:
        """Build the child command line."""
        config = self._config
        return [
            config.python_executable,
            "-m",
            config.entry_module,
            "run",
            payload,
            token,
            f"{config.pass_through_name}={config.pass_through_value}",
        ]

    def launch(
        self,
        job: Job,
        time_budget: int | None = None,
        token: str | None = None,
    ) -> LaunchResult:
        """
        Start ``job`` in a detached process.

        Args:
            job: Callable reference and argument to run.
            time_budget: Seconds after which the child is killed by the
                watchdog. ``None`` disables the kill.
            token: Correlation token for the child's logs; generated if omitted.

        Returns:
            The launch result, including the scheduled kill request if any.

        Raises:
            SerializationError: If the job cannot be encoded.
            LaunchError: If the spawn does not yield a pid.
            SchedulingError: If the kill request cannot be enqueued. The
                launch already happened; ``exc.result`` holds its result.
        """
        if time_budget is not None and time_budget <= 0:
            raise ValueError(f"time_budget must be positive, got {time_budget}")

        payload = serialize_job(job)
        token = token or new_token()
        sink = self._config.output_sink

        raw_pid = self._platform.spawn_detached(self.build_argv(payload, token), sink, sink)
        pid = parse_pid(raw_pid)

        result = LaunchResult(
            pid=pid,
            stdout=sink,
            stderr=sink,
            strategy=self.strategy,
            token=token,
        )
        self._logger.debug("process_launched", pid=pid, token=token, stdout=str(sink))

        if time_budget is None:
            return result
        return self._schedule_kill(result, time_budget)

    def _schedule_kill(self, result: LaunchResult, time_budget: int) -> LaunchResult:
        """Enqueue the deferred kill for a freshly launched child."""
        if self._queue is None:
            raise SchedulingError(
                f"No kill queue configured; process {result.pid} will not be killed",
                result=result,
            )

        try:
            fingerprint = self._reader.find_fingerprint_by_pid(result.pid)
        except ProcessTableError as exc:
            raise SchedulingError(
                f"Cannot fingerprint process {result.pid}: {exc}", result=result
            ) from exc

        if fingerprint is None:
            # Already exited: nothing left to kill
            self._logger.debug("process_exited_before_scheduling", pid=result.pid)
            return result

        request = KillRequest(fingerprint=fingerprint, delay_seconds=int(time_budget))
        try:
            self._queue.enqueue(request.to_message(), request.delay_seconds)
        except QueueError as exc:
            raise SchedulingError(
                f"Cannot enqueue kill request for process {result.pid}: {exc}",
                result=result,
            ) from exc

        self._logger.debug(
            "kill_request_enqueued",
            pid=fingerprint.pid,
            fingerprint=fingerprint.id,
            delay_seconds=request.delay_seconds,
        )
        return dataclasses.replace(result, kill_request=request)
