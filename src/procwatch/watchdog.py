"""Deferred-kill watchdog: one bounded pass over due kill requests."""

from typing import Any

from procwatch.errors import KillCommandFailure, ProcessGoneError
from procwatch.logging import get_logger
from procwatch.models import KillRequest, ProcessFingerprint, ProcessTableSnapshot, WatchdogReport
from procwatch.platform import PosixPlatform, ProcessPlatform
from procwatch.proctable import ProcessTableReader
from procwatch.queue import DelayQueue, QueueMessage
from procwatch.settings import DEFAULT_MAX_MESSAGES_PER_RUN


class ProcessWatchdog:
    """
    Kills processes whose kill request has come due.

    Each ``run`` takes one process table snapshot, then drains up to
    ``max_messages`` due requests. A request is acknowledged when its target
    was killed or is no longer in the snapshot; a failed kill leaves it in the
    queue to be delivered again after the queue's time in flight.

    Queue and process table errors propagate and abort the pass. Every step is
    safe to repeat, so the next pass picks up where this one stopped.
    """

    def __init__(
        self,
        queue: DelayQueue,
        reader: ProcessTableReader | None = None,
        platform: ProcessPlatform | None = None,
        max_messages: int = DEFAULT_MAX_MESSAGES_PER_RUN,
        logger: Any = None,
    ) -> None:
        """
        Initialize the ProcessWatchdog.

        Args:
            queue: Deferred kill queue to drain.
            reader: Process table reader; must use the same snapshot source
                as the launcher that enqueued the requests.
            platform: Delivers the kill signal.
            max_messages: Upper bound on requests handled in one pass.
            logger: structlog logger; a module logger by default.
        """
        if max_messages < 1:
            raise ValueError(f"max_messages must be at least 1, got {max_messages}")
        self._queue = queue
        self._platform = platform or PosixPlatform()
        self._reader = reader or ProcessTableReader(platform=self._platform)
        self._max_messages = max_messages
        self._logger = logger or get_logger(__name__)

    @property
    def max_messages(self) -> int:
        return self._max_messages

    def run(self) -> WatchdogReport:
        """Run one pass and return its counters."""
        report = WatchdogReport()
        self._logger.debug("watchdog_pass_started", max_messages=self._max_messages)

        live = self._reader.snapshot()

        while report.received < self._max_messages:
            message = self._queue.dequeue()
            if message is None:
                break
            report.received += 1
            self._handle(message, live, report)

        self._logger.debug(
            "watchdog_pass_finished",
            received=report.received,
            killed=report.killed,
            already_gone=report.already_gone,
            failed=report.failed,
            dropped=report.dropped,
        )
        return report

    def _handle(
        self, message: QueueMessage, live: ProcessTableSnapshot, report: WatchdogReport
    ) -> None:
        try:
            request = KillRequest.from_message(message.body)
        except ValueError:
            self._logger.warning("kill_request_dropped", message_id=message.id, body=message.body)
            self._queue.acknowledge(message)
            report.dropped += 1
            return

        fingerprint = request.fingerprint
        self._logger.debug(
            "kill_request_received",
            message_id=message.id,
            fingerprint=fingerprint.id,
            receive_count=message.receive_count,
        )

        # A pid held by a different start time is a reused pid, not our target
        if fingerprint not in live:
            self._acknowledge_gone(message, fingerprint, report)
            return

        try:
            self._platform.kill(fingerprint.pid)
        except ProcessGoneError:
            self._acknowledge_gone(message, fingerprint, report)
            return
        except KillCommandFailure as exc:
            report.failed += 1
            report.failures.append(fingerprint)
            self._logger.warning(
                "process_kill_failed",
                pid=fingerprint.pid,
                fingerprint=fingerprint.id,
                reason=exc.reason,
            )
            return

        self._queue.acknowledge(message)
        report.killed += 1
        self._logger.debug("process_killed", pid=fingerprint.pid, fingerprint=fingerprint.id)

    def _acknowledge_gone(
        self, message: QueueMessage, fingerprint: ProcessFingerprint, report: WatchdogReport
    ) -> None:
        self._queue.acknowledge(message)
        report.already_gone += 1
        self._logger.debug("process_already_gone", fingerprint=fingerprint.id)
