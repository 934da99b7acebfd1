"""Process table snapshots keyed by reuse-safe fingerprints."""

import re
from collections.abc import Iterable
from datetime import datetime, timezone

import psutil

from procwatch.errors import ProcessTableParseError
from procwatch.models import ProcessEntry, ProcessFingerprint, ProcessTableSnapshot
from procwatch.platform import PosixPlatform, ProcessPlatform

LSTART_FORMAT = "%a %b %d %H:%M:%S %Y"

PS_LINE_PATTERN = re.compile(
    r"^\s*(?P<pid>\d+)\s+"
    r"(?P<lstart>\w{3}\s+\w{3}\s+\d{1,2}\s+\d{2}:\d{2}:\d{2}\s+\d{4})"
    r"(?:\s+(?P<command>.*))?$"
)


def parse_start_time(lstart: str) -> int:
    """
    Convert a ``ps`` lstart value printed in UTC to a Unix timestamp.

    Raises:
        ValueError: If the text does not match ``LSTART_FORMAT``.
    """
    moment = datetime.strptime(lstart.strip(), LSTART_FORMAT).replace(tzinfo=timezone.utc)
    return int(moment.timestamp())


def format_start_time(timestamp: int) -> str:
    """Render a Unix timestamp the way ``ps`` prints lstart under ``TZ=UTC``."""
    moment = datetime.fromtimestamp(timestamp, tz=timezone.utc)
    return f"{moment:%a %b} {moment.day:2d} {moment:%H:%M:%S %Y}"


def parse_ps_line(line: str) -> ProcessEntry:
    """
    Parse one ``pid lstart command`` line.

    Raises:
        ProcessTableParseError: With the raw line and any fields matched so far.
    """
    match = PS_LINE_PATTERN.match(line)
    if match is None:
        fields = {}
        pid = re.match(r"^\s*(\d+)", line)
        if pid:
            fields["pid"] = pid.group(1)
        raise ProcessTableParseError(line, fields)

    fields = {key: value for key, value in match.groupdict().items() if value is not None}
    try:
        start_time = parse_start_time(match.group("lstart"))
    except (ValueError, OverflowError, OSError) as exc:
        raise ProcessTableParseError(line, fields) from exc

    return ProcessEntry(
        fingerprint=ProcessFingerprint(pid=int(match.group("pid")), start_time=start_time),
        command_line=(match.group("command") or "").strip(),
    )


def parse_ps_output(lines: Iterable[str], process_filter: str | None = None) -> ProcessTableSnapshot:
    """
    Build a snapshot from raw listing lines.

    Lines not containing ``process_filter`` are dropped before parsing. Any
    remaining line that fails to parse aborts the whole snapshot.
    """
    entries = []
    for line in lines:
        if not line.strip():
            continue
        if process_filter and process_filter not in line:
            continue
        entries.append(parse_ps_line(line))
    return ProcessTableSnapshot(entries=tuple(entries))


class ProcessTableReader:
    """
    Reads the process table through the platform's ``ps`` listing.

    Every call returns a fresh snapshot; nothing is cached between calls.
    """

    source = "ps"

    def __init__(
        self,
        platform: ProcessPlatform | None = None,
        process_filter: str | None = "python",
    ) -> None:
        """
        Initialize the ProcessTableReader.

        Args:
            platform: Supplies the raw listing. Defaults to ``PosixPlatform``.
            process_filter: Command-line substring bounding the snapshot size.
                ``None`` keeps every process.
        """
        self._platform = platform or PosixPlatform()
        self._process_filter = process_filter

    @property
    def process_filter(self) -> str | None:
        return self._process_filter

    def snapshot(self) -> ProcessTableSnapshot:
        """Take one snapshot of the filtered process table."""
        return parse_ps_output(self._platform.list_processes(), self._process_filter)

    def find_fingerprint_by_pid(self, pid: int) -> ProcessFingerprint | None:
        """Look up the current fingerprint of ``pid`` in a fresh snapshot."""
        entry = self.snapshot().find_by_pid(int(pid))
        return entry.fingerprint if entry else None


class PsutilProcessTableReader(ProcessTableReader):
    """
    Reads the process table with psutil instead of parsing ``ps``.

    Processes that vanish, deny access or turn into zombies mid-iteration are
    skipped. Start times come from ``create_time`` truncated to seconds, so
    this source must not be mixed with the ``ps`` source in one deployment.
    """

    source = "psutil"

    def snapshot(self) -> ProcessTableSnapshot:
        entries: list[ProcessEntry] = []

        for proc in psutil.process_iter(attrs=["pid", "name", "create_time", "cmdline"]):
            try:
                with proc.oneshot():
                    info = proc.info
                    cmdline = info.get("cmdline") or []
                    command_line = " ".join(cmdline) if cmdline else info.get("name") or ""
                    if self._process_filter and self._process_filter not in command_line:
                        continue
                    create_time = info.get("create_time")
                    if create_time is None:
                        continue
                    entries.append(
                        ProcessEntry(
                            fingerprint=ProcessFingerprint(
                                pid=info["pid"], start_time=int(create_time)
                            ),
                            command_line=command_line,
                        )
                    )
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                continue

        return ProcessTableSnapshot(entries=tuple(entries))


def make_reader(
    source: str = "ps",
    platform: ProcessPlatform | None = None,
    process_filter: str | None = "python",
) -> ProcessTableReader:
    """Build the reader for a configured snapshot source."""
    readers = {
        ProcessTableReader.source: ProcessTableReader,
        PsutilProcessTableReader.source: PsutilProcessTableReader,
    }
    try:
        reader_class = readers[source]
    except KeyError:
        raise ValueError(f"Unknown snapshot source: {source!r}") from None
    return reader_class(platform=platform, process_filter=process_filter)
