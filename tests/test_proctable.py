"""Tests for process table parsing and readers."""

import os
import shutil
import subprocess
import time

import pytest

from conftest import BASE_START, ps_line
from procwatch.errors import ProcessTableParseError
from procwatch.models import ProcessFingerprint
from procwatch.platform import PosixPlatform
from procwatch.proctable import (
    ProcessTableReader,
    PsutilProcessTableReader,
    format_start_time,
    make_reader,
    parse_ps_line,
    parse_ps_output,
    parse_start_time,
)


class TestParsePsLine:
    """Tests for parse_ps_line()."""

    @pytest.mark.parametrize("pid", [1, 345, 4194303])
    @pytest.mark.parametrize("start_time", [BASE_START, BASE_START + 86400 * 20 + 3661])
    def test_round_trip(self, pid, start_time):
        """Test a synthetic line yields the pid and start time it was built from."""
        entry = parse_ps_line(ps_line(pid, start_time, "python worker.py --flag"))
        assert entry.fingerprint == ProcessFingerprint(pid=pid, start_time=start_time)
        assert entry.command_line == "python worker.py --flag"

    def test_single_digit_day_padding(self):
        """Test ps's space-padded day of month parses."""
        line = "  812 Tue Oct  3 09:04:01 2023 /usr/bin/python3 -m x"
        entry = parse_ps_line(line)
        assert entry.pid == 812
        assert format_start_time(entry.start_time) == "Tue Oct  3 09:04:01 2023"

    def test_garbage_line(self):
        """Test an unparseable line raises with the raw line attached."""
        with pytest.raises(ProcessTableParseError) as info:
            parse_ps_line("this is not ps output")
        assert info.value.line == "this is not ps output"
        assert info.value.fields == {}

    def test_partial_match_keeps_pid(self):
        """Test the pid is reported when only the start time is broken."""
        with pytest.raises(ProcessTableParseError) as info:
            parse_ps_line("  77 yesterday python job.py")
        assert info.value.fields == {"pid": "77"}

    def test_invalid_date_reports_fields(self):
        """Test a well-shaped but impossible date reports matched fields."""
        with pytest.raises(ProcessTableParseError) as info:
            parse_ps_line("  77 Xyz Abc 31 25:61:00 2023 python job.py")
        assert info.value.fields["pid"] == "77"
        assert info.value.fields["lstart"] == "Xyz Abc 31 25:61:00 2023"


class TestParsePsOutput:
    """Tests for parse_ps_output()."""

    def test_filter_applied_before_parsing(self):
        """Test lines without the filter substring are skipped, even if malformed."""
        lines = [
            ps_line(1, BASE_START, "/sbin/init"),
            "garbage without the runtime name",
            ps_line(2, BASE_START + 5, "python a.py"),
            "",
        ]
        snapshot = parse_ps_output(lines, "python")
        assert [entry.pid for entry in snapshot] == [2]

    def test_bad_line_aborts_snapshot(self):
        """Test one bad matching line fails the whole snapshot."""
        lines = [ps_line(2, BASE_START, "python a.py"), "oops python"]
        with pytest.raises(ProcessTableParseError):
            parse_ps_output(lines, "python")

    def test_no_filter_keeps_everything(self):
        """Test a None filter keeps every line."""
        lines = [ps_line(1, BASE_START, "/sbin/init"), ps_line(2, BASE_START, "python")]
        assert len(parse_ps_output(lines, None)) == 2


class TestProcessTableReader:
    """Tests for ProcessTableReader over a fake platform."""

    def test_snapshot_is_fresh_every_call(self, platform):
        """Test snapshots are not cached between calls."""
        reader = ProcessTableReader(platform=platform)
        platform.add_process(10, BASE_START, "python a.py")
        first = reader.snapshot()
        platform.add_process(11, BASE_START + 1, "python b.py")
        second = reader.snapshot()
        assert len(first) == 1
        assert len(second) == 2

    def test_find_fingerprint_by_pid(self, platform):
        """Test the current fingerprint of a pid is found."""
        platform.add_process(10, BASE_START + 9, "python a.py")
        reader = ProcessTableReader(platform=platform)
        assert reader.find_fingerprint_by_pid(10) == ProcessFingerprint(10, BASE_START + 9)
        assert reader.find_fingerprint_by_pid(11) is None

    def test_find_fingerprint_respects_filter(self, platform):
        """Test a process outside the filter is not found."""
        platform.add_process(10, BASE_START, "/usr/bin/ruby worker.rb")
        reader = ProcessTableReader(platform=platform, process_filter="python")
        assert reader.find_fingerprint_by_pid(10) is None


class TestMakeReader:
    """Tests for make_reader()."""

    def test_sources(self, platform):
        """Test each source name builds the matching reader."""
        assert type(make_reader("ps", platform)) is ProcessTableReader
        assert type(make_reader("psutil", platform)) is PsutilProcessTableReader

    def test_unknown_source(self):
        """Test an unknown source raises ValueError."""
        with pytest.raises(ValueError):
            make_reader("proc")


def test_parse_start_time_matches_format():
    """Test parse_start_time inverts format_start_time."""
    assert parse_start_time(format_start_time(BASE_START)) == BASE_START


@pytest.mark.skipif(shutil.which("ps") is None, reason="ps is not available")
class TestRealProcessTable:
    """Tests against the real OS process table."""

    def test_ps_snapshot_contains_current_process(self):
        """Test the ps reader sees the test runner itself."""
        reader = ProcessTableReader(process_filter=None)
        assert reader.find_fingerprint_by_pid(os.getpid()) is not None

    def test_psutil_snapshot_contains_current_process(self):
        """Test the psutil reader sees the test runner itself."""
        reader = PsutilProcessTableReader(process_filter=None)
        assert reader.find_fingerprint_by_pid(os.getpid()) is not None

    def test_sources_agree_on_current_process(self):
        """Test ps and psutil give the same start second for one process."""
        by_ps = ProcessTableReader(process_filter=None).find_fingerprint_by_pid(os.getpid())
        by_psutil = PsutilProcessTableReader(process_filter=None).find_fingerprint_by_pid(
            os.getpid()
        )
        assert abs(by_ps.start_time - by_psutil.start_time) <= 1


@pytest.fixture
def local_zone(monkeypatch):
    """Switch the process time zone for one test."""

    def switch(name: str) -> None:
        monkeypatch.setenv("TZ", name)
        time.tzset()

    yield switch
    monkeypatch.undo()
    time.tzset()


@pytest.mark.skipif(not hasattr(time, "tzset"), reason="needs time.tzset")
class TestStartTimeZones:
    """Start times must not depend on the reader's local time zone."""

    LINE = "4242 Sat Oct 17 03:16:00 2026 python -m procwatch.cli run"

    def test_same_line_same_fingerprint_in_any_zone(self, local_zone):
        """Test one ps line parses to one fingerprint under different TZ values."""
        local_zone("UTC")
        in_utc = parse_ps_line(self.LINE).fingerprint
        local_zone("America/New_York")
        in_new_york = parse_ps_line(self.LINE).fingerprint
        assert in_utc == in_new_york == ProcessFingerprint(4242, 1792206960)

    def test_format_ignores_local_zone(self, local_zone):
        """Test format_start_time renders UTC regardless of TZ."""
        local_zone("Asia/Tokyo")
        assert format_start_time(1792206960) == "Sat Oct 17 03:16:00 2026"

    def test_ps_runs_in_utc(self, monkeypatch):
        """Test the ps listing is requested in UTC and the C locale."""
        monkeypatch.setenv("TZ", "Europe/Berlin")
        calls = []

        def fake_run(command, **kwargs):
            calls.append(kwargs["env"])
            return subprocess.CompletedProcess(command, 0, stdout="", stderr="")

        monkeypatch.setattr("procwatch.platform.subprocess.run", fake_run)
        PosixPlatform().list_processes()
        assert calls[0]["TZ"] == "UTC"
        assert calls[0]["LC_ALL"] == "C"

    @pytest.mark.skipif(shutil.which("ps") is None, reason="ps is not available")
    def test_real_ps_matches_psutil_outside_utc(self, local_zone):
        """Test the ps start time of this process equals psutil's under a non-UTC TZ."""
        local_zone("America/New_York")
        by_ps = ProcessTableReader(process_filter=None).find_fingerprint_by_pid(os.getpid())
        by_psutil = PsutilProcessTableReader(process_filter=None).find_fingerprint_by_pid(
            os.getpid()
        )
        assert abs(by_ps.start_time - by_psutil.start_time) <= 1
