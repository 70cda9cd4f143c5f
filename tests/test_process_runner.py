"""
WimForge Process Runner and Disk Space Tests
"""

import sys
import threading
from collections import namedtuple
from pathlib import Path
from unittest.mock import MagicMock, patch

import psutil
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from wimforge.core.disk_space import DiskSpaceChecker
from wimforge.core.errors import InsufficientSpaceError, OperationCancelledError, ProcessFailureError
from wimforge.core.process_runner import ProcessExecutor, parse_progress


class TestParseProgress:
    """Percent extraction from tool output"""

    @pytest.mark.parametrize("line, expected", [
        ("[==========                 25.5%                  ]", 25.5),
        ("Scanning source tree 100% complete", 100.0),
        ("7% complete", 7.0),
        ("The operation completed successfully.", None),
        ("999% nonsense", None),
    ])
    def test_parse(self, line, expected):
        assert parse_progress(line) == expected


class TestProcessExecutor:
    """Running real child processes"""

    def test_captures_output_and_exit_code(self):
        lines = []
        result = ProcessExecutor().run(
            sys.executable,
            ["-c", "import sys; print('hello'); print('oops', file=sys.stderr); sys.exit(3)"],
            on_output=lines.append,
        )
        assert result.exit_code == 3
        assert not result.succeeded
        assert result.stdout == "hello"
        assert result.stderr == "oops"
        assert lines == ["hello"]

    def test_progress_details(self):
        details = []
        result = ProcessExecutor().run_with_progress(
            sys.executable, ["-c", "print('working'); print('50.0%')"], progress=details.append
        )
        assert result.succeeded
        assert [d.terminal_output for d in details] == ["working", "50.0%"]
        assert [d.percent for d in details] == [None, 50.0]

    def test_missing_executable(self, tmp_path):
        with pytest.raises(ProcessFailureError):
            ProcessExecutor().run(str(tmp_path / "no-such-tool"), [])

    def test_cancel_terminates_child(self):
        cancel = threading.Event()
        timer = threading.Timer(0.2, cancel.set)
        timer.start()
        try:
            with pytest.raises(OperationCancelledError):
                ProcessExecutor(poll_interval=0.05).run(
                    sys.executable, ["-c", "import time; time.sleep(30)"], cancel_event=cancel
                )
        finally:
            timer.cancel()

    def test_failing_callback_does_not_abort_run(self):
        def explode(line):
            raise ValueError("bad callback")

        result = ProcessExecutor().run(sys.executable, ["-c", "print('x')"], on_output=explode)
        assert result.succeeded


class TestKillProcessesByName:
    """Terminating stray tool processes"""

    def make_proc(self, name, pid):
        proc = MagicMock()
        proc.info = {"name": name}
        proc.pid = pid
        return proc

    def test_matches_with_or_without_extension(self):
        dism = self.make_proc("Dism.exe", 10)
        dism_host = self.make_proc("DismHost.exe", 11)
        other = self.make_proc("explorer.exe", 12)

        with patch("wimforge.core.process_runner.psutil.process_iter", return_value=[dism, dism_host, other]):
            killed = ProcessExecutor().kill_processes_by_name("dism")

        assert killed == 1
        dism.kill.assert_called_once()
        dism_host.kill.assert_not_called()
        other.kill.assert_not_called()

    def test_access_denied_is_skipped(self):
        dism = self.make_proc("dism.exe", 10)
        dism.kill.side_effect = psutil.AccessDenied(10)

        with patch("wimforge.core.process_runner.psutil.process_iter", return_value=[dism]):
            assert ProcessExecutor().kill_processes_by_name("dism.exe") == 0


Usage = namedtuple("Usage", "total used free percent")


class TestDiskSpaceChecker:
    """Free-space checks"""

    def test_enough_space(self, tmp_path):
        assert DiskSpaceChecker().has_enough_space(tmp_path, 1, "test")

    def test_not_enough_space(self, tmp_path):
        with patch("wimforge.core.disk_space.psutil.disk_usage", return_value=Usage(100, 90, 10, 90.0)):
            assert not DiskSpaceChecker().has_enough_space(tmp_path, 11, "test")

    def test_nonexistent_path_uses_parent_volume(self, tmp_path):
        with patch("wimforge.core.disk_space.psutil.disk_usage", return_value=Usage(100, 90, 10, 90.0)) as usage:
            assert DiskSpaceChecker().get_free_space(tmp_path / "a" / "b" / "out.iso") == 10
        assert usage.call_args[0][0] == str(tmp_path.resolve())

    def test_probe_failure_reports_enough(self, tmp_path):
        with patch("wimforge.core.disk_space.psutil.disk_usage", side_effect=OSError("device not ready")):
            assert DiskSpaceChecker().has_enough_space(tmp_path, 10 ** 15, "test")

    def test_require_space_raises(self, tmp_path):
        with patch("wimforge.core.disk_space.psutil.disk_usage", return_value=Usage(100, 90, 10, 90.0)):
            with pytest.raises(InsufficientSpaceError) as exc_info:
                DiskSpaceChecker().require_space(tmp_path, 50, "ISO creation")
        assert exc_info.value.required_bytes == 50
        assert exc_info.value.available_bytes == 10
