"""
WimForge Process Runner
Runs external imaging tools (DISM, oscdimg, winget) as child processes with
streamed output, progress parsing and cancellable waits
"""

import re
import shlex
import logging
import threading
import subprocess
import sys
from pathlib import Path
from typing import Callable, IO, List, Optional, Sequence, Union

import psutil

from wimforge.core.errors import OperationCancelledError, ProcessFailureError
from wimforge.core.models import ProcessResult, ProgressDetail


OutputCallback = Callable[[str], None]
Arguments = Union[str, Sequence[str]]
ProgressCallback = Callable[[ProgressDetail], None]

# DISM prints "[====   ] 25.5%", oscdimg prints "25% complete"
PROGRESS_PATTERN = re.compile(r"(\d{1,3}(?:\.\d+)?)\s*%")

_CREATION_FLAGS = getattr(subprocess, "CREATE_NO_WINDOW", 0)
_IS_WINDOWS = sys.platform == "win32"


def parse_progress(line: str) -> Optional[float]:
    """Extract a completion percentage from a tool output line"""
    match = PROGRESS_PATTERN.search(line)
    if not match:
        return None
    value = float(match.group(1))
    if value > 100.0:
        return None
    return value


class ProcessExecutor:
    """Executes external binaries and captures their output"""

    def __init__(self, poll_interval: float = 0.1):
        self.logger = logging.getLogger(__name__)
        self.poll_interval = poll_interval

    def run(self, executable: str, arguments: Arguments,
            on_output: Optional[OutputCallback] = None,
            on_error: Optional[OutputCallback] = None,
            cancel_event: Optional[threading.Event] = None,
            cwd: Optional[str] = None) -> ProcessResult:
        """
        Run executable to completion.

        cancel_event only interrupts the wait: when it is set the child is
        killed and OperationCancelledError is raised.
        Raises ProcessFailureError when the binary cannot be started.
        """
        command = self._build_command(executable, arguments)
        tool_name = Path(executable).name
        self.logger.info(f"Running: {command if isinstance(command, str) else subprocess.list2cmdline(command)}")

        try:
            process = subprocess.Popen(
                command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                cwd=cwd,
                creationflags=_CREATION_FLAGS,
            )
        except OSError as e:
            self.logger.error(f"Failed to start {tool_name}: {e}")
            raise ProcessFailureError(executable, None, str(e)) from e

        stdout_lines: List[str] = []
        stderr_lines: List[str] = []
        readers = [
            threading.Thread(target=self._pump, args=(process.stdout, stdout_lines, on_output), daemon=True),
            threading.Thread(target=self._pump, args=(process.stderr, stderr_lines, on_error), daemon=True),
        ]
        for reader in readers:
            reader.start()

        try:
            self._wait(process, tool_name, cancel_event)
        finally:
            for reader in readers:
                reader.join(timeout=5)

        result = ProcessResult(
            exit_code=process.returncode,
            stdout="\n".join(stdout_lines),
            stderr="\n".join(stderr_lines),
        )
        if result.succeeded:
            self.logger.debug(f"{tool_name} completed successfully")
        else:
            self.logger.warning(f"{tool_name} exited with code {result.exit_code}")
        return result

    def run_with_progress(self, executable: str, arguments: Arguments,
                          progress: Optional[ProgressCallback] = None,
                          cancel_event: Optional[threading.Event] = None) -> ProcessResult:
        """Run executable and report each output line as a ProgressDetail"""

        def report(line: str):
            if progress is not None:
                progress(ProgressDetail(terminal_output=line, percent=parse_progress(line)))

        return self.run(executable, arguments, on_output=report, on_error=report,
                        cancel_event=cancel_event)

    def kill_processes_by_name(self, name: str) -> int:
        """Kill every running process whose image name matches name"""
        target = name.lower()
        if target.endswith(".exe"):
            target = target[:-4]

        killed = 0
        for proc in psutil.process_iter(["name"]):
            proc_name = (proc.info.get("name") or "").lower()
            if proc_name.endswith(".exe"):
                proc_name = proc_name[:-4]
            if proc_name != target:
                continue
            try:
                self.logger.info(f"Killing {name} process (PID: {proc.pid})")
                proc.kill()
                proc.wait(timeout=5)
                killed += 1
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.TimeoutExpired) as e:
                self.logger.warning(f"Failed to kill {name} process (PID: {proc.pid}): {e}")
        return killed

    def _build_command(self, executable: str, arguments: Arguments):
        if not isinstance(arguments, str):
            return [executable, *arguments]
        # Pre-quoted command lines (oscdimg -bootdata) are passed through untouched
        if _IS_WINDOWS:
            return f'"{executable}" {arguments}'
        return [executable, *shlex.split(arguments)]

    def _wait(self, process: subprocess.Popen, tool_name: str,
              cancel_event: Optional[threading.Event]):
        if cancel_event is None:
            process.wait()
            return

        while True:
            try:
                process.wait(timeout=self.poll_interval)
                return
            except subprocess.TimeoutExpired:
                if cancel_event.is_set():
                    self.logger.info(f"Cancellation requested - terminating {tool_name}")
                    process.kill()
                    process.wait()
                    raise OperationCancelledError(f"{tool_name} was cancelled")

    def _pump(self, stream: IO[str], sink: List[str], callback: Optional[OutputCallback]):
        for raw_line in stream:
            line = raw_line.rstrip("\r\n")
            sink.append(line)
            if callback is None or not line.strip():
                continue
            try:
                callback(line)
            except Exception as e:
                self.logger.warning(f"Output callback failed: {e}")
        stream.close()
