"""Command execution with streamed output, cancellation and progress tracking.

Both stdout and stderr are drained on reader threads while the child runs,
so DISM's very chatty output can never fill a pipe and stall the process.
A non-zero exit code is returned to the caller, not raised.
"""

from __future__ import annotations

import os
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Callable, Sequence

import psutil

from wim_driver_injector.config import settings
from wim_driver_injector.logging import LoggerFactory, ThrottledLogger

from .cancellation import CancellationToken
from .exceptions import CommandTimeoutError, OperationCancelledError, ToolInvocationError
from .progress import (
    STALE_CAPTURE_MINUTES,
    ProgressTracker,
    describe_capture_status,
    estimate_capture_progress,
    human_size,
    parse_progress_percent,
)
from .retry import RetryPolicy, retry_operation


log = LoggerFactory.for_tools("process")
output_log = LoggerFactory.for_tool_output("process")

# Keeps console windows from flashing up when running as a GUI backend
_CREATION_FLAGS = getattr(subprocess, "CREATE_NO_WINDOW", 0) if os.name == "nt" else 0

WAIT_POLL_SECONDS = 0.25
EXIT_WAIT_SECONDS = 5.0
EXIT_WAIT_POLICY = RetryPolicy(attempts=3, base_delay=0.5, multiplier=2.0)
READER_JOIN_SECONDS = 5.0


@dataclass
class CommandResult:
    command: list[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        return "\n".join(part for part in (self.stdout.strip(), self.stderr.strip()) if part)

    def error_text(self) -> str:
        """Best diagnostic available: stderr, else stdout."""
        return self.stderr.strip() or self.stdout.strip()


def format_command(command: Sequence[object]) -> str:
    return " ".join(str(part) for part in command)


def _pump(stream: IO[str], sink: list[str], on_line: Callable[[str], None] | None) -> None:
    try:
        for line in iter(stream.readline, ""):
            sink.append(line)
            if on_line is not None:
                on_line(line.rstrip("\r\n"))
    except (OSError, ValueError):
        # Stream closed underneath us after the process was killed
        pass
    finally:
        try:
            stream.close()
        except OSError:
            pass


def kill_process_tree(pid: int) -> None:
    """Kill ``pid`` and all of its children (dism.exe spawns DismHost.exe)."""
    try:
        parent = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return
    try:
        children = parent.children(recursive=True)
    except psutil.Error:
        children = []
    for proc in children + [parent]:
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            continue
        except psutil.AccessDenied as error:
            log.warning(f"Could not kill process {proc.pid}: {error}")


def _wait_for_exit(process: subprocess.Popen) -> int:
    """Bounded wait for a killed or finished process; escalates to kill."""

    def escalate(error: BaseException, attempt: int) -> bool:
        kill_process_tree(process.pid)
        return False

    result = retry_operation(
        lambda: process.wait(timeout=EXIT_WAIT_SECONDS),
        EXIT_WAIT_POLICY,
        retry_on=(subprocess.TimeoutExpired,),
        escalate=escalate,
        description=f"Waiting for process {process.pid} to exit",
        log=log,
    )
    if not result.succeeded:
        log.warning(f"Process {process.pid} did not exit after being killed; abandoning it")
        return process.returncode if process.returncode is not None else -1
    return process.returncode


def run_command(
    command: Sequence[object],
    *,
    cancel_token: CancellationToken | None = None,
    timeout: float | None = None,
    on_line: Callable[[str], None] | None = None,
) -> CommandResult:
    """Run a command to completion and capture its output.

    Raises:
        OperationCancelledError: ``cancel_token`` fired; the child was killed.
        CommandTimeoutError: ``timeout`` elapsed; the child was killed.
        ToolInvocationError: The executable could not be started.
    """
    args = [str(part) for part in command]
    if cancel_token is not None:
        cancel_token.raise_if_cancelled(args[0])

    log.debug(f"Running command: {format_command(args)}")
    try:
        process = subprocess.Popen(
            args,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
            creationflags=_CREATION_FLAGS,
        )
    except OSError as error:
        raise ToolInvocationError(args, None, str(error)) from error

    stdout_lines: list[str] = []
    stderr_lines: list[str] = []

    def emit(line: str) -> None:
        if line.strip():
            output_log.trace(line)
        if on_line is not None:
            on_line(line)

    readers = [
        threading.Thread(target=_pump, args=(process.stdout, stdout_lines, emit), daemon=True),
        threading.Thread(target=_pump, args=(process.stderr, stderr_lines, emit), daemon=True),
    ]
    for reader in readers:
        reader.start()

    unregister = None
    if cancel_token is not None:
        unregister = cancel_token.register(lambda: kill_process_tree(process.pid))

    deadline = None if timeout is None else time.monotonic() + timeout
    cancelled = False
    timed_out = False
    try:
        while True:
            try:
                process.wait(timeout=WAIT_POLL_SECONDS)
                break
            except subprocess.TimeoutExpired:
                pass
            if cancel_token is not None and cancel_token.is_cancelled:
                cancelled = True
                kill_process_tree(process.pid)
                break
            if deadline is not None and time.monotonic() >= deadline:
                timed_out = True
                log.warning(f"Command timed out after {timeout:.0f}s: {format_command(args)}")
                kill_process_tree(process.pid)
                break
    finally:
        if unregister is not None:
            unregister()

    returncode = _wait_for_exit(process)
    for reader in readers:
        reader.join(timeout=READER_JOIN_SECONDS)

    result = CommandResult(args, returncode, "".join(stdout_lines), "".join(stderr_lines))
    if cancelled or (cancel_token is not None and cancel_token.is_cancelled and returncode != 0):
        raise OperationCancelledError(os.path.basename(args[0]))
    if timed_out:
        raise CommandTimeoutError(args, timeout or 0.0, result.error_text())
    if returncode != 0:
        log.debug(f"Command exited with code {returncode}: {format_command(args)}")
    return result


def run_checked_command(
    command: Sequence[object],
    *,
    cancel_token: CancellationToken | None = None,
    timeout: float | None = None,
    stage: str | None = None,
) -> str:
    """Run a command and raise ToolInvocationError if it fails."""
    result = run_command(command, cancel_token=cancel_token, timeout=timeout)
    if result.returncode != 0:
        raise ToolInvocationError(
            result.command, result.returncode, result.error_text(), stage=stage
        )
    return result.stdout


def _monitor_output_size(
    output_path: Path,
    source_size: int | None,
    tracker: ProgressTracker,
    stop: threading.Event,
    poll_interval: float,
    update_interval: float,
    ratio: float,
    stale_after: float,
    on_status: Callable[[str], None] | None,
) -> None:
    last_update: float | None = None
    last_size = -1
    last_growth = time.monotonic()
    stall_reported = False
    while not stop.wait(poll_interval):
        try:
            size = output_path.stat().st_size
        except OSError:
            continue
        now = time.monotonic()
        if size != last_size:
            last_size, last_growth, stall_reported = size, now, False
        elif not stall_reported and now - last_growth >= stale_after:
            # Reported once per stall; a growing file re-arms it
            stall_reported = True
            status = describe_capture_status(output_path)
            log.warning(status)
            if on_status is not None:
                on_status(status)
        if tracker.saw_marker:
            continue
        if last_update is not None and now - last_update < update_interval:
            continue
        last_update = now
        if source_size:
            percent = estimate_capture_progress(size, source_size, ratio)
            tracker.report(percent)
            if on_status is not None:
                on_status(f"~{int(percent)}% (estimated from file size)")
        elif on_status is not None:
            on_status(f"{human_size(size)} written")


def run_with_progress(
    command: Sequence[object],
    *,
    output_path: Path | None = None,
    source_size: int | None = None,
    on_progress: Callable[[int], None] | None = None,
    on_status: Callable[[str], None] | None = None,
    cancel_token: CancellationToken | None = None,
    timeout: float | None = None,
) -> CommandResult:
    """Run a command while reporting progress.

    Percent markers in the tool output win. Without them, the size of
    ``output_path`` is polled and compared against ``source_size`` (assuming
    the configured compression ratio). Progress never goes backwards and stays
    at or below 99 until the process exits with code 0.
    """
    tracker = ProgressTracker(on_progress)
    progress_log = ThrottledLogger(
        log.bind(tags=["tools", "progress"]),
        interval_seconds=settings.get_float("progress_update_interval", 2.0),
    )
    key = format_command(command)

    def on_line(line: str) -> None:
        percent = parse_progress_percent(line)
        if percent is None:
            return
        tracker.saw_marker = True
        tracker.report(percent)
        progress_log.debug(key, f"Progress {percent:.1f}%")

    stop = threading.Event()
    monitor = None
    if output_path is not None:
        monitor = threading.Thread(
            target=_monitor_output_size,
            args=(
                Path(output_path),
                source_size,
                tracker,
                stop,
                settings.get_float("progress_poll_interval", 1.0),
                settings.get_float("progress_update_interval", 2.0),
                settings.get_float("compression_ratio_estimate", 0.5),
                settings.get_float("capture_stale_seconds", STALE_CAPTURE_MINUTES * 60),
                on_status,
            ),
            daemon=True,
        )
        monitor.start()

    try:
        result = run_command(
            command, cancel_token=cancel_token, timeout=timeout, on_line=on_line
        )
    finally:
        stop.set()
        if monitor is not None:
            monitor.join(timeout=READER_JOIN_SECONDS)

    if result.returncode == 0:
        tracker.complete()
    return result
