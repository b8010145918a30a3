"""Progress parsing and estimation for long-running DISM operations."""

from __future__ import annotations

import re
import threading
from datetime import datetime
from pathlib import Path
from typing import Callable

import psutil

from .filesystem import directory_size


_PERCENT_PATTERNS = (
    re.compile(r"Progress:\s*(\d+(?:\.\d+)?)\s*%", re.IGNORECASE),
    re.compile(r"(\d+(?:\.\d+)?)\s*%\s*complete", re.IGNORECASE),
    # DISM progress bar: [=====    42.0%                ]
    re.compile(r"\[[=\s]*(\d+(?:\.\d+)?)\s*%[=\s]*\]"),
)

STALE_CAPTURE_MINUTES = 5.0


def parse_progress_percent(line: str) -> float | None:
    """Return the percentage carried by a DISM output line, if any."""
    for pattern in _PERCENT_PATTERNS:
        match = pattern.search(line)
        if match:
            value = float(match.group(1))
            if 0.0 <= value <= 100.0:
                return value
    return None


def estimate_capture_progress(
    written_bytes: int, source_bytes: int, compression_ratio: float = 0.5
) -> float:
    """Estimate capture progress from the output size.

    The final WIM is assumed to be ``compression_ratio`` times the source size.
    Never returns more than 99 because the estimate cannot know when DISM is done.
    """
    if source_bytes <= 0 or compression_ratio <= 0:
        return 0.0
    expected = source_bytes * compression_ratio
    return min(99.0, written_bytes / expected * 100.0)


def human_size(size_bytes: int | None) -> str:
    if size_bytes is None:
        return "0B"
    size = float(size_bytes)
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if size < 1024 or unit == "TB":
            return f"{size:.1f}{unit}"
        size /= 1024
    return f"{size:.1f}TB"


class ProgressTracker:
    """Forwards percentages to a callback, monotonically and capped at 99 until done."""

    def __init__(self, callback: Callable[[int], None] | None):
        self._callback = callback
        self._lock = threading.Lock()
        self._last = -1
        self.saw_marker = False

    @property
    def last(self) -> int:
        return self._last

    def report(self, percent: float) -> None:
        value = max(0, min(99, int(percent)))
        with self._lock:
            if value <= self._last:
                return
            self._last = value
        if self._callback is not None:
            self._callback(value)

    def complete(self) -> None:
        with self._lock:
            if self._last >= 100:
                return
            self._last = 100
        if self._callback is not None:
            self._callback(100)


def is_process_running(name: str) -> bool:
    """True if a process with ``name`` (case-insensitive, .exe optional) is alive."""
    wanted = name.lower()
    if not wanted.endswith(".exe"):
        candidates = {wanted, f"{wanted}.exe"}
    else:
        candidates = {wanted, wanted[:-4]}
    for process in psutil.process_iter(["name"]):
        process_name = (process.info.get("name") or "").lower()
        if process_name in candidates:
            return True
    return False


def describe_capture_status(
    output_path: Path,
    source_dir: Path | None = None,
    *,
    compression_ratio: float = 0.5,
    now: datetime | None = None,
) -> str:
    """Human-readable status of a capture in progress.

    Used when a capture looks stuck: reports how large the output is, when it
    last grew, and whether DISM is still alive.
    """
    output_path = Path(output_path)
    try:
        if not output_path.exists():
            return "Output WIM file not found. Operation may not have started yet."

        stat = output_path.stat()
        last_modified = datetime.fromtimestamp(stat.st_mtime)
        minutes_since = ((now or datetime.now()) - last_modified).total_seconds() / 60
        dism_running = is_process_running("dism")

        lines = [
            "DISM Capture-Image Status:",
            f"  Output WIM: {output_path}",
            f"  Current Size: {stat.st_size / (1024 * 1024):.2f} MB",
            f"  Last Modified: {last_modified:%Y-%m-%d %H:%M:%S} ({minutes_since:.1f} minutes ago)",
            f"  DISM Process Running: {'Yes' if dism_running else 'No'}",
        ]

        source_size = directory_size(source_dir) if source_dir is not None else 0
        if source_size > 0:
            estimated_final = source_size * compression_ratio
            percent = int(estimate_capture_progress(stat.st_size, source_size, compression_ratio))
            lines.append(f"  Estimated Progress: ~{percent}%")
            lines.append(f"  Estimated Final Size: {estimated_final / (1024 * 1024):.2f} MB")

        if minutes_since > STALE_CAPTURE_MINUTES and dism_running:
            lines.append(
                f"  WARNING: File hasn't been modified in {minutes_since:.1f} minutes "
                "but DISM is still running."
            )
            lines.append("  This may indicate the operation is stuck or processing a large file.")
        elif not dism_running and minutes_since < 1:
            lines.append("  Status: Operation appears to have completed recently.")
        elif not dism_running:
            lines.append("  Status: DISM process is not running. Operation may have completed or failed.")

        return "\n".join(lines)
    except (OSError, psutil.Error) as error:
        return f"Error checking progress: {error}"
