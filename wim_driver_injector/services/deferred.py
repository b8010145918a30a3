"""Restart-time cleanup for paths that could not be deleted immediately.

A small batch script is written to ``%ProgramData%\\WIMDriverInjector`` and
registered as an on-start SYSTEM scheduled task. The script takes ownership,
removes the folder, deletes its own task and finally itself. Where the kernel
allows it the path is also marked with ``MOVEFILE_DELAY_UNTIL_REBOOT``.

Entries are de-duplicated by normalised path: task and script names are
derived from the path, so registering the same folder twice (even from two
processes) updates one task instead of creating two.
"""

from __future__ import annotations

import ctypes
import hashlib
import os
import threading
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from wim_driver_injector.domain.models import SCRATCH_ROOT_NAME, DeferredCleanupEntry
from wim_driver_injector.logging import EventLogger, LoggerFactory
from wim_driver_injector.storage.exceptions import InjectorError
from wim_driver_injector.storage.filesystem import is_windows
from wim_driver_injector.storage.process import run_command

if TYPE_CHECKING:
    from loguru import Logger


TASK_PREFIX = f"{SCRATCH_ROOT_NAME}_Cleanup_"
MAX_TASK_NAME_LENGTH = 200
MOVEFILE_DELAY_UNTIL_REBOOT = 0x4


def normalize_path(path: Path) -> str:
    return os.path.normcase(os.path.abspath(str(path))).rstrip("\\/")


def _path_digest(path: Path) -> str:
    return hashlib.sha1(normalize_path(path).encode("utf-8")).hexdigest()[:8]


def task_name_for(path: Path) -> str:
    name = TASK_PREFIX + Path(normalize_path(path)).name
    if len(name) > MAX_TASK_NAME_LENGTH:
        name = TASK_PREFIX + _path_digest(path)
    return name


def cleanup_script(path: Path, task_name: str) -> str:
    target = str(path).replace('"', '""')
    task = task_name.replace('"', '""')
    return (
        "@echo off\r\n"
        f'takeown /F "{target}" /R /D Y\r\n'
        f'icacls "{target}" /grant Administrators:F /T /C /Q\r\n'
        f'rd /s /q "{target}"\r\n'
        f'schtasks /delete /tn "{task}" /f\r\n'
        'del "%~f0"\r\n'
    )


def default_script_dir() -> Path:
    base = os.environ.get("ProgramData") or os.environ.get("PROGRAMDATA")
    if base:
        return Path(base) / SCRATCH_ROOT_NAME
    return Path.home() / ".local" / "share" / "wim-driver-injector"


def mark_for_deletion_on_reboot(path: Path, *, log: Optional[Logger] = None) -> bool:
    """Ask the kernel to delete ``path`` at the next boot (files and empty folders only)."""
    if not is_windows():
        return False
    kernel32 = ctypes.WinDLL("kernel32", use_last_error=True)
    if kernel32.MoveFileExW(str(path), None, MOVEFILE_DELAY_UNTIL_REBOOT):
        return True
    if log is not None:
        log.debug(f"MoveFileEx delete-on-reboot failed for {path}: error {ctypes.get_last_error()}")
    return False


class ScheduledTaskDeferral:
    def __init__(self, *, script_dir: Optional[Path] = None, log: Optional[Logger] = None):
        self.script_dir = script_dir or default_script_dir()
        self.log = log or LoggerFactory.for_workspace()
        self._lock = threading.Lock()
        self._entries: dict[str, DeferredCleanupEntry] = {}

    @property
    def entries(self) -> list[DeferredCleanupEntry]:
        with self._lock:
            return list(self._entries.values())

    def register_self_deleting_startup_task(self, path: Path) -> DeferredCleanupEntry:
        path = Path(path)
        key = normalize_path(path)
        with self._lock:
            existing = self._entries.get(key)
        if existing is not None:
            self.log.debug(f"Deferred cleanup already registered for {path}")
            return existing

        task_name = task_name_for(path)
        entry = DeferredCleanupEntry(path=path, task_name=task_name)
        if is_windows():
            entry.script_path = self.script_dir / f"Cleanup_{_path_digest(path)}.bat"
            entry.scheduled = self._schedule(path, task_name, entry.script_path)
            mark_for_deletion_on_reboot(path, log=self.log)
        else:
            self.log.warning(f"Restart-time cleanup is only available on Windows; remove {path} manually")

        with self._lock:
            entry = self._entries.setdefault(key, entry)
        EventLogger.log_deferred_cleanup(self.log, str(path), task_name, entry.scheduled)
        return entry

    def _schedule(self, path: Path, task_name: str, script_path: Path) -> bool:
        try:
            script_path.parent.mkdir(parents=True, exist_ok=True)
            script_path.write_text(cleanup_script(path, task_name), encoding="utf-8")
        except OSError as error:
            self.log.warning(f"Could not write cleanup script {script_path}: {error}")
            return False

        command = [
            "schtasks",
            "/create",
            "/tn",
            task_name,
            "/tr",
            str(script_path),
            "/sc",
            "onstart",
            "/ru",
            "SYSTEM",
            "/rl",
            "HIGHEST",
            "/f",
        ]
        try:
            result = run_command(command)
        except InjectorError as error:
            self.log.warning(f"Could not register cleanup task {task_name}: {error}")
            return False
        if result.returncode != 0:
            self.log.warning(f"schtasks failed for {task_name}: {result.error_text()}")
            return False
        return True
