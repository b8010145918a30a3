"""Recovery sweep for workspaces orphaned by crashed or killed runs.

Looks for ``WIMDriverInjector`` folders in the system temp directory, the
configured scratch directory and on the root of every ready fixed volume.
Each session folder inside is unmounted, taken over and deleted; anything
that survives is handed to restart-time cleanup. Every filesystem and process
call is guarded on its own, so one stubborn folder never stops the sweep.
"""

from __future__ import annotations

import os
import tempfile
import time
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Iterable, Optional

import psutil

from wim_driver_injector.config import settings
from wim_driver_injector.domain.models import MOUNT_DIR_PREFIX, SCRATCH_ROOT_NAME, SweepResult
from wim_driver_injector.logging import LoggerFactory
from wim_driver_injector.services.base import ImageServicing, StartupDeferral

from .exceptions import InjectorError, UnmountFailedError
from .filesystem import is_windows, remove_tree, take_ownership
from .workspace_registry import is_workspace_active

if TYPE_CHECKING:
    from loguru import Logger


NOTHING_FOUND_MESSAGE = (
    f"No {SCRATCH_ROOT_NAME} folders found on local drives or in the system temp folder."
)
RESTART_MESSAGE = (
    "Cleanup attempted. Some WIM mounts could not be dismounted. "
    "A scheduled task will remove them on the next restart."
)


def fixed_volume_roots() -> list[Path]:
    """Mount points of ready, fixed (non-removable, non-optical) volumes."""
    roots: list[Path] = []
    try:
        partitions = psutil.disk_partitions(all=False)
    except (OSError, psutil.Error) as error:
        LoggerFactory.for_sweep().debug(f"Could not enumerate volumes: {error}")
        return roots
    for partition in partitions:
        options = {option.strip().lower() for option in partition.opts.split(",")}
        if "cdrom" in options or "removable" in options:
            continue
        # An empty filesystem type means the drive is not ready (no media)
        if not partition.fstype:
            continue
        if is_windows() and "fixed" not in options:
            continue
        roots.append(Path(partition.mountpoint))
    return roots


def default_sweep_roots() -> list[Path]:
    candidates: list[Path] = [Path(tempfile.gettempdir())]
    scratch = settings.get_path("scratch_directory")
    if scratch is not None:
        candidates.append(scratch)
    for extra in settings.get_setting("sweep_extra_roots") or []:
        candidates.append(Path(extra).expanduser())
    candidates.extend(fixed_volume_roots())

    unique: list[Path] = []
    seen: set[str] = set()
    for candidate in candidates:
        key = os.path.normcase(os.path.abspath(str(candidate)))
        if key not in seen:
            seen.add(key)
            unique.append(candidate)
    return unique


class RecoverySweep:
    def __init__(
        self,
        servicing: ImageServicing,
        deferral: StartupDeferral,
        *,
        roots_provider: Optional[Callable[[], Iterable[Path]]] = None,
        settle_delay: Optional[float] = None,
        unmount_timeout: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
        log: Optional[Logger] = None,
    ):
        self.servicing = servicing
        self.deferral = deferral
        self.roots_provider = roots_provider or default_sweep_roots
        if settle_delay is None:
            settle_delay = settings.get_float("sweep_settle_seconds", 0.5)
        if unmount_timeout is None:
            unmount_timeout = settings.get_float("unmount_timeout_seconds", 1800.0)
        self.settle_delay = settle_delay
        self.unmount_timeout = unmount_timeout
        self._sleep = sleep
        self.log = log or LoggerFactory.for_sweep()

    def sweep(self, on_progress: Optional[Callable[[str], None]] = None) -> SweepResult:
        """Remove orphaned workspaces; returns ``(needs_restart, summary)``."""

        def report(message: str) -> None:
            self.log.info(message)
            if on_progress is not None:
                on_progress(message)

        needs_restart = False
        locations = 0
        for root in self._roots():
            scratch = root / SCRATCH_ROOT_NAME
            if not self._is_dir(scratch):
                continue
            removed = 0
            report(f"Checking {scratch}")
            for session_dir in self._list_dirs(scratch):
                if is_workspace_active(session_dir):
                    self.log.info(f"Skipping workspace in use by this process: {session_dir}")
                    continue
                if self._clean_session(session_dir, report):
                    removed += 1
                else:
                    needs_restart = True
            if self._remove_if_empty(scratch):
                removed += 1
            if removed:
                locations += 1

        if needs_restart:
            summary = RESTART_MESSAGE
        elif locations == 0:
            summary = NOTHING_FOUND_MESSAGE
        else:
            summary = f"Sweep complete. Cleaned {SCRATCH_ROOT_NAME} folders from {locations} location(s)."
        report(summary)
        return SweepResult(needs_restart, summary)

    def _roots(self) -> list[Path]:
        try:
            return list(self.roots_provider())
        except (OSError, psutil.Error) as error:
            self.log.warning(f"Could not enumerate sweep locations: {error}")
            return [Path(tempfile.gettempdir())]

    def _clean_session(self, session_dir: Path, report: Callable[[str], None]) -> bool:
        """Unmount, take over and delete one orphaned workspace. True when it is gone."""
        report(f"Removing orphaned workspace {session_dir.name}")
        live_mount = False
        for mount_dir in self._list_dirs(session_dir):
            if not mount_dir.name.startswith(MOUNT_DIR_PREFIX):
                continue
            # An empty mount folder holds no image; only populated ones need DISM
            if self._is_empty(mount_dir):
                continue
            if not self._unmount(mount_dir):
                live_mount = True

        if not live_mount:
            self._sleep(self.settle_delay)
            try:
                take_ownership(session_dir, log=self.log)
            except OSError as error:
                self.log.debug(f"Taking ownership of {session_dir} failed: {error}")
            try:
                remove_tree(session_dir, log=self.log)
            except OSError as error:
                self.log.warning(f"Could not delete {session_dir}: {error}")
            if not session_dir.exists():
                return True

        self._defer(session_dir)
        return False

    def _unmount(self, mount_dir: Path) -> bool:
        try:
            self.servicing.unmount(mount_dir, commit=False, timeout=self.unmount_timeout)
        except UnmountFailedError as error:
            if error.non_critical:
                return True
            self.log.warning(f"Could not unmount {mount_dir}: {error.message}")
            return False
        except (InjectorError, OSError) as error:
            self.log.warning(f"Could not unmount {mount_dir}: {error}")
            return False
        self.log.info(f"Unmounted leftover mount {mount_dir}")
        return True

    def _defer(self, path: Path) -> None:
        try:
            self.deferral.register_self_deleting_startup_task(path)
        except (OSError, InjectorError) as error:
            self.log.error(f"Could not schedule restart cleanup for {path}: {error}")

    def _is_dir(self, path: Path) -> bool:
        try:
            return path.is_dir()
        except OSError:
            return False

    def _list_dirs(self, path: Path) -> list[Path]:
        try:
            return sorted(entry for entry in path.iterdir() if entry.is_dir())
        except OSError as error:
            self.log.debug(f"Could not list {path}: {error}")
            return []

    def _is_empty(self, path: Path) -> bool:
        try:
            return not any(path.iterdir())
        except OSError:
            return False

    def _remove_if_empty(self, path: Path) -> bool:
        try:
            path.rmdir()
        except OSError:
            return False
        return True
