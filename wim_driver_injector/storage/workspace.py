"""Scratch workspaces: allocation, mount bookkeeping and reclamation.

Every pipeline run works in ``<scratch root>/WIMDriverInjector/<id>``. The
manager records each mount made under it so that reclamation can discard them
all before deleting anything. Reclamation escalates:

1. discard-unmount every session (and any stray ``mount_*`` folder)
2. if an unmount failed: defer the whole workspace to the next restart
3. settle delay so DISM can let go of its handles
4. take ownership / grant full control
5. delete tracked temporary WIM copies, then the remaining files one by one
   (retry, backoff, forced delete)
6. delete directories bottom-up (same)
7. delete the workspace root (longer backoff)

Anything left after that is handed to the startup deferral capability.
"""

from __future__ import annotations

import os
import tempfile
import threading
import time
import uuid
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Optional

from wim_driver_injector.config import settings
from wim_driver_injector.domain.models import (
    MOUNT_DIR_PREFIX,
    SCRATCH_ROOT_NAME,
    MountSession,
    MountState,
    ReclaimOutcome,
    Workspace,
)
from wim_driver_injector.logging import LoggerFactory
from wim_driver_injector.services.base import ImageServicing, StartupDeferral

from .cancellation import CancellationToken
from .exceptions import (
    InjectorError,
    MountConflictError,
    MountError,
    ReclamationError,
    ToolInvocationError,
    UnmountFailedError,
)
from .filesystem import (
    clear_readonly,
    delete_directory,
    delete_file,
    force_delete,
    remediation_hints,
    take_ownership,
)
from .retry import RetryPolicy, retry_operation
from .validation import ensure_container_writable
from .workspace_registry import register_workspace, release_workspace

if TYPE_CHECKING:
    from loguru import Logger


RECLAIM_RETRY_POLICY = RetryPolicy(attempts=5, base_delay=2.0, multiplier=1.0)


def default_scratch_root() -> Path:
    return settings.get_path("scratch_directory") or Path(tempfile.gettempdir())


class WorkspaceManager:
    def __init__(
        self,
        servicing: ImageServicing,
        deferral: StartupDeferral,
        *,
        scratch_root: Optional[Path] = None,
        retry_policy: Optional[RetryPolicy] = None,
        root_retry_policy: Optional[RetryPolicy] = None,
        settle_delay: Optional[float] = None,
        unmount_timeout: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
        log: Optional[Logger] = None,
    ):
        attempts = settings.get_int("delete_retry_attempts", 3)
        self.servicing = servicing
        self.deferral = deferral
        self.scratch_root = scratch_root
        self.retry_policy = retry_policy or RetryPolicy(
            attempts, settings.get_float("delete_backoff_seconds", 1.0)
        )
        self.root_retry_policy = root_retry_policy or RetryPolicy(
            attempts, settings.get_float("root_backoff_seconds", 2.0)
        )
        if settle_delay is None:
            settle_delay = settings.get_float("settle_delay_seconds", 2.0)
        if unmount_timeout is None:
            unmount_timeout = settings.get_float("unmount_timeout_seconds", 1800.0)
        self.settle_delay = settle_delay
        self.unmount_timeout = unmount_timeout
        self._sleep = sleep
        self.log = log or LoggerFactory.for_workspace()

    # ------------------------------------------------------------------
    # Allocation
    # ------------------------------------------------------------------

    def new_workspace(self, preferred_root: Optional[Path] = None) -> Workspace:
        """Create a uniquely named workspace under ``preferred_root`` (or the default root)."""
        base = Path(preferred_root) if preferred_root else (self.scratch_root or default_scratch_root())
        path = base / SCRATCH_ROOT_NAME / uuid.uuid4().hex
        path.mkdir(parents=True)
        register_workspace(path)
        workspace = Workspace(path=path, backing_volume=Path(preferred_root) if preferred_root else None)
        self.log.info(f"Created workspace {path}")
        return workspace

    # ------------------------------------------------------------------
    # Mounts
    # ------------------------------------------------------------------

    def open_mount(
        self,
        workspace: Workspace,
        container: Path,
        index: int,
        *,
        cancel_token: Optional[CancellationToken] = None,
    ) -> MountSession:
        """Mount ``index`` of ``container`` into a fresh directory of ``workspace``.

        Raises:
            MountConflictError: Another index of the same container is mounted.
            ContainerNotWritableError: The container is read-only or locked.
            ToolInvocationError: DISM refused the mount.
        """
        existing = workspace.mounted_session_for(container)
        if existing is not None:
            raise MountConflictError(container, existing.index, index)

        ensure_container_writable(container)
        mount_dir = workspace.mount_dir(index)
        self._prepare_mount_dir(mount_dir)

        session = MountSession(container_path=container, index=index, mount_dir=mount_dir)
        workspace.sessions.append(session)
        try:
            self.servicing.mount(container, index, mount_dir, cancel_token=cancel_token)
        except Exception:
            # DISM may have half-mounted before failing; reclamation still discards it
            session.state = MountState.MOUNT_FAILED
            raise
        session.state = MountState.MOUNTED
        self.log.info(f"Mounted index {index} of {container.name} at {mount_dir}")
        return session

    def _prepare_mount_dir(self, mount_dir: Path) -> None:
        if mount_dir.exists():
            if any(mount_dir.iterdir()):
                self.log.warning(f"Mount directory {mount_dir} is not empty; discarding stale mount")
                try:
                    self.servicing.unmount(mount_dir, commit=False, timeout=self.unmount_timeout)
                except (MountError, ToolInvocationError) as error:
                    self.log.debug(f"Stale unmount of {mount_dir}: {error}")
            if not force_delete(mount_dir, log=self.log):
                raise MountError(f"Mount directory {mount_dir} could not be cleared")
        mount_dir.mkdir(parents=True)
        clear_readonly(mount_dir)

    def discard_mount(
        self, workspace: Workspace, session: MountSession, *, wait: bool = True
    ) -> bool:
        """Discard-unmount ``session``.

        With ``wait=False`` the unmount runs on a background thread tracked on
        the workspace and ``True`` is returned immediately. Otherwise returns
        whether the mount is gone.
        """
        if not wait:
            thread = threading.Thread(
                target=self._discard,
                args=(session,),
                name=f"unmount-{workspace.id[:8]}-{session.index}",
                daemon=True,
            )
            workspace.pending_unmounts.append(thread)
            thread.start()
            return True
        return self._discard(session)

    def _discard(self, session: MountSession) -> bool:
        if not session.needs_unmount:
            return True
        try:
            self.servicing.unmount(session.mount_dir, commit=False, timeout=self.unmount_timeout)
        except UnmountFailedError as error:
            if not error.non_critical:
                self.log.warning(f"Could not unmount {session.mount_dir}: {error.message}")
                return False
            self.log.debug(f"Unmount of {session.mount_dir} reported: {error.message}")
        except ToolInvocationError as error:
            self.log.warning(f"Could not unmount {session.mount_dir}: {error}")
            return False
        session.state = MountState.UNMOUNTED
        self.log.info(f"Unmounted {session.mount_dir}")
        return True

    def wait_for_unmounts(self, workspace: Workspace) -> bool:
        """Join background unmounts; True when nothing in ``workspace`` is still mounted."""
        for thread in list(workspace.pending_unmounts):
            thread.join(timeout=self.unmount_timeout)
            if thread.is_alive():
                self.log.warning(f"Background unmount {thread.name} is still running")
            else:
                workspace.pending_unmounts.remove(thread)
        return not workspace.pending_unmounts and not workspace.active_sessions()

    def _unmount_all(self, workspace: Workspace) -> list[Path]:
        """Discard every mount of the workspace; returns mount dirs that stayed mounted."""
        failed: list[Path] = []
        tracked = {session.mount_dir for session in workspace.sessions}
        for session in workspace.active_sessions():
            if not self._discard(session):
                failed.append(session.mount_dir)

        # Folders left by an earlier process or a half-mounted session we never recorded
        for mount_dir in self._stray_mount_dirs(workspace.path, tracked):
            try:
                self.servicing.unmount(mount_dir, commit=False, timeout=self.unmount_timeout)
            except UnmountFailedError as error:
                if not error.non_critical:
                    self.log.warning(f"Could not unmount {mount_dir}: {error.message}")
                    failed.append(mount_dir)
            except ToolInvocationError as error:
                self.log.warning(f"Could not unmount {mount_dir}: {error}")
                failed.append(mount_dir)
        return failed

    @staticmethod
    def _stray_mount_dirs(root: Path, tracked: set[Path]) -> list[Path]:
        try:
            entries = list(root.iterdir())
        except OSError:
            return []
        stray = []
        for entry in entries:
            if not entry.name.startswith(MOUNT_DIR_PREFIX) or entry in tracked:
                continue
            try:
                if entry.is_dir() and any(entry.iterdir()):
                    stray.append(entry)
            except OSError:
                stray.append(entry)
        return stray

    # ------------------------------------------------------------------
    # Reclamation
    # ------------------------------------------------------------------

    def reclaim(self, workspace: Workspace) -> ReclaimOutcome:
        """Tear down ``workspace``; returns whether it is gone or deferred to restart."""
        path = workspace.path
        self.log.info(f"Cleaning up workspace {path}")
        try:
            self.wait_for_unmounts(workspace)
            failed_unmounts = self._unmount_all(workspace)
            if failed_unmounts or workspace.pending_unmounts:
                # Never delete files out from under a live mount
                unmount_count = len(failed_unmounts) + len(workspace.pending_unmounts)
                self.log.warning(
                    f"{unmount_count} mount(s) "
                    f"could not be unmounted; deferring cleanup of {path} to next restart"
                )
                # Without a scheduled cleanup the mounts are leaked until removed by hand
                state = MountState.DEFERRED if self._defer(path) else MountState.LEAKED
                for session in workspace.active_sessions():
                    session.state = state
                return ReclaimOutcome.DEFERRED

            if not path.exists():
                self._remove_empty_parent(path)
                return ReclaimOutcome.RECLAIMED

            if self.settle_delay > 0:
                self._sleep(self.settle_delay)
            take_ownership(path, log=self.log)

            self._delete_temp_copies(workspace)
            leftovers = self._delete_tree(path)
            if leftovers:
                self.log.warning(
                    f"{len(leftovers)} item(s) could not be deleted from {path}; "
                    "deferring to next restart"
                )
                for item in leftovers[:10]:
                    self.log.debug(f"Not deleted: {item}")
                self._log_hints(path)
                self._defer(path)
                return ReclaimOutcome.DEFERRED

            self._remove_empty_parent(path)
            self.log.success(f"Workspace {path} removed")
            return ReclaimOutcome.RECLAIMED
        finally:
            release_workspace(path)

    def reclaim_async(self, workspace: Workspace) -> threading.Thread:
        """Reclaim on a background thread; the caller never waits for it."""
        thread = threading.Thread(
            target=self._reclaim_with_retries,
            args=(workspace,),
            name=f"reclaim-{workspace.id[:8]}",
        )
        thread.start()
        return thread

    def _reclaim_with_retries(self, workspace: Workspace) -> None:
        result = retry_operation(
            lambda: self.reclaim(workspace),
            RECLAIM_RETRY_POLICY,
            retry_on=(OSError, InjectorError),
            sleep=self._sleep,
            description=f"Cleaning up workspace {workspace.path}",
            log=self.log,
        )
        if not result.succeeded:
            failure = ReclamationError(workspace.path, f"gave up after retries: {result.error}")
            self.log.error(str(failure))
            self._log_hints(workspace.path)

    def _delete_temp_copies(self, workspace: Workspace) -> None:
        """Delete the temporary WIM copies recorded through ``Workspace.temp_path``."""
        for temp_copy in workspace.temp_copies:
            if temp_copy.exists():
                delete_file(temp_copy, self.retry_policy, sleep=self._sleep, log=self.log)

    def _delete_tree(self, root: Path) -> list[Path]:
        """Delete files, then directories deepest first, then the root; returns leftovers."""
        leftovers: list[Path] = []
        directories: list[Path] = []
        for dirpath, dirnames, filenames in os.walk(root):
            for name in filenames:
                file_path = Path(dirpath) / name
                if not delete_file(file_path, self.retry_policy, sleep=self._sleep, log=self.log):
                    leftovers.append(file_path)
            directories.extend(Path(dirpath) / name for name in dirnames)

        for directory in sorted(directories, key=lambda p: len(p.parts), reverse=True):
            if not directory.exists():
                continue
            if not delete_directory(directory, self.retry_policy, sleep=self._sleep, log=self.log):
                leftovers.append(directory)

        if root.exists() and not delete_directory(
            root, self.root_retry_policy, sleep=self._sleep, log=self.log
        ):
            leftovers.append(root)
        return leftovers

    def _defer(self, path: Path) -> bool:
        try:
            entry = self.deferral.register_self_deleting_startup_task(path)
        except (OSError, InjectorError) as error:
            self.log.error(f"Could not schedule restart cleanup for {path}: {error}")
            self._log_hints(path)
            return False
        if not entry.scheduled:
            self._log_hints(path)
        return entry.scheduled

    def _remove_empty_parent(self, path: Path) -> None:
        parent = path.parent
        if parent.name != SCRATCH_ROOT_NAME:
            return
        try:
            parent.rmdir()
        except OSError:
            # Other workspaces still live there
            pass

    def _log_hints(self, path: Path) -> None:
        self.log.warning(f"To remove {path} manually, run as Administrator:")
        for hint in remediation_hints(path):
            self.log.warning(f"  {hint}")

