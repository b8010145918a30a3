"""Custom exceptions for image servicing operations.

This module defines a hierarchy of exceptions so that callers can tell a
precondition failure from a tool failure, a cancellation from an error, and so
that cleanup problems never masquerade as pipeline failures.

Exception Hierarchy:
    InjectorError (base)
        ├── PreconditionError
        │   ├── AuthoringToolMissingError
        │   ├── ContainerNotWritableError
        │   ├── NoDriverFilesError
        │   └── NoImageContainersError
        ├── ToolInvocationError
        │   └── CommandTimeoutError
        ├── MountError
        │   ├── MountConflictError
        │   └── UnmountFailedError
        ├── IndexProcessingError
        ├── ContainerProcessingError
        ├── ReclamationError
        └── OperationCancelledError

Usage:
    from wim_driver_injector.storage.exceptions import NoDriverFilesError

    if not driver_dirs:
        raise NoDriverFilesError(requested_dirs)
"""

from __future__ import annotations

from pathlib import Path
from typing import Sequence


class InjectorError(Exception):
    """Base exception for all driver injection operations."""



class PreconditionError(InjectorError):
    """Base exception for checks that fail before anything is mutated."""



class AuthoringToolMissingError(PreconditionError):
    """No ISO authoring tool (oscdimg or New-IsoFile) is available."""

    def __init__(self, searched: Sequence[Path | str] = ()):
        self.searched = [str(path) for path in searched]
        super().__init__(
            "ISO creation requires oscdimg.exe or a PowerShell New-IsoFile function. "
            "Please install Windows ADK (Assessment and Deployment Kit) with "
            "Deployment Tools, or place oscdimg.exe next to the application."
        )


class ContainerNotWritableError(PreconditionError):
    """The container file cannot be opened for writing (read-only or locked)."""

    def __init__(self, path: Path | str, reason: str = ""):
        self.path = Path(path)
        self.reason = reason
        msg = (
            f"WIM file is not writable: {path}. "
            "The file may be in use or in a read-only location"
        )
        if reason:
            msg += f" ({reason})"
        super().__init__(msg)


class NoDriverFilesError(PreconditionError):
    """None of the driver folders contain a driver descriptor (*.inf)."""

    def __init__(self, driver_dirs: Sequence[Path | str]):
        self.driver_dirs = [Path(path) for path in driver_dirs]
        super().__init__(
            "No valid driver files (.inf) were found in the specified driver folders"
        )


class NoImageContainersError(PreconditionError):
    """An ISO tree contains no WIM files to process."""

    def __init__(self, tree: Path | str):
        self.tree = Path(tree)
        super().__init__(f"No WIM files found in ISO ({tree})")


class ToolInvocationError(InjectorError):
    """An external tool exited with a non-zero status or could not be started."""

    def __init__(
        self,
        command: Sequence[str],
        returncode: int | None,
        output: str = "",
        *,
        stage: str | None = None,
        index: int | None = None,
        hint: str = "",
    ):
        self.command = [str(part) for part in command]
        self.returncode = returncode
        self.output = output.strip()
        self.stage = stage
        self.index = index
        self.hint = hint
        message = self.output or "Command failed"
        text = f"Command failed ({' '.join(self.command)}): {message}"
        if returncode is not None:
            text += f" [exit code {returncode}]"
        if hint:
            text += f". {hint}"
        super().__init__(text)


class CommandTimeoutError(ToolInvocationError):
    """An external tool did not finish within its time limit and was killed."""

    def __init__(self, command: Sequence[str], timeout: float, output: str = ""):
        self.timeout = timeout
        super().__init__(
            command,
            None,
            output or f"Timed out after {timeout:.0f} seconds",
        )


class MountError(InjectorError):
    """Base exception for mount-related errors."""



class MountConflictError(MountError):
    """Another index of the same container is still mounted."""

    def __init__(self, container_path: Path | str, mounted_index: int, requested_index: int):
        self.container_path = Path(container_path)
        self.mounted_index = mounted_index
        self.requested_index = requested_index
        super().__init__(
            f"Cannot mount index {requested_index} of {container_path}: "
            f"index {mounted_index} is still mounted"
        )


class UnmountFailedError(MountError):
    """DISM could not unmount a mount directory."""

    def __init__(self, mount_dir: Path | str, message: str, *, non_critical: bool = False):
        self.mount_dir = Path(mount_dir)
        self.message = message.strip()
        self.non_critical = non_critical
        super().__init__(f"Failed to unmount {mount_dir}: {self.message or 'unknown error'}")


class IndexProcessingError(InjectorError):
    """Processing of one image index failed; wraps the underlying cause."""

    def __init__(self, index: int, stage: str, cause: BaseException):
        self.index = index
        self.stage = stage
        self.cause = cause
        super().__init__(f"Failed to process image index {index} ({stage}): {cause}")


class ContainerProcessingError(InjectorError):
    """A nested WIM of a disk image failed outside any single index."""

    def __init__(self, container: Path | str, cause: BaseException):
        self.container = Path(container)
        self.cause = cause
        super().__init__(f"Failed to process {self.container.name}: {cause}")


class ReclamationError(InjectorError):
    """Workspace cleanup failed. Logged and deferred, never fatal to a run."""

    def __init__(self, path: Path | str, reason: str):
        self.path = Path(path)
        self.reason = reason
        super().__init__(f"Could not reclaim {path}: {reason}")


class OperationCancelledError(InjectorError):
    """The run was cancelled by the caller. Not a failure."""

    def __init__(self, stage: str | None = None):
        self.stage = stage
        msg = "Operation was cancelled"
        if stage:
            msg += f" ({stage})"
        super().__init__(msg)
