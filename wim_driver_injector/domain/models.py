"""Domain model for driver injection runs.

Type-safe objects shared by the pipelines, the workspace manager and the
recovery sweep. Nothing in here talks to DISM or the filesystem.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import NamedTuple


SCRATCH_ROOT_NAME = "WIMDriverInjector"
MOUNT_DIR_PREFIX = "mount_"
BOOT_CONTAINER_NAME = "boot.wim"
DRIVER_DESCRIPTOR_PATTERN = "*.inf"


# ==============================================================================
# Containers
# ==============================================================================


class ContainerKind(Enum):
    """Input file type, decided by extension."""

    WIM = "wim"
    ISO = "iso"

    @classmethod
    def from_path(cls, path: Path | str) -> ContainerKind:
        suffix = Path(path).suffix.lower()
        if suffix == ".wim":
            return cls.WIM
        if suffix == ".iso":
            return cls.ISO
        raise ValueError(f"Unsupported image type '{suffix}'. Use .wim or .iso files")


class Compression(Enum):
    """DISM /Compress levels used by capture and export."""

    NONE = "none"
    MAXIMUM = "maximum"

    @classmethod
    def for_optimize(cls, optimize: bool) -> Compression:
        return cls.MAXIMUM if optimize else cls.NONE


@dataclass(frozen=True)
class ImageIndex:
    """One installable image inside a WIM container."""

    index: int
    name: str

    def label(self) -> str:
        return f"Index {self.index}: {self.name}" if self.name else f"Index {self.index}"


def is_boot_container(name: str | Path) -> bool:
    """Boot containers are never partially rebuilt."""
    return Path(name).name.lower() == BOOT_CONTAINER_NAME


# ==============================================================================
# Mounts & Workspaces
# ==============================================================================


class MountState(Enum):
    MOUNTING = "mounting"
    MOUNTED = "mounted"
    # Tool reported failure but may have left a half-mounted directory behind
    MOUNT_FAILED = "mount_failed"
    UNMOUNTED = "unmounted"
    DEFERRED = "deferred"
    LEAKED = "leaked"


@dataclass
class MountSession:
    """An image index mounted (or formerly mounted) into a workspace directory."""

    container_path: Path
    index: int
    mount_dir: Path
    state: MountState = MountState.MOUNTING

    @property
    def is_mounted(self) -> bool:
        return self.state == MountState.MOUNTED

    @property
    def needs_unmount(self) -> bool:
        """True while DISM may still hold the mount directory."""
        return self.state in (
            MountState.MOUNTING,
            MountState.MOUNTED,
            MountState.MOUNT_FAILED,
        )


@dataclass
class Workspace:
    """Private scratch directory owned by exactly one pipeline run."""

    path: Path
    created_at: datetime = field(default_factory=datetime.now)
    backing_volume: Path | None = None
    sessions: list[MountSession] = field(default_factory=list)
    temp_copies: list[Path] = field(default_factory=list)
    pending_unmounts: list[threading.Thread] = field(default_factory=list, repr=False)

    @property
    def id(self) -> str:
        return self.path.name

    def mount_dir(self, index: int) -> Path:
        """Mount directory for ``index`` not used by any earlier session.

        Several containers processed in one workspace can share index numbers,
        and an earlier unmount may still be draining in the background.
        """
        used = {session.mount_dir for session in self.sessions}
        candidate = self.path / f"{MOUNT_DIR_PREFIX}{index}"
        suffix = 1
        while candidate in used:
            suffix += 1
            candidate = self.path / f"{MOUNT_DIR_PREFIX}{index}_{suffix}"
        return candidate

    def temp_path(self, name: str) -> Path:
        """Path for a temporary file inside the workspace, tracked for cleanup."""
        path = self.path / name
        if path not in self.temp_copies:
            self.temp_copies.append(path)
        return path

    def active_sessions(self) -> list[MountSession]:
        return [session for session in self.sessions if session.needs_unmount]

    def mounted_session_for(self, container_path: Path) -> MountSession | None:
        target = _normalize(container_path)
        for session in self.sessions:
            if session.is_mounted and _normalize(session.container_path) == target:
                return session
        return None


def _normalize(path: Path) -> str:
    return str(Path(path).resolve()).lower()


class ReclaimOutcome(Enum):
    RECLAIMED = "reclaimed"
    DEFERRED = "deferred"


@dataclass
class DeferredCleanupEntry:
    """A path that will be removed by a self-deleting startup task."""

    path: Path
    task_name: str
    script_path: Path | None = None
    registered_at: datetime = field(default_factory=datetime.now)
    scheduled: bool = False


# ==============================================================================
# Pipeline results
# ==============================================================================


class IndexStage(Enum):
    """Per-index state machine of the image pipeline."""

    UNMOUNTED = "unmounted"
    MOUNTED = "mounted"
    DRIVERS_INJECTED = "drivers_injected"
    EXPORTED = "exported"
    FINISHED = "finished"
    ABORTED = "aborted"


@dataclass
class DriverInjectionSummary:
    succeeded: list[Path] = field(default_factory=list)
    failed: dict[Path, str] = field(default_factory=dict)
    skipped: list[Path] = field(default_factory=list)

    @property
    def folders_processed(self) -> int:
        return len(self.succeeded) + len(self.failed)

    @property
    def has_failures(self) -> bool:
        return bool(self.failed)


@dataclass
class IndexOutcome:
    image: ImageIndex
    stage: IndexStage = IndexStage.UNMOUNTED
    drivers: DriverInjectionSummary = field(default_factory=DriverInjectionSummary)


@dataclass
class ImageProcessingResult:
    container_path: Path
    output_path: Path
    optimized: bool
    indexes: list[IndexOutcome] = field(default_factory=list)

    @property
    def exported_count(self) -> int:
        return sum(
            1
            for outcome in self.indexes
            if outcome.stage in (IndexStage.EXPORTED, IndexStage.FINISHED)
        )

    @property
    def driver_failures(self) -> dict[Path, str]:
        failures: dict[Path, str] = {}
        for outcome in self.indexes:
            failures.update(outcome.drivers.failed)
        return failures


@dataclass
class DiskImageResult:
    image_path: Path
    output_path: Path
    containers: list[ImageProcessingResult] = field(default_factory=list)


class SweepResult(NamedTuple):
    needs_restart: bool
    summary: str
