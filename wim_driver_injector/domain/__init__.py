"""Domain models for driver injection runs."""

from __future__ import annotations

from .models import (
    BOOT_CONTAINER_NAME,
    MOUNT_DIR_PREFIX,
    SCRATCH_ROOT_NAME,
    Compression,
    ContainerKind,
    DeferredCleanupEntry,
    DiskImageResult,
    DriverInjectionSummary,
    ImageIndex,
    ImageProcessingResult,
    IndexOutcome,
    IndexStage,
    MountSession,
    MountState,
    ReclaimOutcome,
    SweepResult,
    Workspace,
    is_boot_container,
)


__all__ = [
    "BOOT_CONTAINER_NAME",
    "MOUNT_DIR_PREFIX",
    "SCRATCH_ROOT_NAME",
    "Compression",
    "ContainerKind",
    "DeferredCleanupEntry",
    "DiskImageResult",
    "DriverInjectionSummary",
    "ImageIndex",
    "ImageProcessingResult",
    "IndexOutcome",
    "IndexStage",
    "MountSession",
    "MountState",
    "ReclaimOutcome",
    "SweepResult",
    "Workspace",
    "is_boot_container",
]
