"""Capability interfaces the pipelines and cleanup code depend on.

The Windows implementations live next to this module (``dism``,
``disk_image``, ``deferred``); tests substitute in-memory fakes.
"""

from __future__ import annotations

from pathlib import Path
from typing import Callable, Optional, Protocol

from wim_driver_injector.domain.models import Compression, DeferredCleanupEntry, ImageIndex
from wim_driver_injector.storage.cancellation import CancellationToken


ProgressCallback = Callable[[int], None]
StatusCallback = Callable[[str], None]


class ImageServicing(Protocol):
    """Mount, modify and (re)capture images inside WIM containers."""

    def get_indexes(
        self, container: Path, *, cancel_token: Optional[CancellationToken] = None
    ) -> list[ImageIndex]: ...

    def mount(
        self,
        container: Path,
        index: int,
        mount_dir: Path,
        *,
        cancel_token: Optional[CancellationToken] = None,
    ) -> None: ...

    def unmount(
        self,
        mount_dir: Path,
        commit: bool = False,
        *,
        timeout: Optional[float] = None,
    ) -> None: ...

    def add_driver(
        self,
        mount_dir: Path,
        driver_dir: Path,
        recursive: bool = True,
        *,
        cancel_token: Optional[CancellationToken] = None,
    ) -> None: ...

    def capture_image(
        self,
        mount_dir: Path,
        output: Path,
        name: str,
        compress: Compression,
        *,
        cancel_token: Optional[CancellationToken] = None,
        on_progress: Optional[ProgressCallback] = None,
        on_status: Optional[StatusCallback] = None,
    ) -> None: ...

    def export_image(
        self,
        source: Path,
        source_index: int,
        destination: Path,
        compress: Optional[Compression] = None,
        *,
        cancel_token: Optional[CancellationToken] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> None: ...


class DiskImageTool(Protocol):
    """Mount ISO files and author new ones."""

    def mount(self, image: Path) -> Path: ...

    def unmount(self, image: Path) -> None: ...

    def author_iso(
        self,
        source_tree: Path,
        output: Path,
        *,
        cancel_token: Optional[CancellationToken] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> None: ...

    def is_authoring_available(self) -> bool: ...


class StartupDeferral(Protocol):
    """Remove a path at the next system start, then remove the task itself."""

    def register_self_deleting_startup_task(self, path: Path) -> DeferredCleanupEntry: ...
