"""DISM-backed image servicing.

Every call is a single ``dism.exe`` invocation. Failures are raised as
:class:`ToolInvocationError` carrying DISM's own diagnostic text; unmount
failures are raised as :class:`UnmountFailedError` flagged ``non_critical``
when DISM merely reports that nothing is mounted any more.
"""

from __future__ import annotations

import time
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from wim_driver_injector.config import settings
from wim_driver_injector.domain.models import Compression, ImageIndex
from wim_driver_injector.logging import LoggerFactory
from wim_driver_injector.storage.cancellation import CancellationToken
from wim_driver_injector.storage.exceptions import ToolInvocationError, UnmountFailedError
from wim_driver_injector.storage.filesystem import directory_size
from wim_driver_injector.storage.process import (
    CommandResult,
    format_command,
    run_command,
    run_with_progress,
)

from .base import ProgressCallback, StatusCallback

if TYPE_CHECKING:
    from loguru import Logger


UNMOUNT_NON_CRITICAL_MARKERS = (
    "the request is not supported",
    "error: 50",
    "not mounted",
    "does not exist",
)

ADMIN_HINT = "DISM mount usually requires running the application as Administrator."


def parse_wim_info(output: str) -> list[ImageIndex]:
    """Parse ``/Get-WimInfo`` output into image indexes.

    DISM prints blocks of ``Index : N`` followed by ``Name : ...``.
    """
    images: list[ImageIndex] = []
    pending: Optional[int] = None
    for raw_line in output.splitlines():
        line = raw_line.strip()
        key, sep, value = line.partition(":")
        if not sep:
            continue
        key = key.strip().lower()
        value = value.strip()
        if key == "index":
            if pending is not None:
                images.append(ImageIndex(pending, ""))
            try:
                pending = int(value)
            except ValueError:
                pending = None
        elif key == "name" and pending is not None:
            images.append(ImageIndex(pending, value))
            pending = None
    if pending is not None:
        images.append(ImageIndex(pending, ""))
    return images


def is_non_critical_unmount_error(text: str) -> bool:
    lowered = text.lower()
    return any(marker in lowered for marker in UNMOUNT_NON_CRITICAL_MARKERS)


class DismServicing:
    def __init__(
        self,
        dism_path: Optional[str] = None,
        *,
        post_unmount_delay: Optional[float] = None,
        log: Optional[Logger] = None,
    ):
        self.dism_path = dism_path or settings.get_setting("dism_path") or "dism.exe"
        if post_unmount_delay is None:
            post_unmount_delay = settings.get_float("post_unmount_delay_seconds", 0.5)
        self.post_unmount_delay = post_unmount_delay
        self.log = log or LoggerFactory.for_tools("dism")

    def _command(self, *args: object) -> list[str]:
        return [self.dism_path, *(str(arg) for arg in args)]

    def _check(
        self,
        result: CommandResult,
        *,
        stage: str,
        index: Optional[int] = None,
        hint: str = "",
    ) -> CommandResult:
        if result.returncode != 0:
            raise ToolInvocationError(
                result.command,
                result.returncode,
                result.error_text(),
                stage=stage,
                index=index,
                hint=hint,
            )
        return result

    def get_indexes(
        self, container: Path, *, cancel_token: Optional[CancellationToken] = None
    ) -> list[ImageIndex]:
        command = self._command("/Get-WimInfo", f"/WimFile:{container}")
        self.log.info(f"Executing: {format_command(command)}")
        result = self._check(run_command(command, cancel_token=cancel_token), stage="get-info")
        images = parse_wim_info(result.stdout)
        self.log.debug(f"Found {len(images)} image(s) in {container}")
        return images

    def mount(
        self,
        container: Path,
        index: int,
        mount_dir: Path,
        *,
        cancel_token: Optional[CancellationToken] = None,
    ) -> None:
        command = self._command(
            "/Mount-Wim", f"/WimFile:{container}", f"/Index:{index}", f"/MountDir:{mount_dir}"
        )
        self.log.info(f"Executing: {format_command(command)}")
        result = run_command(command, cancel_token=cancel_token)
        # An empty failure is what DISM produces without elevation
        hint = ADMIN_HINT if not result.error_text() else ""
        self._check(result, stage="mount", index=index, hint=hint)

    def unmount(
        self,
        mount_dir: Path,
        commit: bool = False,
        *,
        timeout: Optional[float] = None,
    ) -> None:
        command = self._command(
            "/Unmount-Wim", f"/MountDir:{mount_dir}", "/Commit" if commit else "/Discard"
        )
        self.log.info(f"Executing: {format_command(command)}")
        result = run_command(command, timeout=timeout)
        if result.returncode != 0:
            text = result.error_text()
            raise UnmountFailedError(
                mount_dir, text, non_critical=is_non_critical_unmount_error(text)
            )
        if self.post_unmount_delay > 0:
            time.sleep(self.post_unmount_delay)

    def add_driver(
        self,
        mount_dir: Path,
        driver_dir: Path,
        recursive: bool = True,
        *,
        cancel_token: Optional[CancellationToken] = None,
    ) -> None:
        args: list[object] = [f"/Image:{mount_dir}", "/Add-Driver", f"/Driver:{driver_dir}"]
        if recursive:
            args.append("/Recurse")
        command = self._command(*args)
        self.log.info(f"Executing: {format_command(command)}")
        self._check(run_command(command, cancel_token=cancel_token), stage="add-driver")

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
    ) -> None:
        command = self._command(
            "/Capture-Image",
            f"/ImageFile:{output}",
            f"/CaptureDir:{mount_dir}",
            f"/Name:{name}",
            f"/Compress:{compress.value}",
        )
        self.log.info(f"Executing: {format_command(command)}")
        result = run_with_progress(
            command,
            output_path=output,
            source_size=directory_size(mount_dir),
            on_progress=on_progress,
            on_status=on_status,
            cancel_token=cancel_token,
        )
        self._check(result, stage="capture")

    def export_image(
        self,
        source: Path,
        source_index: int,
        destination: Path,
        compress: Optional[Compression] = None,
        *,
        cancel_token: Optional[CancellationToken] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> None:
        args: list[object] = [
            "/Export-Image",
            f"/SourceImageFile:{source}",
            f"/SourceIndex:{source_index}",
            f"/DestinationImageFile:{destination}",
        ]
        # Appending to an existing WIM must not pass /Compress (DISM keeps the
        # destination's compression)
        if compress is not None:
            args.append(f"/Compress:{compress.value}")
        command = self._command(*args)
        self.log.info(f"Executing: {format_command(command)}")
        result = run_with_progress(
            command, on_progress=on_progress, cancel_token=cancel_token
        )
        self._check(result, stage="export", index=source_index)
