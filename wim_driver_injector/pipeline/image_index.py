"""Per-index mount -> inject -> export -> unmount sequencing for one WIM.

DISM locks a WIM exclusively while any of its indexes is mounted, so indexes
are processed strictly one after another. Every index is re-captured into a
brand new aggregate WIM in the workspace; the source container is never
written to. The aggregate replaces the destination only at the very end.
"""

from __future__ import annotations

import os
import threading
from pathlib import Path
from typing import TYPE_CHECKING, Iterable, Optional, Sequence

from wim_driver_injector.domain.models import (
    Compression,
    DriverInjectionSummary,
    ImageIndex,
    ImageProcessingResult,
    IndexOutcome,
    IndexStage,
    MountSession,
    Workspace,
    is_boot_container,
)
from wim_driver_injector.logging import EventLogger, LoggerFactory
from wim_driver_injector.services.base import ImageServicing
from wim_driver_injector.storage.cancellation import CancellationToken
from wim_driver_injector.storage.exceptions import (
    IndexProcessingError,
    MountError,
    OperationCancelledError,
    PreconditionError,
    ToolInvocationError,
)
from wim_driver_injector.storage.filesystem import replace_file
from wim_driver_injector.storage.validation import find_driver_directories
from wim_driver_injector.storage.workspace import WorkspaceManager

from .reporting import NullReporter, ProgressReporter

if TYPE_CHECKING:
    from loguru import Logger


OPTIMIZED_NAME = "temp_optimized.wim"


def select_indexes(
    images: Sequence[ImageIndex],
    container_name: str,
    selected: Optional[Iterable[int]],
    *,
    log: Optional[Logger] = None,
) -> list[ImageIndex]:
    """Apply a caller selection; boot containers always keep every index."""
    if is_boot_container(container_name):
        if selected and log is not None:
            log.info(f"{container_name}: processing all indexes, selection ignored")
        return list(images)
    if not selected:
        return list(images)
    wanted = set(selected)
    chosen = [image for image in images if image.index in wanted]
    missing = wanted - {image.index for image in chosen}
    if missing and log is not None:
        log.warning(f"{container_name}: selected index(es) not found: {sorted(missing)}")
    return chosen


def _same_path(first: Path, second: Path) -> bool:
    return os.path.normcase(str(Path(first).resolve())) == os.path.normcase(
        str(Path(second).resolve())
    )


class ImageIndexPipeline:
    def __init__(
        self,
        servicing: ImageServicing,
        workspaces: WorkspaceManager,
        *,
        reporter: Optional[ProgressReporter] = None,
        log: Optional[Logger] = None,
    ):
        self.servicing = servicing
        self.workspaces = workspaces
        self.reporter = reporter or NullReporter()
        self.log = log or LoggerFactory.for_pipeline()
        self.cleanup_thread: Optional[threading.Thread] = None

    def process_container(
        self,
        path: Path,
        output_path: Path,
        driver_dirs: Iterable[Path],
        optimize: bool,
        cancel_token: Optional[CancellationToken] = None,
        selected_indexes: Optional[Iterable[int]] = None,
        *,
        container_name: Optional[str] = None,
        workspace: Optional[Workspace] = None,
    ) -> ImageProcessingResult:
        """Inject drivers into every (selected) index of ``path`` and write ``output_path``.

        When no ``workspace`` is supplied the pipeline creates its own and
        reclaims it on a background thread afterwards (``cleanup_thread``).

        Raises:
            NoDriverFilesError: No driver folder contains an .inf file.
            IndexProcessingError: An index failed; wraps the tool diagnostic.
            OperationCancelledError: ``cancel_token`` was cancelled.
        """
        path = Path(path)
        output_path = Path(output_path)
        token = cancel_token or CancellationToken()
        name = container_name or path.name
        requested_dirs = [Path(driver_dir) for driver_dir in driver_dirs]
        valid_dirs = find_driver_directories(requested_dirs, log=self.log)
        skipped = [driver_dir for driver_dir in requested_dirs if driver_dir not in valid_dirs]

        owns_workspace = workspace is None
        if workspace is None:
            workspace = self.workspaces.new_workspace()
        aggregate = workspace.temp_path(f"new_{output_path.name}")
        result = ImageProcessingResult(container_path=path, output_path=output_path, optimized=optimize)

        try:
            token.raise_if_cancelled("reading image information")
            self._phase(f"Reading image information from {name}")
            images = select_indexes(
                self.servicing.get_indexes(path, cancel_token=token),
                name,
                selected_indexes,
                log=self.log,
            )
            if not images:
                raise PreconditionError(f"No image indexes to process in {name}")
            self.log.info(f"Processing {len(images)} index(es) of {name}")

            for position, image in enumerate(images):
                outcome = self._process_index(
                    workspace,
                    path,
                    name,
                    image,
                    valid_dirs,
                    aggregate,
                    first=position == 0,
                    more_follow=position < len(images) - 1,
                    optimize=optimize,
                    token=token,
                )
                outcome.drivers.skipped = list(skipped)
                result.indexes.append(outcome)

            token.raise_if_cancelled("finalizing output")
            self._finalize(workspace, path, aggregate, output_path, len(images), optimize, token)
            self.log.success(
                f"{name}: {result.exported_count} index(es) written to {output_path}"
            )
            return result
        finally:
            self._discard_temp(aggregate)
            if owns_workspace:
                self.cleanup_thread = self.workspaces.reclaim_async(workspace)

    def _process_index(
        self,
        workspace: Workspace,
        path: Path,
        name: str,
        image: ImageIndex,
        driver_dirs: list[Path],
        aggregate: Path,
        *,
        first: bool,
        more_follow: bool,
        optimize: bool,
        token: CancellationToken,
    ) -> IndexOutcome:
        outcome = IndexOutcome(image=image)
        session: Optional[MountSession] = None
        step = "mount"
        try:
            token.raise_if_cancelled(f"before mounting index {image.index}")
            self._phase(f"Mounting {name} {image.label()}")
            session = self.workspaces.open_mount(workspace, path, image.index, cancel_token=token)
            self._advance(outcome, name, IndexStage.MOUNTED)

            step = "inject"
            token.raise_if_cancelled(f"index {image.index} mounted")
            outcome.drivers = self._inject_drivers(session, driver_dirs, token)
            self._advance(outcome, name, IndexStage.DRIVERS_INJECTED)

            step = "export"
            token.raise_if_cancelled(f"drivers injected into index {image.index}")
            self._export(workspace, session, image, name, aggregate, first, optimize, token)
            self._advance(outcome, name, IndexStage.EXPORTED)

            # Discard: the capture already holds the result. The next index
            # cannot be mounted until this unmount has released the WIM.
            step = "unmount"
            if more_follow:
                self._phase(f"Unmounting {image.label()}")
                if not self.workspaces.discard_mount(workspace, session, wait=True):
                    raise MountError(f"Index {image.index} of {name} could not be unmounted")
            else:
                self.workspaces.discard_mount(workspace, session, wait=False)
            self._advance(outcome, name, IndexStage.FINISHED)

            token.raise_if_cancelled(f"index {image.index} finished")
            return outcome
        except OperationCancelledError:
            outcome.stage = IndexStage.ABORTED
            self._abort(workspace, session)
            raise
        except Exception as error:
            outcome.stage = IndexStage.ABORTED
            self._abort(workspace, session)
            self.log.error(f"Failed to process image index {image.index} ({step}): {error}")
            raise IndexProcessingError(image.index, step, error) from error

    def _advance(self, outcome: IndexOutcome, name: str, stage: IndexStage) -> None:
        outcome.stage = stage
        EventLogger.log_index_stage(self.log, name, outcome.image.index, stage.value)

    def _abort(self, workspace: Workspace, session: Optional[MountSession]) -> None:
        if session is not None and session.needs_unmount:
            self.log.warning(f"Discarding mount {session.mount_dir} after failure")
            self.workspaces.discard_mount(workspace, session, wait=False)

    def _inject_drivers(
        self, session: MountSession, driver_dirs: list[Path], token: CancellationToken
    ) -> DriverInjectionSummary:
        summary = DriverInjectionSummary()
        for driver_dir in driver_dirs:
            token.raise_if_cancelled("injecting drivers")
            self._phase(f"Adding drivers from {driver_dir}")
            try:
                self.servicing.add_driver(
                    session.mount_dir, driver_dir, recursive=True, cancel_token=token
                )
            except ToolInvocationError as error:
                reason = error.output or str(error)
                summary.failed[driver_dir] = reason
                EventLogger.log_driver_failed(self.log, str(driver_dir), reason)
                continue
            summary.succeeded.append(driver_dir)
            self.log.info(f"Drivers added from {driver_dir}")

        self.log.info(
            f"Driver injection summary for index {session.index}: "
            f"{summary.folders_processed} folder(s) processed, "
            f"{len(summary.succeeded)} succeeded, {len(summary.failed)} failed"
        )
        return summary

    def _export(
        self,
        workspace: Workspace,
        session: MountSession,
        image: ImageIndex,
        name: str,
        aggregate: Path,
        first: bool,
        optimize: bool,
        token: CancellationToken,
    ) -> None:
        compression = Compression.for_optimize(optimize)
        image_name = image.name or f"Image {image.index}"

        def on_status(text: str) -> None:
            self._phase(f"Capturing {image.label()}: {text}")

        if first:
            self._phase(f"Capturing {image.label()} into new image")
            self._discard_temp(aggregate)
            self.servicing.capture_image(
                session.mount_dir,
                aggregate,
                image_name,
                compression,
                cancel_token=token,
                on_progress=self.reporter.on_progress_percent,
                on_status=on_status,
            )
            return

        # Later indexes: capture to a single-index WIM, then append it
        single = workspace.temp_path(f"temp_append_{name}")
        try:
            self._discard_temp(single)
            self._phase(f"Capturing {image.label()}")
            self.servicing.capture_image(
                session.mount_dir,
                single,
                image_name,
                compression,
                cancel_token=token,
                on_progress=self.reporter.on_progress_percent,
                on_status=on_status,
            )
            token.raise_if_cancelled(f"index {image.index} captured")
            self._phase(f"Appending {image.label()} to output image")
            self.servicing.export_image(single, 1, aggregate, None, cancel_token=token)
        finally:
            self._discard_temp(single)

    def _finalize(
        self,
        workspace: Workspace,
        source: Path,
        aggregate: Path,
        output_path: Path,
        count: int,
        optimize: bool,
        token: CancellationToken,
    ) -> None:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        if not optimize:
            self._phase(f"Writing {output_path}")
            self._replace_output(workspace, source, aggregate, output_path)
            return

        optimized = workspace.temp_path(OPTIMIZED_NAME)
        try:
            self._discard_temp(optimized)
            for index in range(1, count + 1):
                token.raise_if_cancelled("optimizing output image")
                self._phase(f"Optimizing output image ({index}/{count}, maximum compression)")
                self.servicing.export_image(
                    aggregate,
                    index,
                    optimized,
                    Compression.MAXIMUM,
                    cancel_token=token,
                    on_progress=self.reporter.on_progress_percent,
                )
            self._replace_output(workspace, source, optimized, output_path)
        finally:
            self._discard_temp(optimized)

    def _replace_output(
        self, workspace: Workspace, source: Path, new_image: Path, output_path: Path
    ) -> None:
        # Writing over the input: DISM holds it until the last index is unmounted
        if _same_path(source, output_path) and not self.workspaces.wait_for_unmounts(workspace):
            raise MountError(f"{source.name} is still mounted and cannot be replaced")
        replace_file(new_image, output_path)

    def _discard_temp(self, path: Path) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as error:
            self.log.debug(f"Temporary file {path} left for workspace cleanup: {error}")

    def _phase(self, text: str) -> None:
        self.log.debug(text)
        self.reporter.on_phase(text)
