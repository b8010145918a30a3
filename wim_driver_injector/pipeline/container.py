"""ISO pipeline: extract, process every nested WIM, re-author the ISO."""

from __future__ import annotations

import shutil
import threading
from pathlib import Path
from typing import TYPE_CHECKING, Iterable, Mapping, Optional, Sequence

from wim_driver_injector.domain.models import DiskImageResult, ImageProcessingResult, Workspace
from wim_driver_injector.logging import LoggerFactory
from wim_driver_injector.services.base import DiskImageTool, ImageServicing
from wim_driver_injector.storage.cancellation import CancellationToken
from wim_driver_injector.storage.exceptions import (
    AuthoringToolMissingError,
    ContainerProcessingError,
    InjectorError,
    NoImageContainersError,
)
from wim_driver_injector.storage.filesystem import clear_readonly, copy_tree, replace_file
from wim_driver_injector.storage.validation import find_driver_directories, find_image_containers
from wim_driver_injector.storage.workspace import WorkspaceManager

from .image_index import ImageIndexPipeline
from .reporting import NullReporter, ProgressReporter

if TYPE_CHECKING:
    from loguru import Logger


EXTRACT_DIR_NAME = "iso_extract"


def selection_for(
    selections: Optional[Mapping[str, Sequence[int]]], container: Path, tree: Path
) -> Optional[list[int]]:
    """Look up a selection by file name or by path relative to the ISO root (any case)."""
    if not selections:
        return None
    relative = container.relative_to(tree).as_posix().lower()
    for key, indexes in selections.items():
        normalized = key.replace("\\", "/").strip("/").lower()
        if normalized in (container.name.lower(), relative):
            return list(indexes)
    return None


class ContainerPipeline:
    def __init__(
        self,
        servicing: ImageServicing,
        disk_images: DiskImageTool,
        workspaces: WorkspaceManager,
        *,
        reporter: Optional[ProgressReporter] = None,
        log: Optional[Logger] = None,
    ):
        self.disk_images = disk_images
        self.workspaces = workspaces
        self.reporter = reporter or NullReporter()
        self.log = log or LoggerFactory.for_pipeline()
        self.image_pipeline = ImageIndexPipeline(
            servicing, workspaces, reporter=self.reporter, log=self.log
        )
        self.cleanup_thread: Optional[threading.Thread] = None

    def process_disk_image(
        self,
        path: Path,
        output_path: Path,
        driver_dirs: Iterable[Path],
        optimize: bool,
        cancel_token: Optional[CancellationToken] = None,
        selected_indexes_by_container: Optional[Mapping[str, Sequence[int]]] = None,
        already_mounted_root: Optional[Path] = None,
    ) -> DiskImageResult:
        """Rebuild the ISO at ``path`` with drivers injected into all of its WIMs.

        Raises:
            AuthoringToolMissingError: Neither oscdimg nor New-IsoFile is available.
            NoDriverFilesError: No driver folder contains an .inf file.
            NoImageContainersError: The ISO holds no WIM files.
            IndexProcessingError: A nested WIM failed.
            ContainerProcessingError: Copying or replacing a nested WIM failed.
            OperationCancelledError: ``cancel_token`` was cancelled.
        """
        path = Path(path)
        output_path = Path(output_path)
        token = cancel_token or CancellationToken()

        # Fail before a multi-gigabyte extraction, not after it
        if not self.disk_images.is_authoring_available():
            raise AuthoringToolMissingError()
        driver_dirs = find_driver_directories(driver_dirs, log=self.log)

        workspace = self.workspaces.new_workspace()
        result = DiskImageResult(image_path=path, output_path=output_path)
        try:
            tree = workspace.path / EXTRACT_DIR_NAME
            self._extract(path, tree, already_mounted_root, token)

            containers = find_image_containers(tree)
            if not containers:
                raise NoImageContainersError(tree)
            self.log.info(f"Found {len(containers)} WIM file(s) in {path.name}")

            for number, container in enumerate(containers):
                token.raise_if_cancelled(f"before {container.name}")
                self._phase(f"Processing {container.relative_to(tree)} ({number + 1}/{len(containers)})")
                result.containers.append(
                    self._process_nested(
                        workspace,
                        container,
                        number,
                        driver_dirs,
                        optimize,
                        token,
                        selection_for(selected_indexes_by_container, container, tree),
                    )
                )

            token.raise_if_cancelled("before creating ISO")
            self._phase(f"Creating ISO {output_path}")
            output_path.parent.mkdir(parents=True, exist_ok=True)
            if output_path.exists():
                clear_readonly(output_path)
                output_path.unlink()
            self.disk_images.author_iso(
                tree, output_path, cancel_token=token, on_progress=self.reporter.on_progress_percent
            )
            self.log.success(f"ISO created: {output_path}")
            return result
        finally:
            self.cleanup_thread = self.workspaces.reclaim_async(workspace)

    def _extract(
        self,
        image: Path,
        tree: Path,
        mounted_root: Optional[Path],
        token: CancellationToken,
    ) -> None:
        def on_copied(count: int) -> None:
            self._phase(f"Copied {count} files...")

        if mounted_root is not None:
            self._phase(f"Copying files from {mounted_root}")
            copied = copy_tree(Path(mounted_root), tree, cancel_token=token, on_copied=on_copied)
            self.log.info(f"Copied {copied} files from {mounted_root}")
            return

        self._phase(f"Mounting {image.name}")
        root = self.disk_images.mount(image)
        try:
            self._phase(f"Extracting {image.name}")
            copied = copy_tree(root, tree, cancel_token=token, on_copied=on_copied)
            self.log.info(f"Extracted {copied} files from {image.name}")
        finally:
            try:
                self.disk_images.unmount(image)
            except InjectorError as error:
                self.log.warning(f"Could not dismount {image}: {error}")

    def _process_nested(
        self,
        workspace: Workspace,
        container: Path,
        number: int,
        driver_dirs: list[Path],
        optimize: bool,
        token: CancellationToken,
        selected: Optional[list[int]],
    ) -> ImageProcessingResult:
        temp_input = workspace.temp_path(f"temp_{number}_{container.name}")
        processed = workspace.temp_path(f"processed_{number}_{container.name}")
        try:
            # Copies off a mounted ISO are read-only; DISM needs a writable file
            clear_readonly(container)
            shutil.copy2(container, temp_input)
            clear_readonly(temp_input)
            outcome = self.image_pipeline.process_container(
                temp_input,
                processed,
                driver_dirs,
                optimize,
                token,
                selected,
                container_name=container.name,
                workspace=workspace,
            )
            replace_file(processed, container)
            outcome.container_path = container
            outcome.output_path = container
            return outcome
        except InjectorError:
            raise
        except Exception as error:
            self.log.error(f"Failed to process {container.name}: {error}")
            raise ContainerProcessingError(container, error) from error
        finally:
            for leftover in (temp_input, processed):
                try:
                    leftover.unlink()
                except FileNotFoundError:
                    pass
                except OSError as error:
                    self.log.debug(f"{leftover} left for workspace cleanup: {error}")

    def _phase(self, text: str) -> None:
        self.log.debug(text)
        self.reporter.on_phase(text)
