"""Single entry point that picks the pipeline from the input file type."""

from __future__ import annotations

from functools import partial
from pathlib import Path
from typing import TYPE_CHECKING, Iterable, Mapping, Optional, Sequence, Union

from wim_driver_injector.domain.models import ContainerKind, DiskImageResult, ImageProcessingResult
from wim_driver_injector.logging import LoggerFactory
from wim_driver_injector.services.base import DiskImageTool, ImageServicing, StartupDeferral
from wim_driver_injector.storage.cancellation import CancellationToken
from wim_driver_injector.storage.workspace import WorkspaceManager

from .container import ContainerPipeline
from .image_index import ImageIndexPipeline
from .reporting import ProgressReporter

if TYPE_CHECKING:
    from loguru import Logger


# Selection key that applies to a plain WIM whatever its file name
ANY_CONTAINER = ""


def selection_for_wim(
    selections: Optional[Mapping[str, Sequence[int]]], path: Path
) -> Optional[list[int]]:
    if not selections:
        return None
    for key, indexes in selections.items():
        if key == ANY_CONTAINER or key.lower() == path.name.lower():
            return list(indexes)
    return None


def inject_drivers(
    input_path: Path,
    output_path: Path,
    driver_dirs: Iterable[Path],
    *,
    servicing: ImageServicing,
    disk_images: DiskImageTool,
    deferral: StartupDeferral,
    optimize: bool = True,
    cancel_token: Optional[CancellationToken] = None,
    selected_indexes: Optional[Mapping[str, Sequence[int]]] = None,
    mounted_root: Optional[Path] = None,
    scratch_root: Optional[Path] = None,
    workspaces: Optional[WorkspaceManager] = None,
    reporter: Optional[ProgressReporter] = None,
    wait_for_cleanup: bool = True,
    log: Optional[Logger] = None,
) -> Union[ImageProcessingResult, DiskImageResult]:
    """Inject drivers into a .wim or .iso file.

    ``selected_indexes`` maps a WIM file name (or ``""`` for a plain WIM
    input) to the indexes to process. When ``wait_for_cleanup`` is set the
    call returns only after the scratch workspace has been reclaimed or
    deferred.

    Raises:
        ValueError: The input is neither a .wim nor an .iso file.
    """
    input_path = Path(input_path)
    kind = ContainerKind.from_path(input_path)
    log = log or LoggerFactory.for_pipeline(input=input_path.name)
    if workspaces is None:
        workspaces = WorkspaceManager(servicing, deferral, scratch_root=scratch_root)

    if kind is ContainerKind.WIM:
        pipeline = ImageIndexPipeline(servicing, workspaces, reporter=reporter, log=log)
        runner = partial(
            pipeline.process_container,
            input_path,
            Path(output_path),
            driver_dirs,
            optimize,
            cancel_token,
            selection_for_wim(selected_indexes, input_path),
        )
    else:
        pipeline = ContainerPipeline(
            servicing, disk_images, workspaces, reporter=reporter, log=log
        )
        runner = partial(
            pipeline.process_disk_image,
            input_path,
            Path(output_path),
            driver_dirs,
            optimize,
            cancel_token,
            selected_indexes,
            mounted_root,
        )

    try:
        return runner()
    finally:
        thread = pipeline.cleanup_thread
        if wait_for_cleanup and thread is not None:
            log.debug("Waiting for workspace cleanup to finish")
            thread.join()
