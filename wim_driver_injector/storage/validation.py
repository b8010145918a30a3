"""Precondition checks that run before anything is mounted or modified."""

from __future__ import annotations

import os
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

from wim_driver_injector.logging import LoggerFactory

from .exceptions import ContainerNotWritableError, NoDriverFilesError
from .filesystem import clear_readonly

if TYPE_CHECKING:
    from loguru import Logger


log = LoggerFactory.for_pipeline(job_id="-")


def _iter_files(root: Path, suffix: str) -> Iterable[Path]:
    for dirpath, _dirnames, filenames in os.walk(root):
        for name in filenames:
            if name.lower().endswith(suffix):
                yield Path(dirpath) / name


def count_driver_files(driver_dir: Path) -> int:
    """Number of ``*.inf`` descriptors below ``driver_dir`` (any case)."""
    return sum(1 for _ in _iter_files(driver_dir, ".inf"))


def find_driver_directories(
    driver_dirs: Iterable[Path | str], *, log: Logger = log
) -> list[Path]:
    """Driver folders that exist and contain at least one ``*.inf`` file.

    Missing or empty folders are skipped with a warning.

    Raises:
        NoDriverFilesError: None of the folders qualifies.
    """
    requested = [Path(path) for path in driver_dirs]
    valid: list[Path] = []
    for driver_dir in requested:
        if not driver_dir.is_dir():
            log.warning(f"Driver directory not found: {driver_dir}")
            continue
        count = count_driver_files(driver_dir)
        if count == 0:
            log.warning(f"No .inf files found in {driver_dir}")
            continue
        log.info(f"Found {count} .inf file(s) in {driver_dir}")
        valid.append(driver_dir)
    if not valid:
        raise NoDriverFilesError(requested)
    return valid


def find_image_containers(tree: Path) -> list[Path]:
    """Every ``*.wim`` below ``tree``, in a stable order."""
    return sorted(_iter_files(tree, ".wim"), key=lambda path: str(path).lower())


def ensure_container_writable(path: Path) -> None:
    """Clear the read-only attribute and make sure nobody else holds the file.

    Raises:
        ContainerNotWritableError: The file is missing, read-only or locked.
    """
    if not path.is_file():
        raise ContainerNotWritableError(path, "file does not exist")
    try:
        clear_readonly(path)
        with open(path, "r+b"):
            pass
    except OSError as error:
        raise ContainerNotWritableError(path, str(error)) from error
