"""Registry of workspaces owned by pipeline runs in this process.

The recovery sweep may run while a pipeline is active. Both use the same
scratch root, so the sweep consults this registry and leaves live workspaces
alone.

Usage:
    from wim_driver_injector.storage.workspace_registry import active_workspace, is_workspace_active

    with active_workspace(workspace.path):
        ...

    if is_workspace_active(candidate):
        continue
"""

from __future__ import annotations

import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from wim_driver_injector.logging import LoggerFactory


log = LoggerFactory.for_workspace()

# Lock for thread-safe access to the registry
_lock = threading.Lock()

_active: dict[str, int] = {}


def _key(path: Path) -> str:
    return os.path.normcase(os.path.abspath(str(path)))


def register_workspace(path: Path) -> None:
    with _lock:
        key = _key(path)
        _active[key] = _active.get(key, 0) + 1
        log.debug(f"Workspace registered: {path}")


def release_workspace(path: Path) -> None:
    with _lock:
        key = _key(path)
        count = _active.get(key, 0) - 1
        if count > 0:
            _active[key] = count
        else:
            _active.pop(key, None)
        log.debug(f"Workspace released: {path}")


@contextmanager
def active_workspace(path: Path) -> Generator[None, None, None]:
    """Mark ``path`` as in use for the duration of the block."""
    register_workspace(path)
    try:
        yield
    finally:
        release_workspace(path)


def is_workspace_active(path: Path) -> bool:
    with _lock:
        return _key(path) in _active


def active_workspaces() -> list[str]:
    with _lock:
        return list(_active)
