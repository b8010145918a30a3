"""Filesystem helpers for scratch directories that DISM has been touching.

Files left behind by DISM are frequently read-only, owned by TrustedInstaller
or briefly locked by the servicing stack. These helpers reset attributes and
ownership, probe for locks and escalate to a forced delete when a plain delete
keeps failing.
"""

from __future__ import annotations

import os
import shutil
import stat
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Callable

from wim_driver_injector.logging import LoggerFactory

from .cancellation import CancellationToken
from .exceptions import InjectorError
from .retry import RetryPolicy, retry_operation

if TYPE_CHECKING:
    from loguru import Logger


log = LoggerFactory.for_system()

COPY_REPORT_EVERY = 100


def is_windows() -> bool:
    return os.name == "nt"


def clear_readonly(path: Path) -> None:
    """Make ``path`` writable (FileAttributes.Normal on Windows)."""
    mode = path.stat().st_mode
    if not mode & stat.S_IWRITE:
        path.chmod(mode | stat.S_IWRITE)


def is_file_locked(path: Path) -> bool:
    """True when the file exists but cannot be opened for read/write."""
    try:
        with open(path, "r+b"):
            return False
    except FileNotFoundError:
        return False
    except OSError:
        return True


def directory_size(path: Path) -> int:
    total = 0
    for dirpath, _dirnames, filenames in os.walk(path):
        for name in filenames:
            try:
                total += (Path(dirpath) / name).stat().st_size
            except OSError:
                continue
    return total


def take_ownership(path: Path, *, log: Logger = log) -> bool:
    """Reset ownership and grant full control on ``path`` and everything below it.

    Windows: ``takeown /R`` followed by ``icacls /grant Administrators:F``.
    Elsewhere the owner write/execute bits are added instead.
    """
    # Imported here: process -> progress -> filesystem would be circular
    from .process import run_command

    if not path.exists():
        return True
    if is_windows():
        ok = True
        for command in (
            ["takeown", "/F", str(path), "/R", "/D", "Y"],
            ["icacls", str(path), "/grant", "Administrators:F", "/T", "/C", "/Q"],
        ):
            try:
                result = run_command(command)
            except InjectorError as error:
                log.debug(f"{command[0]} could not run on {path}: {error}")
                ok = False
                continue
            if result.returncode != 0:
                log.debug(f"{command[0]} exited {result.returncode} for {path}: {result.error_text()}")
                ok = False
        return ok

    ok = True
    for dirpath, dirnames, filenames in os.walk(path):
        for name in [""] + dirnames + filenames:
            target = Path(dirpath) / name if name else Path(dirpath)
            try:
                mode = target.lstat().st_mode
                extra = stat.S_IRWXU if stat.S_ISDIR(mode) else stat.S_IRUSR | stat.S_IWUSR
                target.chmod(mode | extra)
            except OSError as error:
                log.debug(f"Could not reset permissions on {target}: {error}")
                ok = False
    return ok


def _make_writable_and_retry(func: Callable, target: str, _error) -> None:
    os.chmod(target, stat.S_IWRITE | stat.S_IREAD | stat.S_IEXEC)
    func(target)


def force_delete(path: Path, *, log: Logger = log) -> bool:
    """Last-resort delete. Returns True when ``path`` no longer exists.

    Windows: ``Remove-Item -Recurse -Force`` through PowerShell, which copes
    with long paths and attributes that ``os.remove`` trips over.
    """
    from .process import run_command

    if not path.exists():
        return True
    if is_windows():
        escaped = str(path).replace("'", "''")
        command = [
            "powershell",
            "-NoProfile",
            "-NonInteractive",
            "-Command",
            f"Remove-Item -LiteralPath '{escaped}' -Recurse -Force -ErrorAction Stop",
        ]
        try:
            result = run_command(command)
        except InjectorError as error:
            log.debug(f"Forced delete could not run for {path}: {error}")
            return False
        if result.returncode != 0:
            log.debug(f"Forced delete failed for {path}: {result.error_text()}")
    else:
        try:
            if path.is_dir() and not path.is_symlink():
                if sys.version_info >= (3, 12):
                    shutil.rmtree(path, onexc=_make_writable_and_retry)
                else:
                    shutil.rmtree(path, onerror=_make_writable_and_retry)
            else:
                clear_readonly(path)
                path.unlink()
        except OSError as error:
            log.debug(f"Forced delete failed for {path}: {error}")
    return not path.exists()


def delete_file(
    path: Path,
    policy: RetryPolicy,
    *,
    sleep: Callable[[float], None],
    log: Logger = log,
) -> bool:
    """Delete one file with retries, escalating to a forced delete on access denied."""
    if is_file_locked(path):
        log.debug(f"File is locked, will retry: {path}")

    def remove() -> None:
        if path.exists() or path.is_symlink():
            try:
                clear_readonly(path)
            except OSError:
                pass
            path.unlink()

    def escalate(error: BaseException, attempt: int) -> bool:
        if isinstance(error, PermissionError):
            return force_delete(path, log=log)
        return False

    result = retry_operation(
        remove,
        policy,
        retry_on=(OSError,),
        escalate=escalate,
        sleep=sleep,
        description=f"Deleting file {path}",
        log=log,
    )
    return result.succeeded and not path.exists()


def delete_directory(
    path: Path,
    policy: RetryPolicy,
    *,
    sleep: Callable[[float], None],
    log: Logger = log,
) -> bool:
    """Remove an (expected to be empty) directory with the same retry/escalation."""

    def remove() -> None:
        if path.exists():
            path.rmdir()

    def escalate(error: BaseException, attempt: int) -> bool:
        if isinstance(error, PermissionError) or attempt == policy.attempts - 1:
            return force_delete(path, log=log)
        return False

    result = retry_operation(
        remove,
        policy,
        retry_on=(OSError,),
        escalate=escalate,
        sleep=sleep,
        description=f"Deleting directory {path}",
        log=log,
    )
    return result.succeeded and not path.exists()


def copy_tree(
    source: Path,
    destination: Path,
    *,
    cancel_token: CancellationToken | None = None,
    on_copied: Callable[[int], None] | None = None,
) -> int:
    """Copy a directory tree file by file; returns the number of files copied.

    ``on_copied`` is called every 100 files with the running count.
    """
    copied = 0
    destination.mkdir(parents=True, exist_ok=True)
    for dirpath, dirnames, filenames in os.walk(source):
        relative = Path(dirpath).relative_to(source)
        target_dir = destination / relative
        for name in dirnames:
            (target_dir / name).mkdir(parents=True, exist_ok=True)
        for name in filenames:
            if cancel_token is not None:
                cancel_token.raise_if_cancelled("copying files")
            target = target_dir / name
            shutil.copy2(Path(dirpath) / name, target)
            # Files copied off a mounted ISO keep their read-only attribute
            clear_readonly(target)
            copied += 1
            if on_copied is not None and copied % COPY_REPORT_EVERY == 0:
                on_copied(copied)
    return copied


def replace_file(source: Path, destination: Path) -> None:
    """Replace ``destination`` with ``source``: delete first, then move."""
    if destination.exists():
        clear_readonly(destination)
        destination.unlink()
    shutil.move(str(source), str(destination))


def remediation_hints(path: Path) -> list[str]:
    """Commands an administrator can run by hand when cleanup keeps failing."""
    return [
        f'takeown /F "{path}" /R /D Y',
        f'icacls "{path}" /grant Administrators:F /T /C /Q',
        f"Remove-Item -Path '{path}' -Recurse -Force",
    ]


def remove_tree(path: Path, *, log: Logger = log) -> bool:
    """Recursive delete that falls back to a forced delete; True when ``path`` is gone."""
    try:
        shutil.rmtree(path)
    except FileNotFoundError:
        return True
    except OSError as error:
        log.debug(f"Delete of {path} failed, forcing: {error}")
        return force_delete(path, log=log)
    return not path.exists()
