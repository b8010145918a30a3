"""ISO mount/unmount through PowerShell and ISO authoring through oscdimg."""

from __future__ import annotations

import os
import shutil
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from wim_driver_injector.config import settings
from wim_driver_injector.logging import LoggerFactory
from wim_driver_injector.storage.cancellation import CancellationToken
from wim_driver_injector.storage.exceptions import (
    AuthoringToolMissingError,
    InjectorError,
    ToolInvocationError,
)
from wim_driver_injector.storage.process import (
    format_command,
    run_checked_command,
    run_command,
    run_with_progress,
)

from .base import ProgressCallback

if TYPE_CHECKING:
    from loguru import Logger


OSCDIMG_NAME = "oscdimg.exe"
ADK_OSCDIMG_RELATIVE = Path(
    "Windows Kits", "10", "Assessment and Deployment Kit", "Deployment Tools"
)
BIOS_BOOT_FILE = Path("boot", "etfsboot.com")
UEFI_BOOT_FILE = Path("efi", "microsoft", "boot", "efisys.bin")


def _ps_quote(value: object) -> str:
    return "'" + str(value).replace("'", "''") + "'"


def powershell_command(script: str) -> list[str]:
    return [
        "powershell",
        "-NoProfile",
        "-NonInteractive",
        "-ExecutionPolicy",
        "Bypass",
        "-Command",
        script,
    ]


def application_dir() -> Path:
    return Path(sys.argv[0]).resolve().parent if sys.argv and sys.argv[0] else Path.cwd()


def oscdimg_candidates() -> list[Path]:
    """Locations searched for oscdimg.exe, most specific first."""
    candidates: list[Path] = []
    configured = settings.get_path("oscdimg_path")
    if configured is not None:
        candidates.append(configured)

    app_dir = application_dir()
    candidates.append(app_dir / OSCDIMG_NAME)
    candidates.append(app_dir / "Tools" / OSCDIMG_NAME)

    program_dirs = []
    for variable in ("ProgramFiles(x86)", "ProgramFiles"):
        value = os.environ.get(variable)
        if value and Path(value) not in program_dirs:
            program_dirs.append(Path(value))
    for program_dir in program_dirs:
        for arch in ("amd64", "x86"):
            candidates.append(program_dir / ADK_OSCDIMG_RELATIVE / arch / "Oscdimg" / OSCDIMG_NAME)
    return candidates


def find_oscdimg() -> Optional[Path]:
    for candidate in oscdimg_candidates():
        if candidate.is_file():
            return candidate
    on_path = shutil.which("oscdimg")
    return Path(on_path) if on_path else None


def oscdimg_arguments(source_tree: Path, output: Path) -> list[str]:
    """oscdimg arguments for a BIOS + UEFI bootable Windows setup ISO."""
    args = ["-m", "-o", "-u2", "-udfver102"]
    bios = source_tree / BIOS_BOOT_FILE
    uefi = source_tree / UEFI_BOOT_FILE
    if bios.exists() and uefi.exists():
        args.append(f"-bootdata:2#p0,e,b{bios}#pEF,e,b{uefi}")
    elif bios.exists():
        args.append(f"-bootdata:1#p0,e,b{bios}")
    elif uefi.exists():
        args.append(f"-bootdata:1#pEF,e,b{uefi}")
    args.extend([str(source_tree), str(output)])
    return args


class PowerShellDiskImage:
    def __init__(self, *, log: Optional[Logger] = None):
        self.log = log or LoggerFactory.for_tools("diskimage")

    def mount(self, image: Path) -> Path:
        """Mount an ISO and return the root of its drive letter (e.g. ``E:\\``)."""
        script = (
            f"$image = Mount-DiskImage -ImagePath {_ps_quote(image)} -PassThru; "
            "($image | Get-Volume).DriveLetter"
        )
        self.log.info(f"Mounting disk image {image}")
        result = run_command(powershell_command(script))
        letter = result.stdout.strip()[-1:] if result.stdout.strip() else ""
        if result.returncode != 0 or not letter.isalpha():
            raise ToolInvocationError(
                result.command, result.returncode, result.error_text() or "No drive letter assigned",
                stage="mount-iso",
            )
        root = Path(f"{letter.upper()}:\\")
        self.log.debug(f"Disk image mounted at {root}")
        return root

    def unmount(self, image: Path) -> None:
        script = f"Dismount-DiskImage -ImagePath {_ps_quote(image)}"
        self.log.info(f"Dismounting disk image {image}")
        run_checked_command(powershell_command(script), stage="unmount-iso")

    def has_new_isofile(self) -> bool:
        script = "Get-Command New-IsoFile -ErrorAction SilentlyContinue"
        try:
            result = run_command(powershell_command(script))
        except InjectorError as error:
            self.log.debug(f"Could not query PowerShell for New-IsoFile: {error}")
            return False
        return bool(result.stdout.strip())

    def is_authoring_available(self) -> bool:
        return find_oscdimg() is not None or self.has_new_isofile()

    def author_iso(
        self,
        source_tree: Path,
        output: Path,
        *,
        cancel_token: Optional[CancellationToken] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> None:
        oscdimg = find_oscdimg()
        failure: Optional[ToolInvocationError] = None
        if oscdimg is not None:
            command = [str(oscdimg), *oscdimg_arguments(source_tree, output)]
            self.log.info(f"Executing: {format_command(command)}")
            result = run_with_progress(
                command, on_progress=on_progress, cancel_token=cancel_token
            )
            if result.returncode == 0:
                self.log.success(f"ISO created successfully using oscdimg: {output}")
                return
            failure = ToolInvocationError(
                result.command, result.returncode, result.error_text(), stage="author-iso"
            )
            self.log.warning(f"oscdimg failed, trying PowerShell New-IsoFile: {failure}")

        if not self.has_new_isofile():
            if failure is not None:
                raise failure
            raise AuthoringToolMissingError(oscdimg_candidates())

        script = (
            f"New-IsoFile -SourcePath {_ps_quote(source_tree)} "
            f"-DestinationPath {_ps_quote(output)}"
        )
        self.log.info("Using PowerShell New-IsoFile to create ISO")
        result = run_command(powershell_command(script), cancel_token=cancel_token)
        if result.returncode != 0:
            raise ToolInvocationError(
                result.command, result.returncode, result.error_text(), stage="author-iso"
            )
        self.log.success(f"ISO created successfully: {output}")
