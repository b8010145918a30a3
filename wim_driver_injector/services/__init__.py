"""External capabilities: DISM, ISO tooling and restart-time cleanup."""

from .base import DiskImageTool, ImageServicing, StartupDeferral
from .deferred import ScheduledTaskDeferral
from .disk_image import PowerShellDiskImage
from .dism import DismServicing


__all__ = [
    "DiskImageTool",
    "DismServicing",
    "ImageServicing",
    "PowerShellDiskImage",
    "ScheduledTaskDeferral",
    "StartupDeferral",
]
