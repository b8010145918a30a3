"""Driver injection pipelines for WIM and ISO inputs."""

from .container import ContainerPipeline
from .image_index import ImageIndexPipeline, select_indexes
from .injector import inject_drivers
from .reporting import CallbackReporter, LogReporter, NullReporter, ProgressReporter

__all__ = [
    "CallbackReporter",
    "ContainerPipeline",
    "ImageIndexPipeline",
    "LogReporter",
    "NullReporter",
    "ProgressReporter",
    "inject_drivers",
    "select_indexes",
]
