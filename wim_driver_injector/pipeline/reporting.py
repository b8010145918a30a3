"""Progress reporting seam between the pipelines and any front end."""

from __future__ import annotations

from typing import TYPE_CHECKING, Callable, Optional, Protocol

from wim_driver_injector.logging import ThrottledLogger

if TYPE_CHECKING:
    from loguru import Logger


class ProgressReporter(Protocol):
    def on_phase(self, text: str) -> None: ...

    def on_progress_percent(self, percent: int) -> None: ...


class NullReporter:
    def on_phase(self, text: str) -> None:
        pass

    def on_progress_percent(self, percent: int) -> None:
        pass


class CallbackReporter:
    """Adapts two plain callables (e.g. GUI slots) to :class:`ProgressReporter`."""

    def __init__(
        self,
        on_phase: Optional[Callable[[str], None]] = None,
        on_progress: Optional[Callable[[int], None]] = None,
    ):
        self._on_phase = on_phase
        self._on_progress = on_progress

    def on_phase(self, text: str) -> None:
        if self._on_phase is not None:
            self._on_phase(text)

    def on_progress_percent(self, percent: int) -> None:
        if self._on_progress is not None:
            self._on_progress(percent)


class LogReporter:
    """Reports phases at INFO and progress at most every few seconds."""

    def __init__(self, log: Logger, interval_seconds: float = 5.0):
        self.log = log
        self._progress = ThrottledLogger(log.bind(tags=["pipeline", "progress"]), interval_seconds)

    def on_phase(self, text: str) -> None:
        self.log.info(text)

    def on_progress_percent(self, percent: int) -> None:
        if percent >= 100:
            self.log.debug("Progress 100%")
            return
        self._progress.info("progress", f"Progress {percent}%")
