"""Cooperative cancellation shared between a front end and a pipeline run.

The pipeline checks the token at every state transition; running external
processes register a kill callback so cancellation also stops them.

Usage:
    token = CancellationToken()
    threading.Thread(target=pipeline.process_container, args=(...), kwargs={"cancel_token": token}).start()
    token.cancel()
"""

from __future__ import annotations

import threading
from typing import Callable

from wim_driver_injector.logging import LoggerFactory

from .exceptions import OperationCancelledError


log = LoggerFactory.for_system()


class CancellationToken:
    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        """Signal cancellation and run registered callbacks once."""
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()
        log.info("Cancellation requested")
        for callback in callbacks:
            self._invoke(callback)

    def register(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Run ``callback`` on cancellation; returns a function that unregisters it.

        If the token is already cancelled the callback runs immediately.
        """
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)

                def unregister() -> None:
                    with self._lock:
                        if callback in self._callbacks:
                            self._callbacks.remove(callback)

                return unregister
        self._invoke(callback)
        return lambda: None

    def raise_if_cancelled(self, stage: str | None = None) -> None:
        if self._event.is_set():
            raise OperationCancelledError(stage)

    def wait(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds; returns True if cancelled meanwhile."""
        return self._event.wait(timeout)

    @staticmethod
    def _invoke(callback: Callable[[], None]) -> None:
        try:
            callback()
        except OSError as error:
            log.warning(f"Cancellation callback failed: {error}")
