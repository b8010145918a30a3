"""Bounded retry with backoff and an escalation hook.

Shared by file deletes, directory deletes and process-exit waits. The
escalation callback runs after every failed attempt (for example a forced
delete after "access denied" or a kill after a wait timed out); returning True
from it marks the operation as done.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Generic, Optional, TypeVar

from wim_driver_injector.logging import LoggerFactory

if TYPE_CHECKING:
    from loguru import Logger


T = TypeVar("T")

_default_log = LoggerFactory.for_system()


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: Optional[float] = None

    def delay_for(self, attempt: int) -> float:
        """Delay after the zero-based ``attempt`` failed."""
        delay = self.base_delay * (self.multiplier**attempt)
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        return max(0.0, delay)


@dataclass
class RetryResult(Generic[T]):
    succeeded: bool
    attempts: int
    value: Optional[T] = None
    error: Optional[BaseException] = None
    escalated: bool = False


def retry_operation(
    action: Callable[[], T],
    policy: RetryPolicy,
    *,
    retry_on: tuple[type[BaseException], ...] = (OSError,),
    escalate: Callable[[BaseException, int], bool] | None = None,
    sleep: Callable[[float], None] = time.sleep,
    description: str = "operation",
    log: Logger | None = None,
) -> RetryResult[T]:
    """Run ``action`` up to ``policy.attempts`` times.

    Exceptions outside ``retry_on`` propagate immediately. Failures inside it
    are retried; the final error is returned in the result, never raised.
    """
    log = log or _default_log
    last_error: BaseException | None = None
    attempts = max(1, policy.attempts)

    for attempt in range(attempts):
        try:
            value = action()
            return RetryResult(True, attempt + 1, value=value)
        except retry_on as error:
            last_error = error
            log.debug(f"{description} failed (attempt {attempt + 1}/{attempts}): {error}")

        if escalate is not None:
            try:
                if escalate(last_error, attempt):
                    log.debug(f"{description} completed by escalation")
                    return RetryResult(True, attempt + 1, escalated=True)
            except retry_on as escalation_error:
                log.debug(f"Escalation for {description} failed: {escalation_error}")

        if attempt < attempts - 1:
            sleep(policy.delay_for(attempt))

    return RetryResult(False, attempts, error=last_error)
