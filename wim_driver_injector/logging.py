from __future__ import annotations

import os
import sys
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Iterable

if TYPE_CHECKING:
    from loguru import Logger

from loguru import logger

DEFAULT_LOG_DIR = Path(
    os.environ.get(
        "WIM_DRIVER_INJECTOR_LOG_DIR",
        Path.home() / ".local" / "state" / "wim-driver-injector" / "logs",
    )
)

# Sits between WARNING (30) and ERROR (40): a failed driver folder is reported
# but never stops the run.
DRIVER_FAILED_LEVEL = "DRIVER_FAILED"
DRIVER_FAILED_LEVEL_NO = 35


def _register_levels() -> None:
    try:
        logger.level(DRIVER_FAILED_LEVEL)
    except ValueError:
        logger.level(DRIVER_FAILED_LEVEL, no=DRIVER_FAILED_LEVEL_NO, color="<magenta><bold>")


_register_levels()


def _should_log_tool_output(record) -> bool:
    """Raw DISM/oscdimg output lines are only interesting when debugging."""
    tags = record["extra"].get("tags", [])

    if record["level"].no >= logger.level("WARNING").no:
        return True

    if "tool-output" in tags:
        return record["level"].no <= logger.level("DEBUG").no

    return True


def _should_log_progress(record) -> bool:
    """Filter per-percent progress chatter - only show in TRACE mode."""
    tags = record["extra"].get("tags", [])

    if "progress" in tags and record["level"].no < logger.level("INFO").no:
        return record["level"].no <= logger.level("TRACE").no

    return True


def _combined_filter(record) -> bool:
    """Combined filter for all log suppression rules."""
    return _should_log_tool_output(record) and _should_log_progress(record)


def setup_logging(
    *,
    debug: bool = False,
    trace: bool = False,
    log_dir: Path | None = None,
    status_callback: Callable[[str, str], None] | None = None,
    status_min_level: str | None = None,
) -> Logger:
    """
    Setup multi-tier logging with separate sinks for different log levels.

    Logging Tiers:
    - CRITICAL/ERROR: Pipeline failures, unrecoverable errors
    - DRIVER_FAILED: A driver folder could not be injected (run continues)
    - SUCCESS/INFO: Index progress, exports, cleanup results
    - DEBUG: Detailed diagnostics, command execution
    - TRACE: Ultra-verbose (raw tool output, every progress tick)

    Log Files:
    - operations.log: INFO+ events (7 day retention)
    - debug.log: DEBUG+ events when --debug is enabled (3 day retention)
    - trace.log: TRACE+ events when --trace is enabled (1 day retention)
    - structured.jsonl: Structured JSON logs for analysis (7 day retention)

    Args:
        debug: Enable DEBUG level logging
        trace: Enable TRACE level logging (very verbose)
        log_dir: Custom log directory (defaults to ~/.local/state/wim-driver-injector/logs)
        status_callback: Front-end sink called with (message, level name)
        status_min_level: Minimum log level forwarded to ``status_callback``
    """
    logger.remove()
    logger.configure(extra={"job_id": "-", "tags": [], "source": "APP"})
    _register_levels()

    # Determine log levels
    if trace:
        console_level = "TRACE"
    elif debug:
        console_level = "DEBUG"
    else:
        console_level = "INFO"

    # SINK 1: Console (stderr) - User-facing, filtered
    logger.add(
        sys.stderr,
        level=console_level,
        enqueue=True,
        backtrace=False,
        diagnose=False,
        filter=_combined_filter,
        colorize=True,
        format=(
            "<green>{time:HH:mm:ss}</green> | "
            "<level>{level: <13}</level> | "
            "<cyan>{extra[source]: <10}</cyan> | "
            "<blue>{extra[job_id]: <17}</blue> | "
            "{message}"
        ),
    )

    # Setup log directory
    log_dir = log_dir or DEFAULT_LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)

    # SINK 2: Operations Log - Important events only (INFO+)
    logger.add(
        log_dir / "operations.log",
        level="INFO",
        rotation="5 MB",
        retention="7 days",
        compression="zip",
        enqueue=True,
        backtrace=False,
        diagnose=False,
        filter=_combined_filter,
        format=(
            "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
            "{level: <13} | "
            "{extra[source]: <10} | "
            "{extra[job_id]: <17} | "
            "{message}"
        ),
    )

    # SINK 3: Debug Log - Detailed diagnostics (DEBUG+ when debug=True)
    if debug or trace:
        logger.add(
            log_dir / "debug.log",
            level="DEBUG",
            rotation="10 MB",
            retention="3 days",
            compression="zip",
            enqueue=True,
            backtrace=True,
            diagnose=True,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{level: <13} | "
                "{extra[source]: <10} | "
                "{extra[job_id]: <17} | "
                "{extra[tags]} | "
                "{message}"
            ),
        )

    # SINK 4: Trace Log - Raw tool output and progress ticks
    if trace:
        logger.add(
            log_dir / "trace.log",
            level="TRACE",
            rotation="50 MB",
            retention="1 day",
            compression="zip",
            enqueue=True,
            backtrace=False,
            diagnose=False,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{extra[source]: <10} | "
                "{extra[job_id]: <17} | "
                "{message}"
            ),
        )

    # SINK 5: Structured JSON Log - For analysis tools (INFO+)
    logger.add(
        log_dir / "structured.jsonl",
        level="INFO",
        rotation="10 MB",
        retention="7 days",
        compression="zip",
        enqueue=True,
        serialize=True,
        format="{message}",
    )

    # SINK 6: Status callback - For a GUI or any other front end
    if status_callback is not None:
        if status_min_level is None:
            resolved_status_level = "TRACE" if trace else "DEBUG" if debug else "INFO"
        else:
            resolved_status_level = status_min_level.upper()

        def _status_sink(message) -> None:
            record = message.record
            if record["level"].no >= logger.level(resolved_status_level).no:
                status_callback(record["message"], record["level"].name)

        logger.add(_status_sink, enqueue=True, filter=_combined_filter)

    return logger


def get_logger(
    *,
    job_id: str | None = None,
    tags: Iterable[str] | None = None,
    source: str | None = None,
) -> Logger:
    """
    Get a logger with bound context.

    Args:
        job_id: Job identifier for tracking operations
        tags: Tags for filtering (e.g., ["pipeline", "dism"])
        source: Source component (e.g., "pipeline", "workspace", "sweep")

    Returns:
        Logger with bound context
    """
    extras: dict[str, object] = {}
    if job_id is not None:
        extras["job_id"] = job_id
    if tags is not None:
        extras["tags"] = list(tags)
    if source is not None:
        extras["source"] = source
    return logger.bind(**extras)


@contextmanager
def operation_context(operation: str, **details):
    """
    Context manager for tracking long-running operations with automatic timing.

    Automatically logs operation start, completion, and failure with duration tracking.

    Args:
        operation: Operation name (e.g., "inject", "sweep", "reclaim")
        **details: Operation-specific details to log

    Yields:
        Logger bound with job_id and operation context

    Example:
        with operation_context("inject", source="install.wim") as log:
            log.debug("Mounting index 1")
    """
    job_id = f"{operation}-{uuid.uuid4().hex[:8]}"

    with logger.contextualize(job_id=job_id, operation=operation):
        start_time = time.time()
        log = logger.bind(source=operation, job_id=job_id, tags=[operation], **details)

        log.info(f"{operation.capitalize()} started")

        try:
            yield log
            duration = time.time() - start_time
            log.bind(duration_seconds=round(duration, 2)).success(
                f"{operation.capitalize()} completed in {duration:.1f}s"
            )
        except Exception as e:
            duration = time.time() - start_time
            log.bind(
                error=str(e),
                error_type=type(e).__name__,
                duration_seconds=round(duration, 2),
            ).error(f"{operation.capitalize()} failed after {duration:.1f}s")
            raise


class LoggerFactory:
    """
    Factory for creating domain-specific loggers with automatic context.

    Each factory method returns a logger pre-configured with appropriate
    source, tags, and context for the domain.
    """

    @staticmethod
    def for_pipeline(job_id: str | None = None, **details) -> Logger:
        """Logger for image and disk image pipeline runs."""
        if job_id is None:
            job_id = f"inject-{uuid.uuid4().hex[:8]}"
        return logger.bind(
            job_id=job_id, source="pipeline", tags=["pipeline", "image"], **details
        )

    @staticmethod
    def for_workspace(workspace_id: str | None = None) -> Logger:
        """Logger for scratch workspace allocation and reclamation."""
        return logger.bind(
            source="workspace",
            tags=["workspace", "cleanup"],
            workspace_id=workspace_id or "-",
        )

    @staticmethod
    def for_sweep() -> Logger:
        """Logger for the orphaned workspace sweep."""
        return get_logger(
            job_id=f"sweep-{uuid.uuid4().hex[:8]}", source="sweep", tags=["sweep", "cleanup"]
        )

    @staticmethod
    def for_tools(tool: str = "process") -> Logger:
        """Logger for external tool invocations (DISM, PowerShell, oscdimg)."""
        return get_logger(source=tool, tags=["tools", tool])

    @staticmethod
    def for_tool_output(tool: str = "process") -> Logger:
        """Logger for raw lines emitted by external tools."""
        return get_logger(source=tool, tags=["tools", "tool-output"])

    @staticmethod
    def for_system() -> Logger:
        """Logger for system operations (startup, shutdown, config)."""
        return get_logger(source="system", tags=["system"])


class ThrottledLogger:
    """
    Logger wrapper that throttles high-frequency log events.

    Used for capture/export progress which can tick several times a second.
    """

    def __init__(self, log: Logger, interval_seconds: float = 5.0):
        self.log = log
        self.interval = interval_seconds
        self.last_log_time: dict[str, float] = {}

    def debug(self, key: str, message: str) -> None:
        """Log at DEBUG level, throttled by key."""
        self._throttled_log("DEBUG", key, message)

    def info(self, key: str, message: str) -> None:
        """Log at INFO level, throttled by key."""
        self._throttled_log("INFO", key, message)

    def _throttled_log(self, level: str, key: str, message: str) -> None:
        now = time.time()
        last_time = self.last_log_time.get(key, 0)

        if now - last_time >= self.interval:
            self.log.log(level, message)
            self.last_log_time[key] = now


class EventLogger:
    """
    Structured event logger using standardized schemas.

    Event fields are attached with ``bind`` so that messages containing tool
    output are never run through ``str.format``.
    """

    @staticmethod
    def log_index_stage(
        log: Logger, container: str, index: int, stage: str, **extra
    ) -> None:
        """Log an image index state transition."""
        log.bind(
            event_type="index_stage", container=container, index=index, stage=stage, **extra
        ).debug(f"Index {index} of {container}: {stage}")

    @staticmethod
    def log_driver_failed(log: Logger, driver_dir: str, reason: str) -> None:
        """Log a driver folder that could not be injected."""
        log.bind(event_type="driver_failed", driver_dir=driver_dir).log(
            DRIVER_FAILED_LEVEL, f"Driver: {driver_dir} - Reason: {reason}"
        )

    @staticmethod
    def log_deferred_cleanup(
        log: Logger, path: str, task_name: str, scheduled: bool
    ) -> None:
        """Log a path handed over to restart-time cleanup."""
        state = "scheduled" if scheduled else "recorded (no scheduler available)"
        log.bind(event_type="deferred_cleanup", path=path, task_name=task_name).warning(
            f"Deferred cleanup {state} for {path} ({task_name})"
        )

