"""Settings storage for application configuration."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


SETTINGS_PATH = Path(
    os.environ.get(
        "WIM_DRIVER_INJECTOR_SETTINGS_PATH",
        Path.home() / ".config" / "wim-driver-injector" / "settings.json",
    )
)

# Default values - use these constants instead of hardcoding values elsewhere
DEFAULT_UNMOUNT_TIMEOUT_SECONDS = 30 * 60
DEFAULT_SETTLE_DELAY_SECONDS = 2.0
DEFAULT_POST_UNMOUNT_DELAY_SECONDS = 0.5
DEFAULT_DELETE_RETRY_ATTEMPTS = 3
DEFAULT_DELETE_BACKOFF_SECONDS = 1.0
DEFAULT_ROOT_BACKOFF_SECONDS = 2.0
DEFAULT_PROGRESS_POLL_INTERVAL = 1.0
DEFAULT_PROGRESS_UPDATE_INTERVAL = 2.0
DEFAULT_COMPRESSION_RATIO_ESTIMATE = 0.5
DEFAULT_SWEEP_SETTLE_SECONDS = 0.5
DEFAULT_CAPTURE_STALE_SECONDS = 5 * 60.0

DEFAULT_SETTINGS: dict[str, Any] = {
    "scratch_directory": None,
    "dism_path": "dism.exe",
    "oscdimg_path": None,
    "unmount_timeout_seconds": DEFAULT_UNMOUNT_TIMEOUT_SECONDS,
    "settle_delay_seconds": DEFAULT_SETTLE_DELAY_SECONDS,
    "post_unmount_delay_seconds": DEFAULT_POST_UNMOUNT_DELAY_SECONDS,
    "delete_retry_attempts": DEFAULT_DELETE_RETRY_ATTEMPTS,
    "delete_backoff_seconds": DEFAULT_DELETE_BACKOFF_SECONDS,
    "root_backoff_seconds": DEFAULT_ROOT_BACKOFF_SECONDS,
    "progress_poll_interval": DEFAULT_PROGRESS_POLL_INTERVAL,
    "progress_update_interval": DEFAULT_PROGRESS_UPDATE_INTERVAL,
    "compression_ratio_estimate": DEFAULT_COMPRESSION_RATIO_ESTIMATE,
    "capture_stale_seconds": DEFAULT_CAPTURE_STALE_SECONDS,
    "sweep_extra_roots": [],
    "sweep_settle_seconds": DEFAULT_SWEEP_SETTLE_SECONDS,
    "optimize_default": True,
}


@dataclass
class SettingsStore:
    values: dict[str, Any] = field(default_factory=dict)


settings_store = SettingsStore()


def load_settings() -> None:
    settings_store.values = dict(DEFAULT_SETTINGS)
    if not SETTINGS_PATH.exists():
        return
    try:
        data = json.loads(SETTINGS_PATH.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return
    if isinstance(data, dict):
        settings_store.values.update(data)


def save_settings() -> None:
    SETTINGS_PATH.parent.mkdir(parents=True, exist_ok=True)
    SETTINGS_PATH.write_text(
        json.dumps(settings_store.values, indent=2, sort_keys=True),
        encoding="utf-8",
    )


def get_setting(key: str, default: Any | None = None) -> Any:
    return settings_store.values.get(key, default)


def set_setting(key: str, value: Any) -> None:
    settings_store.values[key] = value
    save_settings()


def get_bool(key: str, default: bool = False) -> bool:
    return bool(get_setting(key, default))


def set_bool(key: str, value: bool) -> None:
    set_setting(key, bool(value))


def get_float(key: str, default: float = 0.0) -> float:
    """Numeric setting; falls back to ``default`` for missing or malformed values."""
    value = get_setting(key, default)
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def get_int(key: str, default: int = 0) -> int:
    value = get_setting(key, default)
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def get_path(key: str) -> Path | None:
    value = get_setting(key)
    if not value:
        return None
    return Path(value).expanduser()


load_settings()
