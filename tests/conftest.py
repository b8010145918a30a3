"""
Pytest configuration and shared fixtures for wim-driver-injector tests.

The real capabilities shell out to dism.exe, PowerShell and schtasks, so the
pipelines are exercised against in-memory fakes instead:

- FakeServicing: a "WIM" is a JSON list of images ({"name", "drivers"}).
  Mounting writes the image to ``image.json`` in the mount directory, capture
  and export write JSON lists again. Only one index of a container can be
  mounted at a time, exactly like DISM.
- FakeDiskImage: "mounts" an ISO by returning a prepared directory tree.
- FakeDeferral: records paths handed over to restart-time cleanup.
"""

import json
import threading
from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytest

from wim_driver_injector.config import settings
from wim_driver_injector.domain.models import DeferredCleanupEntry, ImageIndex
from wim_driver_injector.storage import workspace_registry
from wim_driver_injector.storage.exceptions import ToolInvocationError, UnmountFailedError
from wim_driver_injector.storage.retry import RetryPolicy
from wim_driver_injector.storage.workspace import WorkspaceManager


# ==============================================================================
# Fake WIM helpers
# ==============================================================================


def write_wim(path: Path, names: List[str]) -> Path:
    """Create a fake WIM container holding one image per name."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps([{"name": name, "drivers": []} for name in names]))
    return path


def read_wim(path: Path) -> List[dict]:
    return json.loads(Path(path).read_text())


def make_driver_dir(root: Path, name: str, inf_count: int = 1) -> Path:
    driver_dir = root / name
    (driver_dir / "sub").mkdir(parents=True, exist_ok=True)
    for number in range(inf_count):
        (driver_dir / "sub" / f"driver{number}.inf").write_text("[Version]\n")
    return driver_dir


# ==============================================================================
# Fake capabilities
# ==============================================================================


class FakeServicing:
    """In-memory stand-in for DISM."""

    def __init__(self) -> None:
        self.calls: List[tuple] = []
        self.mounted: Dict[Path, tuple] = {}
        self.failing_driver_dirs: set = set()
        self.failing_mount_indexes: set = set()
        # mount directory name -> non_critical flag
        self.unmount_failures: Dict[str, bool] = {}
        self.hooks: Dict[str, Callable] = {}
        self._lock = threading.Lock()

    def _record(self, *call) -> None:
        with self._lock:
            self.calls.append(call)

    def calls_named(self, name: str) -> List[tuple]:
        return [call for call in self.calls if call[0] == name]

    def get_indexes(self, container, *, cancel_token=None):
        self._record("get_indexes", Path(container))
        return [
            ImageIndex(number, image["name"])
            for number, image in enumerate(read_wim(container), start=1)
        ]

    def mount(self, container, index, mount_dir, *, cancel_token=None):
        container = Path(container).resolve()
        self._record("mount", container, index, Path(mount_dir))
        with self._lock:
            for other_container, other_index in self.mounted.values():
                if other_container == container:
                    raise ToolInvocationError(
                        ["dism", "/Mount-Wim"],
                        -1052638953,
                        f"Error: 0xc1420127 index {other_index} is already mounted",
                    )
        if index in self.failing_mount_indexes:
            raise ToolInvocationError(["dism", "/Mount-Wim"], 5, "Error: 5 Access is denied.")
        image = read_wim(container)[index - 1]
        (Path(mount_dir) / "image.json").write_text(json.dumps(image))
        with self._lock:
            self.mounted[Path(mount_dir)] = (container, index)
        hook = self.hooks.get("mount")
        if hook is not None:
            hook(index)

    def unmount(self, mount_dir, commit=False, *, timeout=None):
        mount_dir = Path(mount_dir)
        self._record("unmount", mount_dir, commit)
        failure = self.unmount_failures.get(mount_dir.name)
        if failure is False:
            raise UnmountFailedError(mount_dir, "Error: 0xc1420117 The directory could not be completely unmounted.")
        with self._lock:
            was_mounted = self.mounted.pop(mount_dir, None)
        for entry in list(mount_dir.iterdir()) if mount_dir.is_dir() else []:
            if entry.is_file():
                entry.unlink()
        if failure is True or was_mounted is None:
            raise UnmountFailedError(
                mount_dir, "Error: 50 The request is not supported.", non_critical=True
            )

    def add_driver(self, mount_dir, driver_dir, recursive=True, *, cancel_token=None):
        self._record("add_driver", Path(mount_dir), Path(driver_dir))
        if Path(driver_dir).name in self.failing_driver_dirs:
            raise ToolInvocationError(
                ["dism", "/Add-Driver"], 2, "Error: 2 The system cannot find the file specified."
            )
        image_file = Path(mount_dir) / "image.json"
        image = json.loads(image_file.read_text())
        image["drivers"].append(Path(driver_dir).name)
        image_file.write_text(json.dumps(image))

    def capture_image(
        self, mount_dir, output, name, compress, *, cancel_token=None, on_progress=None, on_status=None
    ):
        self._record("capture_image", Path(mount_dir), Path(output), name, compress)
        image = json.loads((Path(mount_dir) / "image.json").read_text())
        image["name"] = name
        image["compress"] = compress.value
        Path(output).write_text(json.dumps([image]))
        if on_progress is not None:
            on_progress(50)
            on_progress(100)
        hook = self.hooks.get("capture")
        if hook is not None:
            hook(Path(output))

    def export_image(
        self, source, source_index, destination, compress=None, *, cancel_token=None, on_progress=None
    ):
        self._record("export_image", Path(source), source_index, Path(destination), compress)
        image = dict(read_wim(source)[source_index - 1])
        if compress is not None:
            image["compress"] = compress.value
        destination = Path(destination)
        images = read_wim(destination) if destination.exists() else []
        images.append(image)
        destination.write_text(json.dumps(images))


class FakeDiskImage:
    """Stand-in for PowerShell Mount-DiskImage and oscdimg."""

    def __init__(self, mounted_root: Path, available: bool = True) -> None:
        self.mounted_root = mounted_root
        self.available = available
        self.mounts: List[Path] = []
        self.unmounts: List[Path] = []
        self.authored: Dict[str, object] = {}

    def mount(self, image):
        self.mounts.append(Path(image))
        return self.mounted_root

    def unmount(self, image):
        self.unmounts.append(Path(image))

    def is_authoring_available(self):
        return self.available

    def author_iso(self, source_tree, output, *, cancel_token=None, on_progress=None):
        source_tree = Path(source_tree)
        for path in sorted(source_tree.rglob("*.wim")):
            self.authored[path.relative_to(source_tree).as_posix()] = read_wim(path)
        Path(output).write_text(json.dumps(sorted(self.authored)))
        if on_progress is not None:
            on_progress(100)


class FakeDeferral:
    def __init__(self) -> None:
        self.paths: List[Path] = []

    def register_self_deleting_startup_task(self, path):
        self.paths.append(Path(path))
        return DeferredCleanupEntry(
            path=Path(path), task_name=f"fake_cleanup_{len(self.paths)}", scheduled=True
        )


class RecordingReporter:
    def __init__(self) -> None:
        self.phases: List[str] = []
        self.percents: List[int] = []

    def on_phase(self, text):
        self.phases.append(text)

    def on_progress_percent(self, percent):
        self.percents.append(percent)


# ==============================================================================
# Fixtures
# ==============================================================================


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path, monkeypatch):
    """Point the settings store at a temp file and zero out every delay."""
    monkeypatch.setattr(settings, "SETTINGS_PATH", tmp_path / "config" / "settings.json")
    settings.load_settings()
    settings.settings_store.values.update(
        {
            "settle_delay_seconds": 0,
            "post_unmount_delay_seconds": 0,
            "delete_backoff_seconds": 0,
            "root_backoff_seconds": 0,
            "sweep_settle_seconds": 0,
            "progress_poll_interval": 0.05,
            "progress_update_interval": 0,
        }
    )
    yield
    settings.load_settings()


@pytest.fixture(autouse=True)
def reset_workspace_registry():
    """Auto-use fixture that clears the in-process workspace registry."""
    with workspace_registry._lock:
        workspace_registry._active.clear()
    yield
    with workspace_registry._lock:
        workspace_registry._active.clear()


@pytest.fixture
def servicing() -> FakeServicing:
    return FakeServicing()


@pytest.fixture
def deferral() -> FakeDeferral:
    return FakeDeferral()


@pytest.fixture
def reporter() -> RecordingReporter:
    return RecordingReporter()


@pytest.fixture
def scratch_root(tmp_path) -> Path:
    root = tmp_path / "scratch"
    root.mkdir()
    return root


@pytest.fixture
def no_sleep() -> List[float]:
    """Records requested delays instead of sleeping."""
    return []


@pytest.fixture
def workspace_manager(servicing, deferral, scratch_root, no_sleep) -> WorkspaceManager:
    """WorkspaceManager with zero delays and two attempts per delete."""
    return WorkspaceManager(
        servicing,
        deferral,
        scratch_root=scratch_root,
        retry_policy=RetryPolicy(attempts=2, base_delay=0.0),
        root_retry_policy=RetryPolicy(attempts=2, base_delay=0.0),
        settle_delay=0,
        unmount_timeout=5,
        sleep=no_sleep.append,
    )


@pytest.fixture
def driver_dirs(tmp_path) -> List[Path]:
    root = tmp_path / "drivers"
    return [make_driver_dir(root, "net"), make_driver_dir(root, "storage", inf_count=2)]


@pytest.fixture
def install_wim(tmp_path) -> Path:
    return write_wim(
        tmp_path / "input" / "install.wim",
        ["Windows 11 Home", "Windows 11 Pro", "Windows 11 Education"],
    )


@pytest.fixture
def iso_tree(tmp_path) -> Path:
    """Directory that plays the role of a mounted Windows setup ISO."""
    root = tmp_path / "iso_root"
    write_wim(root / "sources" / "boot.wim", ["Microsoft Windows PE", "Microsoft Windows Setup"])
    write_wim(root / "sources" / "install.wim", ["Windows 11 Home", "Windows 11 Pro"])
    (root / "boot").mkdir(parents=True)
    (root / "boot" / "etfsboot.com").write_bytes(b"\x00" * 16)
    (root / "setup.exe").write_bytes(b"MZ")
    return root


@pytest.fixture
def disk_image(iso_tree) -> FakeDiskImage:
    return FakeDiskImage(iso_tree)


def join_cleanup(pipeline, timeout: float = 10.0) -> None:
    """Wait for the background workspace reclamation of ``pipeline``."""
    thread: Optional[threading.Thread] = pipeline.cleanup_thread
    if thread is not None:
        thread.join(timeout)
        assert not thread.is_alive()
