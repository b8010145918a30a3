"""
Tests for wim_driver_injector.services.dism module.

The DISM executable is never started: run_command and run_with_progress are
mocked where the servicing class looks them up.
"""

from pathlib import Path

import pytest

from wim_driver_injector.domain.models import Compression, ImageIndex
from wim_driver_injector.services import dism as dism_module
from wim_driver_injector.services.dism import (
    ADMIN_HINT,
    DismServicing,
    is_non_critical_unmount_error,
    parse_wim_info,
)
from wim_driver_injector.storage.exceptions import ToolInvocationError, UnmountFailedError
from wim_driver_injector.storage.process import CommandResult

WIM_INFO = """
Deployment Image Servicing and Management tool
Version: 10.0.19041.844

Details for image : C:\\images\\install.wim

Index : 1
Name : Windows 10 Home
Description : Windows 10 Home
Size : 15,011,617,548 bytes

Index : 2
Name : Windows 10 Pro
Description : Windows 10 Pro
Size : 15,263,103,382 bytes

The operation completed successfully.
"""


def ok(command=("dism",), stdout=""):
    return CommandResult(list(command), 0, stdout, "")


def failed(returncode=1, stdout="", stderr=""):
    return CommandResult(["dism"], returncode, stdout, stderr)


@pytest.fixture
def run_command(mocker):
    return mocker.patch.object(dism_module, "run_command", return_value=ok())


@pytest.fixture
def run_with_progress(mocker):
    return mocker.patch.object(dism_module, "run_with_progress", return_value=ok())


@pytest.fixture
def dism():
    return DismServicing("dism.exe", post_unmount_delay=0)


class TestParseWimInfo:
    """Tests for parse_wim_info()."""

    def test_parses_indexes_and_names(self):
        assert parse_wim_info(WIM_INFO) == [
            ImageIndex(1, "Windows 10 Home"),
            ImageIndex(2, "Windows 10 Pro"),
        ]

    def test_index_without_name(self):
        assert parse_wim_info("Index : 1\nIndex : 2\nName : Setup") == [
            ImageIndex(1, ""),
            ImageIndex(2, "Setup"),
        ]

    def test_no_images(self):
        assert parse_wim_info("Error: 2\nThe system cannot find the file specified.") == []


class TestUnmountMarkers:
    @pytest.mark.parametrize(
        "text, expected",
        [
            ("Error: 50\nThe request is not supported.", True),
            ("The specified image is not mounted.", True),
            ("The directory does not exist.", True),
            ("Error: 5\nAccess is denied.", False),
            ("", False),
        ],
    )
    def test_classification(self, text, expected):
        assert is_non_critical_unmount_error(text) is expected


class TestDismServicing:
    """Tests for the command lines built by DismServicing."""

    def test_dism_path_from_settings(self, mocker):
        mocker.patch.object(dism_module.settings, "get_setting", return_value=r"C:\adk\dism.exe")
        assert DismServicing(post_unmount_delay=0).dism_path == r"C:\adk\dism.exe"

    def test_get_indexes(self, dism, run_command):
        run_command.return_value = ok(stdout=WIM_INFO)

        images = dism.get_indexes(Path("install.wim"))

        assert [image.index for image in images] == [1, 2]
        assert run_command.call_args[0][0] == ["dism.exe", "/Get-WimInfo", "/WimFile:install.wim"]

    def test_get_indexes_failure(self, dism, run_command):
        run_command.return_value = failed(2, stdout="Error: 2")

        with pytest.raises(ToolInvocationError) as exc_info:
            dism.get_indexes(Path("missing.wim"))

        assert exc_info.value.stage == "get-info"
        assert exc_info.value.output == "Error: 2"

    def test_mount(self, dism, run_command):
        dism.mount(Path("install.wim"), 3, Path("ws/mount_3"))

        assert run_command.call_args[0][0] == [
            "dism.exe",
            "/Mount-Wim",
            "/WimFile:install.wim",
            "/Index:3",
            f"/MountDir:{Path('ws/mount_3')}",
        ]

    def test_silent_mount_failure_suggests_elevation(self, dism, run_command):
        run_command.return_value = failed(740)

        with pytest.raises(ToolInvocationError) as exc_info:
            dism.mount(Path("install.wim"), 1, Path("mount_1"))

        assert exc_info.value.hint == ADMIN_HINT
        assert exc_info.value.index == 1

    def test_mount_failure_with_diagnostic(self, dism, run_command):
        run_command.return_value = failed(stdout="Error: 0xc1420127")

        with pytest.raises(ToolInvocationError) as exc_info:
            dism.mount(Path("install.wim"), 1, Path("mount_1"))

        assert exc_info.value.hint == ""
        assert "0xc1420127" in str(exc_info.value)

    @pytest.mark.parametrize("commit, flag", [(False, "/Discard"), (True, "/Commit")])
    def test_unmount(self, dism, run_command, commit, flag):
        dism.unmount(Path("mount_1"), commit=commit, timeout=30)

        assert run_command.call_args[0][0][-1] == flag
        assert run_command.call_args[1]["timeout"] == 30

    def test_unmount_nothing_mounted_is_non_critical(self, dism, run_command):
        run_command.return_value = failed(50, stdout="Error: 50\nThe request is not supported.")

        with pytest.raises(UnmountFailedError) as exc_info:
            dism.unmount(Path("mount_1"))

        assert exc_info.value.non_critical is True

    def test_unmount_access_denied_is_critical(self, dism, run_command):
        run_command.return_value = failed(5, stderr="Error: 5\nAccess is denied.")

        with pytest.raises(UnmountFailedError) as exc_info:
            dism.unmount(Path("mount_1"))

        assert exc_info.value.non_critical is False

    def test_post_unmount_delay(self, run_command, mocker):
        sleep = mocker.patch.object(dism_module.time, "sleep")

        DismServicing("dism.exe", post_unmount_delay=0.5).unmount(Path("mount_1"))

        sleep.assert_called_once_with(0.5)

    def test_add_driver_recurses(self, dism, run_command):
        dism.add_driver(Path("mount_1"), Path("drivers/net"))

        command = run_command.call_args[0][0]
        assert command[1:3] == ["/Image:mount_1", "/Add-Driver"]
        assert command[-1] == "/Recurse"

    def test_add_driver_failure(self, dism, run_command):
        run_command.return_value = failed(2, stdout="Error: 2")

        with pytest.raises(ToolInvocationError) as exc_info:
            dism.add_driver(Path("mount_1"), Path("drivers/net"), recursive=False)

        assert exc_info.value.stage == "add-driver"
        assert "/Recurse" not in exc_info.value.command

    def test_capture_image(self, dism, run_with_progress, tmp_path):
        mount_dir = tmp_path / "mount_1"
        mount_dir.mkdir()
        (mount_dir / "file").write_bytes(b"x" * 10)
        output = tmp_path / "new_out.wim"

        dism.capture_image(mount_dir, output, "Windows 10 Pro", Compression.MAXIMUM)

        command = run_with_progress.call_args[0][0]
        assert "/Capture-Image" in command
        assert "/Name:Windows 10 Pro" in command
        assert command[-1] == "/Compress:maximum"
        assert run_with_progress.call_args[1]["output_path"] == output
        assert run_with_progress.call_args[1]["source_size"] == 10

    def test_capture_failure(self, dism, run_with_progress, tmp_path):
        run_with_progress.return_value = failed(112, stdout="Error: 112 disk full")

        with pytest.raises(ToolInvocationError) as exc_info:
            dism.capture_image(tmp_path, tmp_path / "o.wim", "x", Compression.NONE)

        assert exc_info.value.stage == "capture"

    def test_export_with_compression(self, dism, run_with_progress):
        dism.export_image(Path("a.wim"), 2, Path("b.wim"), Compression.MAXIMUM)

        command = run_with_progress.call_args[0][0]
        assert command[1:5] == [
            "/Export-Image",
            "/SourceImageFile:a.wim",
            "/SourceIndex:2",
            "/DestinationImageFile:b.wim",
        ]
        assert command[-1] == "/Compress:maximum"

    def test_append_export_omits_compression(self, dism, run_with_progress):
        dism.export_image(Path("a.wim"), 1, Path("b.wim"))

        command = run_with_progress.call_args[0][0]
        assert not any(part.startswith("/Compress") for part in command)

    def test_export_failure_carries_index(self, dism, run_with_progress):
        run_with_progress.return_value = failed(1)

        with pytest.raises(ToolInvocationError) as exc_info:
            dism.export_image(Path("a.wim"), 4, Path("b.wim"))

        assert exc_info.value.index == 4
        assert exc_info.value.stage == "export"
