"""Tests for wim_driver_injector.storage.validation module."""

import pytest

from conftest import make_driver_dir
from wim_driver_injector.storage.exceptions import (
    ContainerNotWritableError,
    NoDriverFilesError,
)
from wim_driver_injector.storage.validation import (
    count_driver_files,
    ensure_container_writable,
    find_driver_directories,
    find_image_containers,
)


class TestDriverDirectories:
    """Tests for driver folder discovery."""

    def test_counts_inf_files_recursively_any_case(self, tmp_path):
        root = make_driver_dir(tmp_path, "net", inf_count=2)
        (root / "UPPER.INF").write_text("[Version]")
        (root / "readme.txt").write_text("x")

        assert count_driver_files(root) == 3

    def test_skips_missing_and_empty_folders(self, tmp_path):
        good = make_driver_dir(tmp_path, "net")
        empty = tmp_path / "empty"
        empty.mkdir()

        found = find_driver_directories([tmp_path / "missing", empty, good])

        assert found == [good]

    def test_accepts_strings(self, tmp_path):
        good = make_driver_dir(tmp_path, "storage")

        assert find_driver_directories([str(good)]) == [good]

    def test_nothing_valid_raises(self, tmp_path):
        empty = tmp_path / "empty"
        empty.mkdir()

        with pytest.raises(NoDriverFilesError) as exc_info:
            find_driver_directories([empty])

        assert exc_info.value.driver_dirs == [empty]


class TestFindImageContainers:
    def test_finds_nested_wims_in_stable_order(self, tmp_path):
        (tmp_path / "sources").mkdir()
        (tmp_path / "sources" / "install.WIM").write_bytes(b"x")
        (tmp_path / "sources" / "boot.wim").write_bytes(b"x")
        (tmp_path / "setup.exe").write_bytes(b"x")

        found = find_image_containers(tmp_path)

        assert [path.name for path in found] == ["boot.wim", "install.WIM"]

    def test_empty_tree(self, tmp_path):
        assert find_image_containers(tmp_path) == []


class TestEnsureContainerWritable:
    def test_clears_read_only(self, tmp_path):
        container = tmp_path / "install.wim"
        container.write_bytes(b"x")
        container.chmod(0o444)

        ensure_container_writable(container)

        assert container.stat().st_mode & 0o200

    def test_missing_container(self, tmp_path):
        with pytest.raises(ContainerNotWritableError, match="file does not exist"):
            ensure_container_writable(tmp_path / "install.wim")

    def test_unopenable_container(self, tmp_path, mocker):
        container = tmp_path / "install.wim"
        container.write_bytes(b"x")
        mocker.patch(
            "wim_driver_injector.storage.validation.open",
            create=True,
            side_effect=PermissionError("in use"),
        )

        with pytest.raises(ContainerNotWritableError, match="in use"):
            ensure_container_writable(container)
