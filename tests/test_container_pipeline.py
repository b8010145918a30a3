"""
Tests for wim_driver_injector.pipeline.container and pipeline.inject_drivers.

This test suite covers:
- Extracting the ISO (mounted by the tool or already mounted by the caller)
- Processing every nested WIM and writing it back into the tree
- Per-container index selection
- Fail-fast checks for the authoring tool and empty ISOs
- Dispatch on the input extension
"""

from pathlib import Path

import pytest
from conftest import FakeDiskImage, join_cleanup, read_wim

from wim_driver_injector.pipeline import inject_drivers
from wim_driver_injector.pipeline import container as container_module
from wim_driver_injector.pipeline.container import ContainerPipeline, selection_for
from wim_driver_injector.storage.cancellation import CancellationToken
from wim_driver_injector.storage.exceptions import (
    AuthoringToolMissingError,
    ContainerProcessingError,
    NoImageContainersError,
    OperationCancelledError,
)


@pytest.fixture
def pipeline(servicing, disk_image, workspace_manager, reporter):
    return ContainerPipeline(servicing, disk_image, workspace_manager, reporter=reporter)


@pytest.fixture
def iso_file(tmp_path) -> Path:
    iso = tmp_path / "input" / "Win11.iso"
    iso.parent.mkdir(parents=True, exist_ok=True)
    iso.write_bytes(b"CD001")
    return iso


def workspace_dirs(scratch_root):
    root = scratch_root / "WIMDriverInjector"
    return list(root.iterdir()) if root.exists() else []


class TestSelectionFor:
    """Tests for selection_for()."""

    def test_matches_file_name_case_insensitively(self, tmp_path):
        container = tmp_path / "sources" / "install.wim"
        assert selection_for({"INSTALL.WIM": [2]}, container, tmp_path) == [2]

    def test_matches_relative_path(self, tmp_path):
        container = tmp_path / "sources" / "install.wim"
        assert selection_for({"sources\\install.wim": [1, 3]}, container, tmp_path) == [1, 3]

    def test_no_match(self, tmp_path):
        container = tmp_path / "sources" / "boot.wim"
        assert selection_for({"install.wim": [2]}, container, tmp_path) is None
        assert selection_for(None, container, tmp_path) is None


class TestProcessDiskImage:
    """Tests for ContainerPipeline.process_disk_image()."""

    def test_processes_every_nested_wim(
        self, pipeline, disk_image, iso_file, driver_dirs, tmp_path, scratch_root
    ):
        output = tmp_path / "out" / "Win11_drivers.iso"

        result = pipeline.process_disk_image(iso_file, output, driver_dirs, optimize=False)
        join_cleanup(pipeline)

        assert output.exists()
        assert sorted(disk_image.authored) == ["sources/boot.wim", "sources/install.wim"]
        assert len(disk_image.authored["sources/boot.wim"]) == 2
        assert len(disk_image.authored["sources/install.wim"]) == 2
        for images in disk_image.authored.values():
            assert all(image["drivers"] == ["net", "storage"] for image in images)
        assert [container.exported_count for container in result.containers] == [2, 2]
        assert disk_image.mounts == [iso_file]
        assert disk_image.unmounts == [iso_file]
        assert workspace_dirs(scratch_root) == []

    def test_original_iso_tree_is_untouched(
        self, pipeline, iso_tree, iso_file, driver_dirs, tmp_path
    ):
        before = (iso_tree / "sources" / "install.wim").read_text()

        pipeline.process_disk_image(iso_file, tmp_path / "out.iso", driver_dirs, optimize=False)
        join_cleanup(pipeline)

        assert (iso_tree / "sources" / "install.wim").read_text() == before

    def test_selection_applies_per_container_but_not_to_boot(
        self, pipeline, disk_image, iso_file, driver_dirs, tmp_path
    ):
        pipeline.process_disk_image(
            iso_file,
            tmp_path / "out.iso",
            driver_dirs,
            optimize=False,
            selected_indexes_by_container={"install.wim": [2], "boot.wim": [1]},
        )
        join_cleanup(pipeline)

        assert [image["name"] for image in disk_image.authored["sources/install.wim"]] == [
            "Windows 11 Pro"
        ]
        assert len(disk_image.authored["sources/boot.wim"]) == 2

    def test_already_mounted_root_skips_mounting(
        self, pipeline, disk_image, iso_tree, iso_file, driver_dirs, tmp_path
    ):
        pipeline.process_disk_image(
            iso_file,
            tmp_path / "out.iso",
            driver_dirs,
            optimize=False,
            already_mounted_root=iso_tree,
        )
        join_cleanup(pipeline)

        assert disk_image.mounts == []
        assert disk_image.unmounts == []
        assert len(disk_image.authored) == 2

    def test_missing_authoring_tool_fails_before_extraction(
        self, servicing, workspace_manager, iso_tree, iso_file, driver_dirs, tmp_path, scratch_root
    ):
        disk_image = FakeDiskImage(iso_tree, available=False)
        pipeline = ContainerPipeline(servicing, disk_image, workspace_manager)

        with pytest.raises(AuthoringToolMissingError):
            pipeline.process_disk_image(iso_file, tmp_path / "out.iso", driver_dirs, optimize=False)

        assert disk_image.mounts == []
        assert workspace_dirs(scratch_root) == []

    def test_iso_without_wims(
        self, servicing, workspace_manager, iso_file, driver_dirs, tmp_path, scratch_root
    ):
        empty_root = tmp_path / "empty_iso"
        (empty_root / "boot").mkdir(parents=True)
        (empty_root / "setup.exe").write_bytes(b"MZ")
        disk_image = FakeDiskImage(empty_root)
        pipeline = ContainerPipeline(servicing, disk_image, workspace_manager)

        with pytest.raises(NoImageContainersError, match="No WIM files found in ISO"):
            pipeline.process_disk_image(iso_file, tmp_path / "out.iso", driver_dirs, optimize=False)
        join_cleanup(pipeline)

        assert disk_image.unmounts == [iso_file]
        assert workspace_dirs(scratch_root) == []

    def test_cancel_during_second_container(
        self, pipeline, servicing, disk_image, iso_file, driver_dirs, tmp_path, scratch_root
    ):
        token = CancellationToken()
        mounted = []

        def cancel_on_third_mount(index):
            mounted.append(index)
            if len(mounted) == 3:
                token.cancel()

        servicing.hooks["mount"] = cancel_on_third_mount
        output = tmp_path / "out.iso"

        with pytest.raises(OperationCancelledError):
            pipeline.process_disk_image(
                iso_file, output, driver_dirs, optimize=False, cancel_token=token
            )
        join_cleanup(pipeline)

        assert not output.exists()
        assert disk_image.authored == {}
        assert servicing.mounted == {}
        assert workspace_dirs(scratch_root) == []

    def test_unexpected_error_is_wrapped_per_container(
        self, pipeline, disk_image, iso_file, driver_dirs, tmp_path, scratch_root, mocker
    ):
        mocker.patch.object(
            container_module, "replace_file", side_effect=RuntimeError("unexpected")
        )
        output = tmp_path / "out.iso"

        with pytest.raises(ContainerProcessingError) as exc_info:
            pipeline.process_disk_image(iso_file, output, driver_dirs, optimize=False)
        join_cleanup(pipeline)

        assert exc_info.value.container.name == "boot.wim"
        assert isinstance(exc_info.value.cause, RuntimeError)
        assert disk_image.authored == {}
        assert not output.exists()
        assert workspace_dirs(scratch_root) == []

    def test_existing_output_is_replaced(self, pipeline, iso_file, driver_dirs, tmp_path):
        output = tmp_path / "out.iso"
        output.write_text("stale")

        pipeline.process_disk_image(iso_file, output, driver_dirs, optimize=False)
        join_cleanup(pipeline)

        assert output.read_text() != "stale"


class TestInjectDrivers:
    """Tests for the extension-based inject_drivers() entry point."""

    def test_wim_input(
        self, servicing, disk_image, deferral, workspace_manager, install_wim, driver_dirs, tmp_path
    ):
        output = tmp_path / "out.wim"

        result = inject_drivers(
            install_wim,
            output,
            driver_dirs,
            servicing=servicing,
            disk_images=disk_image,
            deferral=deferral,
            optimize=False,
            selected_indexes={"": [1, 3]},
            workspaces=workspace_manager,
        )

        assert result.exported_count == 2
        assert len(read_wim(output)) == 2
        assert disk_image.mounts == []

    def test_iso_input(
        self, servicing, disk_image, deferral, workspace_manager, iso_file, driver_dirs, tmp_path,
        scratch_root,
    ):
        output = tmp_path / "out.iso"

        result = inject_drivers(
            iso_file,
            output,
            driver_dirs,
            servicing=servicing,
            disk_images=disk_image,
            deferral=deferral,
            optimize=True,
            workspaces=workspace_manager,
        )

        assert len(result.containers) == 2
        assert output.exists()
        # Cleanup has been waited for
        assert workspace_dirs(scratch_root) == []

    def test_unsupported_extension(self, servicing, disk_image, deferral, tmp_path, driver_dirs):
        with pytest.raises(ValueError, match="Unsupported image type"):
            inject_drivers(
                tmp_path / "image.vhdx",
                tmp_path / "out.vhdx",
                driver_dirs,
                servicing=servicing,
                disk_images=disk_image,
                deferral=deferral,
            )
