"""Tests for the workspace layout and the published artifact registry."""

import os
from pathlib import Path

import pytest

from conftest import make_nifti
from wmhseg.errors import InputNotFound, WorkspaceStateError
from wmhseg.workspace import ArtifactRegistry, Workspace, resolve_input, resolve_output


# ========================================================================
# Path resolution
# ========================================================================


class TestResolve:
    def test_relative_input_resolved_against_cwd(self, tmp_path: Path) -> None:
        make_nifti(tmp_path / "data" / "flair.nii.gz")
        resolved = resolve_input("data/flair.nii.gz", "FLAIR", cwd=tmp_path)
        assert resolved == tmp_path / "data" / "flair.nii.gz"
        assert resolved.is_absolute()

    def test_missing_input(self, tmp_path: Path) -> None:
        with pytest.raises(InputNotFound, match="FLAIR image file not found"):
            resolve_input("flair.nii.gz", "FLAIR", cwd=tmp_path)

    def test_directory_is_not_an_input(self, tmp_path: Path) -> None:
        (tmp_path / "t1.nii.gz").mkdir()
        with pytest.raises(InputNotFound):
            resolve_input(tmp_path / "t1.nii.gz", "T1")

    def test_empty_path(self) -> None:
        with pytest.raises(InputNotFound, match="empty"):
            resolve_input("", "T1")

    def test_relative_output(self, tmp_path: Path) -> None:
        assert resolve_output("results/s01", cwd=tmp_path) == tmp_path / "results" / "s01"


# ========================================================================
# Workspace
# ========================================================================


class TestWorkspace:
    def test_create_layout_and_links(self, inputs, output_dir: Path) -> None:
        ws = Workspace.create(output_dir, inputs["t1"], inputs["flair"])

        for folder in ("proc/orig", "proc/pre", "proc/seg"):
            assert (output_dir / folder).is_dir()

        flair_link = output_dir / "flair.nii.gz"
        assert flair_link.is_symlink()
        assert not os.path.isabs(os.readlink(flair_link))
        assert flair_link.resolve() == inputs["flair"].resolve()
        assert (output_dir / "t1.nii.gz").is_symlink()
        assert ws.pre_flair == output_dir / "proc" / "pre" / "FLAIR.nii.gz"

    def test_inputs_validated_before_anything_is_created(self, inputs, output_dir: Path) -> None:
        with pytest.raises(InputNotFound):
            Workspace.create(output_dir, inputs["t1"], output_dir.parent / "nope.nii.gz")
        assert not output_dir.exists()

    def test_create_is_idempotent(self, inputs, output_dir: Path) -> None:
        Workspace.create(output_dir, inputs["t1"], inputs["flair"])
        Workspace.create(output_dir, inputs["t1"], inputs["flair"])
        assert (output_dir / "flair.nii.gz").is_symlink()

    def test_existing_entry_left_untouched(self, inputs, output_dir: Path) -> None:
        output_dir.mkdir(parents=True)
        (output_dir / "flair.nii.gz").write_text("keep me")
        Workspace.create(output_dir, inputs["t1"], inputs["flair"])
        assert (output_dir / "flair.nii.gz").read_text() == "keep me"

    def test_inputs_inside_root_not_linked(self, output_dir: Path) -> None:
        t1 = make_nifti(output_dir / "t1.nii.gz")
        flair = make_nifti(output_dir / "flair.nii.gz")
        Workspace.create(output_dir, t1, flair)
        assert not t1.is_symlink()
        assert not flair.is_symlink()

    def test_is_preprocessed_flag(self, inputs, output_dir: Path) -> None:
        ws = Workspace.create(output_dir, inputs["t1"], inputs["flair"])
        assert not ws.is_preprocessed()
        make_nifti(ws.pre_flair)
        assert ws.is_preprocessed()

    def test_require(self, inputs, output_dir: Path) -> None:
        ws = Workspace.create(output_dir, inputs["t1"], inputs["flair"])
        with pytest.raises(WorkspaceStateError, match="3DT1.nii.gz"):
            ws.require(ws.pre_3dt1)


# ========================================================================
# ArtifactRegistry
# ========================================================================


class TestArtifactRegistry:
    def test_publish_relative_link(self, tmp_path: Path) -> None:
        target = tmp_path / "proc" / "seg" / "PGS" / "result_fixed.nii"
        target.parent.mkdir(parents=True)
        target.write_bytes(b"x")
        registry = ArtifactRegistry(tmp_path)

        link = registry.publish("WMH_PGS.nii", target)

        assert link.is_symlink()
        assert os.readlink(link) == os.path.join("proc", "seg", "PGS", "result_fixed.nii")
        assert registry.resolve("WMH_PGS.nii") == target

    def test_publish_replaces(self, tmp_path: Path) -> None:
        first = tmp_path / "a.nii"
        second = tmp_path / "b.nii"
        first.write_bytes(b"a")
        second.write_bytes(b"b")
        registry = ArtifactRegistry(tmp_path)

        registry.publish("WMH_X.nii", first)
        registry.publish("WMH_X.nii", second)

        assert (tmp_path / "WMH_X.nii").read_bytes() == b"b"

    def test_publish_missing_target(self, tmp_path: Path) -> None:
        with pytest.raises(WorkspaceStateError, match="target missing"):
            ArtifactRegistry(tmp_path).publish("WMH_X.nii", tmp_path / "missing.nii")

    def test_published_and_withdraw(self, tmp_path: Path) -> None:
        target = tmp_path / "mask.nii"
        target.write_bytes(b"m")
        registry = ArtifactRegistry(tmp_path)
        registry.publish("WMH_A.nii", target)

        assert registry.published() == {"WMH_A.nii": target}

        registry.withdraw("WMH_A.nii")
        assert registry.published() == {}
        assert registry.resolve("WMH_A.nii") is None
        assert target.exists()
