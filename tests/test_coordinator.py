"""End-to-end tests of the run coordinator with every external tool faked."""

import json
import os
from pathlib import Path

import pytest

from conftest import FakeRunner, make_nifti
from wmhseg.config import BACKEND_IDS
from wmhseg.coordinator import RunCoordinator
from wmhseg.errors import InputNotFound, PreprocessingFailed, UsageError

LABELS = ["LPA", "LST-AI", "PGS", "sysu_media_2", "fmrib-truenet_2", "UCD", "WMHsynthseg"]


def _runner(output_dir: Path, **kwargs) -> FakeRunner:
    return FakeRunner(reference=output_dir / "proc" / "pre" / "FLAIR.nii.gz", **kwargs)


class TestRunCoordinator:
    def test_single_backend(self, make_config, fake_runner: FakeRunner, output_dir: Path) -> None:
        config = make_config(backends=["LPA"], threads=4)

        summary = RunCoordinator(config, runner=fake_runner).run()

        assert summary.preprocessing == "ran"
        assert [r.status for r in summary.backends] == ["success"]

        link = output_dir / "WMH_LPA.nii"
        assert link.is_symlink()
        assert not os.path.isabs(os.readlink(link))
        assert link.resolve() == (output_dir / "proc" / "seg" / "LPA" / "ples_lpa_mFLAIR_bin.nii").resolve()
        assert (output_dir / "WMH_LPA.txt").read_text() == (
            "WMH Volume: 0.024000 ml\nProcessing time: 0 minutes\n"
        )
        assert (output_dir / "proc" / "seg" / "LPA" / "WMHvolume.txt").read_text() == "0.024000\n"
        assert (output_dir / "FLAIR_preprocessed.nii.gz").exists()
        assert not (output_dir / "WMH_PGS.nii").exists()

    def test_all_backends(self, make_config, fake_runner: FakeRunner, output_dir: Path) -> None:
        config = make_config(backends=["ALL"])

        summary = RunCoordinator(config, runner=fake_runner).run()

        assert [r.backend for r in summary.backends] == BACKEND_IDS
        assert summary.failed == []
        for label in LABELS:
            assert (output_dir / f"WMH_{label}.nii").is_symlink()
            report = (output_dir / f"WMH_{label}.txt").read_text()
            assert report.startswith("WMH Volume: 0.024000 ml\n")

        data = json.loads((output_dir / "proc" / "run_summary.json").read_text())
        assert data["preprocessing"] == "ran"
        assert [b["label"] for b in data["backends"]] == LABELS
        assert data["config"]["backends"] == BACKEND_IDS

    def test_failure_isolation(self, make_config, output_dir: Path) -> None:
        config = make_config(backends=["LPA", "PGS", "SYSU"])
        runner = _runner(output_dir, failures={"PGS": 3})

        summary = RunCoordinator(config, runner=runner).run()

        statuses = {r.backend: r.status for r in summary.backends}
        assert statuses == {"LPA": "success", "PGS": "failed", "SYSU": "success"}
        failed = summary.failed[0]
        assert failed.returncode == 3
        assert "PGS" in failed.error
        assert (output_dir / "WMH_sysu_media_2.nii").is_symlink()
        assert not (output_dir / "WMH_PGS.nii").exists()
        assert not (output_dir / "WMH_PGS.txt").exists()

    @pytest.mark.parametrize("corruption", ["garbage", "truncated_gzip"])
    def test_unreadable_output_isolated(self, make_config, output_dir: Path, tmp_path: Path, corruption: str) -> None:
        full = tmp_path / "full.nii.gz"
        make_nifti(full)
        payload = {
            "garbage": b"this is not a nifti file",
            "truncated_gzip": full.read_bytes()[: full.stat().st_size // 2],
        }[corruption]

        def _corrupt(invocation, runner) -> str:
            for output in invocation.outputs:
                Path(output).write_bytes(payload)
            return ""

        runner = _runner(output_dir, handlers={"PGS": _corrupt})
        summary = RunCoordinator(make_config(backends=["PGS", "SYSU"]), runner=runner).run()

        statuses = {r.backend: r.status for r in summary.backends}
        assert statuses == {"PGS": "failed", "SYSU": "success"}
        assert "result.nii.gz" in summary.failed[0].error
        assert not (output_dir / "WMH_PGS.nii").exists()
        data = json.loads((output_dir / "proc" / "run_summary.json").read_text())
        assert [b["status"] for b in data["backends"]] == ["failed", "success"]

    def test_rerun_one_backend_leaves_others(self, make_config, fake_runner: FakeRunner, output_dir: Path) -> None:
        RunCoordinator(make_config(backends=["LPA", "PGS"]), runner=fake_runner).run()
        lpa_report = (output_dir / "WMH_LPA.txt").read_text()
        lpa_mask = (output_dir / "proc" / "seg" / "LPA" / "ples_lpa_mFLAIR_bin.nii").read_bytes()

        runner = _runner(output_dir)
        summary = RunCoordinator(make_config(backends=["PGS"]), runner=runner).run()

        assert summary.preprocessing == "skipped"
        assert runner.names == ["PGS"]
        assert (output_dir / "WMH_LPA.txt").read_text() == lpa_report
        assert (output_dir / "proc" / "seg" / "LPA" / "ples_lpa_mFLAIR_bin.nii").read_bytes() == lpa_mask
        assert (output_dir / "WMH_LPA.nii").is_symlink()

    def test_parallel_backends(self, make_config, fake_runner: FakeRunner, output_dir: Path) -> None:
        config = make_config(backends=["PGS", "SYSU", "FMRIB", "LSTAI"], max_parallel_backends=3)

        summary = RunCoordinator(config, runner=fake_runner).run()

        assert [r.backend for r in summary.backends] == ["LSTAI", "PGS", "SYSU", "FMRIB"]
        assert all(r.success for r in summary.backends)
        assert sorted(fake_runner.names[-4:]) == sorted(["LST-AI", "PGS", "sysu_media_2", "fmrib-truenet_2"])

    def test_preprocessing_failure_stops_backends(self, make_config, output_dir: Path) -> None:
        runner = _runner(output_dir, failures={"mri_synthsr": 1})

        with pytest.raises(PreprocessingFailed):
            RunCoordinator(make_config(backends=["PGS"]), runner=runner).run()

        assert "PGS" not in runner.names
        data = json.loads((output_dir / "proc" / "run_summary.json").read_text())
        assert data["preprocessing"] == "failed"
        assert data["backends"] == []

    def test_empty_selection(self, make_config, fake_runner: FakeRunner, output_dir: Path) -> None:
        with pytest.raises(UsageError):
            RunCoordinator(make_config(backends=[]), runner=fake_runner).run()
        assert not output_dir.exists()

    def test_missing_input(self, make_config, fake_runner: FakeRunner, tmp_path: Path) -> None:
        config = make_config(flair=str(tmp_path / "missing.nii.gz"))
        with pytest.raises(InputNotFound):
            RunCoordinator(config, runner=fake_runner).run()
        assert fake_runner.calls == []

    def test_relative_paths(self, make_config, fake_runner: FakeRunner, tmp_path: Path, output_dir: Path) -> None:
        config = make_config(
            t1="inputs/t1.nii.gz",
            flair="inputs/flair.nii.gz",
            output_dir="out",
            backends=["PGS"],
        )

        summary = RunCoordinator(config, runner=fake_runner, cwd=tmp_path).run()

        assert summary.output_dir == str(output_dir)
        assert (output_dir / "WMH_PGS.nii").is_symlink()

    def test_dry_run(self, make_config, output_dir: Path) -> None:
        runner = _runner(output_dir, dry_run=True)
        config = make_config(backends=["LPA", "UCD"], dry_run=True)

        summary = RunCoordinator(config, runner=runner).run()

        assert runner.calls == []
        assert [r.status for r in summary.backends] == ["dry-run", "dry-run"]
        assert summary.failed == []
        assert not (output_dir / "WMH_LPA.nii").exists()
