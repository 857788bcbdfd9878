"""Tests for the N4 bias field correction engines."""

from pathlib import Path

import nibabel as nib
import numpy as np
import pytest

from conftest import FakeRunner, make_nifti
from wmhseg.config import N4Config
from wmhseg.preprocessing.bias_field_correction import (
    AntsN4BiasFieldCorrector,
    create_bias_field_corrector,
)
from wmhseg.preprocessing.bias_field_correction.n4_sitk import SitkN4BiasFieldCorrector


class TestFactory:
    def test_ants_engine(self, make_config) -> None:
        runner = FakeRunner()
        corrector = create_bias_field_corrector(make_config(), runner)
        assert isinstance(corrector, AntsN4BiasFieldCorrector)
        assert corrector.runner is runner

    def test_sitk_engine(self, make_config) -> None:
        config = make_config(bias_correction_engine="sitk", n4={"shrink_factor": 2})
        corrector = create_bias_field_corrector(config, FakeRunner())
        assert isinstance(corrector, SitkN4BiasFieldCorrector)
        assert corrector.n4.shrink_factor == 2
        assert corrector.n4.max_iterations == [50, 50, 50, 50]

    def test_invalid_engine(self, make_config) -> None:
        config = make_config()
        config.bias_correction_engine = "fsl"
        with pytest.raises(ValueError, match="Invalid bias correction engine"):
            create_bias_field_corrector(config, FakeRunner())


class TestAntsEngine:
    def test_execute(self, tmp_path: Path) -> None:
        source = make_nifti(tmp_path / "3DT1.nii.gz")
        target = tmp_path / "3DT1_N4.nii.gz"
        runner = FakeRunner()

        result = AntsN4BiasFieldCorrector(runner=runner).execute(source, target)

        assert result["engine"] == "ants"
        assert target.is_file()
        argv = runner.calls[0].argv
        assert argv[:3] == ["N4BiasFieldCorrection", "-d", "3"]
        assert argv[argv.index("-o") + 1] == str(target)

    def test_missing_input(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            AntsN4BiasFieldCorrector(runner=FakeRunner()).execute(
                tmp_path / "missing.nii.gz", tmp_path / "out.nii.gz"
            )

    def test_existing_output(self, tmp_path: Path) -> None:
        source = make_nifti(tmp_path / "in.nii.gz")
        target = make_nifti(tmp_path / "out.nii.gz")
        corrector = AntsN4BiasFieldCorrector(runner=FakeRunner())

        with pytest.raises(FileExistsError):
            corrector.execute(source, target)
        corrector.execute(source, target, allow_overwrite=True)


class TestSitkEngine:
    def test_corrects_multiplicative_bias(self, tmp_path: Path) -> None:
        shape = (24, 24, 12)
        x = np.linspace(0.7, 1.3, shape[0], dtype=np.float32)
        bias = np.broadcast_to(x[:, None, None], shape)
        data = (200.0 * bias).astype(np.float32)
        source = make_nifti(tmp_path / "FLAIR.nii.gz", shape=shape, data=data)
        target = tmp_path / "FLAIR_N4.nii.gz"
        field = tmp_path / "bias.nii.gz"

        corrector = SitkN4BiasFieldCorrector(N4Config(shrink_factor=2, max_iterations=[20, 20]))
        result = corrector.execute(source, target, bias_field_output_path=field)

        assert result["engine"] == "sitk"
        assert isinstance(result["final_convergence_value"], float)
        assert field.is_file()

        corrected = np.asanyarray(nib.load(str(target)).dataobj)
        assert corrected.shape == shape
        assert np.all(np.isfinite(corrected))
        # The left-right intensity ramp is flattened
        before = data[-1].mean() / data[0].mean()
        after = corrected[-1].mean() / corrected[0].mean()
        assert abs(after - 1.0) < abs(before - 1.0)
