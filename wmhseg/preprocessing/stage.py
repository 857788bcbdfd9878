"""Preprocessing stage: canonical orientation, bias correction and T1-to-FLAIR alignment.

The stage runs at most once per workspace. Its outputs are three canonical
volumes in ``proc/pre`` (FLAIR, T1 on the FLAIR grid, 3DT1 at its own
resolution) that every backend reads. Alignment goes through a synthetic T1
generated from the FLAIR, since FLAIR-to-T1 contrast is too different for a
direct rigid registration to be reliable.

Intermediates live in ``proc/orig``. The canonical FLAIR is moved into place
last, so its presence means the whole stage completed.
"""

from pathlib import Path
from typing import List
import logging
import shutil

from wmhseg.config import PipelineConfig
from wmhseg.errors import PreprocessingFailed, WMHSegError
from wmhseg.imaging import (
    deoblique,
    is_oblique,
    load_image,
    orientation_code,
    reorient,
    reset_space,
    save_image,
    voxel_size,
)
from wmhseg.preprocessing.bias_field_correction import create_bias_field_corrector
from wmhseg.tools.commands import (
    afni_resample,
    convert_xfm_inverse,
    flirt_apply,
    flirt_estimate,
    mri_synthsr,
)
from wmhseg.tools.runner import ToolRunner
from wmhseg.workspace import (
    FLAIR_PREPROCESSED,
    REG_3DT1_TO_FLAIR,
    REG_FLAIR_TO_3DT1,
    SYNTH_T1,
    T1_ALIGNED,
    Workspace,
)

logger = logging.getLogger(__name__)

# AFNI orientation codes of the canonical inputs
T1_ORIENTATION = "LPI"
FLAIR_ORIENTATION = "RPI"

RIGID_DOF = 6

SKIP_MESSAGE = "found existing files, skipping preprocessing, delete if errors occur"


class PreprocessingStage:
    """Builds ``proc/pre`` from the original T1 and FLAIR.

    Attributes:
        workspace: Run workspace
        config: Pipeline configuration
        runner: ToolRunner for the external tools
    """

    def __init__(self, workspace: Workspace, config: PipelineConfig, runner: ToolRunner) -> None:
        self.workspace = workspace
        self.config = config
        self.runner = runner
        self.logger = logging.getLogger(__name__)

        orig = workspace.orig
        self.orig_3dt1 = orig / "3DT1.nii.gz"
        self.orig_flair = orig / "FLAIR.nii.gz"
        self.orig_t1 = orig / "T1.nii.gz"
        self.t1_n4 = orig / "3DT1_N4.nii.gz"
        self.flair_n4 = orig / "FLAIR_N4.nii.gz"
        self.synth_t1 = orig / "FLAIR_N4_synthT1.nii"
        self.flair_to_t1_mat = orig / "FLAIR_to_T1.mat"
        self.t1_to_flair_mat = orig / "inverse_FLAIR_to_T1.mat"
        self.flair_to_t1 = orig / "FLAIR_to_T1.nii.gz"
        self.t1_to_synth = orig / "3DT1_to_FLAIR.nii.gz"
        self.t1_to_flair = orig / "T1_to_FLAIR.nii.gz"

    def run(self) -> str:
        """Run the stage unless its outputs already exist.

        Returns:
            "skipped" if ``proc/pre/FLAIR.nii.gz`` already existed, else "ran".

        Raises:
            PreprocessingFailed: If any step fails.
        """
        if self.workspace.is_preprocessed():
            self.logger.info(SKIP_MESSAGE)
            return "skipped"

        self.logger.info("=" * 60)
        self.logger.info("PREPROCESSING")
        self.logger.info("=" * 60)

        try:
            self._clear_intermediates()
            self.canonicalize_inputs()
            self.resample_t1_to_flair_grid()
            self.correct_bias_fields()
            self.synthesize_t1()
            self.estimate_alignment()
            self.apply_alignment()
            if self.runner.dry_run:
                self.logger.info("[dry-run] preprocessing outputs not finalized")
                return "ran"
            self.finalize()
        except WMHSegError as e:
            raise PreprocessingFailed(f"Preprocessing failed: {e}", returncode=e.returncode) from e
        except (OSError, RuntimeError, ValueError) as e:
            raise PreprocessingFailed(f"Preprocessing failed: {e}") from e

        self.logger.info("Preprocessing completed")
        return "ran"

    def canonicalize_inputs(self) -> None:
        """Reorient T1 to LPI and FLAIR to RPI, dropping any oblique rotation."""
        self.logger.info("   ==> Reorienting inputs ...")
        if self.runner.dry_run:
            self.logger.info(
                f"[dry-run] reorient {self.workspace.t1} -> {self.orig_3dt1} ({T1_ORIENTATION}), "
                f"{self.workspace.flair} -> {self.orig_flair} ({FLAIR_ORIENTATION})"
            )
            return
        self._canonicalize(self.workspace.t1, self.orig_3dt1, T1_ORIENTATION, "T1")
        self._canonicalize(self.workspace.flair, self.orig_flair, FLAIR_ORIENTATION, "FLAIR")

    def resample_t1_to_flair_grid(self) -> None:
        """Resample the 3DT1 to the FLAIR's orientation and voxel spacing."""
        if self.runner.dry_run and not self.orig_flair.exists():
            orient, spacing = FLAIR_ORIENTATION, None
        else:
            flair = load_image(self.orig_flair)
            orient, spacing = orientation_code(flair), voxel_size(flair)
            self.logger.info(
                f"FLAIR orientation {orient}, voxel size "
                f"{spacing[0]:g} x {spacing[1]:g} x {spacing[2]:g} mm"
            )
        self.runner.run(afni_resample(self.orig_3dt1, self.orig_t1, orient, spacing))

    def correct_bias_fields(self) -> None:
        """N4 on the 3DT1 and the FLAIR independently."""
        self.logger.info("   ==> Bias field correction ...")
        if self.runner.dry_run:
            self.logger.info(
                f"[dry-run] N4 ({self.config.bias_correction_engine}): "
                f"{self.orig_3dt1.name} -> {self.t1_n4.name}, {self.orig_flair.name} -> {self.flair_n4.name}"
            )
            return
        corrector = create_bias_field_corrector(self.config, self.runner)
        corrector.execute(self.orig_3dt1, self.t1_n4, allow_overwrite=True)
        corrector.execute(self.orig_flair, self.flair_n4, allow_overwrite=True)

    def synthesize_t1(self) -> None:
        """Synthesize a T1-like image from the corrected FLAIR in a fresh frame."""
        self.logger.info("   ==> Aligning T1 to FLAIR via synthetic T1 ...")
        self.runner.run(mri_synthsr(self.flair_n4, self.synth_t1, self.config.threads))
        if not self.runner.dry_run:
            save_image(reset_space(load_image(self.synth_t1)), self.synth_t1)

    def estimate_alignment(self) -> None:
        """Rigid synthetic-T1 to 3DT1 registration and its inverse."""
        self.runner.run(
            flirt_estimate(self.synth_t1, self.t1_n4, self.flair_to_t1_mat, dof=RIGID_DOF)
        )
        if self.config.verify_alignment:
            self.runner.run(
                flirt_apply(self.flair_n4, self.t1_n4, self.flair_to_t1, self.flair_to_t1_mat)
            )
        self.runner.run(convert_xfm_inverse(self.flair_to_t1_mat, self.t1_to_flair_mat))

    def apply_alignment(self) -> None:
        """Bring the 3DT1 onto the synthetic T1 grid and onto the FLAIR grid."""
        self.runner.run(
            flirt_apply(self.t1_n4, self.synth_t1, self.t1_to_synth, self.t1_to_flair_mat)
        )
        self.runner.run(
            flirt_apply(self.t1_n4, self.flair_n4, self.t1_to_flair, self.t1_to_flair_mat)
        )

    def finalize(self) -> None:
        """Move results into place, delete intermediates and publish."""
        workspace = self.workspace
        root = workspace.root

        workspace.require(
            self.flair_n4, self.t1_to_synth, self.t1_to_flair,
            self.synth_t1, self.flair_to_t1_mat, self.t1_to_flair_mat,
        )

        shutil.move(str(self.t1_to_synth), str(workspace.pre_3dt1))
        shutil.move(str(self.t1_to_flair), str(workspace.pre_t1))
        shutil.move(str(self.synth_t1), str(root / SYNTH_T1))
        shutil.move(str(self.flair_to_t1_mat), str(root / REG_FLAIR_TO_3DT1))
        shutil.move(str(self.t1_to_flair_mat), str(root / REG_3DT1_TO_FLAIR))
        # Written last: marks the stage as complete
        shutil.move(str(self.flair_n4), str(workspace.pre_flair))

        self._remove(self._intermediates())

        registry = workspace.registry
        registry.publish(T1_ALIGNED, workspace.pre_3dt1)
        registry.publish(FLAIR_PREPROCESSED, workspace.pre_flair)

    def _canonicalize(self, source: Path, destination: Path, code: str, label: str) -> None:
        img = load_image(source)
        oblique = is_oblique(img)
        out = reorient(img, code)
        if oblique:
            self.logger.info(f"{label} oblique, repairing")
            out = deoblique(out)
        save_image(out, destination)
        self.logger.info(f"{label}: {orientation_code(img)} -> {code} ({destination.name})")

    def _intermediates(self) -> List[Path]:
        paths = [self.t1_n4, self.flair_n4, self.t1_to_synth, self.t1_to_flair]
        if not self.config.verify_alignment:
            paths.append(self.flair_to_t1)
        return paths

    def _clear_intermediates(self) -> None:
        # Leftovers of an interrupted run; AFNI refuses to overwrite
        if self.runner.dry_run:
            return
        stale = [
            self.orig_3dt1, self.orig_flair, self.orig_t1, self.synth_t1,
            self.flair_to_t1_mat, self.t1_to_flair_mat, self.flair_to_t1,
        ] + self._intermediates()
        self._remove(stale)

    def _remove(self, paths: List[Path]) -> None:
        for path in paths:
            if path.exists() or path.is_symlink():
                path.unlink()
                self.logger.debug(f"Removed {path}")
