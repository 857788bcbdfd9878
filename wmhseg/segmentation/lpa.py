"""Lesion Prediction Algorithm (SPM12 / LST toolbox, run through MATLAB)."""

from pathlib import Path
from typing import Optional
import logging

import nibabel as nib

from wmhseg.imaging import load_image, reset_space, save_image
from wmhseg.segmentation.base import BaseSegmentationBackend
from wmhseg.tools.commands import matlab_batch

logger = logging.getLogger(__name__)

# Volume LST itself reports in its HTML report, written by the batch below
LPA_VOLUME_FILENAME = "WMHvolumeLPA.txt"

LPA_BATCH = " ".join([
    "try;",
    "disp('Running LPA ...');",
    "matlabbatch{1}.spm.tools.LST.lpa.data_F2 = {'FLAIR.nii,1'};",
    "matlabbatch{1}.spm.tools.LST.lpa.html_report = 1;",
    "spm('defaults', 'FMRI');",
    "spm_jobman('run', matlabbatch);",
    "report = fileread('report_LST_lpa_mFLAIR.html');",
    r"lines = regexp(report, '[^\n]*', 'match');",
    "for i = 1:numel(lines)-1,",
    "if contains(lines{i}, '<td>Lesion volume</td>'),",
    "volumeline = lines{i+1};",
    "sep1 = strfind(volumeline, '>');",
    "sep2 = strfind(volumeline, 'ml');",
    "HyperIntensityVolume = str2double(volumeline(sep1(1)+1:sep2(1)-1));",
    "end;",
    "end;",
    r"dlmwrite('" + LPA_VOLUME_FILENAME + r"', HyperIntensityVolume, 'delimiter', '\t', 'precision', '%.6f');",
    "catch ME; disp(getReport(ME)); exit(1); end; exit(0);",
])


class LPABackend(BaseSegmentationBackend):
    """Runs LST's LPA on an uncompressed copy of the canonical FLAIR.

    LPA writes a lesion probability map, ``ples_lpa_mFLAIR.nii``, next to
    its input, so the FLAIR is copied into the output directory first.
    """

    backend_id = "LPA"
    label = "LPA"
    raw_output = "ples_lpa_mFLAIR.nii"
    mask_output = "ples_lpa_mFLAIR_bin.nii"
    threshold = 0.5

    def segment(self) -> Optional[str]:
        flair_copy = self.output_dir / "FLAIR.nii"
        if not self.runner.dry_run:
            # SPM reads only uncompressed NIfTI
            save_image(load_image(self.workspace.pre_flair), flair_copy)

        self.runner.run(
            matlab_batch(
                self.config.matlab_command,
                LPA_BATCH,
                cwd=self.output_dir,
                outputs=[self.raw_output_path],
            )
        )
        if self.runner.dry_run:
            return None

        for name in ("FLAIR.nii", "mFLAIR.nii"):
            path = self.output_dir / name
            if path.exists():
                path.unlink()

        reported = read_reported_volume(self.output_dir / LPA_VOLUME_FILENAME)
        if reported is not None:
            self.logger.info(f"   ==> LST reported lesion volume: {reported:.6f} ml")
        return None

    def normalize_output(self, img: nib.Nifti1Image) -> nib.Nifti1Image:
        return reset_space(img)


def read_reported_volume(path: Path) -> Optional[float]:
    """Parse the volume MATLAB wrote, or None if absent or unreadable."""
    if not path.exists():
        return None
    try:
        return float(path.read_text().split()[0])
    except (IndexError, ValueError):
        logger.warning(f"Could not parse LST volume from {path}")
        return None
