"""FreeSurfer WMH-SynthSeg (development FreeSurfer build)."""

from typing import Dict, Optional

import nibabel as nib

from wmhseg.imaging import load_image, reset_space, save_image, select_label
from wmhseg.segmentation.base import BaseSegmentationBackend
from wmhseg.tools.commands import mri_wmhsynthseg

# Label of white matter hyperintensities in the WMH-SynthSeg parcellation
WMH_LABEL = 77


class WMHSynthSegBackend(BaseSegmentationBackend):
    """Runs ``mri_WMHsynthseg`` on the canonical FLAIR.

    The tool ships only with the development FreeSurfer installation, so its
    invocation gets an environment pointing there instead of the current one.
    """

    backend_id = "WMHsynthseg"
    label = "WMHsynthseg"
    raw_output = "Result.nii.gz"
    mask_output = "Result_binary.nii"
    threshold = None

    def freesurfer_env(self) -> Dict[str, str]:
        """Environment overrides switching FreeSurfer to the development build."""
        current = self.config.freesurfer_home
        dev = self.config.freesurfer_home_dev
        path = self.runner.base_env.get("PATH", "")
        return {
            "FREESURFER_HOME": dev,
            "MNI_DIR": f"{dev}/mni",
            "PATH": path.replace(current, dev) if current else path,
        }

    def segment(self) -> Optional[str]:
        self.logger.info("   ==> running WMHsynthseg ...")
        invocation = mri_wmhsynthseg(
            self.workspace.pre_flair,
            self.raw_output_path,
            self.output_dir / "Result.csv",
            threads=self.config.threads,
            env=self.freesurfer_env(),
        )
        self.runner.run(invocation)
        if self.runner.dry_run:
            return None

        # Both outputs carry a template space code; mark them as native
        for path in invocation.outputs:
            save_image(reset_space(load_image(path)), path)
        return None

    def binarize_output(self, img: nib.Nifti1Image) -> nib.Nifti1Image:
        return select_label(img, WMH_LABEL)
