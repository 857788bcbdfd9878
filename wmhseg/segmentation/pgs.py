"""PGS ensemble U-Net (container)."""

from typing import Optional

import nibabel as nib

from wmhseg.imaging import copy_geometry
from wmhseg.segmentation.base import BaseSegmentationBackend


class PGSBackend(BaseSegmentationBackend):
    """PGS emits a binary mask whose header does not match the FLAIR."""

    backend_id = "PGS"
    label = "PGS"
    raw_output = "result.nii.gz"
    mask_output = "result_fixed.nii"
    threshold = None
    container_image = "pgs_latest.sif"

    def segment(self) -> Optional[str]:
        command = ["sh", "/WMHs_segmentation_PGS.sh", "T1.nii.gz", "FLAIR.nii.gz", "result.nii.gz"]
        self.runner.run(self.container_invocation(command))
        return None

    def normalize_output(self, img: nib.Nifti1Image) -> nib.Nifti1Image:
        return copy_geometry(self.flair_reference(), img)
