"""FMRIB TrUE-Net triplanar ensemble (container)."""

from typing import Optional

import nibabel as nib

from wmhseg.imaging import copy_geometry, flip_xy
from wmhseg.segmentation.base import BaseSegmentationBackend


class FMRIBBackend(BaseSegmentationBackend):
    """TrUE-Net writes its mask with X and Y reversed relative to the FLAIR.

    The voxel array is flipped along both in-plane axes and then given the
    FLAIR's geometry, so a lesion at voxel (x, y, z) of the raw output ends
    up at (nx-1-x, ny-1-y, z).
    """

    backend_id = "FMRIB"
    label = "fmrib-truenet_2"
    raw_output = "result.nii.gz"
    mask_output = "result_fixed.nii"
    threshold = None
    container_image = "fmrib-truenet_2_latest.sif"

    def segment(self) -> Optional[str]:
        self.runner.run(self.container_invocation(["python", "/wmhseg_example/example.py"]))
        return None

    def normalize_output(self, img: nib.Nifti1Image) -> nib.Nifti1Image:
        return copy_geometry(self.flair_reference(), flip_xy(img))
