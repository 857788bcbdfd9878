"""sysu_media_2 deep stack networks (container)."""

from typing import Optional

import nibabel as nib

from wmhseg.imaging import copy_geometry
from wmhseg.segmentation.base import BaseSegmentationBackend


class SYSUBackend(BaseSegmentationBackend):
    """The SYSU output is a soft map; only voxels at (numerically) 1 count."""

    backend_id = "SYSU"
    label = "sysu_media_2"
    raw_output = "result.nii.gz"
    mask_output = "result_fixed.nii"
    threshold = 0.9999
    container_image = "sysu_media_2_latest.sif"

    def segment(self) -> Optional[str]:
        self.runner.run(self.container_invocation(["python", "/wmhseg_example/example.py"]))
        return None

    def normalize_output(self, img: nib.Nifti1Image) -> nib.Nifti1Image:
        return copy_geometry(self.flair_reference(), img)
