"""UC Davis WMHkit (container, after FSL brain extraction)."""

from typing import Optional
import shutil

from wmhseg.imaging import load_image, save_image
from wmhseg.segmentation.base import BaseSegmentationBackend
from wmhseg.tools.commands import fsl_bet

UCD_SCRIPT = "/opt/UCDWMHSegmentation-1.3/ucd_wmh_segmentation/ucd_wmh_segmentation.py"
BET_FRACTION = 0.3


class UCDBackend(BaseSegmentationBackend):
    """WMHkit needs uncompressed T1, brain mask and FLAIR in its working directory.

    The T1 is the reoriented original (``proc/orig/3DT1``), not the aligned
    one; WMHkit registers it itself. The container sees the output
    directory at the same path as the host, and its console output is kept
    in the report.
    """

    backend_id = "UCD"
    label = "UCD"
    raw_output = "FLAIR_WMH_Native.nii"
    mask_output = "FLAIR_WMH_Native_bin.nii"
    threshold = 0.5
    container_image = "UCDWMH/UCD_WMHkit.sif"

    def segment(self) -> Optional[str]:
        out = self.output_dir
        t1 = out / "3DT1.nii"
        flair = out / "FLAIR.nii"
        bet_base = out / "3DT1_bet"
        bet_mask = out / "3DT1_bet_mask.nii"

        if not self.runner.dry_run:
            self.workspace.require(self.workspace.orig / "3DT1.nii.gz")
            save_image(load_image(self.workspace.orig / "3DT1.nii.gz"), t1)
            save_image(load_image(self.workspace.pre_flair), flair)

        self.logger.info("   ==> running brain extraction ...")
        bet = fsl_bet(t1, bet_base, frac=BET_FRACTION)
        self.runner.run(bet)
        if not self.runner.dry_run:
            save_image(load_image(bet.outputs[1]), bet_mask)

        command = [UCD_SCRIPT, t1.name, bet_mask.name, flair.name, "--delete-temporary"]
        result = self.runner.run(
            self.container_invocation(command, binds=[(out, str(out), "")])
        )
        if self.runner.dry_run:
            return None

        shutil.rmtree(out / "3DT1_orig_WMHProcess", ignore_errors=True)
        for path in [t1, flair, bet_mask] + list(bet.outputs):
            if path.exists():
                path.unlink()

        return result.stdout
