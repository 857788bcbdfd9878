"""LST-AI deep-learning ensemble (container)."""

from typing import Optional

from wmhseg.segmentation.base import BaseSegmentationBackend

LST_INPUT = "/custom_apps/lst_input"
LST_OUTPUT = "/custom_apps/lst_output"
LST_TEMP = "/custom_apps/lst_temp"


class LSTAIBackend(BaseSegmentationBackend):
    """LST-AI reads the canonical 3DT1 and FLAIR and writes into ``Result``."""

    backend_id = "LSTAI"
    label = "LST-AI"
    raw_output = "Result/space-flair_seg-lst.nii.gz"
    mask_output = "Result/space-flair_seg-lst_bin.nii"
    threshold = 0.5
    container_image = "LST-AI.sif"

    def segment(self) -> Optional[str]:
        result_dir = self.output_dir / "Result"
        temp_dir = self.output_dir / "tmp"
        if not self.runner.dry_run:
            result_dir.mkdir(parents=True, exist_ok=True)
            temp_dir.mkdir(parents=True, exist_ok=True)

        command = [
            "lst",
            "--device", "cpu",
            "--t1", f"{LST_INPUT}/3DT1.nii.gz",
            "--flair", f"{LST_INPUT}/FLAIR.nii.gz",
            "--output", LST_OUTPUT,
            "--temp", LST_TEMP,
        ]
        binds = [
            (self.workspace.pre, LST_INPUT, "ro"),
            (result_dir, LST_OUTPUT, ""),
            (temp_dir, LST_TEMP, ""),
        ]
        self.runner.run(self.container_invocation(command, binds=binds, gpu=True))
        return None
