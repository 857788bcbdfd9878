"""Base class for segmentation backends.

A backend wraps one opaque WMH segmentation tool. The base class owns the
contract every backend follows: a fresh output directory, the tool run, a
geometry fix of the raw output, binarization, volume measurement, the
result files and publication at the workspace root. Subclasses only say
how to run their tool and how to fix its output.
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional
import logging
import shutil
import time

import nibabel as nib

from wmhseg.config import PipelineConfig
from wmhseg.errors import BackendFailed, WMHSegError
from wmhseg.imaging import binarize, load_image, save_image
from wmhseg.reporting import (
    BackendRunRecord,
    elapsed_minutes,
    format_volume,
    measure_volume_ml,
    write_backend_report,
    write_volume_file,
)
from wmhseg.tools.commands import Bind, container_exec
from wmhseg.tools.runner import ToolInvocation, ToolRunner
from wmhseg.workspace import Workspace

logger = logging.getLogger(__name__)

# Mount points of the standard container layout
CONTAINER_ORIG = "/input/orig"
CONTAINER_PRE = "/input/pre"
CONTAINER_OUTPUT = "/output"


class BaseSegmentationBackend(ABC):
    """Abstract base class for WMH segmentation backends.

    Class attributes:
        backend_id: Identifier used for selection (e.g. "SYSU").
        label: Output directory name under ``proc/seg`` and published label.
        raw_output: Raw tool output, relative to the output directory.
        mask_output: Binarized mask, relative to the output directory.
        threshold: Binarization threshold (value >= threshold), None keeps values.
        container_image: SIF image, relative to the container location.

    Attributes:
        workspace: Run workspace
        config: Pipeline configuration
        runner: ToolRunner for external tools
    """

    backend_id: str = ""
    label: str = ""
    raw_output: str = ""
    mask_output: str = ""
    threshold: Optional[float] = None
    container_image: str = ""

    def __init__(self, workspace: Workspace, config: PipelineConfig, runner: ToolRunner) -> None:
        self.workspace = workspace
        self.config = config
        self.runner = runner
        self.logger = logging.getLogger(f"{__name__}.{self.backend_id}")

    @property
    def output_dir(self) -> Path:
        return self.workspace.backend_dir(self.label)

    @property
    def raw_output_path(self) -> Path:
        return self.output_dir / self.raw_output

    @property
    def mask_path(self) -> Path:
        return self.output_dir / self.mask_output

    @property
    def link_name(self) -> str:
        return f"WMH_{self.label}.nii"

    @property
    def report_name(self) -> str:
        return f"WMH_{self.label}.txt"

    @property
    def image_path(self) -> Path:
        return self.config.container_dir / self.container_image

    @abstractmethod
    def segment(self) -> Optional[str]:
        """Run the external tool so that ``raw_output_path`` exists.

        Returns:
            Optional text appended to the backend report.

        Raises:
            ExternalToolFailure: If the tool fails.
        """
        pass

    def normalize_output(self, img: nib.Nifti1Image) -> nib.Nifti1Image:
        """Fix the geometry of the raw output. Identity by default."""
        return img

    def binarize_output(self, img: nib.Nifti1Image) -> nib.Nifti1Image:
        """Turn the normalized output into the published mask."""
        if self.threshold is None:
            return img
        return binarize(img, self.threshold)

    def run(self) -> BackendRunRecord:
        """Run the backend end to end.

        Returns:
            BackendRunRecord with status "success" (or "dry-run").

        Raises:
            BackendFailed: If any step fails.
        """
        self.logger.info(f"Running {self.label} ...")
        start = time.time()
        record = BackendRunRecord(
            backend=self.backend_id,
            label=self.label,
            output_dir=str(self.output_dir),
            raw_output=str(self.raw_output_path),
        )

        try:
            if self.runner.dry_run:
                self.segment()
                record.status = "dry-run"
                return record

            self.workspace.require(
                self.workspace.pre_flair, self.workspace.pre_t1, self.workspace.pre_3dt1
            )
            self.prepare_output_dir()

            extra = self.segment()
            self.workspace.require(self.raw_output_path)

            mask = self.binarize_output(self.normalize_output(load_image(self.raw_output_path)))
            save_image(mask, self.mask_path)

            volume_ml = measure_volume_ml(mask)
            write_volume_file(self.output_dir, volume_ml)
            self.logger.info(f"   ==> Volume of FLAIR hyperintensities: {format_volume(volume_ml)} ml")

            root = self.workspace.root
            link = self.workspace.registry.publish(self.link_name, self.mask_path)
            minutes = elapsed_minutes(start, time.time())
            report = write_backend_report(root / self.report_name, volume_ml, minutes, extra)
            self.logger.info(f"   ==> {self.label} took {minutes} minutes.")

        except WMHSegError as e:
            raise BackendFailed(
                self.backend_id, f"{self.label} failed: {e}", returncode=e.returncode
            ) from e
        except (OSError, RuntimeError, ValueError) as e:
            raise BackendFailed(self.backend_id, f"{self.label} failed: {e}") from e

        record.status = "success"
        record.mask = str(self.mask_path)
        record.volume_ml = round(volume_ml, 6)
        record.minutes = minutes
        record.report = str(report)
        record.link = str(link)

        if self.config.qc_figures:
            self.write_qc_figure(mask)

        return record

    def prepare_output_dir(self) -> None:
        """Delete and recreate the output directory and withdraw stale results."""
        if self.output_dir.exists():
            self.logger.info(
                f"   ==> found existing {self.label} segmentation folder, deleting and starting over ..."
            )
            shutil.rmtree(self.output_dir)
        self.output_dir.mkdir(parents=True)

        registry = self.workspace.registry
        registry.withdraw(self.link_name)
        registry.withdraw(self.report_name)

    def write_qc_figure(self, mask: nib.Nifti1Image) -> None:
        """Write the mask overlay PNG; failures are only logged."""
        from wmhseg.visualize import plot_mask_overlay

        output_path = self.output_dir / f"qc_{self.label}.png"
        try:
            plot_mask_overlay(self.workspace.pre_flair, mask, output_path, title=self.label)
        except (WMHSegError, OSError, RuntimeError, ValueError) as e:
            self.logger.warning(f"QC figure for {self.label} failed: {e}")

    def standard_binds(self) -> List[Bind]:
        """orig and pre read-only, the output directory writable."""
        return [
            (self.workspace.orig, CONTAINER_ORIG, "ro"),
            (self.workspace.pre, CONTAINER_PRE, "ro"),
            (self.output_dir, CONTAINER_OUTPUT, ""),
        ]

    def container_invocation(
        self,
        command: List[str],
        binds: Optional[List[Bind]] = None,
        outputs: Optional[List[Path]] = None,
        gpu: bool = False,
    ) -> ToolInvocation:
        """Build a container run of ``command`` in this backend's image."""
        self.logger.info("   ==> running singularity container ...")
        return container_exec(
            runtime=self.config.container_runtime,
            image=self.image_path,
            command=command,
            binds=binds if binds is not None else self.standard_binds(),
            cwd=self.output_dir,
            outputs=outputs if outputs is not None else [self.raw_output_path],
            gpu=gpu,
            name=self.label,
        )

    def flair_reference(self) -> nib.Nifti1Image:
        return load_image(self.workspace.pre_flair)
