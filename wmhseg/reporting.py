"""Lesion volume measurement and run reporting.

Volumes are reported in ml with six decimals, exactly as ``printf "%0.6f"``
would format them, so results stay comparable across backends and runs.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional
import json
import logging
import math

import nibabel as nib

from wmhseg.imaging import mask_statistics

logger = logging.getLogger(__name__)

VOLUME_FILENAME = "WMHvolume.txt"


def measure_volume_ml(mask: nib.Nifti1Image) -> float:
    """Return the volume of the nonzero voxels of ``mask`` in ml."""
    _, microliters = mask_statistics(mask)
    return microliters / 1000.0


def format_volume(volume_ml: float) -> str:
    return "%.6f" % volume_ml


def elapsed_minutes(start: float, end: float) -> int:
    """Whole minutes between two ``time.time()`` stamps, rounded down."""
    return int(math.floor(max(end - start, 0.0) / 60.0))


def write_volume_file(folder: Path, volume_ml: float) -> Path:
    """Write ``WMHvolume.txt`` holding the bare volume in ml."""
    path = Path(folder) / VOLUME_FILENAME
    path.write_text(f"{format_volume(volume_ml)}\n")
    return path


def write_backend_report(
    path: Path,
    volume_ml: float,
    minutes: int,
    extra: Optional[str] = None,
) -> Path:
    """Write the human-readable per-backend result file.

    Args:
        path: Destination (``WMH_<label>.txt`` at the workspace root).
        volume_ml: Lesion volume in ml.
        minutes: Elapsed processing time in whole minutes.
        extra: Optional tool output appended after the two result lines.
    """
    lines = [
        f"WMH Volume: {format_volume(volume_ml)} ml",
        f"Processing time: {minutes} minutes",
    ]
    text = "\n".join(lines) + "\n"
    if extra:
        text += extra if extra.endswith("\n") else extra + "\n"
    path = Path(path)
    path.write_text(text)
    logger.debug(f"Wrote report {path}")
    return path


@dataclass
class BackendRunRecord:
    """Result of running one segmentation backend.

    Attributes:
        backend: Backend identifier (e.g. "SYSU").
        label: Name used for the output directory and published files.
        status: "success", "failed" or "dry-run".
        output_dir: Backend working directory.
        raw_output: Raw image produced by the tool.
        mask: Binarized mask the published link points to.
        volume_ml: Lesion volume in ml.
        minutes: Elapsed whole minutes.
        report: Path of ``WMH_<label>.txt``.
        link: Path of ``WMH_<label>.nii``.
        error: Error message when the backend failed.
        returncode: Exit status of the failing tool, if any.
    """

    backend: str
    label: str
    status: str = "pending"
    output_dir: str = ""
    raw_output: str = ""
    mask: str = ""
    volume_ml: Optional[float] = None
    minutes: Optional[int] = None
    report: str = ""
    link: str = ""
    error: str = ""
    returncode: Optional[int] = None

    @property
    def success(self) -> bool:
        return self.status == "success"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RunSummary:
    """Aggregated multi-status report of one invocation.

    Attributes:
        timestamp: ISO timestamp of the run start.
        t1: Original T1 path.
        flair: Original FLAIR path.
        output_dir: Workspace root.
        threads: Thread budget.
        preprocessing: "ran", "skipped" or "failed".
        backends: Per-backend records in execution order.
        config: Serialized configuration.
    """

    t1: str
    flair: str
    output_dir: str
    threads: int
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())
    preprocessing: str = "pending"
    backends: List[BackendRunRecord] = field(default_factory=list)
    config: Dict[str, Any] = field(default_factory=dict)

    @property
    def failed(self) -> List[BackendRunRecord]:
        return [r for r in self.backends if r.status == "failed"]

    @property
    def succeeded(self) -> List[BackendRunRecord]:
        return [r for r in self.backends if r.success]

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["backends"] = [r.to_dict() for r in self.backends]
        return data

    def save(self, output_path: Path) -> None:
        """Save the summary as JSON, creating parent directories."""
        output_path.parent.mkdir(parents=True, exist_ok=True)
        with open(output_path, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2, default=str)
        logger.info(f"Run summary saved to: {output_path}")

    def log(self) -> None:
        """Log one line per backend."""
        logger.info("=" * 60)
        logger.info("RUN SUMMARY")
        logger.info("=" * 60)
        logger.info(f"Preprocessing: {self.preprocessing}")
        for record in self.backends:
            if record.success:
                logger.info(
                    f"  {record.backend:<12} OK      {format_volume(record.volume_ml)} ml "
                    f"({record.minutes} min)"
                )
            elif record.status == "failed":
                logger.info(f"  {record.backend:<12} FAILED  {record.error}")
            else:
                logger.info(f"  {record.backend:<12} {record.status}")
        logger.info(f"{len(self.succeeded)}/{len(self.backends)} backend(s) succeeded")
