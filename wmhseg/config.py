"""Configuration dataclasses for the WMH segmentation pipeline.

This module defines the configuration used to run preprocessing and the
segmentation backends, either built directly from command-line flags or
loaded from a YAML file and overridden by them.
"""

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional
import logging

import yaml

from wmhseg.errors import ConfigurationError

logger = logging.getLogger(__name__)

# Canonical execution order of the segmentation backends
BACKEND_IDS: List[str] = ["LPA", "LSTAI", "PGS", "SYSU", "FMRIB", "UCD", "WMHsynthseg"]

BIAS_CORRECTION_ENGINES = ["ants", "sitk"]
CONTAINER_RUNTIMES = ["singularity", "apptainer"]
LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


@dataclass
class N4Config:
    """Parameters for the in-process SimpleITK N4 engine.

    Attributes:
        shrink_factor: Downsampling factor for speed.
        max_iterations: Iterations per fitting level.
        bias_field_fwhm: FWHM of the bias field Gaussian deconvolution.
        convergence_threshold: Early stopping threshold.
    """

    shrink_factor: int = 4
    max_iterations: List[int] = field(default_factory=lambda: [50, 50, 50, 50])
    bias_field_fwhm: float = 0.15
    convergence_threshold: float = 0.001

    def __post_init__(self) -> None:
        """Validate N4 parameters."""
        if self.shrink_factor < 1:
            raise ConfigurationError(
                f"n4.shrink_factor must be >= 1, got {self.shrink_factor}"
            )
        if not self.max_iterations or any(i < 1 for i in self.max_iterations):
            raise ConfigurationError(
                f"n4.max_iterations must be a non-empty list of positive ints, got {self.max_iterations}"
            )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "shrink_factor": self.shrink_factor,
            "max_iterations": list(self.max_iterations),
            "bias_field_fwhm": self.bias_field_fwhm,
            "convergence_threshold": self.convergence_threshold,
        }


@dataclass
class PipelineConfig:
    """Configuration for a WMH segmentation run.

    Attributes:
        t1: Path to the input T1-weighted image.
        flair: Path to the input FLAIR image.
        output_dir: Workspace root where results are written.
        threads: Thread budget handed to external tools.
        backends: Selected backend identifiers (subset of BACKEND_IDS).
        container_location: Directory holding the Singularity images.
        container_runtime: Container executable ("singularity" or "apptainer").
        freesurfer_home: Current FreeSurfer installation.
        freesurfer_home_dev: Development FreeSurfer installation (WMHsynthseg only).
        matlab_command: MATLAB executable used for LPA.
        bias_correction_engine: "ants" (N4BiasFieldCorrection) or "sitk" (SimpleITK).
        n4: Parameters for the SimpleITK engine.
        tool_timeout: Timeout in seconds per external invocation (None = unbounded).
        max_parallel_backends: Number of backends run concurrently (1 = sequential).
        verify_alignment: Keep the FLAIR-to-T1 sanity resampling as a diagnostic.
        qc_figures: Write a mask overlay PNG per backend.
        dry_run: Log external commands instead of running them.
        log_level: Logging verbosity name.
    """

    t1: str = ""
    flair: str = ""
    output_dir: str = ""
    threads: int = 1
    backends: List[str] = field(default_factory=list)
    container_location: str = "/var/lib/singularity"
    container_runtime: str = "singularity"
    freesurfer_home: str = "/usr/local/freesurfer/current"
    freesurfer_home_dev: str = "/usr/local/freesurfer/7-dev"
    matlab_command: str = "matlab"
    bias_correction_engine: str = "ants"
    n4: N4Config = field(default_factory=N4Config)
    tool_timeout: Optional[float] = None
    max_parallel_backends: int = 1
    verify_alignment: bool = False
    qc_figures: bool = False
    dry_run: bool = False
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        if isinstance(self.n4, dict):
            self.n4 = N4Config(**self.n4)

        if isinstance(self.backends, str):
            self.backends = [self.backends]
        self.backends = normalize_backends(self.backends)

        if self.threads < 1:
            raise ConfigurationError(f"threads must be >= 1, got {self.threads}")

        if self.bias_correction_engine not in BIAS_CORRECTION_ENGINES:
            raise ConfigurationError(
                f"bias_correction_engine must be one of {BIAS_CORRECTION_ENGINES}, "
                f"got {self.bias_correction_engine}"
            )

        if self.container_runtime not in CONTAINER_RUNTIMES:
            raise ConfigurationError(
                f"container_runtime must be one of {CONTAINER_RUNTIMES}, "
                f"got {self.container_runtime}"
            )

        if self.tool_timeout is not None and self.tool_timeout <= 0:
            raise ConfigurationError(
                f"tool_timeout must be positive or None, got {self.tool_timeout}"
            )

        if self.max_parallel_backends < 1:
            raise ConfigurationError(
                f"max_parallel_backends must be >= 1, got {self.max_parallel_backends}"
            )

        if str(self.log_level).upper() not in LOG_LEVELS:
            raise ConfigurationError(
                f"log_level must be one of {LOG_LEVELS}, got {self.log_level}"
            )
        self.log_level = str(self.log_level).upper()

    @property
    def container_dir(self) -> Path:
        return Path(self.container_location)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data["n4"] = self.n4.to_dict()
        data["backends"] = list(self.backends)
        return data


def normalize_backends(backends: List[str]) -> List[str]:
    """Validate backend identifiers and return them in canonical order.

    Identifiers are matched case-insensitively; "ALL" selects every backend.

    Args:
        backends: Requested backend identifiers.

    Returns:
        Unique identifiers ordered as in BACKEND_IDS.

    Raises:
        ConfigurationError: If an identifier is unknown.
    """
    lookup = {b.lower(): b for b in BACKEND_IDS}
    selected = set()
    for name in backends:
        key = str(name).strip().lower()
        if key == "all":
            selected.update(BACKEND_IDS)
            continue
        if key not in lookup:
            raise ConfigurationError(
                f"Unknown backend '{name}'. Valid backends: {BACKEND_IDS}"
            )
        selected.add(lookup[key])
    return [b for b in BACKEND_IDS if b in selected]


def load_pipeline_config(yaml_path: str | Path) -> PipelineConfig:
    """Load pipeline configuration from a YAML file.

    Args:
        yaml_path: Path to the YAML configuration file.

    Returns:
        Validated PipelineConfig object.

    Raises:
        FileNotFoundError: If config file does not exist.
        ConfigurationError: If configuration is invalid.
    """
    yaml_path = Path(yaml_path)

    if not yaml_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

    logger.info(f"Loading pipeline config from {yaml_path}")

    try:
        with open(yaml_path, "r", encoding="utf-8") as f:
            yaml_data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Failed to parse YAML: {e}") from e

    if not yaml_data:
        raise ConfigurationError("Configuration file is empty")

    if "wmhseg" not in yaml_data:
        raise ConfigurationError("Configuration must contain 'wmhseg' top-level key")

    try:
        config = PipelineConfig(**(yaml_data["wmhseg"] or {}))
    except TypeError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e

    logger.info("Pipeline configuration loaded successfully")
    return config
