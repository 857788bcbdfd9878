"""Base class for bias field correction engines.

Bias field correctors estimate and remove the smooth intensity
non-uniformity caused by receive-coil and field inhomogeneities. Engines
differ only in where N4 runs: as the ANTs executable or in-process.
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict
import logging

logger = logging.getLogger(__name__)


class BaseBiasFieldCorrector(ABC):
    """Abstract base class for N4 engines working on one volume at a time.

    Attributes:
        engine: Engine name ("ants" or "sitk")
        config: Engine-specific parameters
        verbose: Whether to log every validation step
    """

    engine: str = ""

    def __init__(self, config: Dict[str, Any], verbose: bool = False) -> None:
        self.config = config
        self.verbose = verbose
        self.logger = logging.getLogger(f"{__name__}.{self.engine or 'base'}")

    @abstractmethod
    def execute(
        self,
        input_path: Path,
        output_path: Path,
        **kwargs: Any
    ) -> Dict[str, Any]:
        """Correct ``input_path`` and write the result to ``output_path``.

        Args:
            input_path: Path to input NIfTI file
            output_path: Path to output corrected NIfTI file
            **kwargs: Additional engine-specific parameters

        Returns:
            Dictionary with at least 'engine'; engines may add diagnostics.

        Raises:
            FileNotFoundError: If input file does not exist
            FileExistsError: If the output exists and overwriting is not allowed
            ExternalToolFailure: If the external engine fails
            RuntimeError: If in-process correction fails
        """
        pass

    def validate_inputs(self, input_path: Path) -> None:
        """Raise FileNotFoundError unless the input volume exists."""
        if not input_path.exists():
            raise FileNotFoundError(f"Input file not found: {input_path}")

        if self.verbose:
            self.logger.debug(f"Input validation passed: {input_path}")

    def validate_outputs(self, output_path: Path, allow_overwrite: bool = False) -> None:
        """Refuse to clobber an existing output unless allowed; create its folder.

        Raises:
            FileExistsError: If file exists and overwrite is not allowed
        """
        if output_path.exists() and not allow_overwrite:
            raise FileExistsError(
                f"Output file exists and overwrite=False: {output_path}"
            )

        output_path.parent.mkdir(parents=True, exist_ok=True)

    def log_execution(self, input_path: Path, output_path: Path) -> None:
        self.logger.info(f"N4 ({self.engine}): {input_path.name} -> {output_path.name}")
