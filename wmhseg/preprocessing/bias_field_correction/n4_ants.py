"""N4 bias field correction through the ANTs executable."""

from pathlib import Path
from typing import Any, Dict, Optional
import logging

from wmhseg.preprocessing.bias_field_correction.base import BaseBiasFieldCorrector
from wmhseg.tools.commands import n4_bias_field_correction
from wmhseg.tools.runner import ToolRunner

logger = logging.getLogger(__name__)


class AntsN4BiasFieldCorrector(BaseBiasFieldCorrector):
    """Runs ``N4BiasFieldCorrection`` with its default schedule.

    Attributes:
        runner: ToolRunner used to launch the executable
    """

    engine = "ants"

    def __init__(self, runner: ToolRunner, config: Optional[Dict[str, Any]] = None, verbose: bool = False) -> None:
        super().__init__(config=config or {}, verbose=verbose)
        self.runner = runner

    def execute(
        self,
        input_path: Path,
        output_path: Path,
        **kwargs: Any
    ) -> Dict[str, Any]:
        allow_overwrite = kwargs.get("allow_overwrite", False)

        self.validate_inputs(input_path)
        self.validate_outputs(output_path, allow_overwrite=allow_overwrite)
        self.log_execution(input_path, output_path)

        result = self.runner.run(n4_bias_field_correction(input_path, output_path))
        return {"engine": self.engine, "elapsed": result.elapsed}
