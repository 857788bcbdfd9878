"""Bias field correction engines."""

import logging

from wmhseg.config import BIAS_CORRECTION_ENGINES, PipelineConfig
from wmhseg.preprocessing.bias_field_correction.base import BaseBiasFieldCorrector
from wmhseg.preprocessing.bias_field_correction.n4_ants import AntsN4BiasFieldCorrector
from wmhseg.tools.runner import ToolRunner

logger = logging.getLogger(__name__)


def create_bias_field_corrector(
    config: PipelineConfig,
    runner: ToolRunner,
    verbose: bool = False
) -> BaseBiasFieldCorrector:
    """Create the bias field corrector selected by ``config.bias_correction_engine``.

    Args:
        config: Pipeline configuration
        runner: ToolRunner for the external engine
        verbose: Enable verbose logging

    Returns:
        AntsN4BiasFieldCorrector or SitkN4BiasFieldCorrector

    Raises:
        ValueError: If the engine is unknown
    """
    engine = config.bias_correction_engine

    if engine not in BIAS_CORRECTION_ENGINES:
        raise ValueError(
            f"Invalid bias correction engine: {engine}. Must be one of {BIAS_CORRECTION_ENGINES}"
        )

    logger.info(f"Creating bias field corrector with engine: {engine}")

    if engine == "ants":
        return AntsN4BiasFieldCorrector(runner=runner, verbose=verbose)

    # SimpleITK is only imported when the in-process engine is selected
    from wmhseg.preprocessing.bias_field_correction.n4_sitk import SitkN4BiasFieldCorrector
    return SitkN4BiasFieldCorrector(n4=config.n4, verbose=verbose)


__all__ = [
    "BaseBiasFieldCorrector",
    "AntsN4BiasFieldCorrector",
    "create_bias_field_corrector",
]
