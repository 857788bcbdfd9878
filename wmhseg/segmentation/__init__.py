"""WMH segmentation backends."""

from typing import Dict, Type

from wmhseg.segmentation.base import BaseSegmentationBackend
from wmhseg.segmentation.fmrib import FMRIBBackend
from wmhseg.segmentation.lpa import LPABackend
from wmhseg.segmentation.lstai import LSTAIBackend
from wmhseg.segmentation.pgs import PGSBackend
from wmhseg.segmentation.sysu import SYSUBackend
from wmhseg.segmentation.ucd import UCDBackend
from wmhseg.segmentation.wmhsynthseg import WMHSynthSegBackend

# Keyed by backend id, in canonical execution order
BACKENDS: Dict[str, Type[BaseSegmentationBackend]] = {
    "LPA": LPABackend,
    "LSTAI": LSTAIBackend,
    "PGS": PGSBackend,
    "SYSU": SYSUBackend,
    "FMRIB": FMRIBBackend,
    "UCD": UCDBackend,
    "WMHsynthseg": WMHSynthSegBackend,
}

__all__ = [
    "BACKENDS",
    "BaseSegmentationBackend",
    "FMRIBBackend",
    "LPABackend",
    "LSTAIBackend",
    "PGSBackend",
    "SYSUBackend",
    "UCDBackend",
    "WMHSynthSegBackend",
]
