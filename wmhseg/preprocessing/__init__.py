"""Preprocessing: canonical orientation, bias field correction and alignment."""

from wmhseg.preprocessing.stage import PreprocessingStage

__all__ = ["PreprocessingStage"]
