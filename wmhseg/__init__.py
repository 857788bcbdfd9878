"""Multi-backend white matter hyperintensity segmentation."""

__version__ = "0.1.0"
