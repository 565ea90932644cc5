"""MMREG Preprocessing Module"""

from .pyramid import (
    ImagePyramid,
    PyramidLevel,
    PYRAMID_METHODS,
    create_pyramid,
    create_mask_pyramid,
    default_schedule,
)
from .mask import erode_mask

__all__ = [
    "ImagePyramid",
    "PyramidLevel",
    "PYRAMID_METHODS",
    "create_pyramid",
    "create_mask_pyramid",
    "default_schedule",
    "erode_mask",
]
