"""MMREG Data Module - Image containers, loading and saving"""

from .image import ImageData
from .loader import load_image, load_mask
from .saver import save_image, save_parameters

__all__ = [
    "ImageData",
    "load_image",
    "load_mask",
    "save_image",
    "save_parameters",
]
