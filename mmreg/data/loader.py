"""
MMREG Image Loader

Load images with SimpleITK into ImageData.

SimpleITK reports spacing and origin in (x, y[, z]) order while the voxel
array comes back as (z, y, x); both are reversed here so that spacing,
origin and tensor axes all use the same order. The direction matrix is
not applied: physical coordinates are axis-aligned.
"""

from pathlib import Path
from typing import Union

import numpy as np
import torch
import SimpleITK as sitk

from .image import ImageData
from ..utils.logging_config import get_logger

logger = get_logger("loader")


def _read(path: Union[str, Path]) -> sitk.Image:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Image file not found: {path}")
    return sitk.ReadImage(str(path))


def _to_image_data(sitk_image: sitk.Image, dtype: np.dtype) -> ImageData:
    array = sitk.GetArrayFromImage(sitk_image).astype(dtype)
    if sitk_image.GetNumberOfComponentsPerPixel() != 1:
        raise ValueError("Only scalar images are supported")

    direction = np.asarray(sitk_image.GetDirection()).reshape(sitk_image.GetDimension(), -1)
    if not np.allclose(direction, np.eye(sitk_image.GetDimension())):
        logger.warning("  Non-identity direction matrix ignored")

    return ImageData(
        data=torch.from_numpy(np.ascontiguousarray(array)),
        spacing=tuple(float(s) for s in reversed(sitk_image.GetSpacing())),
        origin=tuple(float(o) for o in reversed(sitk_image.GetOrigin())),
    )


def load_image(path: Union[str, Path]) -> ImageData:
    """
    Load a 2-D or 3-D scalar image

    Args:
        path: Any format SimpleITK reads (.nii.gz, .mha, .nrrd, .png, ...)

    Returns:
        ImageData with float32 intensities
    """
    logger.info(f"Loading image: {Path(path).name}")
    image = _to_image_data(_read(path), np.float32)
    logger.debug(f"  Shape: {image.shape}")
    logger.debug(f"  Spacing: {[f'{s:.3f}mm' for s in image.spacing]}")
    return image


def load_mask(path: Union[str, Path]) -> ImageData:
    """Load a mask; every non-zero voxel is foreground."""
    logger.info(f"Loading mask: {Path(path).name}")
    mask = _to_image_data(_read(path), np.float32)
    foreground = (mask.data != 0).to(torch.float32)
    logger.debug(f"  Foreground voxels: {int(foreground.sum())}")
    return mask.with_data(foreground)
