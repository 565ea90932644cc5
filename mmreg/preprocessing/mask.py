"""
MMREG Mask Operations

Binary erosion of region-of-validity masks. Eroding a mask before a level
keeps samples away from the mask boundary, where interpolation mixes in
values from outside the valid region.
"""

from typing import Sequence, Union

import torch
import torch.nn.functional as F

from ..data.image import ImageData


def erode_mask(mask: ImageData, radius: Union[int, Sequence[int]]) -> ImageData:
    """
    Erode a binary mask with a box structuring element

    Voxels outside the image grid do not erode the mask.

    Args:
        mask: Binary mask image
        radius: Erosion radius in voxels, scalar or one per axis

    Returns:
        New eroded mask (the input is never modified)
    """
    if isinstance(radius, int):
        radius = (radius,) * mask.ndim
    radius = tuple(int(r) for r in radius)
    if any(r < 0 for r in radius):
        raise ValueError(f"Erosion radius must be >= 0, got {radius}")

    binary = mask.data > 0.5
    if all(r == 0 for r in radius):
        return mask.with_data(binary)

    pool = F.max_pool2d if mask.ndim == 2 else F.max_pool3d
    kernel = tuple(2 * r + 1 for r in radius)

    # min-pool as -max_pool(-x); implicit padding is -inf so borders are ignored
    inverted = -binary.to(torch.float32)[None, None]
    eroded = -pool(inverted, kernel_size=kernel, stride=1, padding=radius)

    return mask.with_data(eroded[0, 0] > 0.5)
