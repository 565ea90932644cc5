"""
MMREG Multi-Resolution Pyramid

Create image pyramids for coarse-to-fine registration.

Level 0 is the coarsest level and is optimized first. With the default
schedule, level ``i`` of an ``L``-level pyramid is shrunk by
``2 ** (L - 1 - i)`` along every axis, so the last level is the original
image.
"""

from dataclasses import dataclass
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Tuple

import torch
import torch.nn.functional as F

from ..data.image import ImageData
from ..utils.logging_config import get_logger

logger = get_logger("pyramid")


@dataclass(frozen=True)
class PyramidLevel:
    """Single level of image pyramid"""
    level: int
    image: ImageData
    shrink_factors: Tuple[int, ...]


def default_schedule(num_levels: int, ndim: int) -> List[Tuple[int, ...]]:
    """Isotropic power-of-two schedule, coarsest level first."""
    return [tuple([2 ** (num_levels - 1 - level)] * ndim) for level in range(num_levels)]


def _clip_factors(image: ImageData, factors: Sequence[int]) -> Tuple[int, ...]:
    # Never shrink an axis below a single voxel
    return tuple(max(1, min(int(f), s)) for f, s in zip(factors, image.shape))


def _shrink(image: ImageData, factors: Tuple[int, ...]) -> ImageData:
    """Subsample every factor-th voxel without smoothing."""
    slices = tuple(slice(None, None, f) for f in factors)
    spacing = tuple(s * f for s, f in zip(image.spacing, factors))
    return image.with_data(image.data[slices], spacing=spacing)


def _average(image: ImageData, factors: Tuple[int, ...]) -> ImageData:
    """Average factor-sized blocks; the origin moves to the first block center."""
    pool = F.avg_pool2d if image.ndim == 2 else F.avg_pool3d
    data = image.data
    pooled = pool(data.to(torch.float64)[None, None], kernel_size=factors, stride=factors)[0, 0]
    spacing = tuple(s * f for s, f in zip(image.spacing, factors))
    origin = tuple(o + (f - 1) / 2.0 * s for o, s, f in zip(image.origin, image.spacing, factors))
    return image.with_data(pooled.to(data.dtype) if data.is_floating_point() else pooled,
                           spacing=spacing, origin=origin)


PYRAMID_METHODS: Dict[str, Callable[[ImageData, Tuple[int, ...]], ImageData]] = {
    "shrinking": _shrink,
    "averaging": _average,
}


class ImagePyramid:
    """
    Multi-resolution image pyramid

    Masks are passed through the same schedule and method as images so
    their geometry matches, then re-binarised at 0.5.
    """

    def __init__(
        self,
        image: ImageData,
        num_levels: int = 3,
        method: str = "shrinking",
        schedule: Optional[Sequence[Sequence[int]]] = None,
        is_mask: bool = False,
    ):
        """
        Create image pyramid

        Args:
            image: Full-resolution image
            num_levels: Number of pyramid levels
            method: Key of PYRAMID_METHODS
            schedule: Optional per-level shrink factors, coarsest level first
            is_mask: Binarise every level
        """
        if num_levels < 1:
            raise ValueError(f"num_levels must be >= 1, got {num_levels}")
        if method not in PYRAMID_METHODS:
            raise ValueError(f"Unknown pyramid method '{method}'. Available: {sorted(PYRAMID_METHODS)}")

        schedule = list(schedule) if schedule is not None else default_schedule(num_levels, image.ndim)
        if len(schedule) != num_levels:
            raise ValueError(f"Pyramid schedule has {len(schedule)} levels, expected {num_levels}")

        self.source_image = image
        self.num_levels = num_levels
        self.method = method
        self.is_mask = is_mask
        self.levels: List[PyramidLevel] = []

        reduce = PYRAMID_METHODS[method]
        for level, factors in enumerate(schedule):
            factors = _clip_factors(image, factors)
            source = image.with_data(image.data.to(torch.float64)) if is_mask else image
            level_image = reduce(source, factors) if any(f > 1 for f in factors) else source
            if is_mask:
                level_image = level_image.with_data(level_image.data >= 0.5)

            self.levels.append(PyramidLevel(level=level, image=level_image, shrink_factors=factors))
            logger.debug(
                f"  Level {level}: shape={level_image.shape}, factors={factors}, "
                f"spacing={[f'{s:.2f}' for s in level_image.spacing]}"
            )

    def __getitem__(self, level: int) -> PyramidLevel:
        if not 0 <= level < self.num_levels:
            raise KeyError(f"Invalid pyramid level: {level}")
        return self.levels[level]

    def __len__(self) -> int:
        return self.num_levels

    def coarse_to_fine(self) -> Iterator[PyramidLevel]:
        """Iterate levels from coarsest to finest"""
        return iter(self.levels)


def create_pyramid(
    image: ImageData,
    num_levels: int = 3,
    method: str = "shrinking",
    schedule: Optional[Sequence[Sequence[int]]] = None,
) -> ImagePyramid:
    """
    Create image pyramid

    Args:
        image: Source image
        num_levels: Number of pyramid levels
        method: "shrinking" or "averaging"
        schedule: Optional per-level shrink factors, coarsest first

    Returns:
        ImagePyramid object
    """
    return ImagePyramid(image, num_levels, method, schedule)


def create_mask_pyramid(
    mask: ImageData,
    num_levels: int = 3,
    method: str = "shrinking",
    schedule: Optional[Sequence[Sequence[int]]] = None,
) -> ImagePyramid:
    """Create a binary mask pyramid matching create_pyramid() geometry."""
    return ImagePyramid(mask, num_levels, method, schedule, is_mask=True)
