"""
MMREG Image Samplers and Interpolation

Samplers choose the fixed-image voxels a metric is evaluated on.
Interpolation reads the moving image at transformed physical points using
``torch.nn.functional.grid_sample``, which is differentiable with respect
to the sample positions.
"""

from typing import Callable, Dict, Optional, Tuple

import torch
import torch.nn.functional as F

from .errors import ConfigurationError, SamplesNotAvailableError
from ..data.image import ImageData
from ..utils.logging_config import get_logger

logger = get_logger("sampling")


INTERPOLATORS: Dict[str, str] = {
    "linear": "bilinear",   # trilinear for 3-D input
    "nearest": "nearest",
}


def interpolate(
    image: ImageData,
    points: torch.Tensor,
    interpolator: str = "linear",
) -> Tuple[torch.Tensor, torch.Tensor]:
    """
    Sample an image at physical points

    Args:
        image: Image to sample
        points: (N, ndim) physical points
        interpolator: Key of INTERPOLATORS

    Returns:
        Tuple of (values, inside), where inside flags points within the
        image domain. Values outside the domain are border-clamped.
    """
    if interpolator not in INTERPOLATORS:
        raise ConfigurationError(f"Unknown interpolator '{interpolator}'. Available: {sorted(INTERPOLATORS)}")

    indices = image.physical_to_index(points)
    sizes = torch.tensor(image.shape, dtype=indices.dtype, device=indices.device)
    inside = torch.all((indices >= 0) & (indices <= sizes - 1), dim=1)

    # align_corners=True maps index 0 to -1 and index (size - 1) to +1
    normalized = 2.0 * indices / torch.clamp(sizes - 1, min=1) - 1.0
    # grid_sample expects the fastest-varying axis first
    grid = normalized.flip(-1)

    data = image.data.to(points.dtype)[None, None]
    num_points = points.shape[0]
    if image.ndim == 2:
        grid = grid.reshape(1, 1, num_points, 2)
    else:
        grid = grid.reshape(1, 1, 1, num_points, 3)

    values = F.grid_sample(
        data, grid, mode=INTERPOLATORS[interpolator], padding_mode="border", align_corners=True
    )
    return values.reshape(num_points), inside


def warp_image(
    moving: ImageData,
    transform,
    parameters: torch.Tensor,
    reference: ImageData,
    interpolator: str = "linear",
    default_value: float = 0.0,
) -> ImageData:
    """
    Resample the moving image on the reference (fixed) grid

    Args:
        moving: Moving image
        transform: Transform mapping fixed physical points to moving ones
        parameters: Transform parameters
        reference: Image defining the output grid
        interpolator: Key of INTERPOLATORS
        default_value: Value for points mapping outside the moving image

    Returns:
        Warped moving image with the reference geometry
    """
    with torch.no_grad():
        grids = torch.meshgrid(
            *[torch.arange(s, dtype=torch.float64) for s in reference.shape], indexing="ij"
        )
        indices = torch.stack([g.reshape(-1) for g in grids], dim=1)
        points = reference.index_to_physical(indices)
        mapped = transform.transform_points(points, torch.as_tensor(parameters, dtype=torch.float64))
        values, inside = interpolate(moving, mapped, interpolator)
        values = torch.where(inside, values, torch.full_like(values, default_value))
    return reference.with_data(values.reshape(reference.shape).to(torch.float32))


class ImageSampler:
    """Base class: selects fixed-image sample positions for one level"""

    name = "sampler"

    def __init__(self):
        self._candidates: Optional[torch.Tensor] = None
        self._fixed_image: Optional[ImageData] = None

    def set_level(self, fixed_image: ImageData, fixed_mask: Optional[ImageData] = None):
        """
        Collect candidate voxels of a level: every voxel inside the mask.

        Raises:
            SamplesNotAvailableError: If the mask leaves no voxel to sample
        """
        if fixed_mask is not None:
            if fixed_mask.shape != fixed_image.shape:
                raise ConfigurationError(
                    f"Fixed mask shape {fixed_mask.shape} does not match image shape {fixed_image.shape}"
                )
            candidates = torch.nonzero(fixed_mask.data > 0.5)
        else:
            grids = torch.meshgrid(*[torch.arange(s) for s in fixed_image.shape], indexing="ij")
            candidates = torch.stack([g.reshape(-1) for g in grids], dim=1)

        self._fixed_image = fixed_image
        self._candidates = candidates
        if candidates.shape[0] == 0:
            raise SamplesNotAvailableError("Fixed mask contains no voxels to sample")
        self._on_level_changed()

    def _on_level_changed(self):
        pass

    def clone(self) -> "ImageSampler":
        """Return an unconfigured sampler with the same settings."""
        return type(self)()

    def _select(self) -> torch.Tensor:
        raise NotImplementedError

    def sample(self) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Returns:
            Tuple of (points, fixed_values): (N, ndim) physical points and
            the fixed image intensities at those voxels
        """
        if self._candidates is None:
            raise SamplesNotAvailableError("Sampler has no level set")
        indices = self._select()
        points = self._fixed_image.index_to_physical(indices.to(torch.float64))
        values = self._fixed_image.data[tuple(indices.T)].to(torch.float64)
        return points, values


class FullSampler(ImageSampler):
    """Every voxel inside the fixed mask"""

    name = "full"

    def _select(self) -> torch.Tensor:
        return self._candidates


class RandomSampler(ImageSampler):
    """
    Uniform random voxels inside the fixed mask

    Draws with replacement from a seeded generator, so runs with the same
    seed are reproducible.
    """

    name = "random"

    def __init__(
        self,
        number_of_samples: int = 2000,
        new_samples_every_iteration: bool = True,
        seed: Optional[int] = None,
    ):
        super().__init__()
        if number_of_samples < 1:
            raise ConfigurationError(f"number_of_samples must be >= 1, got {number_of_samples}")
        self.number_of_samples = number_of_samples
        self.new_samples_every_iteration = new_samples_every_iteration
        self.generator = torch.Generator()
        if seed is not None:
            self.generator.manual_seed(seed)
        self._cached: Optional[torch.Tensor] = None

    def _on_level_changed(self):
        self._cached = None

    def clone(self) -> "RandomSampler":
        copy = RandomSampler(self.number_of_samples, self.new_samples_every_iteration)
        # Continue from the same random stream
        copy.generator.set_state(self.generator.get_state())
        return copy

    def _select(self) -> torch.Tensor:
        if self._cached is None or self.new_samples_every_iteration:
            picks = torch.randint(
                0, self._candidates.shape[0], (self.number_of_samples,), generator=self.generator
            )
            self._cached = self._candidates[picks]
        return self._cached


SAMPLERS: Dict[str, Callable[..., ImageSampler]] = {
    "full": FullSampler,
    "random": RandomSampler,
}


def create_sampler(name: str, **kwargs) -> ImageSampler:
    """Create a sampler by registry name."""
    try:
        factory = SAMPLERS[name.lower()]
    except KeyError:
        raise ConfigurationError(f"Unknown sampler '{name}'. Available: {sorted(SAMPLERS)}") from None
    if factory is FullSampler:
        return FullSampler()
    return factory(**kwargs)
