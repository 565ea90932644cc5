"""
MMREG Similarity Metrics

Image-to-image similarity measures and the adapter that exposes any
measure to the combiner.

Similarity kernels come from ``deepali.losses.functional`` and are all
costs (lower is better). The derivative with respect to the transform
parameters is obtained with torch autograd through the transform and
the moving-image interpolation.
"""

import math
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

import torch
from deepali.losses import functional as L

from .errors import (
    ConfigurationError,
    ImageNotAvailableError,
    MetricError,
    MetricEvaluationError,
    SamplesNotAvailableError,
)
from .sampling import ImageSampler, FullSampler, interpolate
from ..data.image import ImageData
from ..utils.logging_config import get_logger

logger = get_logger("metrics")


def _as_batch(values: torch.Tensor) -> torch.Tensor:
    """Sample vector as a (N=1, C=1, n) tensor for the deepali losses."""
    return values.reshape(1, 1, -1)


def _ssd(fixed: torch.Tensor, moving: torch.Tensor, num_bins: int) -> torch.Tensor:
    return L.mse_loss(_as_batch(moving), _as_batch(fixed))


def _ncc(fixed: torch.Tensor, moving: torch.Tensor, num_bins: int) -> torch.Tensor:
    return L.ncc_loss(_as_batch(moving), _as_batch(fixed))


def _nmi(fixed: torch.Tensor, moving: torch.Tensor, num_bins: int) -> torch.Tensor:
    return L.nmi_loss(_as_batch(moving), _as_batch(fixed), num_bins=num_bins)


KERNELS: Dict[str, Callable[[torch.Tensor, torch.Tensor, int], torch.Tensor]] = {
    "ssd": _ssd,
    "ncc": _ncc,
    "nmi": _nmi,
}


@dataclass(frozen=True)
class MetricLevelContext:
    """Everything a measure needs for one resolution level"""
    level: int
    fixed_image: Optional[ImageData] = None
    moving_image: Optional[ImageData] = None
    fixed_mask: Optional[ImageData] = None
    moving_mask: Optional[ImageData] = None
    number_of_histogram_bins: int = 32
    check_number_of_samples: bool = True


class ImageToImageMetric:
    """
    Similarity between a fixed and a transformed moving image

    Evaluated on samples drawn from the fixed image (inside the fixed
    mask). Samples mapping outside the moving image or the moving mask
    are discarded; with the sample check enabled, fewer than
    ``required_fraction`` valid samples is an error.
    """

    def __init__(
        self,
        kernel: str = "ssd",
        transform=None,
        sampler: Optional[ImageSampler] = None,
        interpolator: str = "linear",
        required_fraction: float = 0.25,
    ):
        """
        Args:
            kernel: Key of KERNELS
            transform: Transform shared with the registration
            sampler: Fixed-image sampler (default: every voxel)
            interpolator: Moving-image interpolator name
            required_fraction: Minimum fraction of valid samples
        """
        if kernel not in KERNELS:
            raise ConfigurationError(f"Unknown metric '{kernel}'. Available: {sorted(KERNELS)}")
        if not 0.0 <= required_fraction <= 1.0:
            raise ConfigurationError(f"required_fraction must be in [0, 1], got {required_fraction}")

        self.name = kernel
        self.kernel = KERNELS[kernel]
        self.transform = transform
        self.sampler = sampler or FullSampler()
        self.interpolator = interpolator
        self.required_fraction = required_fraction

        self._context: Optional[MetricLevelContext] = None
        self._level_error: Optional[MetricEvaluationError] = None
        self._parameters: Optional[torch.Tensor] = None

        # Diagnostics of the last evaluation
        self.number_of_samples = 0
        self.number_of_valid_samples = 0

    def set_transform(self, transform):
        self.transform = transform

    def set_level(self, context: MetricLevelContext):
        """Switch to the images and settings of a new level."""
        self._context = context
        self._level_error = None
        if context.fixed_image is None or context.moving_image is None:
            return
        try:
            self.sampler.set_level(context.fixed_image, context.fixed_mask)
        except SamplesNotAvailableError as e:
            # Reported at the first evaluation so the level stops cleanly
            self._level_error = e

    def set_transform_parameters(self, parameters: torch.Tensor):
        self._parameters = torch.as_tensor(parameters, dtype=torch.float64)

    def get_value_and_derivative(
        self, parameters: Optional[torch.Tensor] = None
    ) -> Tuple[float, torch.Tensor]:
        """
        Compute the cost and its derivative with respect to the parameters.

        Raises:
            ImageNotAvailableError: No level images set
            SamplesNotAvailableError: Too few samples map inside the moving image
        """
        if parameters is None:
            parameters = self._parameters
        context = self._context
        if context is None or context.fixed_image is None or context.moving_image is None:
            raise ImageNotAvailableError(f"{self.name}: fixed or moving image not available")
        if self.transform is None:
            raise MetricError(f"{self.name}: no transform set")
        if self._level_error is not None:
            raise self._level_error

        points, fixed_values = self.sampler.sample()
        params = parameters.detach().clone().to(torch.float64).requires_grad_(True)
        mapped = self.transform.transform_points(points, params)

        moving_values, valid = interpolate(context.moving_image, mapped, self.interpolator)
        if context.moving_mask is not None:
            mask_values, mask_inside = interpolate(context.moving_mask, mapped.detach(), "nearest")
            valid = valid & mask_inside & (mask_values > 0.5)

        self.number_of_samples = int(points.shape[0])
        self.number_of_valid_samples = int(valid.sum())

        if self.number_of_valid_samples == 0:
            raise SamplesNotAvailableError(f"{self.name}: no samples map inside the moving image")
        if (context.check_number_of_samples
                and self.number_of_valid_samples < self.required_fraction * self.number_of_samples):
            raise SamplesNotAvailableError(
                f"{self.name}: too many samples map outside the moving image: "
                f"{self.number_of_valid_samples} / {self.number_of_samples} valid"
            )

        value = self.kernel(fixed_values[valid], moving_values[valid], context.number_of_histogram_bins)
        (gradient,) = torch.autograd.grad(value, params, allow_unused=True)
        if gradient is None:
            gradient = torch.zeros_like(params)

        return float(value.detach()), gradient.detach()


class MetricAdapter:
    """
    Uniform evaluate/configure interface around one similarity measure

    The wrapped measure needs ``get_value_and_derivative(parameters)``;
    ``set_transform_parameters`` and ``set_level`` are used when present.
    Failures other than MetricEvaluationError are reported as MetricError.
    """

    def __init__(self, measure, name: Optional[str] = None):
        self.measure = measure
        self.name = name or getattr(measure, "name", type(measure).__name__)
        self.level: Optional[int] = None
        self.last_value = float("nan")
        self.last_gradient: Optional[torch.Tensor] = None

    def configure(self, context: MetricLevelContext):
        self.level = context.level
        self.last_value = float("nan")
        self.last_gradient = None
        if hasattr(self.measure, "set_level"):
            self.measure.set_level(context)

    def evaluate(self, parameters: torch.Tensor) -> Tuple[float, torch.Tensor]:
        """
        Returns:
            Tuple of (value, gradient) at the given parameters

        Raises:
            MetricEvaluationError: The measure failed
        """
        parameters = torch.as_tensor(parameters, dtype=torch.float64).reshape(-1)
        try:
            if hasattr(self.measure, "set_transform_parameters"):
                self.measure.set_transform_parameters(parameters)
            value, gradient = self.measure.get_value_and_derivative(parameters)
        except MetricEvaluationError as e:
            e.metric = e.metric or self.name
            raise
        except Exception as e:
            raise MetricError(f"{self.name}: {e}", metric=self.name) from e

        value = float(value)
        gradient = torch.as_tensor(gradient, dtype=torch.float64).reshape(-1)
        if gradient.numel() != parameters.numel():
            raise MetricError(
                f"{self.name}: derivative has {gradient.numel()} entries, "
                f"expected {parameters.numel()}",
                metric=self.name,
            )
        if not math.isfinite(value) or not bool(torch.isfinite(gradient).all()):
            raise MetricError(f"{self.name}: non-finite value or derivative", metric=self.name)

        self.last_value = value
        self.last_gradient = gradient
        return value, gradient


def create_metric(
    name: str,
    transform=None,
    sampler: Optional[ImageSampler] = None,
    interpolator: str = "linear",
    required_fraction: float = 0.25,
) -> ImageToImageMetric:
    """Create an image similarity measure by kernel name."""
    return ImageToImageMetric(
        kernel=name.lower(),
        transform=transform,
        sampler=sampler,
        interpolator=interpolator,
        required_fraction=required_fraction,
    )
