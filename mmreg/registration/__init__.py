"""MMREG Registration Module"""

from .errors import (
    StopCondition,
    MetricEvaluationError,
    ImageNotAvailableError,
    SamplesNotAvailableError,
    MetricError,
    ConfigurationError,
)
from .optimizers import OptimizerState, RSGDEachParameterApartOptimizer
from .transforms import (
    Transform,
    TranslationTransform,
    EulerTransform,
    AffineTransform,
    AffineDTITransform,
    TRANSFORMS,
    create_transform,
)
from .sampling import (
    ImageSampler,
    FullSampler,
    RandomSampler,
    SAMPLERS,
    INTERPOLATORS,
    create_sampler,
    interpolate,
    warp_image,
)
from .metrics import (
    ImageToImageMetric,
    MetricAdapter,
    MetricLevelContext,
    KERNELS,
    create_metric,
)
from .combiner import MultiMetricCombiner, CombinerRecord
from .base import LevelResult, RegistrationResult
from .driver import MultiMetricMultiResolutionRegistration, build_registration

__all__ = [
    # Errors
    "StopCondition",
    "MetricEvaluationError",
    "ImageNotAvailableError",
    "SamplesNotAvailableError",
    "MetricError",
    "ConfigurationError",
    # Optimizer
    "OptimizerState",
    "RSGDEachParameterApartOptimizer",
    # Transforms
    "Transform",
    "TranslationTransform",
    "EulerTransform",
    "AffineTransform",
    "AffineDTITransform",
    "TRANSFORMS",
    "create_transform",
    # Sampling
    "ImageSampler",
    "FullSampler",
    "RandomSampler",
    "SAMPLERS",
    "INTERPOLATORS",
    "create_sampler",
    "interpolate",
    "warp_image",
    # Metrics
    "ImageToImageMetric",
    "MetricAdapter",
    "MetricLevelContext",
    "KERNELS",
    "create_metric",
    # Combination and driver
    "MultiMetricCombiner",
    "CombinerRecord",
    "LevelResult",
    "RegistrationResult",
    "MultiMetricMultiResolutionRegistration",
    "build_registration",
]
