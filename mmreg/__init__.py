"""
mmreg - Multi-Metric Registration

Multi-resolution parametric image registration driven by a weighted
combination of similarity metrics, optimized with a gradient descent
that adapts a separate step length for every transform parameter.

Key Features:
- Several metrics (SSD, NCC, NMI) per registration, each with its own
  images, masks, sampler and interpolator
- Static weights or relative weights balanced by gradient magnitude
- Per-parameter adaptive step lengths (grow on sign agreement, shrink on flip)
- Multi-resolution pyramids with per-level settings and fresh mask erosion
- Translation, Euler, affine and rotation-shear-scale affine transforms in 2-D and 3-D
"""

__version__ = "1.0.0"
__author__ = "MMREG Team"

# registration must be imported before config (config uses registration.errors)
from .registration import (
    StopCondition,
    ConfigurationError,
    RSGDEachParameterApartOptimizer,
    MultiMetricCombiner,
    MetricAdapter,
    MultiMetricMultiResolutionRegistration,
    RegistrationResult,
    build_registration,
    create_transform,
    warp_image,
)
from .config import load_config, default_config
from .data import ImageData, load_image, load_mask, save_image, save_parameters

__all__ = [
    # Configuration
    "load_config",
    "default_config",
    # Data
    "ImageData",
    "load_image",
    "load_mask",
    "save_image",
    "save_parameters",
    # Registration
    "StopCondition",
    "ConfigurationError",
    "RSGDEachParameterApartOptimizer",
    "MultiMetricCombiner",
    "MetricAdapter",
    "MultiMetricMultiResolutionRegistration",
    "RegistrationResult",
    "build_registration",
    "create_transform",
    "warp_image",
]
