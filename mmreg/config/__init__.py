"""MMREG Configuration Module"""

from .config_loader import (
    load_config,
    default_config,
    list_available_presets,
    load_preset,
    per_level,
    RegistrationConfig,
    ResolutionLevelConfig,
    MetricConfig,
    OptimizerConfig,
    SamplerConfig,
)

__all__ = [
    "load_config",
    "default_config",
    "list_available_presets",
    "load_preset",
    "per_level",
    "RegistrationConfig",
    "ResolutionLevelConfig",
    "MetricConfig",
    "OptimizerConfig",
    "SamplerConfig",
]
