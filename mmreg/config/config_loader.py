"""
MMREG Configuration Loader

Handles loading, validation, and merging of configuration files.
Supports YAML configuration with a preset system and config hierarchy.

Config Hierarchy (highest to lowest priority):
1. Overrides dict (from CLI args)
2. User config file (--config)
3. Config preset (--preset multimetric)
4. Package defaults (mmreg/configs/default.yaml)

Per-level values follow the parameter-map convention: a scalar applies to
every resolution level, a list gives one value per level, and a list
shorter than the number of levels repeats its last entry.
"""

import math
import yaml
from pathlib import Path
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union
from copy import deepcopy

from ..registration.errors import ConfigurationError
from ..utils.logging_config import LOG_LEVELS, get_logger

logger = get_logger("config")

# Paths to config directories
MMREG_ROOT = Path(__file__).parent.parent
CONFIGS_DIR = MMREG_ROOT / "configs"
DEFAULT_CONFIG_PATH = CONFIGS_DIR / "default.yaml"

VALID_METRICS = ["ssd", "ncc", "nmi"]
VALID_TRANSFORMS = ["translation", "euler", "affine", "affinedti"]
VALID_PYRAMIDS = ["shrinking", "averaging"]
VALID_SAMPLERS = ["full", "random"]
VALID_INTERPOLATORS = ["linear", "nearest"]

PerLevel = Union[Any, List[Any]]


def per_level(value: PerLevel, level: int) -> Any:
    """
    Resolve a per-level setting

    Args:
        value: Scalar, or list with one entry per level
        level: Resolution level index

    Returns:
        The value for this level (the last list entry repeats)
    """
    if isinstance(value, (list, tuple)):
        if len(value) == 0:
            raise ConfigurationError("Per-level setting must not be an empty list")
        return value[min(level, len(value) - 1)]
    return value


@dataclass
class SamplerConfig:
    """Fixed-image sampler configuration"""
    type: str = "random"
    number_of_samples: int = 2000
    new_samples_every_iteration: bool = True
    seed: Optional[int] = 0


@dataclass
class MetricConfig:
    """One similarity metric of the combination"""
    name: str = "ssd"
    weight: Optional[PerLevel] = None            # default 1 / number of metrics
    relative_weight: Optional[PerLevel] = None   # default 1 / number of metrics
    use: PerLevel = True
    number_of_histogram_bins: PerLevel = 32
    required_fraction: float = 0.25
    interpolator: str = "linear"
    sampler: SamplerConfig = field(default_factory=SamplerConfig)


@dataclass
class OptimizerConfig:
    """Per-parameter step length gradient descent"""
    maximum_step_length: PerLevel = 1.0
    minimum_step_length: PerLevel = 0.001
    number_of_iterations: PerLevel = 100
    gradient_magnitude_tolerance: float = 1e-4
    maximize: bool = False
    step_rise: float = 1.1
    step_drop: float = 0.5


@dataclass
class ResolutionConfig:
    """Multi-resolution schedule and per-level metric settings"""
    number_of_resolutions: int = 3
    use_relative_weights: PerLevel = False
    check_number_of_samples: PerLevel = True
    fixed_mask_erosion_radius: PerLevel = 0
    moving_mask_erosion_radius: PerLevel = 0
    max_workers: int = 1
    gradient_norm_floor: float = 0.0
    maximum_time_per_level: Optional[float] = None


@dataclass
class TransformConfig:
    """Transform selection"""
    type: str = "translation"
    center: Optional[List[float]] = None    # default: fixed image center


@dataclass
class PyramidConfig:
    """Image pyramid selection"""
    method: str = "shrinking"
    schedule: Optional[List[List[int]]] = None


@dataclass
class LoggingConfig:
    level: str = "INFO"
    log_file: Optional[str] = None


@dataclass
class OutputSettingsConfig:
    """Output settings"""
    output_dir: Optional[str] = None
    save_result_image: bool = True
    save_convergence_plots: bool = True
    write_progress: bool = True
    log_interval: int = 10


@dataclass(frozen=True)
class ResolutionLevelConfig:
    """
    Immutable settings of one resolution level

    Produced fresh from RegistrationConfig for every level and never
    derived from the previous level's state.
    """
    level: int
    weights: Tuple[float, ...]
    relative_weights: Tuple[float, ...]
    use: Tuple[bool, ...]
    use_relative_weights: bool
    number_of_histogram_bins: Tuple[int, ...]
    check_number_of_samples: bool
    fixed_mask_erosion_radius: int
    moving_mask_erosion_radius: int
    maximum_step_length: float
    minimum_step_length: float
    number_of_iterations: int


@dataclass
class RegistrationConfig:
    """Complete registration configuration"""
    registration: ResolutionConfig = field(default_factory=ResolutionConfig)
    optimizer: OptimizerConfig = field(default_factory=OptimizerConfig)
    transform: TransformConfig = field(default_factory=TransformConfig)
    pyramid: PyramidConfig = field(default_factory=PyramidConfig)
    metrics: List[MetricConfig] = field(default_factory=lambda: [MetricConfig()])
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    output: OutputSettingsConfig = field(default_factory=OutputSettingsConfig)

    @property
    def number_of_resolutions(self) -> int:
        return self.registration.number_of_resolutions

    def level_config(self, level: int) -> ResolutionLevelConfig:
        """Build the immutable configuration of one resolution level."""
        if not 0 <= level < self.number_of_resolutions:
            raise ConfigurationError(
                f"Level {level} outside 0..{self.number_of_resolutions - 1}"
            )
        count = len(self.metrics)
        default_weight = 1.0 / count

        def weight_of(value):
            resolved = per_level(value, level) if value is not None else None
            return default_weight if resolved is None else float(resolved)

        reg = self.registration
        opt = self.optimizer
        return ResolutionLevelConfig(
            level=level,
            weights=tuple(weight_of(m.weight) for m in self.metrics),
            relative_weights=tuple(weight_of(m.relative_weight) for m in self.metrics),
            use=tuple(bool(per_level(m.use, level)) for m in self.metrics),
            use_relative_weights=bool(per_level(reg.use_relative_weights, level)),
            number_of_histogram_bins=tuple(
                int(per_level(m.number_of_histogram_bins, level)) for m in self.metrics
            ),
            check_number_of_samples=bool(per_level(reg.check_number_of_samples, level)),
            fixed_mask_erosion_radius=int(per_level(reg.fixed_mask_erosion_radius, level)),
            moving_mask_erosion_radius=int(per_level(reg.moving_mask_erosion_radius, level)),
            maximum_step_length=float(per_level(opt.maximum_step_length, level)),
            minimum_step_length=float(per_level(opt.minimum_step_length, level)),
            number_of_iterations=int(per_level(opt.number_of_iterations, level)),
        )


def _deep_merge(base: Dict, override: Dict) -> Dict:
    """
    Deep merge two dictionaries, with override taking precedence

    Lists (including the metrics list) are replaced, not merged.
    """
    result = deepcopy(base)

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = deepcopy(value)

    return result


def _coerce_type(value: Any, target_type: type) -> Any:
    """Coerce value to target type (handles YAML string parsing issues)"""
    if value is None:
        return value

    origin = getattr(target_type, '__origin__', None)
    if origin is not None:
        args = getattr(target_type, '__args__', ())
        if origin is list and args and hasattr(args[0], "__dataclass_fields__"):
            return [
                _dict_to_dataclass(item, args[0]) if isinstance(item, dict) else item
                for item in value
            ]
        # Optional[X] is Union[X, None]: try the non-None type
        if type(None) in args:
            for arg in args:
                if arg is not type(None):
                    return _coerce_type(value, arg)
        return value

    if target_type == float and isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return value
    elif target_type == int and isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            return value
    elif target_type == bool and isinstance(value, str):
        return value.lower() in ('true', '1', 'yes')

    return value


def _dict_to_dataclass(data: Dict, cls: type) -> Any:
    """
    Convert dictionary to dataclass instance

    Args:
        data: Dictionary with configuration values
        cls: Dataclass type

    Returns:
        Dataclass instance
    """
    if not hasattr(cls, "__dataclass_fields__"):
        return data

    unknown = set(data) - set(cls.__dataclass_fields__)
    if unknown:
        raise ConfigurationError(f"Unknown {cls.__name__} keys: {sorted(unknown)}")

    field_values = {}
    for field_name, field_info in cls.__dataclass_fields__.items():
        if field_name in data:
            value = data[field_name]
            if hasattr(field_info.type, "__dataclass_fields__") and isinstance(value, dict):
                value = _dict_to_dataclass(value, field_info.type)
            else:
                value = _coerce_type(value, field_info.type)
            field_values[field_name] = value

    return cls(**field_values)


def load_yaml_config(path: Path) -> Dict:
    """Load a YAML configuration file"""
    if path.exists():
        with open(path, "r") as f:
            return yaml.safe_load(f) or {}
    return {}


def load_default_config() -> Dict:
    """Load the default configuration from YAML file"""
    if DEFAULT_CONFIG_PATH.exists():
        return load_yaml_config(DEFAULT_CONFIG_PATH)
    logger.warning(f"Default config not found at {DEFAULT_CONFIG_PATH}")
    return {}


def load_preset(preset_name: str) -> Dict:
    """
    Load a configuration preset from mmreg/configs/

    Args:
        preset_name: Name of preset (e.g., 'multimetric'), with or without .yaml

    Raises:
        FileNotFoundError: If preset file doesn't exist
    """
    if not preset_name.endswith('.yaml'):
        preset_name = f"{preset_name}.yaml"

    preset_path = CONFIGS_DIR / preset_name

    if not preset_path.exists():
        raise FileNotFoundError(
            f"Config preset '{preset_name}' not found in {CONFIGS_DIR}. "
            f"Available presets: {list_available_presets()}"
        )

    logger.info(f"Loading config preset: {preset_name}")
    return load_yaml_config(preset_path)


def default_config() -> RegistrationConfig:
    """Get the default registration configuration"""
    config = _dict_to_dataclass(load_default_config(), RegistrationConfig)
    _validate_config(config)
    return config


def load_config(
    config_path: Optional[Union[str, Path]] = None,
    preset: Optional[str] = None,
    overrides: Optional[Dict] = None,
) -> RegistrationConfig:
    """
    Load registration configuration with hierarchy support

    Args:
        config_path: Optional path to user configuration YAML
        preset: Optional preset name (e.g., 'multimetric')
        overrides: Optional dictionary of override values

    Returns:
        Validated RegistrationConfig instance

    Raises:
        ConfigurationError: If the merged configuration is invalid
    """
    config_dict = load_default_config()
    logger.debug(f"Loaded package defaults from {DEFAULT_CONFIG_PATH}")

    if preset:
        config_dict = _deep_merge(config_dict, load_preset(preset))

    if config_path:
        config_path = Path(config_path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
        logger.info(f"Loading user config from: {config_path}")
        config_dict = _deep_merge(config_dict, load_yaml_config(config_path))

    if overrides:
        config_dict = _deep_merge(config_dict, overrides)

    config = _dict_to_dataclass(config_dict, RegistrationConfig)
    _validate_config(config)

    return config


def _check_finite_non_negative(label: str, value: PerLevel):
    values = value if isinstance(value, (list, tuple)) else [value]
    for v in values:
        if v is None:
            continue
        if not math.isfinite(float(v)) or float(v) < 0:
            raise ConfigurationError(f"{label} must be non-negative and finite, got {value}")


def _validate_config(config: RegistrationConfig):
    """
    Validate configuration

    Raises:
        ConfigurationError: If configuration is invalid
    """
    num_levels = config.registration.number_of_resolutions
    if not isinstance(num_levels, int) or num_levels < 1:
        raise ConfigurationError(f"number_of_resolutions must be an integer >= 1, got {num_levels}")

    if not config.metrics:
        raise ConfigurationError("At least one metric must be configured")

    if str(config.logging.level).upper() not in LOG_LEVELS:
        raise ConfigurationError(f"Invalid logging level: {config.logging.level}. Must be one of {LOG_LEVELS}")

    for index, metric in enumerate(config.metrics):
        label = f"metrics[{index}]"
        if metric.name.lower() not in VALID_METRICS:
            raise ConfigurationError(
                f"Invalid metric {label}: {metric.name}. Must be one of {VALID_METRICS}"
            )
        if metric.sampler.type.lower() not in VALID_SAMPLERS:
            raise ConfigurationError(
                f"Invalid sampler for {label}: {metric.sampler.type}. Must be one of {VALID_SAMPLERS}"
            )
        if metric.interpolator.lower() not in VALID_INTERPOLATORS:
            raise ConfigurationError(
                f"Invalid interpolator for {label}: {metric.interpolator}. "
                f"Must be one of {VALID_INTERPOLATORS}"
            )
        _check_finite_non_negative(f"{label}.weight", metric.weight)
        _check_finite_non_negative(f"{label}.relative_weight", metric.relative_weight)
        if not 0.0 <= metric.required_fraction <= 1.0:
            raise ConfigurationError(f"{label}.required_fraction must be in [0, 1]")

    if config.transform.type.lower() not in VALID_TRANSFORMS:
        raise ConfigurationError(
            f"Invalid transform: {config.transform.type}. Must be one of {VALID_TRANSFORMS}"
        )
    if config.pyramid.method.lower() not in VALID_PYRAMIDS:
        raise ConfigurationError(
            f"Invalid pyramid: {config.pyramid.method}. Must be one of {VALID_PYRAMIDS}"
        )
    if config.pyramid.schedule is not None and len(config.pyramid.schedule) != num_levels:
        raise ConfigurationError(
            f"Pyramid schedule has {len(config.pyramid.schedule)} levels, expected {num_levels}"
        )

    opt = config.optimizer
    if not 0 < opt.step_drop < 1:
        raise ConfigurationError(f"step_drop must be in (0, 1), got {opt.step_drop}")
    if opt.step_rise < 1:
        raise ConfigurationError(f"step_rise must be >= 1, got {opt.step_rise}")

    # Resolving every level also checks the per-level lists
    for level in range(num_levels):
        level_config = config.level_config(level)
        if not 0 < level_config.minimum_step_length <= level_config.maximum_step_length:
            raise ConfigurationError(
                f"Level {level}: step lengths must satisfy 0 < minimum <= maximum"
            )
        if level_config.number_of_iterations < 0:
            raise ConfigurationError(f"Level {level}: number_of_iterations must be >= 0")
        if not any(level_config.use):
            raise ConfigurationError(f"Level {level}: at least one metric must be used")
        if min(level_config.number_of_histogram_bins) < 2:
            raise ConfigurationError(f"Level {level}: number_of_histogram_bins must be >= 2")
        if level_config.fixed_mask_erosion_radius < 0 or level_config.moving_mask_erosion_radius < 0:
            raise ConfigurationError(f"Level {level}: mask erosion radii must be >= 0")

    logger.debug("Configuration validated successfully")


def list_available_presets() -> List[str]:
    """
    List available configuration presets

    Returns:
        List of preset names (without .yaml extension)
    """
    if not CONFIGS_DIR.exists():
        return []
    return sorted(f.stem for f in CONFIGS_DIR.glob("*.yaml") if f.stem != "default")
