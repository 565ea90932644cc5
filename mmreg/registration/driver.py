"""
MMREG Multi-Metric Multi-Resolution Registration

Drives the optimizer over a coarse-to-fine sequence of resolution levels:

    before_registration
    for every level:
        before_each_resolution   masks, weights, per-level metric settings
        optimize                 optimizer runs until a stop condition
        after_each_resolution    record the level result
    after_registration

The parameters at the end of a level seed the next one. A level stopped
by a metric failure is recorded and the next level continues from the
parameters obtained so far.
"""

import threading
import time
from typing import Dict, List, Optional, Sequence, Tuple

import torch

from .base import LevelResult, RegistrationResult
from .combiner import MultiMetricCombiner
from .errors import ConfigurationError
from .metrics import MetricAdapter, MetricLevelContext, create_metric
from .optimizers import RSGDEachParameterApartOptimizer
from .sampling import ImageSampler, create_sampler
from .transforms import Transform, create_transform
from ..config.config_loader import RegistrationConfig, ResolutionLevelConfig
from ..data.image import ImageData
from ..preprocessing.mask import erode_mask
from ..preprocessing.pyramid import ImagePyramid, create_mask_pyramid, create_pyramid
from ..utils.logging_config import get_logger, Timer
from ..utils.progress_tracker import ProgressTracker

logger = get_logger("registration")


def _unique_names(names: Sequence[str]) -> List[str]:
    """Suffix repeated metric names with their index."""
    return [
        f"{name}_{i}" if list(names).count(name) > 1 else name
        for i, name in enumerate(names)
    ]


class MultiMetricMultiResolutionRegistration:
    """
    Multi-resolution registration with a weighted combination of metrics

    Per-metric collections (images, masks, pyramids, samplers,
    interpolators) hold either a single shared entry or at least one
    entry per metric; metric ``i`` uses entry ``i``, or entry 0 when
    shared. Metrics are evaluated in declaration order, which fixes the
    reference metric (index 0) of relative weighting.
    """

    def __init__(
        self,
        metrics: Sequence,
        transform: Transform,
        optimizer: RSGDEachParameterApartOptimizer,
        config: RegistrationConfig,
        fixed_images: Sequence[ImageData] = (),
        moving_images: Sequence[ImageData] = (),
        fixed_masks: Sequence[ImageData] = (),
        moving_masks: Sequence[ImageData] = (),
        fixed_pyramids: Sequence[ImagePyramid] = (),
        moving_pyramids: Sequence[ImagePyramid] = (),
        samplers: Sequence[ImageSampler] = (),
        interpolators: Sequence[str] = (),
        progress_tracker: Optional[ProgressTracker] = None,
    ):
        """
        Args:
            metrics: Similarity measures, in evaluation order
            transform: Transform whose parameters are optimized
            optimizer: Optimizer driven at every level
            config: Registration configuration
            fixed_images: Full-resolution fixed images
            moving_images: Full-resolution moving images
            fixed_masks: Optional fixed masks
            moving_masks: Optional moving masks
            fixed_pyramids: Prebuilt fixed pyramids (instead of fixed_images)
            moving_pyramids: Prebuilt moving pyramids (instead of moving_images)
            samplers: Optional samplers assigned to image metrics
            interpolators: Optional interpolator names assigned to image metrics
            progress_tracker: Optional reporting collaborator
        """
        self.measures = list(metrics)
        self.transform = transform
        self.optimizer = optimizer
        self.config = config
        self.fixed_images = list(fixed_images)
        self.moving_images = list(moving_images)
        self.fixed_masks = list(fixed_masks)
        self.moving_masks = list(moving_masks)
        self.fixed_pyramids = list(fixed_pyramids)
        self.moving_pyramids = list(moving_pyramids)
        self.samplers = list(samplers)
        self.interpolators = list(interpolators)
        self.progress_tracker = progress_tracker

        self.adapters: List[MetricAdapter] = []
        self.combiner: Optional[MultiMetricCombiner] = None
        self.metric_names: List[str] = []
        self.level_results: List[LevelResult] = []

        self._fixed_mask_pyramids: List[ImagePyramid] = []
        self._moving_mask_pyramids: List[ImagePyramid] = []
        self._level_config: Optional[ResolutionLevelConfig] = None
        self._value_history: List[float] = []
        self._submetric_history: Dict[str, List[float]] = {}
        self._step_length_history: List[float] = []
        self._observer_registered = False
        self._watchdog: Optional[threading.Timer] = None
        self._level_start = 0.0

    @property
    def number_of_levels(self) -> int:
        return self.config.number_of_resolutions

    @property
    def number_of_metrics(self) -> int:
        return len(self.measures)

    # ------------------------------------------------------------------
    # Registration stages
    # ------------------------------------------------------------------

    def run(self, initial_parameters: Optional[torch.Tensor] = None) -> RegistrationResult:
        """
        Perform the multi-resolution registration

        Args:
            initial_parameters: Starting parameters (default: identity)

        Returns:
            RegistrationResult with final parameters and per-level results

        Raises:
            ConfigurationError: Invalid setup; raised before any level starts
        """
        logger.info("=" * 60)
        logger.info(f"MULTI-METRIC REGISTRATION ({self.number_of_metrics} metrics, "
                    f"{self.number_of_levels} levels)")
        logger.info("=" * 60)

        parameters = self.before_registration(initial_parameters)
        try:
            for level in range(self.number_of_levels):
                self.before_each_resolution(level)
                parameters = self.optimize(level, parameters)
        except Exception as e:
            if self.progress_tracker:
                self.progress_tracker.finish(success=False, message=str(e))
            raise
        finally:
            self.combiner.shutdown()

        return self.after_registration(parameters)

    def before_registration(self, initial_parameters: Optional[torch.Tensor] = None) -> torch.Tensor:
        """
        Validate and wire all components.

        Returns:
            The validated initial parameter vector
        """
        self._validate_collections()
        self._build_pyramids()

        if self.config.transform.center is not None:
            self.transform.set_center(torch.tensor(self.config.transform.center, dtype=torch.float64))
        elif self.fixed_pyramids:
            # Finest level of the pyramid, which may hold more levels than are run
            finest = self.fixed_pyramids[0][len(self.fixed_pyramids[0]) - 1]
            self.transform.set_center(finest.image.center())

        shared_sampler = len(self.samplers) == 1
        for i, measure in enumerate(self.measures):
            if hasattr(measure, "set_transform"):
                measure.set_transform(self.transform)
            if self.samplers and hasattr(measure, "sampler"):
                # A sampler holds one metric's level state, so a shared one is copied per metric
                sampler = self._pick(self.samplers, i)
                measure.sampler = sampler.clone() if shared_sampler and i > 0 else sampler
            if self.interpolators and hasattr(measure, "interpolator"):
                measure.interpolator = self._pick(self.interpolators, i)

        self.adapters = [MetricAdapter(measure) for measure in self.measures]
        self.metric_names = _unique_names([adapter.name for adapter in self.adapters])
        for adapter, name in zip(self.adapters, self.metric_names):
            adapter.name = name

        reg = self.config.registration
        self.combiner = MultiMetricCombiner(
            self.adapters,
            max_workers=reg.max_workers,
            gradient_norm_floor=reg.gradient_norm_floor,
        )
        self.optimizer.set_cost_function(self.combiner)
        if not self._observer_registered:
            self.optimizer.on_iteration(self.after_each_iteration)
            self._observer_registered = True

        if initial_parameters is None:
            parameters = self.transform.identity_parameters()
        else:
            parameters = torch.as_tensor(initial_parameters, dtype=torch.float64).reshape(-1).clone()
        if parameters.numel() != self.transform.number_of_parameters:
            raise ConfigurationError(
                f"Initial parameters have {parameters.numel()} entries, "
                f"{self.transform.name} transform needs {self.transform.number_of_parameters}"
            )

        self.level_results = []
        if self.progress_tracker:
            self.progress_tracker.start(max_level=self.number_of_levels)

        logger.info(f"  Metrics: {self.metric_names}")
        logger.info(f"  Transform: {self.transform.name} ({parameters.numel()} parameters)")
        return parameters

    def before_each_resolution(self, level: int):
        """Apply level-specific masks, weights and metric settings."""
        level_config = self.config.level_config(level)
        self._level_config = level_config

        logger.info(f"\nLevel {level + 1}/{self.number_of_levels}")

        # Masks are eroded from the level's pyramid mask, never from the previous level
        fixed_masks = [
            erode_mask(p[level].image, level_config.fixed_mask_erosion_radius)
            for p in self._fixed_mask_pyramids
        ]
        moving_masks = [
            erode_mask(p[level].image, level_config.moving_mask_erosion_radius)
            for p in self._moving_mask_pyramids
        ]

        for i, adapter in enumerate(self.adapters):
            context = MetricLevelContext(
                level=level,
                fixed_image=self._pick_level(self.fixed_pyramids, i, level),
                moving_image=self._pick_level(self.moving_pyramids, i, level),
                fixed_mask=self._pick(fixed_masks, i),
                moving_mask=self._pick(moving_masks, i),
                number_of_histogram_bins=level_config.number_of_histogram_bins[i],
                check_number_of_samples=level_config.check_number_of_samples,
            )
            adapter.configure(context)
            if context.fixed_image is not None:
                logger.info(f"  {adapter.name}: shape={context.fixed_image.shape}, "
                            f"use={level_config.use[i]}")

        self.combiner.set_level(
            weights=level_config.weights,
            relative_weights=level_config.relative_weights,
            use=level_config.use,
            use_relative_weights=level_config.use_relative_weights,
        )
        if level_config.use_relative_weights:
            logger.info(f"  Relative weights: {list(level_config.relative_weights)}")
        else:
            logger.info(f"  Weights: {list(level_config.weights)}")

        self.optimizer.maximum_step_length = level_config.maximum_step_length
        self.optimizer.minimum_step_length = level_config.minimum_step_length
        self.optimizer.number_of_iterations = level_config.number_of_iterations

        self._value_history = []
        self._submetric_history = {name: [] for name in self.metric_names}
        self._step_length_history = []

        if self.progress_tracker:
            self.progress_tracker.set_level(level, level_config.number_of_iterations)

    def optimize(self, level: int, parameters: torch.Tensor) -> torch.Tensor:
        """Run the optimizer for one level and return its final parameters."""
        self.optimizer.set_initial_position(parameters)

        # Armed by the first iteration; start_optimization() clears earlier stop requests
        self._watchdog = None
        self._level_start = time.monotonic()
        try:
            with Timer(f"  Level {level + 1} optimization", logger) as level_timer:
                condition = self.optimizer.start_optimization()
        finally:
            if self._watchdog is not None:
                self._watchdog.cancel()
                self._watchdog = None

        final_parameters = self.optimizer.current_position.clone()
        self.after_each_resolution(level, condition, final_parameters, level_timer.elapsed)
        return final_parameters

    def after_each_iteration(self, optimizer: RSGDEachParameterApartOptimizer):
        """Record the latest combined and submetric values."""
        time_limit = self.config.registration.maximum_time_per_level
        if time_limit is not None and self._watchdog is None:
            remaining = max(time_limit - (time.monotonic() - self._level_start), 0.0)
            self._watchdog = threading.Timer(remaining, optimizer.stop_optimization)
            self._watchdog.daemon = True
            self._watchdog.start()

        record = self.combiner.record
        submetrics = dict(zip(self.metric_names, record.values))

        self._value_history.append(optimizer.value)
        for name, value in submetrics.items():
            self._submetric_history[name].append(value)
        self._step_length_history.append(optimizer.current_step_length)

        logger.debug(
            f"Iter {optimizer.current_iteration:4d}: value={optimizer.value:.6f}, "
            f"step={optimizer.current_step_length:.4g}, "
            + ", ".join(f"{k}={v:.6f}" for k, v in submetrics.items())
        )
        if self.progress_tracker:
            self.progress_tracker.update_iteration(
                iteration=optimizer.current_iteration,
                value=optimizer.value,
                submetric_values=submetrics,
                step_length=optimizer.current_step_length,
            )

    def after_each_resolution(
        self,
        level: int,
        condition,
        parameters: torch.Tensor,
        elapsed_seconds: float,
    ):
        result = LevelResult(
            level=level,
            stop_condition=condition,
            iterations=self.optimizer.current_iteration,
            final_value=self.optimizer.value,
            elapsed_seconds=elapsed_seconds,
            final_parameters=parameters,
            final_step_lengths=self.optimizer.current_step_lengths.clone(),
            value_history=self._value_history,
            submetric_history=self._submetric_history,
            step_length_history=self._step_length_history,
        )
        self.level_results.append(result)

        if result.failed:
            logger.warning(
                f"  Level {level + 1} stopped by {condition.name} after "
                f"{result.iterations} iterations; continuing with current parameters"
            )
        else:
            logger.info(
                f"  Level {level + 1} stopped: {condition.name}, iterations={result.iterations}, "
                f"value={result.final_value:.6f}"
            )
        if self.progress_tracker:
            self.progress_tracker.end_level(level, condition.name)

    def after_registration(self, parameters: torch.Tensor) -> RegistrationResult:
        logger.info("\n" + "=" * 60)
        logger.info("REGISTRATION COMPLETE")
        logger.info(f"  Final parameters: {[f'{p:.4f}' for p in parameters.tolist()]}")
        logger.info(f"  Stop conditions: {[r.stop_condition.name for r in self.level_results]}")
        logger.info("=" * 60)

        if self.progress_tracker:
            self.progress_tracker.finish(success=True)

        return RegistrationResult(
            final_parameters=parameters,
            levels=list(self.level_results),
            transform=self.transform,
            metadata={
                "metrics": self.metric_names,
                "levels": self.number_of_levels,
                "total_seconds": sum(r.elapsed_seconds for r in self.level_results),
            },
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _pick(collection: Sequence, index: int):
        if not collection:
            return None
        return collection[0] if len(collection) == 1 else collection[index]

    def _pick_level(self, pyramids: Sequence[ImagePyramid], index: int, level: int) -> Optional[ImageData]:
        pyramid = self._pick(pyramids, index)
        return pyramid[level].image if pyramid is not None else None

    def _validate_collections(self):
        count = self.number_of_metrics
        if count == 0:
            raise ConfigurationError("At least one metric is required")
        if len(self.config.metrics) != count:
            raise ConfigurationError(
                f"{count} metrics given but the configuration describes {len(self.config.metrics)}"
            )
        if self.number_of_levels < 1:
            raise ConfigurationError(f"Invalid number of resolutions: {self.number_of_levels}")

        collections: List[Tuple[str, Sequence]] = [
            ("fixed_images", self.fixed_images),
            ("moving_images", self.moving_images),
            ("fixed_masks", self.fixed_masks),
            ("moving_masks", self.moving_masks),
            ("fixed_pyramids", self.fixed_pyramids),
            ("moving_pyramids", self.moving_pyramids),
            ("samplers", self.samplers),
            ("interpolators", self.interpolators),
        ]
        for label, collection in collections:
            size = len(collection)
            if size not in (0, 1) and size < count:
                raise ConfigurationError(
                    f"{label} has {size} entries; expected 1 (shared) or at least {count}"
                )

        for label, images, pyramids in [
            ("fixed", self.fixed_images, self.fixed_pyramids),
            ("moving", self.moving_images, self.moving_pyramids),
        ]:
            if images and pyramids:
                raise ConfigurationError(f"Give either {label}_images or {label}_pyramids, not both")
            for pyramid in pyramids:
                if len(pyramid) < self.number_of_levels:
                    raise ConfigurationError(
                        f"A {label} pyramid has {len(pyramid)} levels, "
                        f"{self.number_of_levels} are needed"
                    )

    def _build_pyramids(self):
        num_levels = self.number_of_levels
        method = self.config.pyramid.method
        schedule = self.config.pyramid.schedule

        if self.fixed_images:
            self.fixed_pyramids = [create_pyramid(img, num_levels, method, schedule) for img in self.fixed_images]
            self.fixed_images = []
        if self.moving_images:
            self.moving_pyramids = [create_pyramid(img, num_levels, method, schedule) for img in self.moving_images]
            self.moving_images = []

        self._fixed_mask_pyramids = [
            create_mask_pyramid(mask, num_levels, method, schedule) for mask in self.fixed_masks
        ]
        self._moving_mask_pyramids = [
            create_mask_pyramid(mask, num_levels, method, schedule) for mask in self.moving_masks
        ]


def build_registration(
    config: RegistrationConfig,
    fixed_images: Sequence[ImageData],
    moving_images: Sequence[ImageData],
    fixed_masks: Sequence[ImageData] = (),
    moving_masks: Sequence[ImageData] = (),
    progress_tracker: Optional[ProgressTracker] = None,
) -> MultiMetricMultiResolutionRegistration:
    """
    Resolve every configured component by name and wire the registration

    Args:
        config: Validated registration configuration
        fixed_images: One shared fixed image, or one per metric
        moving_images: One shared moving image, or one per metric
        fixed_masks: Optional fixed masks
        moving_masks: Optional moving masks
        progress_tracker: Optional reporting collaborator

    Returns:
        Ready-to-run registration
    """
    if not fixed_images:
        raise ConfigurationError("At least one fixed image is required")
    ndim = fixed_images[0].ndim

    transform = create_transform(config.transform.type, ndim)

    measures = []
    for metric_config in config.metrics:
        sampler_config = metric_config.sampler
        sampler = create_sampler(
            sampler_config.type,
            number_of_samples=sampler_config.number_of_samples,
            new_samples_every_iteration=sampler_config.new_samples_every_iteration,
            seed=sampler_config.seed,
        )
        measures.append(create_metric(
            metric_config.name,
            transform=transform,
            sampler=sampler,
            interpolator=metric_config.interpolator,
            required_fraction=metric_config.required_fraction,
        ))

    first_level = config.level_config(0)
    opt = config.optimizer
    optimizer = RSGDEachParameterApartOptimizer(
        maximum_step_length=first_level.maximum_step_length,
        minimum_step_length=first_level.minimum_step_length,
        number_of_iterations=first_level.number_of_iterations,
        gradient_magnitude_tolerance=opt.gradient_magnitude_tolerance,
        maximize=opt.maximize,
        step_rise=opt.step_rise,
        step_drop=opt.step_drop,
    )

    return MultiMetricMultiResolutionRegistration(
        metrics=measures,
        transform=transform,
        optimizer=optimizer,
        config=config,
        fixed_images=fixed_images,
        moving_images=moving_images,
        fixed_masks=fixed_masks,
        moving_masks=moving_masks,
        progress_tracker=progress_tracker,
    )
