"""Tests for the multi-metric multi-resolution registration driver."""

# Standard Library Imports
import json
import time

# Third Party Imports
import pytest
import torch

# Local Imports
from mmreg.config.config_loader import MetricConfig, RegistrationConfig, SamplerConfig
from mmreg.data.image import ImageData
from mmreg.registration.driver import MultiMetricMultiResolutionRegistration, build_registration
from mmreg.registration.errors import ConfigurationError, SamplesNotAvailableError, StopCondition
from mmreg.registration.optimizers import RSGDEachParameterApartOptimizer
from mmreg.registration.transforms import TranslationTransform
from mmreg.utils.progress_tracker import ProgressTracker


class LevelAwareQuadratic:
    """Quadratic cost that records level contexts and can fail on chosen levels."""

    def __init__(self, minimum, name="quadratic", fail_on_level=None, fail_after=0, delay=0.0):
        self.minimum = torch.as_tensor(minimum, dtype=torch.float64)
        self.name = name
        self.fail_on_level = fail_on_level
        self.fail_after = fail_after
        self.delay = delay
        self.contexts = []
        self.level_calls = 0
        self.calls = 0

    def set_level(self, context):
        self.contexts.append(context)
        self.level_calls = 0

    def get_value_and_derivative(self, parameters):
        self.calls += 1
        self.level_calls += 1
        if self.delay:
            time.sleep(self.delay)
        level = self.contexts[-1].level if self.contexts else None
        if level == self.fail_on_level and self.level_calls > self.fail_after:
            raise SamplesNotAvailableError("too few samples")
        diff = parameters - self.minimum
        return 0.5 * float((diff * diff).sum()), diff


def make_config(num_metrics=1, levels=2, iterations=50, **registration):
    config = RegistrationConfig()
    config.registration.number_of_resolutions = levels
    for key, value in registration.items():
        setattr(config.registration, key, value)
    config.optimizer.number_of_iterations = iterations
    config.optimizer.maximum_step_length = 1.0
    config.optimizer.minimum_step_length = 1e-9
    config.optimizer.gradient_magnitude_tolerance = 1e-4
    config.metrics = [MetricConfig() for _ in range(num_metrics)]
    return config


def make_driver(measures, config, **kwargs):
    return MultiMetricMultiResolutionRegistration(
        metrics=measures,
        transform=TranslationTransform(2),
        optimizer=RSGDEachParameterApartOptimizer(),
        config=config,
        **kwargs,
    )


class TestEndToEnd:
    """Full coarse-to-fine runs on synthetic costs."""

    def test_two_level_quadratic_converges(self):
        """Test convergence to the known minimum over two levels of 50 iterations."""
        measure = LevelAwareQuadratic(minimum=[2.0, -3.0])
        driver = make_driver([measure], make_config(levels=2, iterations=50))

        result = driver.run()

        assert len(result.levels) == 2
        assert [c.level for c in measure.contexts] == [0, 1]
        assert result.stop_conditions[-1] in (
            StopCondition.GRADIENT_MAGNITUDE_TOLERANCE,
            StopCondition.MAXIMUM_NUMBER_OF_ITERATIONS,
        )
        assert torch.allclose(result.final_parameters, measure.minimum, atol=1e-2)
        assert all(level.iterations <= 50 for level in result.levels)

    def test_level_parameters_seed_next_level(self):
        """Test that each level starts from the previous level's result."""
        measure = LevelAwareQuadratic(minimum=[2.0, -3.0])
        config = make_config(levels=2, iterations=3)
        driver = make_driver([measure], config)
        starts = []
        original = driver.optimizer.set_initial_position
        driver.optimizer.set_initial_position = lambda p: (starts.append(p.clone()), original(p))[1]

        result = driver.run(initial_parameters=torch.tensor([0.5, 0.5]))

        assert torch.equal(starts[0], torch.tensor([0.5, 0.5], dtype=torch.float64))
        assert torch.equal(starts[1], result.levels[0].final_parameters)

    def test_failed_level_continues(self):
        """Test that a metric failure stops one level and the next level continues."""
        measure = LevelAwareQuadratic(minimum=[2.0, -3.0], fail_on_level=0, fail_after=2)
        driver = make_driver([measure], make_config(levels=2, iterations=200))

        result = driver.run()

        first, second = result.levels
        assert first.stop_condition is StopCondition.SAMPLES_NOT_AVAILABLE
        assert first.failed
        assert first.iterations == 2
        assert not second.failed
        assert torch.allclose(result.final_parameters, measure.minimum, atol=1e-2)

    def test_time_limit_stops_level(self):
        """Test that a level exceeding its time budget is stopped externally."""
        measure = LevelAwareQuadratic(minimum=[1e6, 1e6], delay=0.01)
        config = make_config(levels=1, iterations=10 ** 6, maximum_time_per_level=0.2)
        driver = make_driver([measure], config)

        result = driver.run()

        assert result.levels[0].stop_condition is StopCondition.MAXIMUM_NUMBER_OF_ITERATIONS
        assert 0 < result.levels[0].iterations < 10 ** 6
        # Per-level timing covers the whole budget
        assert result.levels[0].elapsed_seconds >= 0.15

    def test_time_limit_shorter_than_one_iteration(self):
        """Test that a limit shorter than one iteration still stops every level."""
        measure = LevelAwareQuadratic(minimum=[1e6, 1e6], delay=0.01)
        config = make_config(levels=2, iterations=1000, maximum_time_per_level=1e-6)
        driver = make_driver([measure], config)

        result = driver.run()

        for level in result.levels:
            assert level.stop_condition is StopCondition.MAXIMUM_NUMBER_OF_ITERATIONS
            assert 1 <= level.iterations <= 10
        assert driver._watchdog is None

    def test_histories(self):
        """Test per-iteration combined, submetric and step length records."""
        measures = [LevelAwareQuadratic([1.0, 1.0]), LevelAwareQuadratic([1.0, 1.0])]
        driver = make_driver(measures, make_config(num_metrics=2, levels=1, iterations=5))

        result = driver.run(initial_parameters=torch.tensor([-10.0, 10.0]))

        level = result.levels[0]
        assert set(level.submetric_history) == {"quadratic_0", "quadratic_1"}
        assert len(level.value_history) == level.iterations == 5
        assert len(level.submetric_history["quadratic_0"]) == 5
        assert len(level.step_length_history) == 5
        # Default weights 1/2 + 1/2 of two equal metrics
        assert level.value_history[0] == pytest.approx(level.submetric_history["quadratic_0"][0])
        assert result.value_history == {"level_0": level.value_history}


class TestValidation:
    """Configuration errors abort before any level starts."""

    def test_collection_size_mismatch(self, make_image):
        """Test that two fixed images for three metrics is rejected."""
        measures = [LevelAwareQuadratic([0.0, 0.0]) for _ in range(3)]
        images = [make_image(), make_image()]
        driver = make_driver(measures, make_config(num_metrics=3), fixed_images=images)

        with pytest.raises(ConfigurationError):
            driver.run()
        assert all(m.calls == 0 for m in measures)

    def test_shared_collection_is_accepted(self, make_image):
        """Test that a single image is shared by every metric."""
        measures = [LevelAwareQuadratic([0.0, 0.0]) for _ in range(2)]
        fixed = make_image()
        driver = make_driver(measures, make_config(num_metrics=2, iterations=1), fixed_images=[fixed])

        driver.run()

        for measure in measures:
            assert measure.contexts[-1].fixed_image.shape == fixed.shape

    def test_metric_count_must_match_config(self):
        """Test that the number of measures must match the configured metrics."""
        driver = make_driver([LevelAwareQuadratic([0.0, 0.0])], make_config(num_metrics=2))

        with pytest.raises(ConfigurationError):
            driver.run()

    def test_initial_parameter_length(self):
        """Test that initial parameters must match the transform."""
        driver = make_driver([LevelAwareQuadratic([0.0, 0.0])], make_config())

        with pytest.raises(ConfigurationError):
            driver.run(initial_parameters=torch.zeros(3))

    def test_pyramid_too_short(self, make_image):
        """Test that prebuilt pyramids need every level."""
        from mmreg.preprocessing.pyramid import create_pyramid

        pyramid = create_pyramid(make_image(), num_levels=1)
        driver = make_driver([LevelAwareQuadratic([0.0, 0.0])], make_config(levels=2),
                             fixed_pyramids=[pyramid])

        with pytest.raises(ConfigurationError):
            driver.run()

    def test_shared_sampler_is_copied_per_metric(self):
        """Test that one shared sampler samples each metric's own fixed image."""
        from mmreg.registration.metrics import create_metric
        from mmreg.registration.sampling import FullSampler

        measures = [create_metric("ssd"), create_metric("ssd")]
        fixed = [ImageData(data=torch.zeros(16, 16)), ImageData(data=torch.ones(24, 24))]
        moving = [ImageData(data=torch.zeros(16, 16)), ImageData(data=torch.ones(24, 24))]
        shared = FullSampler()
        driver = make_driver(measures, make_config(num_metrics=2, levels=1),
                             fixed_images=fixed, moving_images=moving, samplers=[shared])

        driver.before_registration()
        driver.before_each_resolution(0)

        first_points, first_values = measures[0].sampler.sample()
        second_points, second_values = measures[1].sampler.sample()
        assert measures[0].sampler is not measures[1].sampler
        assert first_points.shape[0] == 16 * 16
        assert second_points.shape[0] == 24 * 24
        assert torch.all(first_values == 0.0)
        assert torch.all(second_values == 1.0)
        driver.combiner.shutdown()


class TestLevelSetup:
    """Per-level masks, settings and transform center."""

    def test_erosion_is_fresh_per_level(self, make_image):
        """Test that each level erodes its own pyramid mask once."""
        mask_data = torch.zeros(32, 32)
        mask_data[4:28, 4:28] = 1.0
        measure = LevelAwareQuadratic([0.0, 0.0])
        config = make_config(levels=2, iterations=1, fixed_mask_erosion_radius=1)
        driver = make_driver([measure], config, fixed_images=[make_image()],
                             moving_images=[make_image()], fixed_masks=[ImageData(data=mask_data)])

        driver.run()

        sizes = [int(c.fixed_mask.data.sum()) for c in measure.contexts]
        assert sizes == [10 * 10, 22 * 22]
        assert measure.contexts[0].fixed_mask.shape == (16, 16)

    def test_per_level_histogram_bins(self, make_image):
        """Test that per-level bin counts reach the measure."""
        measure = LevelAwareQuadratic([0.0, 0.0])
        config = make_config(levels=3, iterations=1)
        config.metrics[0].number_of_histogram_bins = [16, 32]
        driver = make_driver([measure], config, fixed_images=[make_image()], moving_images=[make_image()])

        driver.run()

        assert [c.number_of_histogram_bins for c in measure.contexts] == [16, 32, 32]

    def test_center_defaults_to_fixed_image_center(self, make_image):
        """Test that the rotation center is the fixed image center."""
        driver = make_driver([LevelAwareQuadratic([0.0, 0.0])], make_config(iterations=1),
                             fixed_images=[make_image(spacing=(2.0, 1.0))])

        driver.run()

        assert torch.allclose(driver.transform.center, torch.tensor([31.0, 15.5], dtype=torch.float64))

    def test_center_uses_finest_level_of_longer_pyramid(self, make_image):
        """Test that a pyramid with extra levels still centers on its finest image."""
        from mmreg.preprocessing.pyramid import create_pyramid

        pyramid = create_pyramid(make_image(), num_levels=3)
        driver = make_driver([LevelAwareQuadratic([0.0, 0.0])], make_config(levels=2, iterations=1),
                             fixed_pyramids=[pyramid])

        driver.run()

        expected = pyramid[len(pyramid) - 1].image.center()
        assert torch.allclose(driver.transform.center, expected)
        assert torch.allclose(expected, torch.tensor([15.5, 15.5], dtype=torch.float64))
        # The last level that is run is one shrink step coarser
        assert not torch.allclose(pyramid[1].image.center(), expected)

    def test_progress_tracker(self, tmp_path):
        """Test that the tracker sees every level and the final status."""
        tracker = ProgressTracker(output_dir=tmp_path, log_interval=1)
        states = []
        tracker.on_progress(states.append)
        driver = make_driver([LevelAwareQuadratic([1.0, 1.0])], make_config(levels=2, iterations=3),
                             progress_tracker=tracker)

        result = driver.run()

        state = tracker.get_state()
        assert state.status == "completed"
        assert state.stop_conditions == [c.name for c in result.stop_conditions]
        assert any(s.iteration > 0 for s in states)
        progress = json.loads((tmp_path / "progress.json").read_text())
        assert progress["status"] == "completed"
        assert (tmp_path / "progress_log.txt").exists()


class TestBuildRegistration:
    """Registration assembled from configuration on blob images."""

    def test_ssd_translation_recovers_offset(self, fixed_blob, moving_blob):
        """Test recovery of a (+2, -1) translation with SSD."""
        config = make_config(levels=2, iterations=200)
        config.optimizer.minimum_step_length = 1e-4
        config.metrics = [MetricConfig(name="ssd", sampler=SamplerConfig(type="full"))]

        result = build_registration(config, [fixed_blob], [moving_blob]).run()

        assert torch.allclose(result.final_parameters, torch.tensor([2.0, -1.0], dtype=torch.float64), atol=0.25)

    def test_two_metrics_with_relative_weights(self, fixed_blob, moving_blob):
        """Test a relative-weighted SSD + NCC combination."""
        config = make_config(levels=2, iterations=200, use_relative_weights=True)
        config.optimizer.minimum_step_length = 1e-4
        config.metrics = [
            MetricConfig(name="ssd", relative_weight=1.0, sampler=SamplerConfig(type="full")),
            MetricConfig(name="ncc", relative_weight=1.0, sampler=SamplerConfig(type="full")),
        ]

        result = build_registration(config, [fixed_blob], [moving_blob]).run()

        assert torch.allclose(result.final_parameters, torch.tensor([2.0, -1.0], dtype=torch.float64), atol=0.5)
        assert set(result.levels[-1].submetric_history) == {"ssd", "ncc"}

    def test_requires_fixed_image(self):
        """Test that a registration needs at least one fixed image."""
        with pytest.raises(ConfigurationError):
            build_registration(make_config(), [], [])
