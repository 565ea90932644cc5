"""Tests for the per-parameter step length gradient descent optimizer."""

# Standard Library Imports
import threading

# Third Party Imports
import pytest
import torch

# Local Imports
from mmreg.registration.errors import (
    ConfigurationError,
    ImageNotAvailableError,
    SamplesNotAvailableError,
    StopCondition,
)
from mmreg.registration.optimizers import OptimizerState, RSGDEachParameterApartOptimizer


class ScriptedMeasure:
    """Returns a scripted sequence of gradients (the last one repeats)."""

    def __init__(self, gradients):
        self.gradients = [torch.as_tensor(g, dtype=torch.float64) for g in gradients]
        self.calls = 0

    def get_value_and_derivative(self, parameters):
        gradient = self.gradients[min(self.calls, len(self.gradients) - 1)]
        self.calls += 1
        return float(parameters.sum()), gradient.clone()


def make_optimizer(cost_function, initial, **kwargs):
    optimizer = RSGDEachParameterApartOptimizer(cost_function=cost_function, **kwargs)
    optimizer.set_initial_position(torch.as_tensor(initial, dtype=torch.float64))
    return optimizer


def record_steps(optimizer):
    history = []
    optimizer.on_iteration(lambda opt: history.append(opt.current_step_lengths.clone()))
    return history


class TestTermination:
    """Every run ends in a single StopCondition within the iteration budget."""

    @pytest.mark.parametrize("initial", [[0.0, 0.0], [10.0, -10.0], [2.0, -3.0], [-50.0, 0.5]])
    def test_stops_within_budget(self, make_quadratic, initial):
        """Test that the run stops with exactly one condition after at most N iterations."""
        measure = make_quadratic(minimum=[2.0, -3.0])
        optimizer = make_optimizer(measure, initial, number_of_iterations=25)

        condition = optimizer.start_optimization()

        assert isinstance(condition, StopCondition)
        assert optimizer.stop_condition is condition
        assert optimizer.state is OptimizerState.STOPPED
        assert optimizer.current_iteration <= 25

    def test_idle_before_start(self, quadratic):
        """Test that a new optimizer is idle and has no stop condition."""
        optimizer = make_optimizer(quadratic, [0.0, 0.0])
        assert optimizer.state is OptimizerState.IDLE
        assert optimizer.stop_condition is None

    def test_zero_iterations_stops_immediately(self, quadratic):
        """Test that a zero budget stops before evaluating the cost."""
        optimizer = make_optimizer(quadratic, [0.0, 0.0], number_of_iterations=0)

        condition = optimizer.start_optimization()

        assert condition is StopCondition.MAXIMUM_NUMBER_OF_ITERATIONS
        assert optimizer.current_iteration == 0
        assert quadratic.calls == 0

    def test_zero_gradient_with_zero_tolerance(self, make_constant):
        """Test that a flat cost converges without moving, even with tolerance 0."""
        optimizer = make_optimizer(make_constant(1.0, [0.0, 0.0]), [1.0, 2.0],
                                   gradient_magnitude_tolerance=0.0)

        condition = optimizer.start_optimization()

        assert condition is StopCondition.GRADIENT_MAGNITUDE_TOLERANCE
        assert torch.equal(optimizer.current_position, torch.tensor([1.0, 2.0], dtype=torch.float64))

    def test_budget_exhausted(self, make_constant):
        """Test that a cost that never flattens exhausts the budget."""
        optimizer = make_optimizer(make_constant(0.0, [1.0]), [0.0], number_of_iterations=7)

        condition = optimizer.start_optimization()

        assert condition is StopCondition.MAXIMUM_NUMBER_OF_ITERATIONS
        assert optimizer.current_iteration == 7

    def test_gradient_tolerance_at_minimum(self, quadratic):
        """Test that starting at the minimum converges without moving."""
        optimizer = make_optimizer(quadratic, [2.0, -3.0])

        condition = optimizer.start_optimization()

        assert condition is StopCondition.GRADIENT_MAGNITUDE_TOLERANCE
        assert optimizer.current_iteration == 0
        assert torch.equal(optimizer.current_position, torch.tensor([2.0, -3.0], dtype=torch.float64))

    def test_converges_to_quadratic_minimum(self, make_quadratic):
        """Test convergence on a quadratic with a known minimum."""
        measure = make_quadratic(minimum=[2.0, -3.0], scale=[1.0, 4.0])
        optimizer = make_optimizer(
            measure, [0.0, 0.0],
            maximum_step_length=1.0,
            minimum_step_length=1e-6,
            number_of_iterations=500,
        )

        optimizer.start_optimization()

        assert torch.allclose(optimizer.current_position, measure.minimum, atol=1e-3)


class TestStepAdaptation:
    """Per-parameter step lengths grow on sign agreement and shrink on flips."""

    def test_first_iteration_counts_as_agreement(self, make_constant):
        """Test that the initial zero previous gradient keeps the maximum step."""
        optimizer = make_optimizer(make_constant(0.0, [1.0, -1.0]), [0.0, 0.0], number_of_iterations=1)
        history = record_steps(optimizer)

        optimizer.start_optimization()

        assert torch.allclose(history[0], torch.tensor([1.0, 1.0], dtype=torch.float64))

    def test_growth_after_drop(self):
        """Test step growth by step_rise for consecutive agreeing iterations."""
        measure = ScriptedMeasure([[1.0], [-1.0], [-1.0]])
        optimizer = make_optimizer(measure, [0.0], number_of_iterations=5)
        history = record_steps(optimizer)

        optimizer.start_optimization()

        steps = [float(h[0]) for h in history]
        assert steps == pytest.approx([1.0, 0.5, 0.55, 0.605, 0.6655])

    def test_growth_is_monotonic_and_capped(self):
        """Test that agreeing signs never decrease the step and never exceed the maximum."""
        measure = ScriptedMeasure([[1.0], [-1.0], [-1.0]])
        optimizer = make_optimizer(measure, [0.0], maximum_step_length=2.0, number_of_iterations=20)
        history = record_steps(optimizer)

        optimizer.start_optimization()

        steps = [float(h[0]) for h in history[1:]]
        assert all(b >= a for a, b in zip(steps, steps[1:]))
        assert max(steps) <= 2.0
        assert steps[-1] == pytest.approx(2.0)

    def test_parameters_adapt_independently(self):
        """Test that an oscillating parameter shrinks while a steady one keeps its step."""
        measure = ScriptedMeasure([[1.0, 1.0], [-1.0, 1.0], [1.0, 1.0], [-1.0, 1.0], [1.0, 1.0]])
        optimizer = make_optimizer(measure, [0.0, 0.0], number_of_iterations=5)
        history = record_steps(optimizer)

        optimizer.start_optimization()

        last = history[-1]
        assert float(last[0]) == pytest.approx(0.0625)
        assert float(last[1]) == pytest.approx(1.0)
        assert optimizer.current_step_length == pytest.approx((0.0625 + 1.0) / 2)

    def test_sign_flips_stop_with_step_too_small(self):
        """Test that repeated flips shrink every step below the minimum and stop the run."""
        measure = ScriptedMeasure([[1.0], [-1.0], [1.0], [-1.0], [1.0], [-1.0]])
        optimizer = make_optimizer(
            measure, [0.0], maximum_step_length=1.0, minimum_step_length=0.1, number_of_iterations=50
        )
        history = record_steps(optimizer)

        condition = optimizer.start_optimization()

        assert condition is StopCondition.STEP_TOO_SMALL
        assert [float(h[0]) for h in history] == pytest.approx([1.0, 0.5, 0.25, 0.125])
        assert optimizer.current_iteration == 4
        # The stopping iteration applies no update
        assert float(optimizer.current_position[0]) == pytest.approx(-0.625)

    def test_update_uses_normalized_gradient(self, make_constant):
        """Test that the move is step * gradient / ||gradient||."""
        optimizer = make_optimizer(make_constant(0.0, [3.0, 4.0]), [0.0, 0.0], number_of_iterations=1)

        optimizer.start_optimization()

        assert torch.allclose(optimizer.current_position, torch.tensor([-0.6, -0.8], dtype=torch.float64))
        assert optimizer.gradient_magnitude == pytest.approx(5.0)

    def test_maximize_moves_uphill(self, make_constant):
        """Test that maximizing follows the gradient and reports it unchanged."""
        optimizer = make_optimizer(make_constant(0.0, [2.0]), [0.0], number_of_iterations=1, maximize=True)

        optimizer.start_optimization()

        assert float(optimizer.current_position[0]) == pytest.approx(1.0)
        assert float(optimizer.gradient[0]) == pytest.approx(2.0)


class TestMetricFailures:
    """Metric failures stop the run without a partial update."""

    def test_samples_not_available_leaves_parameters(self, make_quadratic, make_failing):
        """Test that a failure at iteration n keeps the parameters of the start of n."""
        measure = make_failing(make_quadratic(minimum=[5.0, 5.0]), fail_at=3)
        optimizer = make_optimizer(measure, [0.0, 0.0], number_of_iterations=50)
        positions = []
        optimizer.on_iteration(lambda opt: positions.append(opt.current_position.clone()))

        condition = optimizer.start_optimization()

        assert condition is StopCondition.SAMPLES_NOT_AVAILABLE
        assert optimizer.current_iteration == 3
        assert torch.equal(optimizer.current_position, positions[-1])

    def test_failure_at_first_iteration(self, quadratic, make_failing):
        """Test that a failing first evaluation leaves the initial position."""
        measure = make_failing(quadratic, fail_at=0, error=ImageNotAvailableError("no image"))
        optimizer = make_optimizer(measure, [1.0, 1.0])

        condition = optimizer.start_optimization()

        assert condition is StopCondition.IMAGE_NOT_AVAILABLE
        assert torch.equal(optimizer.current_position, torch.tensor([1.0, 1.0], dtype=torch.float64))

    def test_gradient_length_mismatch(self, make_constant):
        """Test that a derivative of the wrong size stops with METRIC_ERROR."""
        optimizer = make_optimizer(make_constant(0.0, [1.0, 1.0, 1.0]), [0.0, 0.0])

        assert optimizer.start_optimization() is StopCondition.METRIC_ERROR


class TestExternalStop:
    """Stop requests are observed at the next iteration boundary."""

    def test_stop_from_callback(self, make_constant):
        """Test that a stop requested during iteration 2 ends the run after it."""
        optimizer = make_optimizer(make_constant(0.0, [1.0]), [0.0], number_of_iterations=100)
        optimizer.on_iteration(lambda opt: opt.stop_optimization() if opt.current_iteration == 2 else None)

        condition = optimizer.start_optimization()

        assert condition is StopCondition.MAXIMUM_NUMBER_OF_ITERATIONS
        assert optimizer.current_iteration == 2

    def test_stop_with_explicit_condition(self, make_constant):
        """Test that the requested condition is recorded."""
        optimizer = make_optimizer(make_constant(0.0, [1.0]), [0.0], number_of_iterations=100)
        optimizer.on_iteration(
            lambda opt: opt.stop_optimization(StopCondition.STEP_TOO_SMALL)
        )

        assert optimizer.start_optimization() is StopCondition.STEP_TOO_SMALL
        assert optimizer.current_iteration == 1

    def test_stop_from_other_thread(self, make_constant):
        """Test that a stop from another thread ends a long run."""
        optimizer = make_optimizer(make_constant(0.0, [1.0]), [0.0], number_of_iterations=10 ** 7)
        started = threading.Event()
        optimizer.on_iteration(lambda opt: started.set())

        def stopper():
            started.wait(timeout=10)
            optimizer.stop_optimization()

        thread = threading.Thread(target=stopper)
        thread.start()
        condition = optimizer.start_optimization()
        thread.join()

        assert condition is StopCondition.MAXIMUM_NUMBER_OF_ITERATIONS
        assert 1 <= optimizer.current_iteration < 10 ** 7

    def test_resume_continues_state(self):
        """Test that resuming keeps the iteration counter and step lengths."""
        measure = ScriptedMeasure([[1.0], [-1.0], [-1.0]])
        optimizer = make_optimizer(measure, [0.0], number_of_iterations=5)
        fired = []

        def stop_once(opt):
            if opt.current_iteration == 2 and not fired:
                fired.append(True)
                opt.stop_optimization()

        optimizer.on_iteration(stop_once)
        optimizer.start_optimization()
        assert optimizer.current_iteration == 2
        assert float(optimizer.current_step_lengths[0]) == pytest.approx(0.5)

        condition = optimizer.resume_optimization()

        assert condition is StopCondition.MAXIMUM_NUMBER_OF_ITERATIONS
        assert optimizer.current_iteration == 5
        assert float(optimizer.current_step_lengths[0]) == pytest.approx(0.6655)

    def test_start_resets_state(self, make_constant):
        """Test that a second start begins again from the initial position."""
        optimizer = make_optimizer(make_constant(0.0, [1.0]), [0.0], number_of_iterations=3)
        optimizer.start_optimization()
        optimizer.start_optimization()

        assert optimizer.current_iteration == 3
        assert float(optimizer.current_position[0]) == pytest.approx(-3.0)


class TestValidation:
    """Invalid settings raise ConfigurationError."""

    @pytest.mark.parametrize("kwargs", [
        {"minimum_step_length": 2.0, "maximum_step_length": 1.0},
        {"minimum_step_length": 0.0},
        {"number_of_iterations": -1},
        {"step_drop": 1.5},
        {"step_rise": 0.9},
        {"gradient_magnitude_tolerance": -1.0},
    ])
    def test_invalid_settings(self, kwargs):
        """Test rejection of inconsistent optimizer settings."""
        with pytest.raises(ConfigurationError):
            RSGDEachParameterApartOptimizer(**kwargs)

    def test_start_without_cost_function(self):
        """Test that starting without a cost function is a configuration error."""
        optimizer = RSGDEachParameterApartOptimizer()
        optimizer.set_initial_position(torch.zeros(2))
        with pytest.raises(ConfigurationError):
            optimizer.start_optimization()

    def test_samples_error_is_metric_failure(self):
        """Test the failure classification of stop conditions."""
        assert SamplesNotAvailableError.stop_condition.is_failure
        assert not StopCondition.GRADIENT_MAGNITUDE_TOLERANCE.is_failure
        assert not StopCondition.MAXIMUM_NUMBER_OF_ITERATIONS.is_failure
