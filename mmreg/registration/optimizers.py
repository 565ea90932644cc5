"""
MMREG Optimizers

Robust stochastic gradient descent with one step length per parameter
("each parameter apart").

Every transform parameter keeps its own step length. A parameter whose
gradient component keeps its sign has its step grown by ``step_rise``
(capped at the maximum step length); a parameter whose gradient component
flips sign has its step shrunk by ``step_drop``. Parameters move along the
normalized gradient direction, so the step length alone controls the size
of each move.

Usage:
    optimizer = RSGDEachParameterApartOptimizer(
        cost_function=combiner,
        maximum_step_length=1.0,
        minimum_step_length=1e-3,
        number_of_iterations=100,
    )
    optimizer.set_initial_position(parameters)
    optimizer.on_iteration(lambda opt: print(opt.value))
    condition = optimizer.start_optimization()
"""

import threading
from enum import Enum
from typing import Callable, List, Optional

import torch

from .errors import ConfigurationError, MetricEvaluationError, StopCondition
from ..utils.logging_config import get_logger

logger = get_logger("optimizers")


class OptimizerState(Enum):
    """Lifecycle of one optimization run"""
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"


class RSGDEachParameterApartOptimizer:
    """
    Regular step gradient descent with per-parameter step lengths

    The cost function is any object exposing
    ``get_value_and_derivative(parameters) -> (float, Tensor)``. Failures
    are signalled by raising a MetricEvaluationError, which stops the run
    with the matching StopCondition and leaves the parameters as they were
    at the start of the failing iteration.

    ``stop_optimization`` may be called from another thread (for example a
    time-limit timer); the request is observed at the next iteration
    boundary.
    """

    def __init__(
        self,
        cost_function=None,
        maximum_step_length: float = 1.0,
        minimum_step_length: float = 1e-3,
        number_of_iterations: int = 100,
        gradient_magnitude_tolerance: float = 1e-4,
        maximize: bool = False,
        step_rise: float = 1.1,
        step_drop: float = 0.5,
    ):
        """
        Initialize optimizer.

        Args:
            cost_function: Object providing get_value_and_derivative()
            maximum_step_length: Initial and largest per-parameter step
            minimum_step_length: Stop when every step falls below this
            number_of_iterations: Iteration budget per run
            gradient_magnitude_tolerance: Stop when ||gradient|| falls below this
            maximize: Maximize the cost function instead of minimizing it
            step_rise: Step growth factor when a gradient component keeps its sign
            step_drop: Step shrink factor when a gradient component flips sign
        """
        self.cost_function = cost_function
        self.maximum_step_length = maximum_step_length
        self.minimum_step_length = minimum_step_length
        self.number_of_iterations = number_of_iterations
        self.gradient_magnitude_tolerance = gradient_magnitude_tolerance
        self.maximize = maximize
        self.step_rise = step_rise
        self.step_drop = step_drop
        self._validate()

        self._initial_position: Optional[torch.Tensor] = None
        self._current_position: Optional[torch.Tensor] = None
        self._gradient: Optional[torch.Tensor] = None
        self._previous_gradient: Optional[torch.Tensor] = None
        self._current_step_lengths: Optional[torch.Tensor] = None
        self._current_step_length = 0.0
        self._gradient_magnitude = 0.0
        self._value = float("nan")
        self._current_iteration = 0

        self._state = OptimizerState.IDLE
        self._stop_condition: Optional[StopCondition] = None

        # External stop requests (possibly from another thread)
        self._stop_requested = threading.Event()
        self._requested_condition = StopCondition.MAXIMUM_NUMBER_OF_ITERATIONS
        self._lock = threading.Lock()

        self._on_iteration_callbacks: List[Callable[["RSGDEachParameterApartOptimizer"], None]] = []

    def _validate(self):
        if not (0 < self.minimum_step_length <= self.maximum_step_length):
            raise ConfigurationError(
                f"Step lengths must satisfy 0 < minimum <= maximum, got "
                f"minimum={self.minimum_step_length}, maximum={self.maximum_step_length}"
            )
        if self.number_of_iterations < 0:
            raise ConfigurationError(
                f"number_of_iterations must be >= 0, got {self.number_of_iterations}"
            )
        if self.gradient_magnitude_tolerance < 0:
            raise ConfigurationError(
                f"gradient_magnitude_tolerance must be >= 0, got {self.gradient_magnitude_tolerance}"
            )
        if not (0 < self.step_drop < 1):
            raise ConfigurationError(f"step_drop must be in (0, 1), got {self.step_drop}")
        if self.step_rise < 1:
            raise ConfigurationError(f"step_rise must be >= 1, got {self.step_rise}")

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def set_cost_function(self, cost_function):
        self.cost_function = cost_function

    def set_initial_position(self, parameters):
        """Set the starting parameter vector for the next run."""
        self._initial_position = torch.as_tensor(parameters, dtype=torch.float64).reshape(-1).clone()

    def on_iteration(self, callback: Callable[["RSGDEachParameterApartOptimizer"], None]):
        """Register callback invoked after every completed iteration."""
        self._on_iteration_callbacks.append(callback)

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def state(self) -> OptimizerState:
        return self._state

    @property
    def initial_position(self) -> Optional[torch.Tensor]:
        return self._initial_position

    @property
    def current_position(self) -> Optional[torch.Tensor]:
        return self._current_position

    @property
    def value(self) -> float:
        return self._value

    @property
    def gradient(self) -> Optional[torch.Tensor]:
        return self._gradient

    @property
    def current_step_lengths(self) -> Optional[torch.Tensor]:
        return self._current_step_lengths

    @property
    def current_step_length(self) -> float:
        """Average of the per-parameter step lengths"""
        return self._current_step_length

    @property
    def gradient_magnitude(self) -> float:
        return self._gradient_magnitude

    @property
    def current_iteration(self) -> int:
        return self._current_iteration

    @property
    def stop_condition(self) -> Optional[StopCondition]:
        return self._stop_condition

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def start_optimization(self) -> StopCondition:
        """
        Reset the optimizer state and run until a stop condition is reached.

        Returns:
            The StopCondition of this run
        """
        if self.cost_function is None:
            raise ConfigurationError("No cost function set on the optimizer")
        if self._initial_position is None:
            raise ConfigurationError("No initial position set on the optimizer")
        self._validate()

        num_parameters = self._initial_position.numel()
        self._current_position = self._initial_position.clone()
        self._current_iteration = 0
        self._current_step_lengths = torch.full(
            (num_parameters,), float(self.maximum_step_length), dtype=torch.float64
        )
        self._current_step_length = float(self.maximum_step_length)
        self._previous_gradient = torch.zeros(num_parameters, dtype=torch.float64)
        self._gradient = torch.zeros(num_parameters, dtype=torch.float64)
        self._gradient_magnitude = 0.0
        self._value = float("nan")
        self._stop_requested.clear()

        logger.debug(
            f"Start: {num_parameters} parameters, max_step={self.maximum_step_length}, "
            f"min_step={self.minimum_step_length}, iterations={self.number_of_iterations}"
        )
        return self.resume_optimization()

    def resume_optimization(self) -> StopCondition:
        """
        Continue from the current state without resetting step lengths,
        previous gradient or iteration counter.
        """
        if self._current_position is None:
            raise ConfigurationError("resume_optimization() called before start_optimization()")

        self._stop_condition = None
        self._state = OptimizerState.RUNNING

        while self._state is OptimizerState.RUNNING:
            if self._stop_requested.is_set():
                with self._lock:
                    condition = self._requested_condition
                self._stop(condition)
                break

            if self._current_iteration >= self.number_of_iterations:
                self._stop(StopCondition.MAXIMUM_NUMBER_OF_ITERATIONS)
                break

            self.advance_one_step()

        return self._stop_condition

    def stop_optimization(self, condition: Optional[StopCondition] = None):
        """
        Request a stop at the next iteration boundary.

        Args:
            condition: StopCondition to record. Defaults to
                MAXIMUM_NUMBER_OF_ITERATIONS (an external budget ran out).
        """
        with self._lock:
            self._requested_condition = condition or StopCondition.MAXIMUM_NUMBER_OF_ITERATIONS
        self._stop_requested.set()

    def _stop(self, condition: StopCondition):
        # A pending external request is consumed by this stop
        self._stop_requested.clear()
        self._stop_condition = condition
        self._state = OptimizerState.STOPPED
        logger.debug(f"Stopped at iteration {self._current_iteration}: {condition.name}")

    # ------------------------------------------------------------------
    # Iteration
    # ------------------------------------------------------------------

    def advance_one_step(self):
        """
        Evaluate the cost function, adapt the step lengths and update the
        parameters. Stops the run instead of updating when a stop
        condition is met.
        """
        try:
            value, gradient = self.cost_function.get_value_and_derivative(
                self._current_position.clone()
            )
        except MetricEvaluationError as e:
            logger.warning(f"Iteration {self._current_iteration}: {e}")
            self._stop(e.stop_condition)
            return

        gradient = torch.as_tensor(gradient, dtype=torch.float64).reshape(-1).clone()
        if gradient.numel() != self._current_position.numel():
            logger.error(
                f"Gradient has {gradient.numel()} entries, expected "
                f"{self._current_position.numel()}"
            )
            self._stop(StopCondition.METRIC_ERROR)
            return

        self._value = float(value)
        self._gradient = gradient

        # Internal convention is always descent
        direction = -gradient if self.maximize else gradient

        self._gradient_magnitude = float(torch.linalg.vector_norm(direction))
        # A zero gradient has no direction, even with a zero tolerance
        if self._gradient_magnitude < self.gradient_magnitude_tolerance or self._gradient_magnitude == 0.0:
            self._stop(StopCondition.GRADIENT_MAGNITUDE_TOLERANCE)
            return

        # A zero previous component (first iteration) counts as agreement
        agree = direction * self._previous_gradient >= 0
        step_lengths = torch.where(
            agree,
            torch.clamp(self._current_step_lengths * self.step_rise, max=self.maximum_step_length),
            self._current_step_lengths * self.step_drop,
        )
        self._current_step_lengths = step_lengths
        self._current_step_length = float(step_lengths.mean())

        if bool(torch.all(step_lengths < self.minimum_step_length)):
            self._stop(StopCondition.STEP_TOO_SMALL)
            return

        self.step_along_gradient(direction / self._gradient_magnitude, step_lengths)

        self._previous_gradient = direction
        self._current_iteration += 1

        for callback in self._on_iteration_callbacks:
            callback(self)

        if self._current_iteration >= self.number_of_iterations:
            self._stop(StopCondition.MAXIMUM_NUMBER_OF_ITERATIONS)

    def step_along_gradient(self, normalized_direction: torch.Tensor, step_lengths: torch.Tensor):
        """Move every parameter by its own step length against the gradient."""
        self._current_position = self._current_position - step_lengths * normalized_direction
