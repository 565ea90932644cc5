"""
MMREG Multi-Metric Combiner

Combines several metric adapters into a single cost function:

    value    = sum_i w_i * value_i
    gradient = sum_i w_i * gradient_i

summed over the adapters used at the current level. Weights are either
static per level, or recomputed every evaluation from the gradient
magnitudes ("relative weights"):

    w_i = rw_i * |g_0| / |g_i|

so that every used metric pulls with the user-specified relative
strength whatever its numeric scale. Adapter 0 (declaration order) is
the reference.
"""

import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import torch

from .errors import ConfigurationError, MetricEvaluationError
from .metrics import MetricAdapter
from ..utils.logging_config import get_logger

logger = get_logger("combiner")


@dataclass
class CombinerRecord:
    """Submetric diagnostics of the last evaluation"""
    values: List[float] = field(default_factory=list)
    gradient_norms: List[float] = field(default_factory=list)
    weights: List[float] = field(default_factory=list)


class MultiMetricCombiner:
    """
    Weighted sum of metric adapters

    Adapters that are not used at the current level are still evaluated
    ("computed, not used") so their values can be reported; their
    failures are logged and recorded as NaN. A failure of a used adapter
    propagates unchanged and stops the optimizer.
    """

    def __init__(
        self,
        adapters: Sequence[MetricAdapter],
        max_workers: int = 1,
        gradient_norm_floor: float = 0.0,
    ):
        """
        Args:
            adapters: Metric adapters in declaration order
            max_workers: Evaluate adapters concurrently when > 1
            gradient_norm_floor: Gradient norms at or below this get
                weight 0 under relative weighting (0.0 = exact zero only)
        """
        if len(adapters) == 0:
            raise ConfigurationError("MultiMetricCombiner needs at least one metric")
        if gradient_norm_floor < 0:
            raise ConfigurationError(f"gradient_norm_floor must be >= 0, got {gradient_norm_floor}")

        self.adapters = list(adapters)
        self.max_workers = max_workers
        self.gradient_norm_floor = gradient_norm_floor

        count = len(self.adapters)
        self.weights: List[float] = [1.0 / count] * count
        self.relative_weights: List[float] = [1.0 / count] * count
        self.use: List[bool] = [True] * count
        self.use_relative_weights = False

        self.record = CombinerRecord()
        self._executor: Optional[ThreadPoolExecutor] = None

    @property
    def number_of_metrics(self) -> int:
        return len(self.adapters)

    def set_level(
        self,
        weights: Optional[Sequence[float]] = None,
        relative_weights: Optional[Sequence[float]] = None,
        use: Optional[Sequence[bool]] = None,
        use_relative_weights: bool = False,
    ):
        """
        Apply the weighting settings of a resolution level.

        Raises:
            ConfigurationError: Wrong length, negative or non-finite weights
        """
        count = self.number_of_metrics
        if weights is not None:
            self.weights = self._check_weights("weights", weights)
        if relative_weights is not None:
            self.relative_weights = self._check_weights("relative_weights", relative_weights)
        if use is not None:
            if len(use) != count:
                raise ConfigurationError(f"use has {len(use)} entries, expected {count}")
            self.use = [bool(u) for u in use]
        if not any(self.use):
            raise ConfigurationError("At least one metric must be used")
        self.use_relative_weights = bool(use_relative_weights)

    def _check_weights(self, label: str, weights: Sequence[float]) -> List[float]:
        if len(weights) != self.number_of_metrics:
            raise ConfigurationError(
                f"{label} has {len(weights)} entries, expected {self.number_of_metrics}"
            )
        checked = [float(w) for w in weights]
        for w in checked:
            if not math.isfinite(w) or w < 0:
                raise ConfigurationError(f"{label} must be non-negative and finite, got {checked}")
        return checked

    def _is_required(self, index: int) -> bool:
        return self.use[index] or (self.use_relative_weights and index == 0)

    def _evaluate_one(self, index: int, parameters: torch.Tensor):
        adapter = self.adapters[index]
        try:
            return adapter.evaluate(parameters), None
        except MetricEvaluationError as e:
            if self._is_required(index):
                return None, e
            logger.debug(f"Unused metric {adapter.name} failed: {e}")
            return (float("nan"), None), None

    def get_value_and_derivative(self, parameters: torch.Tensor) -> Tuple[float, torch.Tensor]:
        """
        Evaluate every adapter and combine the used ones.

        Raises:
            MetricEvaluationError: A required adapter failed
        """
        parameters = torch.as_tensor(parameters, dtype=torch.float64).reshape(-1)
        indices = range(self.number_of_metrics)

        if self.max_workers > 1 and self.number_of_metrics > 1:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=self.max_workers)
            outcomes = list(self._executor.map(lambda i: self._evaluate_one(i, parameters), indices))
        else:
            outcomes = [self._evaluate_one(i, parameters) for i in indices]

        # Raise the first failure in declaration order
        for _, error in outcomes:
            if error is not None:
                raise error

        values = [outcome[0] for outcome, _ in outcomes]
        gradients = [outcome[1] for outcome, _ in outcomes]
        norms = [
            float(torch.linalg.vector_norm(g)) if g is not None else float("nan")
            for g in gradients
        ]
        weights = self._current_weights(norms)

        # Fixed summation order keeps results reproducible across thread counts
        value = 0.0
        gradient = torch.zeros_like(parameters)
        for i in indices:
            if not self.use[i]:
                continue
            value += weights[i] * values[i]
            gradient = gradient + weights[i] * gradients[i]

        self.record = CombinerRecord(values=values, gradient_norms=norms, weights=weights)
        return value, gradient

    def _current_weights(self, norms: List[float]) -> List[float]:
        if not self.use_relative_weights:
            return list(self.weights)

        reference = norms[0]
        weights = []
        for i, norm in enumerate(norms):
            if not math.isfinite(norm) or norm <= self.gradient_norm_floor:
                # Locally flat metric contributes nothing this iteration
                weights.append(0.0)
            else:
                weights.append(self.relative_weights[i] * (reference / norm))
        logger.debug(f"Relative weights: {[f'{w:.4g}' for w in weights]}")
        return weights

    def shutdown(self):
        """Release the worker threads, if any."""
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
