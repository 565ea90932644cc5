"""
MMREG Registration Results

Containers for what a multi-resolution registration produces.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import torch

from .errors import StopCondition


@dataclass
class LevelResult:
    """
    Outcome of one resolution level

    Attributes:
        level: Resolution level index (0 = coarsest)
        stop_condition: Why the optimizer stopped
        iterations: Completed iterations
        final_value: Combined value at the last successful evaluation
        elapsed_seconds: Wall time of the optimization
        final_parameters: Parameters handed to the next level
        final_step_lengths: Per-parameter step lengths at the stop
        value_history: Combined value per iteration
        submetric_history: Value per iteration for every metric
        step_length_history: Average step length per iteration
    """
    level: int
    stop_condition: StopCondition
    iterations: int
    final_value: float
    elapsed_seconds: float
    final_parameters: torch.Tensor
    final_step_lengths: Optional[torch.Tensor] = None
    value_history: List[float] = field(default_factory=list)
    submetric_history: Dict[str, List[float]] = field(default_factory=dict)
    step_length_history: List[float] = field(default_factory=list)

    @property
    def failed(self) -> bool:
        return self.stop_condition.is_failure

    def summary(self) -> Dict[str, Any]:
        """JSON-serialisable summary"""
        return {
            "level": self.level,
            "stop_condition": self.stop_condition.name,
            "iterations": self.iterations,
            "final_value": self.final_value,
            "elapsed_seconds": self.elapsed_seconds,
            "final_parameters": self.final_parameters.tolist(),
        }


@dataclass
class RegistrationResult:
    """
    Container for registration results

    Attributes:
        final_parameters: Parameter vector after the last level
        levels: One LevelResult per resolution level
        transform: The transform the parameters belong to
        metadata: Additional metadata
    """
    final_parameters: torch.Tensor
    levels: List[LevelResult]
    transform: Any
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def stop_conditions(self) -> List[StopCondition]:
        return [level.stop_condition for level in self.levels]

    @property
    def final_value(self) -> float:
        return self.levels[-1].final_value if self.levels else float("nan")

    @property
    def value_history(self) -> Dict[str, List[float]]:
        """Combined value per iteration, keyed by level name"""
        return {f"level_{r.level}": r.value_history for r in self.levels}

    def summary(self) -> Dict[str, Any]:
        return {
            "transform": getattr(self.transform, "name", type(self.transform).__name__),
            "final_parameters": self.final_parameters.tolist(),
            "levels": [level.summary() for level in self.levels],
            "metadata": self.metadata,
        }
