"""
MMREG Registration Errors

Stop conditions and the exceptions that produce them.

Metric evaluation failures are raised by the similarity measures and
metric adapters, and turned into a StopCondition by the optimizer.
Configuration errors are raised before any resolution level starts.
"""

from enum import IntEnum


class StopCondition(IntEnum):
    """Reason the optimizer transitioned to Stopped"""
    GRADIENT_MAGNITUDE_TOLERANCE = 1
    STEP_TOO_SMALL = 2
    IMAGE_NOT_AVAILABLE = 3
    SAMPLES_NOT_AVAILABLE = 4
    MAXIMUM_NUMBER_OF_ITERATIONS = 5
    METRIC_ERROR = 6

    @property
    def is_failure(self) -> bool:
        """True for stops caused by a failed metric evaluation"""
        return self in (
            StopCondition.IMAGE_NOT_AVAILABLE,
            StopCondition.SAMPLES_NOT_AVAILABLE,
            StopCondition.METRIC_ERROR,
        )


class MetricEvaluationError(RuntimeError):
    """Base class for failures while computing a value and derivative"""

    stop_condition = StopCondition.METRIC_ERROR

    def __init__(self, message: str, metric: str = ""):
        super().__init__(message)
        self.metric = metric


class ImageNotAvailableError(MetricEvaluationError):
    """A fixed or moving image (or mask) is missing for the current level"""

    stop_condition = StopCondition.IMAGE_NOT_AVAILABLE


class SamplesNotAvailableError(MetricEvaluationError):
    """Too few samples map inside the valid region of the moving image"""

    stop_condition = StopCondition.SAMPLES_NOT_AVAILABLE


class MetricError(MetricEvaluationError):
    """The measure could not compute a usable value or derivative"""

    stop_condition = StopCondition.METRIC_ERROR


class ConfigurationError(ValueError):
    """Invalid registration setup, detected before registration starts"""
