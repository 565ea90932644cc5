"""MMREG Utilities Module"""

from .logging_config import setup_logging, get_logger, Timer
from .progress_tracker import ProgressTracker, ProgressState

__all__ = [
    "setup_logging",
    "get_logger",
    "Timer",
    "ProgressTracker",
    "ProgressState",
]
