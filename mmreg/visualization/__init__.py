"""MMREG Visualization Module"""

from .convergence import plot_multi_level_convergence, plot_submetric_convergence

__all__ = [
    "plot_multi_level_convergence",
    "plot_submetric_convergence",
]
