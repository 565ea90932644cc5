"""
MMREG Convergence Plotting

Visualize optimization convergence across resolution levels.
"""

import numpy as np
from pathlib import Path
from typing import Dict, List, Optional, Union
import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt

from ..utils.logging_config import get_logger

logger = get_logger("convergence")


def _finish(fig: plt.Figure, output_path: Optional[Union[str, Path]], dpi: int) -> Optional[plt.Figure]:
    fig.tight_layout()
    if output_path:
        fig.savefig(output_path, dpi=dpi, bbox_inches='tight')
        plt.close(fig)
        logger.info(f"Saved: {Path(output_path).name}")
        return None
    return fig


def plot_multi_level_convergence(
    value_history: Dict[str, List[float]],
    output_path: Optional[Union[str, Path]] = None,
    title: str = "Multi-Level Convergence",
    figsize: tuple = (12, 6),
    dpi: int = 150,
) -> Optional[plt.Figure]:
    """
    Plot the combined value across resolution levels

    Args:
        value_history: Level names as keys ("level_0" is coarsest), value lists as values
        output_path: Optional path to save figure
        title: Figure title
        figsize: Figure size
        dpi: DPI for saved figure

    Returns:
        Figure object (if not saved) or None
    """
    fig, ax = plt.subplots(1, 1, figsize=figsize)

    n_levels = max(len(value_history), 1)
    colors = plt.cm.viridis(np.linspace(0, 1, n_levels))

    cumulative_iters = 0
    for i, (level_name, values) in enumerate(value_history.items()):
        iters = np.arange(len(values)) + cumulative_iters
        ax.plot(iters, values, color=colors[i], linewidth=2, label=level_name)

        if i > 0:
            ax.axvline(x=cumulative_iters, color='gray', linestyle=':', alpha=0.5)

        cumulative_iters += len(values)

    ax.set_xlabel("Cumulative Iteration")
    ax.set_ylabel("Combined Value")
    ax.set_title(title)
    if value_history:
        ax.legend(loc='upper right')
    ax.grid(True, alpha=0.3)

    return _finish(fig, output_path, dpi)


def plot_submetric_convergence(
    levels: List,
    output_path: Optional[Union[str, Path]] = None,
    title: str = "Submetric Convergence",
    figsize: tuple = (12, 8),
    dpi: int = 150,
) -> Optional[plt.Figure]:
    """
    Plot every submetric and the average step length across levels

    Args:
        levels: LevelResult list of a RegistrationResult
        output_path: Optional path to save figure
        title: Figure title
        figsize: Figure size
        dpi: DPI for saved figure

    Returns:
        Figure object (if not saved) or None
    """
    fig, (ax_values, ax_steps) = plt.subplots(2, 1, figsize=figsize, sharex=True)

    names: List[str] = []
    for level in levels:
        for name in level.submetric_history:
            if name not in names:
                names.append(name)
    colors = plt.cm.tab10(np.arange(max(len(names), 1)) % 10)

    cumulative_iters = 0
    for i, level in enumerate(levels):
        for j, name in enumerate(names):
            values = level.submetric_history.get(name, [])
            iters = np.arange(len(values)) + cumulative_iters
            # NaN entries (failed unused metrics) leave gaps
            ax_values.plot(iters, values, color=colors[j], linewidth=1.5,
                           label=name if i == 0 else None)

        steps = level.step_length_history
        ax_steps.plot(np.arange(len(steps)) + cumulative_iters, steps, 'k-', linewidth=1.5)

        if i > 0:
            for ax in (ax_values, ax_steps):
                ax.axvline(x=cumulative_iters, color='gray', linestyle=':', alpha=0.5)
        cumulative_iters += len(level.value_history)

    ax_values.set_ylabel("Submetric Value")
    ax_values.set_title(title)
    if names:
        ax_values.legend(loc='upper right')
    ax_values.grid(True, alpha=0.3)

    ax_steps.set_xlabel("Cumulative Iteration")
    ax_steps.set_ylabel("Average Step Length")
    ax_steps.set_yscale('log')
    ax_steps.grid(True, alpha=0.3)

    return _finish(fig, output_path, dpi)
