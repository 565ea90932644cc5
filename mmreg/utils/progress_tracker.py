"""
MMREG Progress Tracker

Reporting surface of the registration driver. Receives per-iteration
combined values, submetric values and average step lengths, and the stop
condition of every level.

Supports both:
- In-process callbacks (telemetry, GUIs, tests)
- File-based updates (progress.json / progress_log.txt in an output directory)

Usage:
    tracker = ProgressTracker(output_dir=output_path)
    tracker.start(max_level=3)
    tracker.set_level(level, max_iteration)
    tracker.update_iteration(iteration, value, {"nmi": 0.8}, step_length)
    tracker.end_level(level, "GRADIENT_MAGNITUDE_TOLERANCE")
    tracker.finish(success=True)
"""

from dataclasses import dataclass, asdict, field
from typing import Callable, Dict, List, Optional
from pathlib import Path
import json
import time
from datetime import datetime
from copy import deepcopy

from .logging_config import get_logger

logger = get_logger("progress")


@dataclass
class ProgressState:
    """Current state of registration progress."""
    status: str = "idle"  # idle, running, completed, failed
    level: int = 0
    max_level: int = 0
    iteration: int = 0
    max_iteration: int = 0
    value: float = 0.0
    submetric_values: Dict[str, float] = field(default_factory=dict)
    step_length: float = 0.0
    stop_conditions: List[str] = field(default_factory=list)
    elapsed_seconds: float = 0.0
    last_update: str = ""
    log_message: str = ""


class ProgressTracker:
    """
    Tracks registration progress and emits updates.

    Works in two modes:
    1. File-based: Writes progress.json to output_dir for external monitoring
    2. Callback-based: Calls registered callbacks for in-process updates
    """

    def __init__(
        self,
        output_dir: Optional[Path] = None,
        enable_file_output: bool = True,
        log_interval: int = 10,
    ):
        """
        Initialize progress tracker.

        Args:
            output_dir: Directory to write progress.json (None = no file output)
            enable_file_output: Whether to write progress.json
            log_interval: Log progress every N iterations
        """
        self.output_dir = Path(output_dir) if output_dir else None
        self.enable_file_output = enable_file_output and output_dir is not None
        self.log_interval = log_interval

        self.state = ProgressState()
        self.start_time: Optional[float] = None

        self._on_progress_callbacks: List[Callable[[ProgressState], None]] = []
        self._on_log_callbacks: List[Callable[[str], None]] = []
        self._on_finish_callbacks: List[Callable[[bool, str], None]] = []

    def on_progress(self, callback: Callable[[ProgressState], None]):
        """Register callback for progress updates."""
        self._on_progress_callbacks.append(callback)

    def on_log(self, callback: Callable[[str], None]):
        """Register callback for log messages."""
        self._on_log_callbacks.append(callback)

    def on_finish(self, callback: Callable[[bool, str], None]):
        """Register callback for completion."""
        self._on_finish_callbacks.append(callback)

    def start(self, max_level: int):
        """Called before the first resolution level."""
        self.start_time = time.time()
        self.state = ProgressState(status="running", max_level=max_level)
        if self.output_dir:
            self.output_dir.mkdir(parents=True, exist_ok=True)
        self._emit_update()
        self.log(f"Registration started: {max_level} resolution levels")

    def set_level(self, level: int, max_iteration: int):
        """Called when entering a new resolution level."""
        self.state.level = level
        self.state.max_iteration = max_iteration
        self.state.iteration = 0
        self._emit_update()
        self.log(f"  Level {level + 1}/{self.state.max_level}: {max_iteration} iterations")

    def update_iteration(
        self,
        iteration: int,
        value: float,
        submetric_values: Optional[Dict[str, float]] = None,
        step_length: float = 0.0,
    ):
        """Called each optimization iteration."""
        self.state.iteration = iteration
        self.state.value = value
        self.state.submetric_values = dict(submetric_values or {})
        self.state.step_length = step_length
        self._update_timing()
        self._emit_update()

        if iteration > 0 and iteration % self.log_interval == 0:
            submetrics = ", ".join(f"{k}={v:.6f}" for k, v in self.state.submetric_values.items())
            self.log(
                f"    Iter {iteration}: value={value:.6f}, step={step_length:.4g}"
                + (f", {submetrics}" if submetrics else "")
            )

    def end_level(self, level: int, stop_condition: str):
        """Called when a resolution level finished."""
        self.state.stop_conditions.append(stop_condition)
        self._emit_update()
        self.log(f"  Level {level + 1} stopped: {stop_condition}")

    def log(self, message: str):
        """Emit a log message."""
        self.state.log_message = message
        for callback in self._on_log_callbacks:
            self._invoke(callback, message)
        if self.enable_file_output:
            self._append_log(message)

    def finish(self, success: bool = True, message: str = ""):
        """Called when registration completes."""
        self.state.status = "completed" if success else "failed"
        self._update_timing()
        self._emit_update()

        status_msg = "completed successfully" if success else f"failed: {message}"
        mins, secs = divmod(int(self.state.elapsed_seconds), 60)
        self.log(f"Registration {status_msg} in {mins}m {secs}s")

        for callback in self._on_finish_callbacks:
            self._invoke(callback, success, message)

    def _update_timing(self):
        if self.start_time:
            self.state.elapsed_seconds = time.time() - self.start_time

    def _invoke(self, callback: Callable, *args):
        # A failing observer must not abort the registration
        try:
            callback(*args)
        except Exception as e:
            logger.warning(f"Progress callback {callback!r} failed: {e}")

    def _emit_update(self):
        """Emit progress update via callbacks and file."""
        self.state.last_update = datetime.now().isoformat()

        state_copy = deepcopy(self.state)
        for callback in self._on_progress_callbacks:
            self._invoke(callback, state_copy)

        if self.enable_file_output:
            self._write_progress_file()

    def _write_progress_file(self):
        """Write current state to progress.json."""
        progress_file = self.output_dir / "progress.json"
        try:
            with open(progress_file, 'w') as f:
                json.dump(asdict(self.state), f, indent=2)
        except OSError as e:
            logger.debug(f"Could not write {progress_file}: {e}")

    def _append_log(self, message: str):
        """Append message to log file."""
        log_file = self.output_dir / "progress_log.txt"
        try:
            with open(log_file, 'a') as f:
                timestamp = datetime.now().strftime('%H:%M:%S')
                f.write(f"[{timestamp}] {message}\n")
        except OSError as e:
            logger.debug(f"Could not write {log_file}: {e}")

    def get_state(self) -> ProgressState:
        """Get current progress state."""
        return deepcopy(self.state)
