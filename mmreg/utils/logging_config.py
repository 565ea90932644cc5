"""
MMREG Logging

All package loggers live under the ``MMREG`` logger. ``setup_logging``
attaches a console handler and, optionally, a run log file to it;
``Timer`` measures registration stages (image loading, each resolution
level, output writing) and reports the duration through a logger. The
per-level ``Timer.elapsed`` is stored in each LevelResult.
"""

import logging
import sys
import time
from pathlib import Path
from typing import Optional, Union


ROOT_LOGGER_NAME = "MMREG"

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]

FILE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"


class ConsoleFormatter(logging.Formatter):
    """
    Compact console lines: ``[HH:MM:SS] I | MMREG.registration: message``

    The level letter is colored when the stream is a terminal.
    """

    COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, use_color: bool = False):
        super().__init__(datefmt="%H:%M:%S")
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        tag = record.levelname[0]
        if self.use_color:
            tag = f"{self.COLORS.get(record.levelno, '')}{tag}{self.RESET}"
        line = f"[{self.formatTime(record, self.datefmt)}] {tag} | {record.name}: {record.getMessage()}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(
    level: str = "INFO",
    log_file: Optional[Union[str, Path]] = None,
    stream=None,
) -> logging.Logger:
    """
    Configure the MMREG logger for a registration run

    Calling it again replaces the previous handlers, so the CLI can log
    at a provisional level while the configuration is loaded and then
    switch to the configured level and log file.

    Args:
        level: One of LOG_LEVELS (case-insensitive)
        log_file: Optional run log, overwritten; parent directories are created
        stream: Console stream (default: stdout)

    Returns:
        The MMREG logger

    Raises:
        ValueError: Unknown level
    """
    name = str(level).upper()
    if name not in LOG_LEVELS:
        raise ValueError(f"Unknown log level '{level}'. Must be one of {LOG_LEVELS}")

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(name)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    stream = stream or sys.stdout
    console = logging.StreamHandler(stream)
    console.setFormatter(ConsoleFormatter(use_color=hasattr(stream, "isatty") and stream.isatty()))
    logger.addHandler(console)

    if log_file:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, mode="w")
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        logger.addHandler(file_handler)

    return logger


def get_logger(name: str) -> logging.Logger:
    """Logger for a package module, e.g. ``get_logger("registration")``."""
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")


class Timer:
    """
    Time a registration stage

    Usage:
        with Timer("Level 1 optimization", logger) as timer:
            optimizer.start_optimization()
        seconds = timer.elapsed

    ``elapsed`` is wall-clock seconds from a monotonic clock. A stage left
    through an exception is reported as failed at WARNING.
    """

    def __init__(self, name: str, logger: Optional[logging.Logger] = None, level: int = logging.INFO):
        self.name = name
        self.logger = logger or get_logger("timer")
        self.level = level
        self.elapsed = 0.0
        self._start: Optional[float] = None

    def __enter__(self):
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.elapsed = time.perf_counter() - self._start
        if exc_type is None:
            self.logger.log(self.level, f"{self.name}: {self.elapsed:.2f}s")
        else:
            self.logger.warning(f"{self.name}: failed after {self.elapsed:.2f}s ({exc_type.__name__})")
        return False
