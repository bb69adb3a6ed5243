"""Structured logging for pipeline execution."""

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional


class ColoredFormatter(logging.Formatter):
    """Formatter that colours the level name for console output."""

    def __init__(self, fmt: str, datefmt: str, colors: dict):
        super().__init__(fmt=fmt, datefmt=datefmt)
        self.colors = colors

    def format(self, record):
        original = record.levelname
        color = self.colors.get(original, self.colors["RESET"])
        record.levelname = f"{color}{original}{self.colors['RESET']}"
        try:
            return super().format(record)
        finally:
            # Other handlers see the same record
            record.levelname = original


class PipelineLogger:
    """Structured logging for pipeline execution.

    Writes a detailed log file per run and coloured console output, with
    events for stage start, completion, skip and failure.

    Parameters
    ----------
    log_dir : str
        Directory for log files
    log_level : str
        Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    log_name : str, optional
        Logger name. Default: "cellscope.pipeline"
    console : bool
        Also log to stdout. Default: True

    Attributes
    ----------
    log_file : Path
        Path to this run's log file
    logger : logging.Logger
        Underlying logger, also handed to the engines

    Example
    -------
    >>> logger = PipelineLogger("logs/", log_level="INFO")
    >>> logger.setup()
    >>> logger.log_stage_start("qc", "Quality control")
    >>> logger.log_stage_complete("qc", 45.2)
    """

    COLORS = {
        "DEBUG": "\033[0;36m",  # Cyan
        "INFO": "\033[0;34m",  # Blue
        "WARNING": "\033[1;33m",  # Yellow
        "ERROR": "\033[0;31m",  # Red
        "CRITICAL": "\033[1;31m",  # Bold Red
        "RESET": "\033[0m",
    }

    def __init__(
        self,
        log_dir: str,
        log_level: str = "INFO",
        log_name: str = "cellscope.pipeline",
        console: bool = True,
    ):
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)

        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        self.log_file = self.log_dir / f"pipeline_{timestamp}.log"

        level = getattr(logging, str(log_level).upper(), None)
        if not isinstance(level, int):
            raise ValueError(f"Unknown log level '{log_level}'")
        self.log_level = level
        self.console = console
        self.logger = logging.getLogger(log_name)
        self.logger.setLevel(self.log_level)
        self.logger.propagate = not console
        self.close()

    def setup(self) -> None:
        """Attach the file handler and, if enabled, the console handler."""
        file_handler = logging.FileHandler(self.log_file, mode="w", encoding="utf-8")
        file_handler.setLevel(self.log_level)
        file_handler.setFormatter(self._get_file_formatter())
        self.logger.addHandler(file_handler)

        if self.console:
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setLevel(self.log_level)
            console_handler.setFormatter(self._get_console_formatter(sys.stdout.isatty()))
            self.logger.addHandler(console_handler)

    def close(self) -> None:
        """Detach and close all handlers."""
        for handler in list(self.logger.handlers):
            self.logger.removeHandler(handler)
            handler.close()

    def _get_file_formatter(self) -> logging.Formatter:
        return logging.Formatter(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def _get_console_formatter(self, color: bool = True) -> logging.Formatter:
        fmt = "%(asctime)s - %(levelname)s - %(message)s"
        if not color:
            return logging.Formatter(fmt=fmt, datefmt="%H:%M:%S")
        return ColoredFormatter(fmt=fmt, datefmt="%H:%M:%S", colors=self.COLORS)

    def log_stage_start(self, stage_id: str, stage_name: str) -> None:
        separator = "=" * 80
        self.logger.info(separator)
        self.logger.info("Starting stage %s: %s", stage_id, stage_name)
        self.logger.info(separator)

    def log_stage_complete(
        self,
        stage_id: str,
        duration: float,
        summary: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Log successful completion of a stage with its summary."""
        self.logger.info(
            "Stage %s completed successfully in %s", stage_id, self.format_duration(duration)
        )
        for key, value in (summary or {}).items():
            self.logger.debug("  %s: %s", key, value)

    def log_stage_skip(self, stage_id: str, reason: str) -> None:
        self.logger.info("[SKIP] Stage %s: %s", stage_id, reason)

    def log_stage_error(self, stage_id: str, error: str) -> None:
        self.logger.error("Stage %s failed: %s", stage_id, error)

    def log_info(self, message: str) -> None:
        self.logger.info(message)

    def log_warning(self, message: str) -> None:
        self.logger.warning(message)

    def log_error(self, message: str) -> None:
        self.logger.error(message)

    def log_debug(self, message: str) -> None:
        self.logger.debug(message)

    @staticmethod
    def format_duration(seconds: float) -> str:
        """Format seconds as "45.2s", "1m 23s" or "2h 15m"."""
        if seconds < 60:
            return f"{seconds:.1f}s"
        elif seconds < 3600:
            mins = int(seconds // 60)
            secs = int(seconds % 60)
            return f"{mins}m {secs}s"
        else:
            hours = int(seconds // 3600)
            mins = int((seconds % 3600) // 60)
            return f"{hours}h {mins}m"
