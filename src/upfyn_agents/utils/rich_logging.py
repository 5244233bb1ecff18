"""Logging with task context and console-friendly formatting."""

import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

LOGGER_ROOT = "upfyn_agents"


class TaskLogFormatter(logging.Formatter):
    """Plain formatter with task and phase context, used for the log file."""

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created).strftime("%Y-%m-%d %H:%M:%S")

        task_context = ""
        if hasattr(record, "task_id"):
            task_context = f"[{record.task_id[:8]}] "

        phase_context = ""
        if hasattr(record, "phase"):
            phase_context = f"[{record.phase}] "

        message = (
            f"{timestamp} {record.levelname:8s} {record.name}: "
            f"{phase_context}{task_context}{record.getMessage()}"
        )
        if record.exc_info:
            message += "\n" + self.formatException(record.exc_info)
        return message


class ContextLogger(logging.LoggerAdapter):
    """Logger adapter that adds task context to all log messages."""

    def __init__(self, logger: logging.Logger):
        super().__init__(logger, {})
        self.current_task_id: Optional[str] = None
        self.current_phase: Optional[str] = None

    def set_task_context(
        self,
        task_id: Optional[str] = None,
        phase: Optional[str] = None,
    ):
        """Set current task context for logging."""
        if task_id:
            self.current_task_id = task_id
        if phase is not None:
            self.current_phase = phase

    def clear_context(self):
        """Clear task context."""
        self.current_task_id = None
        self.current_phase = None

    def process(self, msg, kwargs):
        """Add context to log record."""
        extra = kwargs.get("extra", {})

        if self.current_task_id:
            extra["task_id"] = self.current_task_id
        if self.current_phase:
            extra["phase"] = self.current_phase

        kwargs["extra"] = extra

        # RichHandler doesn't render extras, keep the id visible on console too
        if self.current_task_id:
            msg = f"[{self.current_task_id[:8]}] {msg}"
        return msg, kwargs

    def transition(self, task_id: str, source: str, target: str):
        """Log the start of a lifecycle transition."""
        self.set_task_context(task_id=task_id, phase=f"{source}->{target}")
        self.info(f"Transition {source} -> {target}")


def setup_logging(
    log_level: str = "INFO",
    log_dir: Optional[Path] = None,
    console: bool = True,
) -> logging.Logger:
    """
    Configure the package logger.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_dir: Directory for upfyn.log; no file handler when None
        console: Attach a rich console handler on stderr

    Returns:
        The package root logger
    """
    logger = logging.getLogger(LOGGER_ROOT)
    logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    # Close existing handlers before clearing (prevents file descriptor leak)
    for handler in logger.handlers[:]:
        handler.close()
        logger.removeHandler(handler)

    if console:
        console_handler = RichHandler(
            console=Console(stderr=True),
            show_path=False,
            rich_tracebacks=True,
            markup=False,
        )
        # Transition chatter goes to the file, the console only gets problems
        console_handler.setLevel(logging.WARNING)
        logger.addHandler(console_handler)

    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_dir / "upfyn.log")
        file_handler.setFormatter(TaskLogFormatter())
        logger.addHandler(file_handler)

    logger.propagate = False
    return logger
