"""
Logging setup for the portal backend.

One colored, single-line format for every logger, plus structured extras for
the reconciliation loops (timings and per-run counts).
"""

import logging
import time
import sys
from datetime import datetime
from typing import Optional, Any


# Extra attributes rendered after the message, in this order
_EXTRA_KEYS = (
    "duration_ms",
    "record_count",
    "trigger",
    "accounts_created",
    "accounts_updated",
    "accounts_deleted",
    "accounts_skipped",
    "accounts_errors",
)

# Attributes every LogRecord already carries; extras may not reuse them
_RESERVED_ATTRS = frozenset(vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))) | {
    "message",
    "asctime",
}


class ColoredFormatter(logging.Formatter):
    """Custom formatter with colors for different log levels."""

    COLORS = {
        'DEBUG': '\033[36m',     # Cyan
        'INFO': '\033[32m',      # Green
        'WARNING': '\033[33m',   # Yellow
        'ERROR': '\033[31m',     # Red
        'CRITICAL': '\033[35m',  # Magenta
    }
    RESET = '\033[0m'

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color

    def format(self, record):
        timestamp = datetime.fromtimestamp(record.created).strftime('%Y-%m-%d %H:%M:%S.%f')[:-3]

        if self.use_color:
            color = self.COLORS.get(record.levelname, '')
            level_str = f"{color}{record.levelname:8}{self.RESET}"
        else:
            level_str = f"{record.levelname:8}"

        location = f"{record.module}.{record.funcName}" if record.funcName != '<module>' else record.module

        extras = []
        for key in _EXTRA_KEYS:
            if not hasattr(record, key):
                continue
            value = getattr(record, key)
            if key == 'duration_ms':
                extras.append(f"duration={value:.1f}ms")
            elif key == 'record_count':
                extras.append(f"records={value}")
            else:
                extras.append(f"{key}={value}")
        extra_str = f" [{', '.join(extras)}]" if extras else ""

        message = f"{timestamp} | {level_str} | {location:30} | {record.getMessage()}{extra_str}"
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"
        return message


def setup_logging(level: str = "INFO") -> None:
    """
    Configure the root logger once for the whole process.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(ColoredFormatter(use_color=sys.stdout.isatty()))
    handler.setLevel(getattr(logging, level.upper()))

    root.setLevel(getattr(logging, level.upper()))
    root.addHandler(handler)

    logging.getLogger('uvicorn').setLevel(logging.INFO)
    logging.getLogger('uvicorn.access').setLevel(logging.WARNING)
    logging.getLogger('sqlalchemy.engine').setLevel(logging.WARNING)
    logging.getLogger('httpx').setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger (typically ``get_logger(__name__)``)."""
    return logging.getLogger(name)


class LogTimer:
    """
    Context manager that logs the start, end and duration of an operation.

    Usage:
        with LogTimer(logger, "Account reconciliation") as timer:
            ...
            timer.add_info("accounts_created", 3)
    """

    def __init__(
        self,
        logger: logging.Logger,
        operation: str,
        level: int = logging.INFO,
    ):
        self.logger = logger
        self.operation = operation
        self.level = level
        self.start_time = None
        self.duration_ms: float = 0.0
        self.record_count = None
        self.extra_info = {}

    def __enter__(self):
        self.start_time = time.perf_counter()
        self.logger.log(self.level, f"Starting: {self.operation}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.duration_ms = (time.perf_counter() - self.start_time) * 1000

        extra = {'duration_ms': self.duration_ms}
        if self.record_count is not None:
            extra['record_count'] = self.record_count
        extra.update(self.extra_info)

        if exc_type is not None:
            self.logger.error(f"Failed: {self.operation} - {exc_val}", extra=extra)
        else:
            self.logger.log(self.level, f"Completed: {self.operation}", extra=extra)

        return False

    def set_record_count(self, count: int) -> None:
        """Set the number of records processed."""
        self.record_count = count

    def add_info(self, key: str, value: Any) -> None:
        """Add extra info to the completion log."""
        if key in _RESERVED_ATTRS:
            raise ValueError(f"'{key}' is a reserved LogRecord attribute")
        self.extra_info[key] = value

    @property
    def elapsed_ms(self) -> Optional[float]:
        if self.start_time is None:
            return None
        return (time.perf_counter() - self.start_time) * 1000
