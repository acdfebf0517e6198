"""
Logging configuration for graphlink.

Features:
- Dynamic log level control via environment variable or config
- Structured JSON logging for files, human-readable output for consoles
- Optional size-rotated log file
- Task-local context attached to every record (session, attempt, address)
"""

import json
import logging
import os
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

MAX_FILE_SIZE = 100 * 1024 * 1024  # 100MB
BACKUP_COUNT = 10
DEFAULT_LOG_LEVEL = os.getenv("GRAPHLINK_LOG_LEVEL", "INFO")
ROOT_LOGGER_NAME = "graphlink"

_current_log_level = DEFAULT_LOG_LEVEL.upper()
_log_context: ContextVar[dict[str, Any]] = ContextVar("graphlink_log_context", default={})


class StructuredFormatter(logging.Formatter):
    """Formatter that outputs structured JSON logs."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if getattr(record, "context", None):
            log_data["context"] = record.context

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, ensure_ascii=False, default=str)


class HumanFormatter(logging.Formatter):
    """Human-readable formatter for console output."""

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def __init__(self, use_color: bool = True):
        super().__init__()
        self._use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "") if self._use_color else ""
        reset = self.RESET if self._use_color else ""
        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]

        base_msg = f"[{timestamp}] {color}{record.levelname:8}{reset} | {record.name:30} | {record.getMessage()}"

        if getattr(record, "context", None):
            base_msg += f" | context={json.dumps(record.context, ensure_ascii=False, default=str)}"

        if record.exc_info:
            base_msg += f"\n{self.formatException(record.exc_info)}"

        return base_msg


class ContextFilter(logging.Filter):
    """Filter that merges the task-local log context into each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        context = dict(_log_context.get())
        context.update(getattr(record, "context", None) or {})
        record.context = context
        return True


class GraphLinkLogger(logging.LoggerAdapter):
    """Logger adapter with structured context support."""

    def __init__(self, logger: logging.Logger):
        super().__init__(logger, {})

    def process(self, msg: Any, kwargs: Any) -> tuple[Any, Any]:
        return msg, kwargs

    def _log_with_context(
        self,
        level: int,
        msg: str,
        args: tuple,
        context: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> None:
        if not self.isEnabledFor(level):
            return
        extra = kwargs.pop("extra", None) or {}
        extra["context"] = {**_log_context.get(), **(context or {})}
        kwargs.setdefault("stacklevel", 3)
        self.logger.log(level, msg, *args, extra=extra, **kwargs)

    def info_with_context(self, msg: str, context: dict[str, Any] | None = None, *args: Any, **kwargs: Any) -> None:
        self._log_with_context(logging.INFO, msg, args, context, **kwargs)

    def error_with_context(self, msg: str, context: dict[str, Any] | None = None, *args: Any, **kwargs: Any) -> None:
        self._log_with_context(logging.ERROR, msg, args, context, **kwargs)

    def warning_with_context(self, msg: str, context: dict[str, Any] | None = None, *args: Any, **kwargs: Any) -> None:
        self._log_with_context(logging.WARNING, msg, args, context, **kwargs)

    def debug_with_context(self, msg: str, context: dict[str, Any] | None = None, *args: Any, **kwargs: Any) -> None:
        self._log_with_context(logging.DEBUG, msg, args, context, **kwargs)


def setup_logging(
    level: str | None = None,
    enable_console: bool = True,
    log_file: str | Path | None = None,
    structured_console: bool = False,
) -> logging.Logger:
    """
    Setup logging for the graphlink logger hierarchy.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        enable_console: Enable console logging
        log_file: Optional path of a size-rotated JSON log file
        structured_console: Emit JSON on the console instead of the human format

    Returns:
        The configured "graphlink" logger
    """
    global _current_log_level

    if level:
        _current_log_level = level.upper()

    numeric_level = getattr(logging, _current_log_level, logging.INFO)
    root_logger = logging.getLogger(ROOT_LOGGER_NAME)
    root_logger.setLevel(numeric_level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
        handler.close()

    if enable_console:
        console_handler = logging.StreamHandler(sys.stdout)
        if structured_console:
            console_handler.setFormatter(StructuredFormatter())
        else:
            console_handler.setFormatter(HumanFormatter(use_color=sys.stdout.isatty()))
        console_handler.setLevel(numeric_level)
        console_handler.addFilter(ContextFilter())
        root_logger.addHandler(console_handler)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            path,
            maxBytes=MAX_FILE_SIZE,
            backupCount=BACKUP_COUNT,
            encoding="utf-8",
        )
        file_handler.setFormatter(StructuredFormatter())
        file_handler.setLevel(numeric_level)
        file_handler.addFilter(ContextFilter())
        root_logger.addHandler(file_handler)

    return root_logger


def get_logger(name: str) -> GraphLinkLogger:
    """
    Get a logger instance.

    Args:
        name: Logger name (usually __name__)

    Returns:
        GraphLinkLogger wrapping the standard logger of that name
    """
    return GraphLinkLogger(logging.getLogger(name))


def set_log_level(level: str) -> None:
    """Dynamically set the log level of the graphlink hierarchy."""
    global _current_log_level
    _current_log_level = level.upper()

    root_logger = logging.getLogger(ROOT_LOGGER_NAME)
    root_logger.setLevel(getattr(logging, _current_log_level, logging.INFO))

    for handler in root_logger.handlers:
        handler.setLevel(getattr(logging, _current_log_level, logging.INFO))


def get_log_level() -> str:
    return _current_log_level


@contextmanager
def log_context(**kwargs: Any):
    """
    Attach context to every graphlink log record emitted inside the block.

    Usage:
        with log_context(session="s-1", attempt=2):
            logger.warning_with_context("Retrying")
    """
    token = _log_context.set({**_log_context.get(), **kwargs})
    try:
        yield
    finally:
        _log_context.reset(token)
