"""
Structured logging module with JSON formatting, correlation IDs and
settlement context.

This module provides:
- JSON log formatting for structured logging
- Correlation ID tracking via context variables (per request / per job run)
- Bound settlement context (queue item, game, worker) carried on every record
- Logger factory for consistent logger creation
"""
import logging
import json
import sys
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator
from contextvars import ContextVar

correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")
log_context_var: ContextVar[Dict[str, Any]] = ContextVar("log_context", default={})

_STANDARD_ATTRS = {
    "name", "msg", "args", "levelname", "levelno", "pathname", "filename",
    "module", "exc_info", "exc_text", "stack_info", "lineno", "funcName",
    "created", "msecs", "relativeCreated", "thread", "threadName",
    "processName", "process", "message", "asctime", "taskName",
}


class JSONFormatter(logging.Formatter):
    """
    JSON log formatter for structured logging.

    Outputs one JSON object per record with:
    - timestamp, level, logger, message
    - correlation_id: request or job-run correlation ID (if any)
    - context: fields bound with ``bind_log_context`` (queue_item_id, game_id, ...)
    - exception: formatted traceback (if any)
    - extra: anything passed through ``extra=``
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "correlation_id": correlation_id_var.get(),
        }

        context = log_context_var.get()
        if context:
            log_data["context"] = dict(context)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        extra_keys = {
            k: v for k, v in record.__dict__.items() if k not in _STANDARD_ATTRS
        }
        if extra_keys:
            log_data["extra"] = extra_keys

        return json.dumps(log_data, default=str)


class ColoredFormatter(logging.Formatter):
    """Colored console formatter for development."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        level_color = self.COLORS.get(record.levelname, "")
        base_msg = f"{level_color}[{record.levelname}]{self.RESET} {record.name}: {record.getMessage()}"

        correlation_id = correlation_id_var.get()
        if correlation_id:
            base_msg += f" | correlation_id={correlation_id}"

        context = log_context_var.get()
        if context:
            base_msg += " | " + " ".join(f"{k}={v}" for k, v in context.items())

        if record.exc_info:
            base_msg += "\n" + self.formatException(record.exc_info)

        return base_msg


def configure_logging(
    level: str = "INFO",
    json_output: bool = True,
    handler: logging.Handler | None = None,
) -> None:
    """
    Configure structured logging for the application.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: If True, use JSON formatter. If False, use colored console formatter.
        handler: Optional custom handler. If None, creates StreamHandler to stdout.
    """
    root_logger = logging.getLogger()
    root_logger.handlers.clear()

    log_level = getattr(logging, level.upper(), logging.INFO)
    root_logger.setLevel(log_level)

    if handler is None:
        handler = logging.StreamHandler(sys.stdout)
        handler.setLevel(log_level)

    handler.setFormatter(JSONFormatter() if json_output else ColoredFormatter())
    root_logger.addHandler(handler)

    # Reduce noise from third-party loggers
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance (typically ``get_logger(__name__)``)."""
    return logging.getLogger(name)


def set_correlation_id(correlation_id: str) -> Any:
    """
    Set the correlation ID in the context.

    Returns:
        Token that can be used to reset the context variable
    """
    return correlation_id_var.set(correlation_id)


def get_correlation_id() -> str:
    return correlation_id_var.get()


def clear_correlation_id(token: Any) -> None:
    """Reset the correlation ID using the token from ``set_correlation_id``."""
    correlation_id_var.reset(token)


@contextmanager
def bind_log_context(**fields: Any) -> Iterator[Dict[str, Any]]:
    """
    Bind fields onto every log record emitted inside the block.

    Nested blocks merge onto the outer context; the outer context is restored
    on exit.

    Usage:
        with bind_log_context(queue_item_id=item.id, game_id=item.game_id):
            logger.info("Settling game")
    """
    merged = {**log_context_var.get(), **{k: v for k, v in fields.items() if v is not None}}
    token = log_context_var.set(merged)
    try:
        yield merged
    finally:
        log_context_var.reset(token)


def get_log_context() -> Dict[str, Any]:
    return dict(log_context_var.get())
