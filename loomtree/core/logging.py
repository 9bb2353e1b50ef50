"""Structured logging configuration for loomtree.

All loggers hang off the ``loomtree`` package logger, which owns the single
stderr handler. stdout stays free for CLI output.
"""

import logging
import sys
from typing import Any

PACKAGE_LOGGER = "loomtree"

# Extra fields promoted to fixed positions right after the message
CONTEXT_FIELDS = ("batch_id", "node_id")


def _format_value(value: Any) -> str:
    text = str(value)
    if not text or any(c.isspace() for c in text) or "=" in text:
        return repr(text)
    return text


class StructuredFormatter(logging.Formatter):
    """key=value log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name.removeprefix(f"{PACKAGE_LOGGER}."),
            "message": record.getMessage(),
        }

        for field in CONTEXT_FIELDS:
            if hasattr(record, field):
                log_data[field] = getattr(record, field)

        if hasattr(record, "extra_data"):
            log_data.update(record.extra_data)

        line = " ".join(f"{k}={_format_value(v)}" for k, v in log_data.items())
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def _default_level() -> int:
    try:
        from loomtree.core.config import get_settings

        return logging.DEBUG if get_settings().LOOM_ENV == "dev" else logging.INFO
    except Exception:
        # Settings unreadable (bad env value); fall back rather than fail on import
        return logging.INFO


def _configure_package_logger() -> logging.Logger:
    root = logging.getLogger(PACKAGE_LOGGER)
    if not root.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(StructuredFormatter())
        root.addHandler(handler)
        root.setLevel(_default_level())
    return root


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger under the ``loomtree`` hierarchy.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Logger that writes through the shared structured handler
    """
    _configure_package_logger()
    return logging.getLogger(name)


def set_log_level(level: int) -> None:
    """Override the level chosen from ``LOOM_ENV`` (CLI ``--verbose``)."""
    _configure_package_logger().setLevel(level)


def log_with_context(logger: logging.Logger, level: int, msg: str, **kwargs: Any) -> None:
    """
    Log with additional context fields.

    Args:
        logger: Logger instance
        level: Log level (logging.INFO, etc.)
        msg: Log message
        **kwargs: Context fields; ``batch_id`` and ``node_id`` are promoted
    """
    extra: dict[str, Any] = {}
    for field in CONTEXT_FIELDS:
        if field in kwargs:
            extra[field] = kwargs.pop(field)
    extra["extra_data"] = kwargs

    logger.log(level, msg, extra=extra)
