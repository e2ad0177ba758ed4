"""
Structured logging for the AIVP research core.
Every logger lives under the ``aivp`` package logger, which carries one
structured handler (key=value, or JSON with LOG_FORMAT=json).
"""

import logging
import os
import threading
from typing import Any, Optional

from pythonjsonlogger import jsonlogger

from config.config import config

PACKAGE_LOGGER = "aivp"

_configure_lock = threading.Lock()


class _DefaultFields(logging.Filter):
    """Fills optional structured fields so the formatter never raises KeyError."""

    _fields = ("request_id", "participant_id", "operation")

    def filter(self, record: logging.LogRecord) -> bool:
        for attr in self._fields:
            if not hasattr(record, attr):
                setattr(record, attr, "")
        return True


def _make_formatter(log_format: str) -> logging.Formatter:
    timefmt = os.getenv("LOG_TIMEFMT", "%Y-%m-%dT%H:%M:%S%z")
    if log_format == "json":
        return jsonlogger.JsonFormatter(
            fmt="%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s %(participant_id)s %(operation)s",
            datefmt=timefmt,
        )
    return logging.Formatter(
        fmt=(
            "time=%(asctime)s level=%(levelname)s logger=%(name)s msg=%(message)s "
            "participant_id=%(participant_id)s operation=%(operation)s request_id=%(request_id)s"
        ),
        datefmt=timefmt,
    )


def _structured_handler(logger: logging.Logger) -> Optional[logging.Handler]:
    for handler in logger.handlers:
        if any(isinstance(f, _DefaultFields) for f in handler.filters):
            return handler
    return None


def configure_logging(level: Optional[str] = None, log_format: Optional[str] = None) -> logging.Logger:
    """
    Attach the structured handler to the package logger.

    Safe to call repeatedly; later calls only update level and format.

    Args:
        level: Level name, defaults to LOG_LEVEL or the configured log level
        log_format: "json" or "structured", defaults to LOG_FORMAT

    Returns:
        logging.Logger: The ``aivp`` package logger
    """
    level_name = (level or os.getenv("LOG_LEVEL") or config.log_level).upper()
    log_format = (log_format or os.getenv("LOG_FORMAT", "structured")).lower()

    package_logger = logging.getLogger(PACKAGE_LOGGER)
    with _configure_lock:
        package_logger.setLevel(getattr(logging, level_name, logging.INFO))
        handler = _structured_handler(package_logger)
        if handler is None:
            handler = logging.StreamHandler()
            handler.addFilter(_DefaultFields())
            package_logger.addHandler(handler)
        handler.setFormatter(_make_formatter(log_format))
    return package_logger


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Logger under the package logger, configuring it on first use."""
    package_logger = logging.getLogger(PACKAGE_LOGGER)
    if _structured_handler(package_logger) is None:
        configure_logging()
    return logging.getLogger(name or PACKAGE_LOGGER)


def log_extra(
    participant_id: Optional[str] = None,
    operation: Optional[str] = None,
    request_id: Optional[str] = None,
) -> dict[str, Any]:
    """``extra`` mapping for the structured fields; unset fields are omitted."""
    fields = {"participant_id": participant_id, "operation": operation, "request_id": request_id}
    return {key: value for key, value in fields.items() if value is not None}
