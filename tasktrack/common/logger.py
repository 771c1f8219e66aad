"""
Application Logger

Every module obtains its logger through ``get_logger(__name__)``, which places
it under the ``tasktrack`` hierarchy. ``configure_logger`` is called once at
startup to attach handlers to the ``tasktrack`` root logger; child loggers
inherit them.

Structured fields can be attached with ``extra={"data": {...}}``; the JSON
formatter merges them into the emitted object.
"""

import os
import sys
import json
import logging
from datetime import datetime, timezone
from typing import Optional, Union

APP_LOGGER_NAME = "tasktrack"

# Default log format
DEFAULT_LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)-30s | %(message)s"
DEFAULT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

__all__ = [
    'APP_LOGGER_NAME',
    'configure_logger',
    'get_logger',
    'JsonFormatter',
]


class JsonFormatter(logging.Formatter):
    """Formatter emitting one JSON object per record, timestamps in UTC."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}:{record.lineno}",
        }

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": self.formatException(record.exc_info)
            }

        data = getattr(record, "data", None)
        if isinstance(data, dict):
            entry.update(data)

        return json.dumps(entry, default=str)


def _file_handler(log_file: str) -> Optional[logging.Handler]:
    """Open a file handler, creating the directory; None if the path is unusable."""
    try:
        directory = os.path.dirname(log_file)
        if directory:
            os.makedirs(directory, exist_ok=True)
        return logging.FileHandler(log_file)
    except OSError as e:
        logging.getLogger(APP_LOGGER_NAME).warning(f"Could not open log file {log_file}: {e}")
        return None


def configure_logger(
    name: str = APP_LOGGER_NAME,
    level: Union[str, int] = logging.INFO,
    use_json: bool = False,
    log_file: Optional[str] = None,
    console_output: bool = True
) -> logging.Logger:
    """
    Attach handlers to a logger, replacing any it already has.

    Args:
        name: Logger name
        level: Log level name or number
        use_json: Emit JSON lines instead of the plain text format
        log_file: Optional file to log to in addition to the console
        console_output: Whether to log to stdout

    Returns:
        The configured logger
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())

    logger = logging.getLogger(name)
    logger.setLevel(level)
    logger.handlers = []

    formatter = JsonFormatter() if use_json else logging.Formatter(DEFAULT_LOG_FORMAT, DEFAULT_DATE_FORMAT)

    handlers = []
    if console_output:
        handlers.append(logging.StreamHandler(sys.stdout))
    if log_file:
        handler = _file_handler(log_file)
        if handler is not None:
            handlers.append(handler)

    for handler in handlers:
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    return logger


def get_logger(name: str, parent: Optional[logging.Logger] = None) -> logging.Logger:
    """
    Get a logger under the application hierarchy.

    Args:
        name: Module name (``__name__``) or a child name when parent is given
        parent: Optional parent logger

    Returns:
        Logger instance
    """
    if parent is not None:
        return parent.getChild(name)
    if name == APP_LOGGER_NAME or name.startswith(APP_LOGGER_NAME + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{APP_LOGGER_NAME}.{name}")
