"""
Structured logging for the metrics rollup engine.

Every record is rendered as one JSON object per line so the rollup daemon and
the collectors writing next to it produce machine-readable logs. Context such
as the stream, tier or file path is passed with ``extra=`` and becomes
top-level fields of the entry.
"""

from __future__ import annotations

import json
import logging
import logging.handlers
import sys
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from watcher_metrics.config import LoggingConfig

ROOT_LOGGER_NAME = "watcher_metrics"

PLAIN_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Attributes present on every LogRecord; the rest came from ``extra``
_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None))
) | {"message", "asctime"}


class JSONFormatter(logging.Formatter):
    """
    Render log records as single-line JSON objects.

    Fixed fields are ``timestamp`` (record creation time, UTC ISO 8601),
    ``level``, ``logger`` and ``message``; ``exception`` is added when the
    record carries exc_info. Extras whose value is None are left out and
    values JSON cannot encode are rendered with ``str()``.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        entry.update(
            (key, value)
            for key, value in vars(record).items()
            if key not in _RECORD_ATTRS and value is not None
        )
        return json.dumps(entry, default=str)


def _attach(
    logger: logging.Logger,
    handler: logging.Handler,
    level: int,
    formatter: logging.Formatter,
) -> None:
    handler.setLevel(level)
    handler.setFormatter(formatter)
    logger.addHandler(handler)


def setup_logging(
    config: LoggingConfig | None = None,
    *,
    level: str = "INFO",
    json_format: bool = True,
    log_to_stdout: bool = True,
) -> logging.Logger:
    """
    Configure the package logger.

    Args:
        config: Logging section of the application config. When given, its
            values replace the keyword arguments and may add a size-rotated
            log file.
        level: Level name used without a config; unknown names mean INFO.
        json_format: Emit JSON lines instead of the plain text format.
        log_to_stdout: Attach a stdout handler.

    Returns:
        The "watcher_metrics" logger. It does not propagate to the root
        logger, and calling this again replaces its handlers.

    Example:
        >>> logger = setup_logging(level="DEBUG")
        >>> logger.info("Rollup daemon started", extra={"tick_seconds": 60})
    """
    log_path: str | None = None
    max_bytes = backup_count = 0
    if config is not None:
        level = config.level
        json_format = config.json_format
        log_to_stdout = config.log_to_stdout
        log_path = config.app_log_path
        max_bytes = config.max_bytes or 0
        backup_count = config.backup_count or 0

    numeric_level = getattr(logging, level.upper(), logging.INFO)
    formatter = JSONFormatter() if json_format else logging.Formatter(PLAIN_LOG_FORMAT)

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(numeric_level)
    logger.handlers.clear()
    logger.propagate = False

    if log_to_stdout:
        _attach(logger, logging.StreamHandler(sys.stdout), numeric_level, formatter)

    if log_path:
        Path(log_path).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_path, maxBytes=max_bytes, backupCount=backup_count
        )
        _attach(logger, file_handler, numeric_level, formatter)

    return logger


def get_logger(name: str) -> logging.Logger:
    """Return a logger below "watcher_metrics", adding the prefix when missing."""
    if name != ROOT_LOGGER_NAME and not name.startswith(f"{ROOT_LOGGER_NAME}."):
        name = f"{ROOT_LOGGER_NAME}.{name}"
    return logging.getLogger(name)
