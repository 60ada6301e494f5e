"""
Structured Logging Configuration Module

Provides JSON-formatted structured logging for all banking operations.
"""

import logging
import json
from datetime import datetime, timezone
from typing import Optional


TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

# Structured attributes set by log_action, emitted only when present
CONTEXT_FIELDS = ("account_number", "action", "resource", "extra")


class JSONFormatter(logging.Formatter):
    """One JSON object per record"""

    def format(self, record):
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_entry[field] = value

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


def setup_logging(level: str = "INFO", logger_name: str = "minibank",
                  log_format: str = "json", log_file: Optional[str] = None) -> logging.Logger:
    """
    Configure the minibank logger tree.

    Records go to ``log_file`` when given, otherwise to stderr, as JSON
    objects or, with ``log_format="text"``, as plain lines. Calling this
    again replaces the previous handler.
    """
    logger = logging.getLogger(logger_name)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    handler = logging.FileHandler(log_file) if log_file else logging.StreamHandler()
    if log_format.lower() == "text":
        handler.setFormatter(logging.Formatter(TEXT_FORMAT))
    else:
        handler.setFormatter(JSONFormatter())

    logger.addHandler(handler)
    logger.setLevel(level.upper())
    logger.propagate = False
    return logger


def get_logger(name: str = "minibank") -> logging.Logger:
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               account_number: Optional[int] = None, action: Optional[str] = None,
               resource: Optional[str] = None, extra: Optional[dict] = None):
    """
    Log a banking action with structured context.

    Args:
        logger: Logger instance
        level: Log level name (info, warning, error, ...)
        message: Log message
        account_number: Account the action concerns
        action: Short action name, e.g. ``transfer`` or ``login_failed``
        resource: Resource type acted upon
        extra: Additional structured data; never passwords or hashes
    """
    context = {
        "account_number": account_number,
        "action": action,
        "resource": resource,
        "extra": extra,
    }
    logger.log(
        getattr(logging, level.upper()), message,
        extra={key: value for key, value in context.items() if value is not None}
    )
