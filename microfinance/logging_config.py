"""
Structured Logging Configuration Module

Loggers live under the ``microfinance`` namespace, one per component
(``microfinance.loans``, ``microfinance.reconciliation`` ...). Output is one
JSON object per line by default; ``log_action`` attaches the structured
fields (action, resource, user, correlation id, extra data).
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional
import json
import logging

ROOT_LOGGER = "microfinance"
TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

# Attributes log_action may attach to a record
STRUCTURED_FIELDS = ("correlation_id", "user_id", "action", "resource", "extra")


class JSONFormatter(logging.Formatter):
    """Renders a record as a single JSON line"""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "module": record.module,
            "message": record.getMessage(),
        }
        for name in STRUCTURED_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                entry[name] = value
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def setup_logging(level: str = "INFO", logger_name: str = ROOT_LOGGER,
                  log_format: str = "json", log_file: Optional[str] = None) -> logging.Logger:
    """
    Attach a single handler to the named logger.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        logger_name: Logger to configure; children inherit its handler
        log_format: "json" for structured lines, anything else for plain text
        log_file: Append to this file instead of writing to stderr

    Returns:
        The configured logger
    """
    logger = logging.getLogger(logger_name)
    for existing in list(logger.handlers):
        logger.removeHandler(existing)

    handler = logging.FileHandler(log_file) if log_file else logging.StreamHandler()
    handler.setFormatter(JSONFormatter() if log_format == "json" else logging.Formatter(TEXT_FORMAT))

    logger.addHandler(handler)
    logger.setLevel(level.upper())
    logger.propagate = False
    return logger


def get_logger(name: str = ROOT_LOGGER) -> logging.Logger:
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               user_id: Optional[str] = None, action: Optional[str] = None,
               resource: Optional[str] = None, correlation_id: Optional[str] = None,
               extra: Optional[dict] = None) -> None:
    """
    Log a loan core action with structured fields.

    Args:
        logger: Component logger
        level: Level name, e.g. "info" or "warning"
        message: Human readable summary
        user_id: Operator who triggered the action
        action: Operation name, e.g. "apply_payment"
        resource: Affected entity, e.g. "loan:<id>"
        correlation_id: Request id for tracing across components
        extra: Additional structured data
    """
    levelno = logging.getLevelName(level.upper())
    if not logger.isEnabledFor(levelno):
        return

    fields = {
        "user_id": user_id,
        "action": action,
        "resource": resource,
        "correlation_id": correlation_id,
        "extra": extra,
    }
    logger.log(levelno, message, extra={k: v for k, v in fields.items() if v}, stacklevel=2)
