"""
Structured Logging Configuration Module

JSON log lines for ledger operations. Every orchestrator action logs one
line carrying who did what to which loan or transaction.
"""

import logging
import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional

# Attributes log_action attaches to a record, in output order
STRUCTURED_FIELDS = ("correlation_id", "user_id", "action", "resource")

TEXT_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"


class JSONFormatter(logging.Formatter):
    """One JSON object per record; empty fields are omitted"""

    def format(self, record):
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in STRUCTURED_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                entry[name] = value

        details = getattr(record, "details", None)
        if details:
            entry["details"] = details
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


def setup_logging(level: str = "INFO", logger_name: str = "loan_ledger",
                  log_format: str = "json", log_file: Optional[str] = None) -> logging.Logger:
    """
    Configure the package logger.

    Args:
        level: Log level name
        logger_name: Logger to configure; child loggers inherit it
        log_format: "json" for structured lines, anything else for plain text
        log_file: Append to this file instead of stderr

    Returns:
        The configured logger
    """
    logger = logging.getLogger(logger_name)
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        handler.close()

    handler = logging.FileHandler(log_file) if log_file else logging.StreamHandler()
    if log_format == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(fmt=TEXT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))

    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper()))
    logger.propagate = False
    return logger


def configure_from_settings(settings=None) -> logging.Logger:
    """Apply log_level, log_format and log_file from LoanLedgerConfig"""
    if settings is None:
        from .config import get_config
        settings = get_config()
    return setup_logging(settings.log_level, log_format=settings.log_format,
                         log_file=settings.log_file)


def get_logger(name: str = "loan_ledger") -> logging.Logger:
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               user_id: Optional[str] = None, action: Optional[str] = None,
               resource: Optional[str] = None, correlation_id: Optional[str] = None,
               extra: Optional[dict] = None):
    """
    Log one ledger action with structured fields.

    Args:
        logger: Logger instance
        level: Level name (info, warning, error)
        message: Human-readable message
        user_id: Acting user
        action: Operation name, e.g. ``record_transaction``
        resource: ``loan:<id>`` or ``transaction:<id>``
        correlation_id: Request id supplied by the caller
        extra: Operation-specific details
    """
    levelno = getattr(logging, level.upper())
    if not logger.isEnabledFor(levelno):
        return

    fields = {
        "correlation_id": correlation_id,
        "user_id": user_id,
        "action": action,
        "resource": resource,
        "details": extra,
    }
    logger.log(levelno, message, extra={k: v for k, v in fields.items() if v})
