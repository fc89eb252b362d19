"""
Structured Logging Configuration Module

Ledger operations log through ``log_action`` so every line carries who
acted, what they did and on which record. The default output is one JSON
object per line.
"""

import logging
import json
from datetime import datetime, timezone
from typing import Optional

# Attributes log_action attaches to a LogRecord
CONTEXT_FIELDS = ("correlation_id", "user_id", "action", "resource", "extra")

TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class JSONFormatter(logging.Formatter):
    """Renders a record as a single JSON line, omitting empty context fields"""

    def format(self, record):
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                entry[name] = value

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


def setup_logging(level: str = "INFO", logger_name: str = "microlend",
                  log_format: str = "json", log_file: Optional[str] = None) -> logging.Logger:
    """
    Attach a single handler to the application logger.

    Args:
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        logger_name: Application logger; module loggers are its children
        log_format: "json" or "text"
        log_file: Path to append to; stderr when omitted
    """
    logger = logging.getLogger(logger_name)
    for existing in list(logger.handlers):
        logger.removeHandler(existing)
        existing.close()

    handler = logging.FileHandler(log_file) if log_file else logging.StreamHandler()
    handler.setFormatter(logging.Formatter(TEXT_FORMAT) if log_format == "text" else JSONFormatter())

    logger.addHandler(handler)
    logger.setLevel(level.upper())
    # Root handlers would print every line a second time
    logger.propagate = False
    return logger


def setup_logging_from_config(app_config=None) -> logging.Logger:
    """Configure logging from the log_* settings"""
    if app_config is None:
        from .config import get_config
        app_config = get_config()
    return setup_logging(
        level=app_config.log_level,
        log_format=app_config.log_format,
        log_file=app_config.log_file
    )


def get_logger(name: str = "microlend") -> logging.Logger:
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               user_id: Optional[str] = None, action: Optional[str] = None,
               resource: Optional[str] = None, correlation_id: Optional[str] = None,
               extra: Optional[dict] = None, exc_info: bool = False):
    """
    Log a ledger action with its context attached to the record.

    ``resource`` names the record acted on, e.g. ``"loan:<id>"``; ``extra``
    holds amounts and other details. Pass ``exc_info=True`` from an except
    block to include the traceback.
    """
    levelno = logging.getLevelName(level.upper())
    if not logger.isEnabledFor(levelno):
        return

    context = {
        "user_id": user_id,
        "action": action,
        "resource": resource,
        "correlation_id": correlation_id,
        "extra": extra,
    }
    logger.log(levelno, message, exc_info=exc_info,
               extra={key: value for key, value in context.items() if value})
