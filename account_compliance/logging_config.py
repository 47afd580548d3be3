"""
Structured Logging Configuration Module

JSON log records for compliance operations. Structured payloads attached to
a record are passed through the audit sanitizer first, so a log sink never
receives plaintext email, phone or credential values.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .audit import sanitize_payload


# Optional attributes carried by records emitted through log_action()
STRUCTURED_FIELDS = ("correlation_id", "user_id", "action", "resource", "extra")

TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class RedactingFilter(logging.Filter):
    """Replaces a record's `extra` payload with its sanitized form"""

    def filter(self, record: logging.LogRecord) -> bool:
        payload = getattr(record, "extra", None)
        if payload is not None:
            record.extra = sanitize_payload(payload)
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per record; unset structured fields are omitted"""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
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


def setup_logging(level: str = "INFO", logger_name: str = "account_compliance",
                  log_format: str = "json", log_file: Optional[str] = None) -> logging.Logger:
    """
    Configure the package logger.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        logger_name: Logger to configure
        log_format: "json" for JSONFormatter, anything else for plain text
        log_file: Optional file path; stderr when omitted

    Returns:
        The configured logger
    """
    logger = logging.getLogger(logger_name)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)

    handler = logging.FileHandler(log_file) if log_file else logging.StreamHandler()
    handler.setFormatter(JSONFormatter() if log_format == "json" else logging.Formatter(TEXT_FORMAT))
    handler.addFilter(RedactingFilter())

    logger.addHandler(handler)
    logger.setLevel(level.upper())
    logger.propagate = False
    return logger


def setup_logging_from_config(config=None) -> logging.Logger:
    """Configure logging from ComplianceConfig (log_level, log_format, log_file)"""
    if config is None:
        from .config import get_config
        config = get_config()
    return setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)


def get_logger(name: str = "account_compliance") -> logging.Logger:
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               user_id: Optional[str] = None, action: Optional[str] = None,
               resource: Optional[str] = None, correlation_id: Optional[str] = None,
               extra: Optional[dict] = None) -> None:
    """
    Emit a record carrying who did what to which account.

    Args:
        logger: Logger to emit on
        level: Level name (info, warning, error...)
        message: Human readable message; must not contain sensitive values
        user_id: Acting user
        action: Operation name (create, update, erase...)
        resource: Account or entity id
        correlation_id: Request correlation id
        extra: Additional structured data, sanitized before formatting
    """
    levelno = logging.getLevelName(level.upper())
    if not logger.isEnabledFor(levelno):
        return

    fields = {
        "user_id": user_id,
        "action": action,
        "resource": resource,
        "correlation_id": correlation_id,
        "extra": extra or None,
    }
    logger.log(levelno, message, extra={k: v for k, v in fields.items() if v is not None}, stacklevel=2)
