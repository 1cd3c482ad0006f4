"""
Structured Logging Configuration Module

JSON log lines for ledger operations. Transfer and account identifiers are
top-level fields so log pipelines can filter on them directly.
"""

import logging
import json
from datetime import datetime, timezone
from typing import Any, Optional


TEXT_FORMAT = "[%(asctime)s] %(levelname)s [%(name)s] %(message)s"

# Promoted to top-level JSON keys; anything else lands under "context"
LEDGER_FIELDS = (
    "transfer_id",
    "reverses_transfer_id",
    "from_account_id",
    "to_account_id",
    "account_id",
    "amount",
    "status",
    "attempt",
)


class JSONFormatter(logging.Formatter):
    """One JSON object per ledger log record"""

    def format(self, record):
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        action = getattr(record, 'action', None)
        if action:
            log_entry['action'] = action
        correlation_id = getattr(record, 'correlation_id', None)
        if correlation_id:
            log_entry['correlation_id'] = correlation_id

        fields = dict(getattr(record, 'ledger', None) or {})
        for key in LEDGER_FIELDS:
            if fields.get(key) is not None:
                log_entry[key] = fields.pop(key)
        context = {k: v for k, v in fields.items() if v is not None}
        if context:
            log_entry['context'] = context

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


def setup_logging(level: str = "INFO", logger_name: str = "simple_bank",
                  log_format: str = "json") -> logging.Logger:
    """
    Setup logging for the ledger.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        logger_name: Name of the logger
        log_format: "json" for structured output, "text" for humans

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(logger_name)

    # Remove existing handlers to avoid duplicates
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    handler = logging.StreamHandler()
    if log_format == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))

    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper()))
    logger.propagate = False

    return logger


def get_logger(name: str = "simple_bank") -> logging.Logger:
    """Get logger instance"""
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               action: Optional[str] = None, correlation_id: Optional[str] = None,
               **fields: Any) -> None:
    """
    Log a ledger action.

    Args:
        logger: Logger instance
        level: Log level name (info, warning, error, ...)
        message: Log message
        action: Action being performed, e.g. "transfer_completed"
        correlation_id: Correlation ID for request tracing
        **fields: Ledger fields such as transfer_id, from_account_id, amount
    """
    logger.log(
        getattr(logging, level.upper()),
        message,
        extra={"action": action, "correlation_id": correlation_id, "ledger": fields},
        stacklevel=2
    )
