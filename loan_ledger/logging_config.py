"""
Ledger Logging

Ledger operations log one JSON object per line with the acting user and the
loan or payment they touched. ``text`` output is available for local runs.
"""

import logging
import json
from datetime import datetime, timezone
from typing import Optional

# Record attributes lifted into the top level of a JSON line when present
CONTEXT_FIELDS = ("correlation_id", "user_id", "action", "resource", "extra")

TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class JSONFormatter(logging.Formatter):
    """Renders a log record as a single JSON line"""

    def format(self, record):
        line = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                line[name] = value

        if record.exc_info:
            line['exception'] = self.formatException(record.exc_info)

        # Decimals and datetimes in ``extra`` are written as strings
        return json.dumps(line, default=str)


def setup_logging(level: str = "INFO", logger_name: str = "loan_ledger",
                  log_format: str = "json", log_file: Optional[str] = None) -> logging.Logger:
    """
    Point the ledger logger at stderr or a file.

    Calling it again replaces the previous handler, so the service entry
    point and tests can both call it.

    Args:
        level: Level name, case-insensitive
        logger_name: Logger to configure; child loggers inherit it
        log_format: ``json`` or ``text``
        log_file: Append to this path instead of writing to stderr
    """
    logger = logging.getLogger(logger_name)
    for old in list(logger.handlers):
        logger.removeHandler(old)

    if log_file:
        handler = logging.FileHandler(log_file)
    else:
        handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter() if log_format == "json" else logging.Formatter(TEXT_FORMAT))

    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper()))
    # Ledger lines stay out of the root logger's handlers
    logger.propagate = False
    return logger


def get_logger(name: str = "loan_ledger") -> logging.Logger:
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               user_id: Optional[str] = None, action: Optional[str] = None,
               resource: Optional[str] = None, correlation_id: Optional[str] = None,
               extra: Optional[dict] = None):
    """
    Emit one ledger event with its actor and target attached.

    Args:
        logger: Module logger, e.g. ``loan_ledger.payments``
        level: ``info``, ``warning`` or any other level name
        message: Human-readable summary
        user_id: Acting user; None for anonymous callers
        action: Operation name such as ``record_payment``
        resource: Target as ``kind:id``, e.g. ``loan:<uuid>``
        correlation_id: Request identifier when one is known
        extra: Operation-specific fields (amounts, codes, error codes)
    """
    levelno = getattr(logging, level.upper())
    if not logger.isEnabledFor(levelno):
        return

    record = logger.makeRecord(logger.name, levelno, __name__, 0, message, (), None)
    context = {
        "user_id": user_id,
        "action": action,
        "resource": resource,
        "correlation_id": correlation_id,
        "extra": extra,
    }
    for name, value in context.items():
        if value:
            setattr(record, name, value)

    logger.handle(record)
