"""
Structured Logging Configuration Module

Every lending log line is a single JSON object. Loan identity fields
(``loan_id``, ``loan_number``, ``loan_status``, ``customer_id``) sit at the top
level next to ``action`` so a loan's history can be filtered without parsing
``extra``.
"""

import logging
import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional


ACTOR_FIELDS = ("user_id", "action", "resource")
LOAN_FIELDS = ("loan_id", "loan_number", "loan_status", "customer_id")


class JSONFormatter(logging.Formatter):
    """Render a record as one JSON line"""

    def format(self, record):
        log_entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for field in ACTOR_FIELDS + LOAN_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_entry[field] = value

        extra = getattr(record, 'extra', None)
        if extra:
            log_entry["extra"] = extra

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


def setup_logging(level: str = "INFO", logger_name: str = "lending_core",
                  log_format: str = "json") -> logging.Logger:
    """
    Configure the application logger.

    Args:
        level: Log level name
        logger_name: Logger that receives the handler; child loggers propagate to it
        log_format: "json" for JSONFormatter, anything else for plain text
    """
    logger = logging.getLogger(logger_name)

    # Re-running setup replaces the handler instead of stacking another
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    handler = logging.StreamHandler()
    if log_format == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))

    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper()))
    logger.propagate = False

    return logger


def get_logger(name: str = "lending_core") -> logging.Logger:
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               user_id: Optional[str] = None, action: Optional[str] = None,
               resource: Optional[str] = None, extra: Optional[dict] = None,
               **loan_fields: Any):
    """
    Log a lending action as a structured record.

    ``loan_fields`` accepts the names in LOAN_FIELDS; they are written at the
    top level of the JSON line. Anything else belongs in ``extra``.
    """
    unknown = set(loan_fields) - set(LOAN_FIELDS)
    if unknown:
        raise TypeError(f"Unknown log fields: {', '.join(sorted(unknown))}")

    levelno = getattr(logging, level.upper())
    if not logger.isEnabledFor(levelno):
        return

    record = logger.makeRecord(logger.name, levelno, __name__, 0, message, (), None)
    fields = dict(zip(ACTOR_FIELDS, (user_id, action, resource)))
    fields.update(loan_fields)
    for name, value in fields.items():
        if value is not None:
            setattr(record, name, value)
    if extra:
        record.extra = extra

    logger.handle(record)
