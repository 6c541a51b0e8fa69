"""LTCMS logging configuration."""

import json
import logging
import re
import sys
from typing import Literal

DEV_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"

# Record attributes copied into structured output when a caller passes them via extra=
STRUCTURED_EXTRAS = ("failure_kind", "method", "path")

_BEARER_VALUE_RE = re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/=-]{20,}")
_JWT_RE = re.compile(r"\beyJ[A-Za-z0-9_-]*\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]*")
REDACTED = "[REDACTED]"


def redact_credentials(message: str) -> str:
    """Mask bearer header values and JWT-shaped strings in ``message``."""
    message = _BEARER_VALUE_RE.sub(f"Bearer {REDACTED}", message)
    return _JWT_RE.sub(REDACTED, message)


class CredentialRedactionFilter(logging.Filter):
    """Keeps bearer tokens out of log output.

    The formatted message replaces the original args, so a token passed as a
    %-style argument is masked too.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = redact_credentials(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


class JSONFormatter(logging.Formatter):
    """Structured JSON log formatter.

    Every field goes through json.dumps(), so a rejected username containing
    quotes or newlines still yields one valid line.
    """

    def __init__(self):
        super().__init__(datefmt="%Y-%m-%dT%H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in STRUCTURED_EXTRAS:
            value = getattr(record, key, None)
            if value is not None:
                log_entry[key] = value
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, default=str)


def setup_logging(
    level: str = "INFO",
    format_type: Literal["structured", "dev"] = "dev",
) -> None:
    """
    Configure application logging on the root logger.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format_type: 'structured' for one JSON object per line, 'dev' for readable
    """
    numeric_level = getattr(logging, level.upper())

    handler = logging.StreamHandler(sys.stdout)
    if format_type == "structured":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(DEV_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    handler.addFilter(CredentialRedactionFilter())

    logging.root.handlers = [handler]
    logging.root.setLevel(numeric_level)

    # Third-party noise
    for logger_name in ["uvicorn", "uvicorn.error", "uvicorn.access"]:
        logging.getLogger(logger_name).setLevel(logging.WARNING)

    # SQL echo only when debugging
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.DEBUG if level.upper() == "DEBUG" else logging.WARNING
    )
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)

    logging.getLogger("ltcms").info(f"Logging configured: level={level}, format={format_type}")


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the ``ltcms`` namespace."""
    return logging.getLogger(f"ltcms.{name}")
