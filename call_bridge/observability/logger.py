"""Structured JSON logging for the call bridge.

Outputs JSON lines to stdout with severity, timestamp, and message fields,
plus the call-scoped extra fields passed through ``extra=``.
"""

import json
import logging
import sys
from datetime import UTC, datetime

EXTRA_FIELDS: tuple[str, ...] = (
    "call_id",
    "request_id",
    "stage",
    "duration_seconds",
    "attempt",
    "error",
)


class StructuredJsonFormatter(logging.Formatter):
    """Format log records as single-line JSON objects."""

    SEVERITY_MAP: dict[int, str] = {
        logging.DEBUG: "DEBUG",
        logging.INFO: "INFO",
        logging.WARNING: "WARNING",
        logging.ERROR: "ERROR",
        logging.CRITICAL: "CRITICAL",
    }

    def __init__(self, include_stack: bool = True) -> None:
        super().__init__()
        self.include_stack = include_stack

    def format(self, record: logging.LogRecord) -> str:
        """Format a log record as a JSON string.

        Args:
            record: The log record to format.

        Returns:
            JSON string with severity, timestamp, logger, message and any
            whitelisted extra fields.
        """
        log_entry: dict[str, object] = {
            "timestamp": datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "severity": self.SEVERITY_MAP.get(record.levelno, "DEFAULT"),
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key in EXTRA_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                log_entry[key] = value

        if record.exc_info and record.exc_info[1]:
            log_entry["exception"] = str(record.exc_info[1])
            if self.include_stack:
                log_entry["stack"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


def configure_logging(level: str = "INFO", include_stack: bool = True) -> None:
    """Configure the root logger with structured JSON output.

    Replaces existing root handlers so repeated calls do not duplicate
    output.

    Args:
        level: Log level name (e.g. "INFO", "DEBUG").
        include_stack: Attach formatted tracebacks to error records.
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    for handler in list(root.handlers):
        root.removeHandler(handler)
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(StructuredJsonFormatter(include_stack=include_stack))
    root.addHandler(handler)
