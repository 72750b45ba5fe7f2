"""estatefeed — Structured JSON Logging.

One JSON object per line on stdout. Pipeline code passes context through
`extra=`; only the keys in EXTRA_FIELDS are copied into the line, so a log
call can never leak a whole record or payload by accident.
"""

import logging
import json
import sys
from datetime import datetime, timezone
from estatefeed.config import settings

EXTRA_FIELDS = (
    "endpoint",
    "source_url",
    "job",
    "holder",
    "collection",
    "entity_id",
    "error_kind",
    "duration_ms",
    "status_code",
    "attempt",
)


class JSONFormatter(logging.Formatter):
    """Produces structured JSON log lines for production observability."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)
        for key in EXTRA_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                log_entry[key] = value
        # Decimals, datetimes and enums are written as their str()
        return json.dumps(log_entry, default=str, ensure_ascii=False)


def get_logger(name: str) -> logging.Logger:
    """Return a named logger with structured JSON handler."""
    logger = logging.getLogger(f"estatefeed.{name}")
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(JSONFormatter())
        logger.addHandler(handler)
    logger.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))
    return logger
