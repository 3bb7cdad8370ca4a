"""
Log setup for the CRM AI service.

Pipeline log lines pass request_id / feature / entity_id through ``extra=``.
In JSON mode those become top-level keys, so a log line joins the
ai_request_logs row with the same request_id.
"""

import json
import logging
import logging.handlers
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

CONTEXT_FIELDS = (
    "request_id",
    "user_id",
    "feature",
    "entity_id",
    "state",
    "dependency",
    "latency_ms",
    "cache_hit",
    "confidence",
    "severity",
)

TEXT_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"

# Client libraries that log every HTTP call at INFO
_QUIET_LOGGERS = ("urllib3", "httpx", "openai", "anthropic", "apscheduler")


class JSONFormatter(logging.Formatter):
    """One JSON object per line, stamped with the record's own creation time."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        entry.update(
            (key, getattr(record, key)) for key in CONTEXT_FIELDS
            if getattr(record, key, None) is not None
        )
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class RequestTextFormatter(logging.Formatter):
    """Plain text for development; tags the line with its request id when it has one."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        request_id = getattr(record, "request_id", None)
        return f"{line} [{request_id}]" if request_id else line


def setup_logging(level: str = "INFO", json_output: bool = False, log_file: Optional[str] = None) -> None:
    """Install stdout (and optional rotating file) handlers on the root logger."""
    if json_output:
        formatter = JSONFormatter()
    else:
        formatter = RequestTextFormatter(TEXT_FORMAT, datefmt="%H:%M:%S")

    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.handlers.RotatingFileHandler(log_file, maxBytes=10 * 1024 * 1024, backupCount=5))
    for handler in handlers:
        handler.setFormatter(formatter)

    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), handlers=handlers, force=True)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
