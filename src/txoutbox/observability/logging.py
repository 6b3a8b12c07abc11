"""
Structured Logging

One JSON object per line, carrying the active trace/span ids so relay
log lines can be joined with the delivery spans. Fields passed through
``extra=`` (entry_id, event_type, transaction_id, ...) become top-level
keys.
"""

import json
import logging
import sys
from datetime import datetime, timezone

from .tracing import get_span_id, get_trace_id

# Attributes every LogRecord has; anything else came in through extra=
_STANDARD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {
    "message", "asctime", "taskName", "trace_id"
}

# Libraries that log every request or export at INFO
QUIET_LOGGERS = ("uvicorn.access", "httpx", "httpcore", "opentelemetry", "aiosqlite", "asyncio")


class StructuredFormatter(logging.Formatter):
    """JSON log formatter with trace context and ``extra=`` fields."""

    def __init__(self, service_name: str = "txoutbox"):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "service": self.service_name,
            "message": record.getMessage(),
            "trace_id": get_trace_id(),
            "span_id": get_span_id(),
        }

        entry.update({
            key: value
            for key, value in vars(record).items()
            if key not in _STANDARD_ATTRS and not key.startswith("_")
        })

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


class TraceContextFilter(logging.Filter):
    """Expose the trace id to plain-text format strings as %(trace_id)s."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.trace_id = get_trace_id() or "-"
        return True


def configure_logging(
    level: str = "INFO",
    structured: bool = True,
    service_name: str = "txoutbox"
):
    """
    Replace the root handlers with a single stdout handler.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR)
        structured: JSON lines when true, human-readable text otherwise
        service_name: Stamped on every structured line
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    if structured:
        handler.setFormatter(StructuredFormatter(service_name))
    else:
        handler.addFilter(TraceContextFilter())
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)-7s %(name)s [%(trace_id)s] %(message)s"
        ))

    root = logging.getLogger()
    for existing in root.handlers[:]:
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(numeric_level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger(__name__).info(
        f"Logging configured for {service_name}: level={level}, structured={structured}"
    )
