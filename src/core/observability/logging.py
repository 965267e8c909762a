"""
Log Setup

Plain text for terminals, one JSON object per line for log shippers. Both
carry the active trace id so worker log lines line up with delivery spans.
"""

import json
import logging
import sys
from datetime import datetime, timezone

from .tracing import SERVICE, get_current_span, get_trace_id

# Attributes every LogRecord has; anything else came in through `extra`
_RECORD_FIELDS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {
    "message",
    "asctime",
    "trace_id",
}

TEXT_FORMAT = "%(asctime)s %(levelname)-7s %(name)s [%(trace_id)s] %(message)s"

QUIET_LOGGERS = ("uvicorn.access", "httpx", "httpcore", "aiosqlite", "opentelemetry")


class StructuredFormatter(logging.Formatter):
    """Render a record as a single JSON object."""

    def format(self, record: logging.LogRecord) -> str:
        context = get_current_span().get_span_context()
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "service": SERVICE,
            "logger": record.name,
            "message": record.getMessage(),
            "trace_id": get_trace_id(),
            "span_id": format(context.span_id, "016x") if context.is_valid else None,
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        # logger.info("...", extra={"outbox_id": 7})
        for key, value in record.__dict__.items():
            if key in _RECORD_FIELDS or key.startswith("_"):
                continue
            try:
                json.dumps(value)
            except (TypeError, ValueError):
                value = str(value)
            entry[key] = value

        return json.dumps(entry)


class TraceContextFilter(logging.Filter):
    """Expose the trace id to text formats as %(trace_id)s."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.trace_id = get_trace_id() or "-"
        return True


def configure_logging(level: str = "INFO", structured: bool = True) -> None:
    """
    Replace the root handlers with a single stdout handler.

    Args:
        level: Level name; unknown names fall back to INFO
        structured: JSON lines instead of plain text
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(StructuredFormatter() if structured else logging.Formatter(TEXT_FORMAT))
    handler.addFilter(TraceContextFilter())

    root = logging.getLogger()
    for existing in root.handlers[:]:
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(log_level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger(__name__).info(
        f"Logging configured: level={logging.getLevelName(log_level)}, structured={structured}"
    )
