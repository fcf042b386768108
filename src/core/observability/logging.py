"""
Structured Logging with Trace Correlation

JSON log lines carrying the OpenTelemetry trace/span ids plus the
submission context the pipeline passes through `extra=`:

    logger.warning("Delivery failed", extra=record.log_context(attempt=2))

Known context fields are placed right after the trace ids so a submission's
history can be grepped or indexed by submission_id regardless of message
text. Any other extra is appended after them.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict

from .tracing import get_span_id, get_trace_id

# Promoted in this order when present on the record
CONTEXT_FIELDS = (
    "correlation_id",
    "submission_id",
    "recommendation_id",
    "university_id",
    "delivery_method",
    "attempt",
)

# Attributes every LogRecord has; anything else came from `extra=`
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}


class StructuredFormatter(logging.Formatter):
    """JSON formatter with trace ids and promoted submission context."""

    def __init__(self, service_name: str = "recdelivery-backend"):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "service": self.service_name,
            "message": record.getMessage(),
            "trace_id": get_trace_id(),
            "span_id": get_span_id(),
        }

        for key in CONTEXT_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                entry[key] = value

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key in entry or key in _RECORD_ATTRS or key.startswith("_") or key == "trace_id":
                continue
            entry[key] = value

        return json.dumps(entry, default=str)


class TraceContextFilter(logging.Filter):
    """Adds trace_id to records for the plain-text format."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.trace_id = get_trace_id() or "no-trace"
        return True


def configure_logging(
    level: str = "INFO",
    structured: bool = True,
    service_name: str = "recdelivery-backend"
):
    """
    Configure application logging.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        structured: Use JSON structured format
        service_name: Service name stamped on every structured line
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(getattr(logging, level.upper()))

    if structured:
        handler.setFormatter(StructuredFormatter(service_name))
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - [%(trace_id)s] %(message)s"
        ))
    handler.addFilter(TraceContextFilter())

    root_logger.addHandler(handler)

    # Noisy libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("opentelemetry").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)

    logging.info(f"Logging configured: {service_name}, level={level}, structured={structured}")
