"""JSON log formatter and logging setup.

Emits each log record as a single-line JSON object that downstream
aggregators (Datadog, Splunk, CloudWatch Logs, ELK, etc.) can index
without regex parsing.

Activate by setting ``BILLING_STRUCTURED_LOGGING=true``.  When enabled,
:func:`configure_logging` replaces the root handlers with a
``StreamHandler`` using this formatter.

Output schema per line::

    {
        "timestamp": "2025-05-15T12:34:56.789012+00:00",
        "level": "INFO",
        "logger": "billing_engine.services.webhook_processor",
        "message": "Applied event evt_123 ...",
        "event_id": "evt_123",          // present when passed via ``extra``
        "exc_info": "Traceback ..."     // present only on exceptions
    }
"""

from __future__ import annotations

import json
import logging
import traceback
from datetime import UTC, datetime
from typing import Any

from billing_engine.config import BillingSettings

# Attributes callers may attach with ``extra=`` that are copied to the payload.
_CONTEXT_FIELDS = ("event_id", "event_type", "run_id", "subscription_id", "organization_id")


class JSONFormatter(logging.Formatter):
    """Format log records as single-line JSON."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for field in _CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                payload[field] = value

        if record.exc_info and record.exc_info[0] is not None:
            payload["exc_info"] = "".join(traceback.format_exception(*record.exc_info))

        return json.dumps(payload, default=str, ensure_ascii=False)


def configure_logging(settings: BillingSettings, level: int | None = None) -> None:
    """Install root logging for the API or CLI process."""
    level = level if level is not None else (logging.DEBUG if settings.debug else logging.INFO)
    root_logger = logging.getLogger()

    if settings.structured_logging:
        root_logger.handlers.clear()
        handler = logging.StreamHandler()
        handler.setFormatter(JSONFormatter())
        root_logger.addHandler(handler)
        root_logger.setLevel(level)
        logging.getLogger(__name__).info("Structured JSON logging enabled")
        return

    if not root_logger.handlers:
        logging.basicConfig(
            level=level,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
    else:
        root_logger.setLevel(level)
