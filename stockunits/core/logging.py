"""JSON log lines for the StockUnits service.

Engine modules log an event name as the message (``units.created``,
``distribution.completed``, ``allocation.degraded``) and put the structured
fields under ``extra={"extra_data": {...}}``. Request, principal and facility
ids are picked up from the request context automatically.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Mapping

from ..middlewares import facility_ctx_var, principal_ctx_var, request_id_ctx_var

# Loggers that repeat what RequestIdMiddleware already reports, or are too chatty at INFO.
QUIET_LOGGERS = ("uvicorn.access", "sqlalchemy.engine")

_CONTEXT_FIELDS = (
    ("request_id", request_id_ctx_var),
    ("principal", principal_ctx_var),
    ("facility_id", facility_ctx_var),
)


class JsonLogFormatter(logging.Formatter):
    """One JSON object per record; event fields are merged at the top level."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, object] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc)
            .isoformat(timespec="milliseconds")
            .replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "event": record.getMessage(),
        }
        for field, var in _CONTEXT_FIELDS:
            value = var.get()
            if value:
                payload[field] = value
        extra = getattr(record, "extra_data", None)
        if isinstance(extra, Mapping):
            # Explicit fields win over request context (e.g. facility of a background job).
            payload.update(extra)
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, separators=(",", ":"), default=str)


def configure_logging(level: str | int = logging.INFO) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JsonLogFormatter())
    logging.root.handlers = [handler]
    logging.root.setLevel(level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
