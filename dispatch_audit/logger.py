from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

_SCAN_FIELDS = (
    "invoice_id",
    "invoice_line_id",
    "scan_context",
    "stage",
    "validation_step",
    "outcome",
)


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for field in _SCAN_FIELDS:
            if hasattr(record, field):
                payload[field] = getattr(record, field)
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True)


def configure_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    root.setLevel(level.upper())
    if root.handlers:
        for handler in root.handlers:
            handler.setFormatter(JsonFormatter())
        return
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root.addHandler(handler)


def log_scan_event(
    logger: logging.Logger,
    level: int,
    message: str,
    *,
    invoice_id: str,
    invoice_line_id: str | None = None,
    scan_context: str | None = None,
    stage: str | None = None,
    validation_step: str | None = None,
    outcome: str | None = None,
) -> None:
    extra: dict[str, Any] = {"invoice_id": invoice_id}
    if invoice_line_id is not None:
        extra["invoice_line_id"] = invoice_line_id
    if scan_context is not None:
        extra["scan_context"] = scan_context
    if stage is not None:
        extra["stage"] = stage
    if validation_step is not None:
        extra["validation_step"] = validation_step
    if outcome is not None:
        extra["outcome"] = outcome
    logger.log(level, message, extra=extra)
