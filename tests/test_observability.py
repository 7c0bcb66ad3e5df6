from __future__ import annotations

import json
import logging

from dispatch_audit.logger import JsonFormatter, log_scan_event
from dispatch_audit.metrics import MetricsCollector


def test_json_formatter_includes_scan_fields() -> None:
    logger = logging.getLogger("test-observability")
    record = logger.makeRecord(
        name=logger.name,
        level=logging.WARNING,
        fn="test",
        lno=1,
        msg="rejected",
        args=(),
        exc_info=None,
        extra={
            "invoice_id": "INV-1",
            "invoice_line_id": "INV-1-L1",
            "scan_context": "audit",
            "validation_step": "over_scan_customer",
            "outcome": "over_scan",
        },
    )
    payload = json.loads(JsonFormatter().format(record))
    assert payload["level"] == "WARNING"
    assert payload["invoice_id"] == "INV-1"
    assert payload["invoice_line_id"] == "INV-1-L1"
    assert payload["validation_step"] == "over_scan_customer"
    assert payload["outcome"] == "over_scan"
    assert "stage" not in payload


def test_metrics_collector_snapshot() -> None:
    metrics = MetricsCollector()
    metrics.increment("scans_accepted_total")
    metrics.increment("scans_accepted_total")
    metrics.increment("scans_duplicate_total", 3)

    snapshot = metrics.snapshot()
    assert snapshot["scans_accepted_total"] == 2
    assert snapshot["scans_duplicate_total"] == 3
    assert snapshot["dispatches_total"] == 0


def test_log_scan_event_attaches_only_given_fields(caplog) -> None:
    logger = logging.getLogger("test-observability-helper")
    with caplog.at_level(logging.INFO, logger=logger.name):
        log_scan_event(
            logger,
            logging.INFO,
            "accepted",
            invoice_id="INV-22",
            scan_context="loading",
            outcome="accepted",
        )
    (record,) = caplog.records
    assert record.invoice_id == "INV-22"
    assert record.scan_context == "loading"
    assert not hasattr(record, "validation_step")
