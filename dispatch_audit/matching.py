from __future__ import annotations

import logging
import math
from typing import Any

from dispatch_audit.errors import (
    AmbiguousMatchError,
    DuplicateScanError,
    InvoiceBlockedError,
    NoMatchError,
    OverScanError,
    ScanError,
)
from dispatch_audit.events import EventPublisher, NullPublisher, publish_safely
from dispatch_audit.logger import log_scan_event
from dispatch_audit.metrics import MetricsCollector
from dispatch_audit.nomenclature import ParsedLabel
from dispatch_audit.store import ScanStore
from schemas.scan_schema import Invoice, InvoiceLine, MismatchAlert, ScanOutcome, ScanSnapshot


def ensure_unblocked(invoice: Invoice) -> None:
    if invoice.blocked:
        raise InvoiceBlockedError(
            f"Invoice {invoice.id} is blocked pending mismatch review",
            invoice_id=invoice.id,
        )


def resolve_single_line(lines: list[InvoiceLine], invoice_id: str, **criteria: str) -> InvoiceLine:
    described = ", ".join(f"{key}={value!r}" for key, value in criteria.items())
    if not lines:
        raise NoMatchError(f"No line on invoice {invoice_id} matches {described}", invoice_id=invoice_id, **criteria)
    if len(lines) > 1:
        raise AmbiguousMatchError(
            f"{len(lines)} lines on invoice {invoice_id} match {described}",
            invoice_id=invoice_id,
            line_ids=[line.id for line in lines],
            **criteria,
        )
    return lines[0]


def snapshot(label: ParsedLabel) -> ScanSnapshot:
    return ScanSnapshot(part_code=label.part_code, bin_id=label.bin_id, quantity=label.quantity, raw=label.raw)


def bins_for_quantity(expected_quantity: int, bin_quantity: int) -> int | None:
    if bin_quantity <= 0:
        return None
    return math.ceil(expected_quantity / bin_quantity)


def line_counters(line: InvoiceLine) -> dict[str, Any]:
    return {
        "invoice_line_id": line.id,
        "expected_quantity": line.expected_quantity,
        "number_of_bins": line.number_of_bins,
        "customer_scanned_quantity": line.customer_scanned_quantity,
        "customer_scanned_bins": line.customer_scanned_bins,
        "carrier_scanned_quantity": line.carrier_scanned_quantity,
        "carrier_scanned_bins": line.carrier_scanned_bins,
        "loaded_bins": line.loaded_bins,
    }


def over_scan_error(alert: MismatchAlert, message: str) -> OverScanError:
    return OverScanError(message, alert_id=alert.id, validation_step=alert.validation_step)


class ScanEngineBase:
    scan_context = "audit"

    def __init__(
        self,
        store: ScanStore,
        *,
        publisher: EventPublisher | None = None,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self._store = store
        self._publisher = publisher or NullPublisher()
        self._metrics = metrics or MetricsCollector()
        self._logger = logging.getLogger(type(self).__module__)

    @property
    def metrics(self) -> MetricsCollector:
        return self._metrics

    def _accepted(self, outcome: ScanOutcome, scanned_by: str) -> None:
        self._metrics.increment("scans_accepted_total")
        record = outcome.record
        log_scan_event(
            self._logger,
            logging.INFO,
            f"Accepted {record.stage} scan of bin {record.customer_bin_id}",
            invoice_id=record.invoice_id,
            invoice_line_id=record.invoice_line_id,
            scan_context=self.scan_context,
            stage=record.stage,
            outcome="accepted",
        )
        publish_safely(
            self._publisher,
            f"{self.scan_context}:scan",
            {
                "invoice_id": record.invoice_id,
                "scan_id": record.id,
                "stage": record.stage,
                "scanned_by": scanned_by,
                "audit_complete": outcome.audit_complete,
                **line_counters(outcome.line),
            },
        )

    def _rejected(self, invoice_id: str, exc: ScanError, scanned_by: str) -> None:
        if isinstance(exc, DuplicateScanError):
            self._metrics.increment("scans_duplicate_total")
        elif isinstance(exc, OverScanError):
            self._metrics.increment("scans_over_scan_total")
            self._metrics.increment("alerts_raised_total")
        else:
            self._metrics.increment("scans_rejected_total")

        log_scan_event(
            self._logger,
            logging.WARNING,
            f"Rejected scan: {exc}",
            invoice_id=invoice_id,
            scan_context=self.scan_context,
            validation_step=getattr(exc, "validation_step", None),
            outcome=exc.code,
        )
        publish_safely(
            self._publisher,
            f"{self.scan_context}:rejected",
            {"invoice_id": invoice_id, "scanned_by": scanned_by, **exc.to_payload()},
        )
        if isinstance(exc, OverScanError):
            publish_safely(
                self._publisher,
                "alert:new",
                {
                    "invoice_id": invoice_id,
                    "alert_id": exc.alert_id,
                    "validation_step": exc.validation_step,
                    "reported_by": scanned_by,
                },
            )
