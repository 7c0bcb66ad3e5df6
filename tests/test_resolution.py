from __future__ import annotations

import pytest

from dispatch_audit.errors import (
    AlertAlreadyResolvedError,
    AlertNotFoundError,
    InvoiceBlockedError,
    InvoiceNotFoundError,
    OverScanError,
)
from dispatch_audit.pairing import ScanPairingEngine
from dispatch_audit.resolution import MismatchResolver
from dispatch_audit.store import ScanStore
from schemas.scan_schema import ScanSnapshot


def _over_scan_customer(store: ScanStore, labels) -> tuple[str, str]:
    """A paired bin, a pending bin, then an over-scan on a 16-unit line."""
    engine = ScanPairingEngine(store)
    engine.record_customer_scan("INV-1", labels.customer("BIN-001", "CUST-A1", 8), "op-a")
    engine.record_carrier_scan("INV-1", labels.carrier("CB-001", "CAR-A1", 8), "op-b")
    pending = engine.record_customer_scan("INV-1", labels.customer("BIN-002", "CUST-A1", 8), "op-a")
    with pytest.raises(OverScanError) as exc_info:
        engine.record_customer_scan("INV-1", labels.customer("BIN-003", "CUST-A1", 8), "op-a")
    return exc_info.value.alert_id, pending.record.id


def test_approving_customer_over_scan_rolls_back_earlier_pending_scans(
    store: ScanStore, make_invoice, labels, publisher
) -> None:
    (line_id,) = make_invoice()
    make_invoice("INV-2", lines=[("CUST-A1", "CAR-A1", 8)])
    other = ScanPairingEngine(store).record_customer_scan(
        "INV-2", labels.customer("BIN-900", "CUST-A1", 8), "op-z"
    )
    alert_id, pending_id = _over_scan_customer(store, labels)
    resolver = MismatchResolver(store, publisher=publisher)

    outcome = resolver.approve(alert_id, "admin")

    assert outcome.alert.status == "approved"
    assert outcome.alert.reviewed_by == "admin"
    assert outcome.invoice_blocked is False
    assert outcome.rolled_back_scan_ids == [pending_id]
    with store.transaction() as tx:
        line = tx.get_line(line_id)
        invoice = tx.require_invoice("INV-1")
        remaining = tx.list_scans("INV-1")
        assert tx.get_scan(other.record.id) is not None
    assert line.customer_scanned_quantity == 8
    assert line.customer_scanned_bins == 1
    assert line.carrier_scanned_quantity == 8
    assert invoice.blocked is False
    assert [scan.stage for scan in remaining] == ["paired"]
    assert publisher.names() == ["alert:resolved"]

    ScanPairingEngine(store).record_customer_scan("INV-1", labels.customer("BIN-002", "CUST-A1", 8), "op-a")


def test_approving_inbound_over_scan_performs_no_rollback(store: ScanStore, make_invoice, labels) -> None:
    (first_line, second_line) = make_invoice(lines=[("CUST-A1", "CAR-A1", 8), ("CUST-B1", "CAR-B1", 8)])
    engine = ScanPairingEngine(store)
    engine.record_customer_scan("INV-1", labels.customer("BIN-101", "CUST-B1", 8), "op-a")
    engine.record_customer_scan("INV-1", labels.customer("BIN-001", "CUST-A1", 8), "op-a")
    engine.record_carrier_scan("INV-1", labels.carrier("CB-001", "CAR-A1", 8), "op-a")
    with pytest.raises(OverScanError) as exc_info:
        engine.record_carrier_scan(
            "INV-1",
            labels.carrier("CB-002", "CAR-A1", 8),
            "op-a",
            customer_payload=labels.customer("BIN-002", "CUST-A1", 8),
        )

    outcome = MismatchResolver(store).approve(exc_info.value.alert_id, "admin")

    assert outcome.rolled_back_scan_ids == []
    assert outcome.invoice_blocked is False
    with store.transaction() as tx:
        assert tx.get_line(second_line).customer_scanned_quantity == 8
        assert tx.latest_pending_customer_scan(second_line) is not None
        assert tx.get_line(first_line).carrier_scanned_quantity == 8


def test_reject_keeps_invoice_blocked_until_later_approval(store: ScanStore, make_invoice, labels) -> None:
    (line_id,) = make_invoice()
    alert_id, _ = _over_scan_customer(store, labels)
    resolver = MismatchResolver(store)

    rejected = resolver.reject(alert_id, "admin")

    assert rejected.alert.status == "rejected"
    assert rejected.invoice_blocked is True
    assert rejected.rolled_back_scan_ids == []
    with store.transaction() as tx:
        assert tx.get_line(line_id).customer_scanned_quantity == 16
    with pytest.raises(InvoiceBlockedError):
        ScanPairingEngine(store).record_carrier_scan("INV-1", labels.carrier("CB-002", "CAR-A1", 8), "op-b")

    approved = resolver.approve(alert_id, "admin-2")
    assert approved.alert.status == "approved"
    assert approved.invoice_blocked is False


def test_resolved_alerts_cannot_be_decided_again(store: ScanStore, make_invoice, labels) -> None:
    make_invoice()
    alert_id, _ = _over_scan_customer(store, labels)
    resolver = MismatchResolver(store)
    resolver.approve(alert_id, "admin")

    with pytest.raises(AlertAlreadyResolvedError):
        resolver.approve(alert_id, "admin")
    with pytest.raises(AlertAlreadyResolvedError):
        resolver.reject(alert_id, "admin")
    with pytest.raises(AlertNotFoundError):
        resolver.approve("missing", "admin")

    snapshot = resolver.metrics.snapshot()
    assert snapshot["alerts_approved_total"] == 1


def test_report_mismatch_blocks_and_lists(store: ScanStore, make_invoice, publisher) -> None:
    make_invoice()
    make_invoice("INV-2")
    resolver = MismatchResolver(store, publisher=publisher)

    alert = resolver.report_mismatch(
        "INV-1",
        "invoice_mismatch",
        "op-a",
        customer_scan=ScanSnapshot(part_code="CUST-A1", bin_id="BIN-001", quantity="8"),
    )

    assert alert.status == "pending"
    assert alert.validation_step == "invoice_mismatch"
    assert [item.id for item in resolver.list_alerts(status="pending")] == [alert.id]
    assert resolver.list_alerts(invoice_id="INV-2") == []
    assert publisher.names() == ["alert:new"]
    with store.transaction() as tx:
        assert tx.require_invoice("INV-1").blocked is True

    with pytest.raises(InvoiceNotFoundError):
        resolver.report_mismatch("INV-404", "invoice_mismatch", "op-a")


def test_resolve_dispatches_on_decision(store: ScanStore, make_invoice) -> None:
    make_invoice()
    resolver = MismatchResolver(store)
    alert = resolver.report_mismatch("INV-1", "bin_quantity_mismatch", "op-a")

    assert resolver.resolve(alert.id, "rejected", "admin").alert.status == "rejected"
    with pytest.raises(ValueError):
        resolver.resolve(alert.id, "pending", "admin")
