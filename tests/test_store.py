from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

from dispatch_audit.barcode import encode_ascii_triplets, legacy_payload_keys
from dispatch_audit.errors import AlertNotFoundError, DuplicateInvoiceError, InvoiceNotFoundError
from dispatch_audit.store import ScanStore
from schemas.scan_schema import InvoiceLineIn, PairedScan, PendingCustomerScan, ScanSnapshot


def test_schema_is_created_on_init(tmp_path: Path) -> None:
    db_path = tmp_path / "nested" / "dispatch.db"
    ScanStore(db_path=db_path)

    conn = sqlite3.connect(db_path)
    try:
        tables = {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")}
    finally:
        conn.close()
    assert {"invoices", "invoice_lines", "scan_records", "mismatch_alerts", "gatepasses"} <= tables


def test_create_invoice_and_reject_duplicate(store: ScanStore) -> None:
    lines = [InvoiceLineIn(customer_part_code=" CUST-A1 ", carrier_part_code="CAR-A1", expected_quantity=8)]
    with store.transaction() as tx:
        invoice = tx.create_invoice("INV-1", lines, "CUST-01")
    assert invoice.lines[0].customer_part_code == "CUST-A1"
    assert invoice.blocked is False
    assert invoice.audit_complete is False

    with pytest.raises(DuplicateInvoiceError):
        with store.transaction() as tx:
            tx.create_invoice("INV-1", lines)


def test_exception_inside_transaction_rolls_back(store: ScanStore, make_invoice) -> None:
    (line_id,) = make_invoice()

    with pytest.raises(RuntimeError):
        with store.transaction() as tx:
            tx.add_customer_counts(line_id, 8)
            tx.set_blocked("INV-1", True)
            raise RuntimeError("boom")

    with store.transaction() as tx:
        line = tx.get_line(line_id)
        invoice = tx.require_invoice("INV-1")
    assert line.customer_scanned_quantity == 0
    assert invoice.blocked is False


def test_number_of_bins_is_set_once(store: ScanStore, make_invoice) -> None:
    (line_id,) = make_invoice()
    with store.transaction() as tx:
        tx.set_number_of_bins_if_unset(line_id, 2)
        tx.set_number_of_bins_if_unset(line_id, 4)
        assert tx.get_line(line_id).number_of_bins == 2


def test_counters_never_drop_below_zero(store: ScanStore, make_invoice) -> None:
    (line_id,) = make_invoice()
    with store.transaction() as tx:
        tx.add_customer_counts(line_id, -8, bins=-1)
        tx.add_loaded_bins(line_id, -1)
        line = tx.get_line(line_id)
    assert line.customer_scanned_quantity == 0
    assert line.customer_scanned_bins == 0
    assert line.loaded_bins == 0


def test_scanned_quantity_cannot_exceed_expected(store: ScanStore, make_invoice) -> None:
    (line_id,) = make_invoice()
    with pytest.raises(sqlite3.IntegrityError):
        with store.transaction() as tx:
            tx.add_carrier_counts(line_id, 17)


def test_bin_recorded_matches_triplet_encoded_legacy_rows(store: ScanStore, make_invoice, labels) -> None:
    (line_id,) = make_invoice()
    canonical = labels.customer("BIN-001", "CUST-A1", 8)
    with store.transaction() as tx:
        tx.insert_pending_customer_scan(
            invoice_id="INV-1",
            line_id=line_id,
            customer_payload=encode_ascii_triplets(canonical),
            customer_bin_id="",
            bin_quantity=8,
            scanned_by="op-a",
        )
        assert tx.bin_recorded(line_id, "audit", customer_bin_id="BIN-001", payload_keys=legacy_payload_keys(canonical))
        assert not tx.bin_recorded(line_id, "loading", payload_keys=legacy_payload_keys(canonical))
        assert not tx.bin_recorded(line_id, "audit")


def test_pending_scan_pairs_in_place(store: ScanStore, make_invoice) -> None:
    (line_id,) = make_invoice()
    with store.transaction() as tx:
        pending = tx.insert_pending_customer_scan(
            invoice_id="INV-1",
            line_id=line_id,
            customer_payload="payload",
            customer_bin_id="BIN-001",
            bin_quantity=8,
            scanned_by="op-a",
        )
        assert isinstance(pending, PendingCustomerScan)
        assert tx.latest_pending_customer_scan(line_id) == pending
        assert tx.latest_pending_customer_scan(line_id, customer_bin_id="BIN-001") == pending
        assert tx.latest_pending_customer_scan(line_id, customer_bin_id="BIN-002") is None

        paired = tx.complete_pairing(pending.id, carrier_payload="SCB-1PCAR-A1Q8", carrier_bin_id="CB-1", paired_by="op-b")
        assert isinstance(paired, PairedScan)
        assert paired.id == pending.id
        assert paired.scanned_by == "op-a"
        assert paired.paired_by == "op-b"
        assert tx.latest_pending_customer_scan(line_id) is None

        with pytest.raises(LookupError):
            tx.complete_pairing(pending.id, carrier_payload="x", carrier_bin_id="CB-2", paired_by="op-b")


def test_alert_round_trip_and_listing(store: ScanStore, make_invoice) -> None:
    make_invoice()
    make_invoice("INV-2")
    with store.transaction() as tx:
        first = tx.insert_alert(
            invoice_id="INV-1",
            stage="audit",
            validation_step="over_scan_customer",
            reported_by="op-a",
            customer_scan=ScanSnapshot(part_code="CUST-A1", bin_id="BIN-1", quantity="8", raw="raw"),
        )
        second = tx.insert_alert(
            invoice_id="INV-2",
            stage="loading",
            validation_step="over_scan_loading",
            reported_by="op-b",
        )
        tx.update_alert_status(first.id, "rejected", "admin")

        assert first.customer_scan is not None
        assert first.customer_scan.bin_id == "BIN-1"
        assert first.carrier_scan is None
        assert [alert.id for alert in tx.list_alerts()] == [second.id, first.id]
        assert [alert.id for alert in tx.list_alerts(status="rejected")] == [first.id]
        assert [alert.id for alert in tx.list_alerts(invoice_id="INV-2")] == [second.id]
        assert tx.require_alert(first.id).reviewed_by == "admin"

        with pytest.raises(AlertNotFoundError):
            tx.require_alert("missing")
        with pytest.raises(InvoiceNotFoundError):
            tx.require_invoice("missing")
