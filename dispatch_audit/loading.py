from __future__ import annotations

import logging
from uuid import uuid4

from dispatch_audit.barcode import canonicalize_barcode, legacy_payload_keys
from dispatch_audit.errors import (
    DispatchRejectedError,
    DuplicateScanError,
    InvoiceNotFoundError,
    OverScanError,
    ScanError,
    ScanNotFoundError,
)
from dispatch_audit.events import publish_safely
from dispatch_audit.logger import log_scan_event
from dispatch_audit.matching import (
    ScanEngineBase,
    ensure_unblocked,
    line_counters,
    over_scan_error,
    resolve_single_line,
    snapshot,
)
from dispatch_audit.nomenclature import parse_customer_label
from dispatch_audit.state_machine import InvalidTransitionError, transition_scan
from dispatch_audit.store import ScanTransaction
from schemas.scan_schema import Gatepass, InvoiceLine, LoadedScan, ScanOutcome


def expected_bins_for_line(tx: ScanTransaction, line: InvoiceLine) -> int:
    if line.carrier_scanned_bins > 0:
        return line.carrier_scanned_bins
    if line.number_of_bins:
        return line.number_of_bins
    return tx.distinct_audit_customer_bins(line.id)


def _gatepass_number() -> str:
    return f"GP-{uuid4().hex[:8].upper()}"


class DispatchBinValidator(ScanEngineBase):
    """Loading-stage checks: one customer label scan per bin put on a vehicle."""

    scan_context = "loading"

    def validate_loaded_bin(self, invoice_id: str, customer_payload: str, scanned_by: str) -> ScanOutcome:
        try:
            outcome = self._validate_loaded_bin(invoice_id, canonicalize_barcode(customer_payload), scanned_by)
        except ScanError as exc:
            self._rejected(invoice_id, exc, scanned_by)
            raise
        self._accepted(outcome, scanned_by)
        return outcome

    def _validate_loaded_bin(self, invoice_id: str, canonical: str, scanned_by: str) -> ScanOutcome:
        over_scan: OverScanError | None = None
        with self._store.transaction() as tx:
            invoice = tx.require_invoice(invoice_id)
            ensure_unblocked(invoice)
            label = parse_customer_label(canonical)
            line = resolve_single_line(
                tx.find_lines(invoice_id, customer_part_code=label.part_code),
                invoice_id,
                customer_part_code=label.part_code,
            )

            expected = expected_bins_for_line(tx, line)
            loaded = tx.count_loading_scans(line.id)

            if tx.bin_recorded(
                line.id,
                "loading",
                customer_bin_id=label.bin_id,
                payload_keys=legacy_payload_keys(label.raw),
            ):
                raise DuplicateScanError(
                    f"Bin {label.bin_id} already loaded for this line",
                    invoice_line_id=line.id,
                    bin_id=label.bin_id,
                )

            if expected > 0 and loaded >= expected:
                alert = tx.insert_alert(
                    invoice_id=invoice_id,
                    stage="loading",
                    validation_step="over_scan_loading",
                    reported_by=scanned_by,
                    customer_scan=snapshot(label),
                )
                tx.set_blocked(invoice_id, True)
                over_scan = over_scan_error(
                    alert,
                    f"All {expected} bins for line {line.id} are already loaded",
                )
            else:
                transition_scan("UNSTARTED", "LOADED")
                record = tx.insert_loaded_scan(
                    invoice_id=invoice_id,
                    line_id=line.id,
                    customer_payload=canonical,
                    customer_bin_id=label.bin_id,
                    bin_quantity=label.bin_quantity,
                    scanned_by=scanned_by,
                )
                tx.add_loaded_bins(line.id)
                outcome = ScanOutcome(record=record, line=tx.get_line(line.id), audit_complete=invoice.audit_complete)

        if over_scan is not None:
            raise over_scan
        return outcome

    def remove_loaded_bin(self, scan_id: str, removed_by: str) -> InvoiceLine:
        with self._store.transaction() as tx:
            scan = tx.get_scan(scan_id)
            if not isinstance(scan, LoadedScan):
                raise ScanNotFoundError(f"Loaded bin scan {scan_id} not found", scan_id=scan_id)
            try:
                transition_scan("LOADED", "REMOVED")
            except InvalidTransitionError as exc:
                raise ScanNotFoundError(str(exc), scan_id=scan_id) from exc
            tx.delete_scan(scan_id)
            tx.add_loaded_bins(scan.invoice_line_id, -1)
            line = tx.get_line(scan.invoice_line_id)

        log_scan_event(
            self._logger,
            logging.INFO,
            f"Removed loaded bin {scan.customer_bin_id}",
            invoice_id=scan.invoice_id,
            invoice_line_id=line.id,
            scan_context=self.scan_context,
            outcome="removed",
        )
        publish_safely(
            self._publisher,
            "loading:scan",
            {
                "invoice_id": scan.invoice_id,
                "scan_id": scan_id,
                "removed_by": removed_by,
                "action": "removed",
                **line_counters(line),
            },
        )
        return line

    def dispatch_vehicle(self, invoice_ids: list[str], vehicle_number: str, dispatched_by: str) -> Gatepass:
        """Stamp every invoice as dispatched under one gatepass, or none of them."""
        ordered_ids = list(dict.fromkeys(invoice_ids))
        if not ordered_ids:
            raise DispatchRejectedError("No invoices selected for dispatch")

        with self._store.transaction() as tx:
            now = tx.now()
            customer_codes: set[str | None] = set()
            total_bins = 0
            total_quantity = 0
            gatepass_number = _gatepass_number()

            for invoice_id in ordered_ids:
                try:
                    invoice = tx.require_invoice(invoice_id)
                except InvoiceNotFoundError as exc:
                    raise DispatchRejectedError(str(exc), invoice_id=invoice_id) from exc
                if invoice.blocked:
                    raise DispatchRejectedError(
                        f"Invoice {invoice_id} is blocked pending mismatch review",
                        invoice_id=invoice_id,
                    )
                if not invoice.audit_complete:
                    raise DispatchRejectedError(f"Invoice {invoice_id} has not completed audit", invoice_id=invoice_id)
                if invoice.dispatched_at is not None:
                    raise DispatchRejectedError(
                        f"Invoice {invoice_id} was already dispatched",
                        invoice_id=invoice_id,
                        gatepass_number=invoice.gatepass_number,
                    )

                customer_codes.add(invoice.customer_code)
                if len(customer_codes) > 1:
                    raise DispatchRejectedError(
                        "All invoices on one vehicle must belong to the same customer",
                        invoice_id=invoice_id,
                    )

                for line in invoice.lines:
                    expected = expected_bins_for_line(tx, line)
                    loaded = tx.count_loading_scans(line.id)
                    if expected > 0 and loaded < expected:
                        raise DispatchRejectedError(
                            f"Line {line.id} on invoice {invoice_id} has {loaded} of {expected} bins loaded",
                            invoice_id=invoice_id,
                            invoice_line_id=line.id,
                            loaded_bins=loaded,
                            expected_bins=expected,
                        )
                    total_bins += loaded
                    total_quantity += line.expected_quantity

                tx.mark_dispatched(
                    invoice_id,
                    dispatched_by=dispatched_by,
                    vehicle_number=vehicle_number,
                    gatepass_number=gatepass_number,
                    dispatched_at=now,
                )

            gatepass = Gatepass(
                gatepass_number=gatepass_number,
                vehicle_number=vehicle_number,
                customer_code=next(iter(customer_codes)),
                invoice_ids=ordered_ids,
                total_bins=total_bins,
                total_quantity=total_quantity,
                authorized_by=dispatched_by,
                dispatched_at=now,
            )
            tx.insert_gatepass(gatepass)

        self._metrics.increment("dispatches_total")
        for invoice_id in ordered_ids:
            log_scan_event(
                self._logger,
                logging.INFO,
                f"Dispatched on vehicle {vehicle_number} with gatepass {gatepass.gatepass_number}",
                invoice_id=invoice_id,
                scan_context=self.scan_context,
                outcome="dispatched",
            )
        publish_safely(self._publisher, "dispatch:completed", gatepass.model_dump(mode="json"))
        return gatepass
