from __future__ import annotations

from dispatch_audit.barcode import canonicalize_barcode, legacy_payload_keys
from dispatch_audit.errors import (
    DuplicateScanError,
    NoPendingCustomerScanError,
    OverScanError,
    QuantityMismatchError,
    ScanError,
)
from dispatch_audit.matching import (
    ScanEngineBase,
    bins_for_quantity,
    ensure_unblocked,
    over_scan_error,
    resolve_single_line,
    snapshot,
)
from dispatch_audit.nomenclature import ParsedLabel, parse_carrier_label, parse_customer_label
from dispatch_audit.state_machine import transition_scan
from dispatch_audit.store import ScanTransaction
from schemas.scan_schema import InvoiceLine, ScanOutcome


def _check_quantities(customer: ParsedLabel, carrier: ParsedLabel) -> None:
    if customer.bin_quantity != carrier.bin_quantity:
        raise QuantityMismatchError(
            f"Customer label quantity {customer.quantity} does not match carrier label quantity {carrier.quantity}",
            customer_quantity=customer.quantity,
            carrier_quantity=carrier.quantity,
        )


class ScanPairingEngine(ScanEngineBase):
    """Audit-stage state machine pairing customer and carrier label scans.

    A customer scan creates a pending record and counts toward the customer
    side of its invoice line. The matching carrier scan completes that record
    in place and counts toward the carrier side. Over-scans on either side
    raise a mismatch alert and block the invoice; the alert is committed even
    though the scan itself is rejected.
    """

    scan_context = "audit"

    def record_customer_scan(self, invoice_id: str, customer_payload: str, scanned_by: str) -> ScanOutcome:
        try:
            outcome = self._record_customer_scan(invoice_id, canonicalize_barcode(customer_payload), scanned_by)
        except ScanError as exc:
            self._rejected(invoice_id, exc, scanned_by)
            raise
        self._accepted(outcome, scanned_by)
        return outcome

    def record_carrier_scan(
        self,
        invoice_id: str,
        carrier_payload: str,
        scanned_by: str,
        customer_payload: str | None = None,
    ) -> ScanOutcome:
        """Pair a carrier scan with a pending customer scan.

        With ``customer_payload`` the pending record must carry the bin parsed
        from that payload. Without it the call runs in resume mode: the line is
        found by the carrier part code alone and the customer payload is read
        back from the latest pending record. The operator completing the pair does not
        have to be the one who recorded the customer side.
        """
        try:
            outcome = self._record_carrier_scan(
                invoice_id,
                canonicalize_barcode(carrier_payload),
                scanned_by,
                None if customer_payload is None else canonicalize_barcode(customer_payload),
            )
        except ScanError as exc:
            self._rejected(invoice_id, exc, scanned_by)
            raise
        self._accepted(outcome, scanned_by)
        return outcome

    def record_paired_scan(
        self,
        invoice_id: str,
        customer_payload: str,
        carrier_payload: str,
        scanned_by: str,
    ) -> ScanOutcome:
        try:
            outcome = self._record_paired_scan(
                invoice_id,
                canonicalize_barcode(customer_payload),
                canonicalize_barcode(carrier_payload),
                scanned_by,
            )
        except ScanError as exc:
            self._rejected(invoice_id, exc, scanned_by)
            raise
        self._accepted(outcome, scanned_by)
        return outcome

    def _customer_bin_recorded(self, tx: ScanTransaction, line: InvoiceLine, label: ParsedLabel) -> bool:
        return tx.bin_recorded(
            line.id,
            "audit",
            customer_bin_id=label.bin_id,
            payload_keys=legacy_payload_keys(label.raw),
        )

    def _record_customer_scan(self, invoice_id: str, canonical: str, scanned_by: str) -> ScanOutcome:
        over_scan: OverScanError | None = None
        with self._store.transaction() as tx:
            ensure_unblocked(tx.require_invoice(invoice_id))
            label = parse_customer_label(canonical)
            line = resolve_single_line(
                tx.find_lines(invoice_id, customer_part_code=label.part_code),
                invoice_id,
                customer_part_code=label.part_code,
            )

            if self._customer_bin_recorded(tx, line, label):
                raise DuplicateScanError(
                    f"Customer bin {label.bin_id} already scanned for this line",
                    invoice_line_id=line.id,
                    bin_id=label.bin_id,
                )

            if line.customer_scanned_quantity + label.bin_quantity > line.expected_quantity:
                alert = tx.insert_alert(
                    invoice_id=invoice_id,
                    stage="audit",
                    validation_step="over_scan_customer",
                    reported_by=scanned_by,
                    customer_scan=snapshot(label),
                )
                tx.set_blocked(invoice_id, True)
                over_scan = over_scan_error(
                    alert,
                    f"Customer scan of {label.bin_quantity} exceeds expected quantity "
                    f"{line.expected_quantity} (already {line.customer_scanned_quantity})",
                )
            else:
                transition_scan("UNSTARTED", "CUSTOMER_PENDING")
                number_of_bins = bins_for_quantity(line.expected_quantity, label.bin_quantity)
                if number_of_bins is not None:
                    tx.set_number_of_bins_if_unset(line.id, number_of_bins)
                tx.add_customer_counts(line.id, label.bin_quantity)
                record = tx.insert_pending_customer_scan(
                    invoice_id=invoice_id,
                    line_id=line.id,
                    customer_payload=canonical,
                    customer_bin_id=label.bin_id,
                    bin_quantity=label.bin_quantity,
                    scanned_by=scanned_by,
                )
                outcome = ScanOutcome(
                    record=record,
                    line=tx.get_line(line.id),
                    audit_complete=tx.require_invoice(invoice_id).audit_complete,
                )

        if over_scan is not None:
            raise over_scan
        return outcome

    def _record_carrier_scan(
        self,
        invoice_id: str,
        carrier_canonical: str,
        scanned_by: str,
        customer_canonical: str | None,
    ) -> ScanOutcome:
        over_scan: OverScanError | None = None
        with self._store.transaction() as tx:
            ensure_unblocked(tx.require_invoice(invoice_id))
            carrier = parse_carrier_label(carrier_canonical)

            resume = customer_canonical is None
            if customer_canonical is None:
                resumed_line = resolve_single_line(
                    tx.find_lines(invoice_id, carrier_part_code=carrier.part_code),
                    invoice_id,
                    carrier_part_code=carrier.part_code,
                )
                pending = tx.latest_pending_customer_scan(resumed_line.id)
                if pending is None:
                    raise NoPendingCustomerScanError(
                        f"No pending customer scan to resume for line {resumed_line.id}",
                        invoice_line_id=resumed_line.id,
                    )
                customer_canonical = pending.customer_payload

            customer = parse_customer_label(customer_canonical)
            _check_quantities(customer, carrier)
            line = resolve_single_line(
                tx.find_lines(
                    invoice_id,
                    customer_part_code=customer.part_code,
                    carrier_part_code=carrier.part_code,
                ),
                invoice_id,
                customer_part_code=customer.part_code,
                carrier_part_code=carrier.part_code,
            )

            if tx.bin_recorded(line.id, "audit", carrier_bin_id=carrier.bin_id):
                raise DuplicateScanError(
                    f"Carrier bin {carrier.bin_id} already scanned for this line",
                    invoice_line_id=line.id,
                    bin_id=carrier.bin_id,
                )

            if line.carrier_scanned_quantity + carrier.bin_quantity > line.expected_quantity:
                alert = tx.insert_alert(
                    invoice_id=invoice_id,
                    stage="audit",
                    validation_step="over_scan_inbound",
                    reported_by=scanned_by,
                    customer_scan=snapshot(customer),
                    carrier_scan=snapshot(carrier),
                )
                tx.set_blocked(invoice_id, True)
                over_scan = over_scan_error(
                    alert,
                    f"Carrier scan of {carrier.bin_quantity} exceeds expected quantity "
                    f"{line.expected_quantity} (already {line.carrier_scanned_quantity})",
                )
            else:
                if resume:
                    pending = tx.latest_pending_customer_scan(line.id)
                else:
                    pending = tx.latest_pending_customer_scan(line.id, customer_bin_id=customer.bin_id)
                if pending is None:
                    raise NoPendingCustomerScanError(
                        f"No pending customer scan to pair for line {line.id}"
                        + ("" if resume else f" and customer bin {customer.bin_id}"),
                        invoice_line_id=line.id,
                    )
                transition_scan("CUSTOMER_PENDING", "PAIRED")
                record = tx.complete_pairing(
                    pending.id,
                    carrier_payload=carrier_canonical,
                    carrier_bin_id=carrier.bin_id,
                    paired_by=scanned_by,
                )
                tx.add_carrier_counts(line.id, carrier.bin_quantity)
                audit_complete = tx.recompute_audit_complete(invoice_id)
                outcome = ScanOutcome(record=record, line=tx.get_line(line.id), audit_complete=audit_complete)

        if over_scan is not None:
            raise over_scan
        return outcome

    def _record_paired_scan(
        self,
        invoice_id: str,
        customer_canonical: str,
        carrier_canonical: str,
        scanned_by: str,
    ) -> ScanOutcome:
        over_scan: OverScanError | None = None
        with self._store.transaction() as tx:
            ensure_unblocked(tx.require_invoice(invoice_id))
            customer = parse_customer_label(customer_canonical)
            carrier = parse_carrier_label(carrier_canonical)
            _check_quantities(customer, carrier)
            line = resolve_single_line(
                tx.find_lines(
                    invoice_id,
                    customer_part_code=customer.part_code,
                    carrier_part_code=carrier.part_code,
                ),
                invoice_id,
                customer_part_code=customer.part_code,
                carrier_part_code=carrier.part_code,
            )

            if self._customer_bin_recorded(tx, line, customer):
                raise DuplicateScanError(
                    f"Customer bin {customer.bin_id} already scanned for this line",
                    invoice_line_id=line.id,
                    bin_id=customer.bin_id,
                )
            if tx.bin_recorded(line.id, "audit", carrier_bin_id=carrier.bin_id):
                raise DuplicateScanError(
                    f"Carrier bin {carrier.bin_id} already scanned for this line",
                    invoice_line_id=line.id,
                    bin_id=carrier.bin_id,
                )

            quantity = customer.bin_quantity
            step = None
            if line.customer_scanned_quantity + quantity > line.expected_quantity:
                step = "over_scan_customer"
            elif line.carrier_scanned_quantity + quantity > line.expected_quantity:
                step = "over_scan_inbound"

            if step is not None:
                alert = tx.insert_alert(
                    invoice_id=invoice_id,
                    stage="audit",
                    validation_step=step,
                    reported_by=scanned_by,
                    customer_scan=snapshot(customer),
                    carrier_scan=snapshot(carrier),
                )
                tx.set_blocked(invoice_id, True)
                over_scan = over_scan_error(
                    alert,
                    f"Paired scan of {quantity} exceeds expected quantity {line.expected_quantity}",
                )
            else:
                transition_scan("UNSTARTED", "PAIRED")
                number_of_bins = bins_for_quantity(line.expected_quantity, quantity)
                if number_of_bins is not None:
                    tx.set_number_of_bins_if_unset(line.id, number_of_bins)
                tx.add_customer_counts(line.id, quantity)
                tx.add_carrier_counts(line.id, quantity)
                record = tx.insert_paired_scan(
                    invoice_id=invoice_id,
                    line_id=line.id,
                    customer_payload=customer_canonical,
                    customer_bin_id=customer.bin_id,
                    carrier_payload=carrier_canonical,
                    carrier_bin_id=carrier.bin_id,
                    bin_quantity=quantity,
                    scanned_by=scanned_by,
                )
                audit_complete = tx.recompute_audit_complete(invoice_id)
                outcome = ScanOutcome(record=record, line=tx.get_line(line.id), audit_complete=audit_complete)

        if over_scan is not None:
            raise over_scan
        return outcome
