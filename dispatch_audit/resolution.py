from __future__ import annotations

import logging

from dispatch_audit.errors import AlertAlreadyResolvedError
from dispatch_audit.events import EventPublisher, NullPublisher, publish_safely
from dispatch_audit.logger import log_scan_event
from dispatch_audit.metrics import MetricsCollector
from dispatch_audit.state_machine import InvalidTransitionError, transition_alert, transition_scan
from dispatch_audit.store import ScanStore, ScanTransaction, format_timestamp
from schemas.scan_schema import MismatchAlert, ResolutionOutcome, ScanSnapshot

logger = logging.getLogger(__name__)


class MismatchResolver:
    """Administrative decisions on mismatch alerts.

    Approving lifts the invoice block. For customer-stage steps it also
    discards the pending customer scans recorded before the alert was raised
    and rolls their quantities back off the line counters. Paired data is
    never touched. Rejecting only records the decision; the invoice stays
    blocked until the alert is approved later.
    """

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

    @property
    def metrics(self) -> MetricsCollector:
        return self._metrics

    def approve(self, alert_id: str, reviewed_by: str) -> ResolutionOutcome:
        with self._store.transaction() as tx:
            alert = tx.require_alert(alert_id)
            status = self._next_status(alert, "approved")
            tx.set_blocked(alert.invoice_id, False)
            rolled_back: list[str] = []
            if alert.is_customer_stage:
                rolled_back = self._roll_back_pending(tx, alert)
            tx.recompute_audit_complete(alert.invoice_id)
            updated = tx.update_alert_status(alert_id, status, reviewed_by)
            outcome = ResolutionOutcome(alert=updated, invoice_blocked=False, rolled_back_scan_ids=rolled_back)

        self._metrics.increment("alerts_approved_total")
        self._resolved(outcome, reviewed_by)
        return outcome

    def reject(self, alert_id: str, reviewed_by: str) -> ResolutionOutcome:
        with self._store.transaction() as tx:
            alert = tx.require_alert(alert_id)
            status = self._next_status(alert, "rejected")
            updated = tx.update_alert_status(alert_id, status, reviewed_by)
            invoice = tx.get_invoice(alert.invoice_id)
            outcome = ResolutionOutcome(
                alert=updated,
                invoice_blocked=bool(invoice and invoice.blocked),
            )

        self._metrics.increment("alerts_rejected_total")
        self._resolved(outcome, reviewed_by)
        return outcome

    def resolve(self, alert_id: str, status: str, reviewed_by: str) -> ResolutionOutcome:
        if status == "approved":
            return self.approve(alert_id, reviewed_by)
        if status == "rejected":
            return self.reject(alert_id, reviewed_by)
        raise ValueError(f"Unsupported alert decision: {status}")

    def report_mismatch(
        self,
        invoice_id: str,
        validation_step: str,
        reported_by: str,
        *,
        customer_scan: ScanSnapshot | None = None,
        carrier_scan: ScanSnapshot | None = None,
        stage: str = "audit",
    ) -> MismatchAlert:
        with self._store.transaction() as tx:
            tx.require_invoice(invoice_id)
            alert = tx.insert_alert(
                invoice_id=invoice_id,
                stage=stage,
                validation_step=validation_step,
                reported_by=reported_by,
                customer_scan=customer_scan,
                carrier_scan=carrier_scan,
            )
            tx.set_blocked(invoice_id, True)

        self._metrics.increment("alerts_raised_total")
        log_scan_event(
            logger,
            logging.WARNING,
            f"Mismatch reported by {reported_by}",
            invoice_id=invoice_id,
            scan_context=stage,
            validation_step=validation_step,
            outcome="reported",
        )
        publish_safely(
            self._publisher,
            "alert:new",
            {
                "invoice_id": invoice_id,
                "alert_id": alert.id,
                "validation_step": validation_step,
                "reported_by": reported_by,
            },
        )
        return alert

    def list_alerts(self, status: str | None = None, invoice_id: str | None = None) -> list[MismatchAlert]:
        with self._store.transaction() as tx:
            return tx.list_alerts(status=status, invoice_id=invoice_id)

    @staticmethod
    def _next_status(alert: MismatchAlert, decision: str) -> str:
        try:
            return transition_alert(alert.status, decision)
        except InvalidTransitionError as exc:
            raise AlertAlreadyResolvedError(
                f"Alert {alert.id} is already {alert.status}",
                alert_id=alert.id,
                status=alert.status,
            ) from exc

    @staticmethod
    def _roll_back_pending(tx: ScanTransaction, alert: MismatchAlert) -> list[str]:
        rolled_back: list[str] = []
        for scan in tx.pending_customer_scans_before(alert.invoice_id, format_timestamp(alert.created_at)):
            transition_scan("CUSTOMER_PENDING", "ROLLED_BACK")
            tx.add_customer_counts(scan.invoice_line_id, -scan.bin_quantity, bins=-1)
            tx.delete_scan(scan.id)
            rolled_back.append(scan.id)
        return rolled_back

    def _resolved(self, outcome: ResolutionOutcome, reviewed_by: str) -> None:
        alert = outcome.alert
        log_scan_event(
            logger,
            logging.INFO,
            f"Alert {alert.id} {alert.status} by {reviewed_by}",
            invoice_id=alert.invoice_id,
            scan_context=alert.stage,
            validation_step=alert.validation_step,
            outcome=alert.status,
        )
        publish_safely(
            self._publisher,
            "alert:resolved",
            {
                "invoice_id": alert.invoice_id,
                "alert_id": alert.id,
                "status": alert.status,
                "reviewed_by": reviewed_by,
                "invoice_blocked": outcome.invoice_blocked,
                "rolled_back_scan_ids": outcome.rolled_back_scan_ids,
            },
        )
