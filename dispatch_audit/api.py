from __future__ import annotations

from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from dispatch_audit.errors import InvoiceNotFoundError, ScanError
from dispatch_audit.events import EventPublisher, NullPublisher
from dispatch_audit.loading import DispatchBinValidator
from dispatch_audit.metrics import MetricsCollector
from dispatch_audit.pairing import ScanPairingEngine
from dispatch_audit.resolution import MismatchResolver
from dispatch_audit.store import ScanStore
from schemas.scan_schema import (
    AlertDecisionRequest,
    AlertStatus,
    CarrierScanRequest,
    CustomerScanRequest,
    DispatchRequest,
    Gatepass,
    Invoice,
    InvoiceIn,
    InvoiceLine,
    MismatchAlert,
    MismatchReportRequest,
    PairedScanRequest,
    ResolutionOutcome,
    ScanOutcome,
)


def create_app(
    store: ScanStore,
    *,
    publisher: EventPublisher | None = None,
    metrics: MetricsCollector | None = None,
) -> FastAPI:
    publisher = publisher or NullPublisher()
    metrics = metrics or MetricsCollector()
    pairing = ScanPairingEngine(store, publisher=publisher, metrics=metrics)
    loading = DispatchBinValidator(store, publisher=publisher, metrics=metrics)
    resolver = MismatchResolver(store, publisher=publisher, metrics=metrics)

    app = FastAPI(title="Dispatch Audit API", version="0.1.0")

    @app.exception_handler(ScanError)
    async def scan_error_handler(request: Request, exc: ScanError) -> JSONResponse:
        _ = request
        return JSONResponse(status_code=exc.http_status, content=exc.to_payload())

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/stats")
    def stats() -> dict[str, Any]:
        return metrics.snapshot()

    @app.post("/invoices", status_code=201)
    def create_invoice(body: InvoiceIn) -> Invoice:
        with store.transaction() as tx:
            return tx.create_invoice(body.id, body.lines, body.customer_code)

    @app.get("/invoices/{invoice_id}")
    def get_invoice(invoice_id: str) -> Invoice:
        with store.transaction() as tx:
            invoice = tx.get_invoice(invoice_id)
        if invoice is None:
            raise InvoiceNotFoundError(f"Invoice {invoice_id} not found", invoice_id=invoice_id)
        return invoice

    @app.post("/audit/{invoice_id}/customer-scan", status_code=201)
    def customer_scan(invoice_id: str, body: CustomerScanRequest) -> ScanOutcome:
        return pairing.record_customer_scan(invoice_id, body.customer_payload, body.scanned_by)

    @app.post("/audit/{invoice_id}/carrier-scan", status_code=201)
    def carrier_scan(invoice_id: str, body: CarrierScanRequest) -> ScanOutcome:
        return pairing.record_carrier_scan(
            invoice_id,
            body.carrier_payload,
            body.scanned_by,
            customer_payload=body.customer_payload,
        )

    @app.post("/audit/{invoice_id}/scan", status_code=201)
    def paired_scan(invoice_id: str, body: PairedScanRequest) -> ScanOutcome:
        return pairing.record_paired_scan(invoice_id, body.customer_payload, body.carrier_payload, body.scanned_by)

    @app.post("/loading/{invoice_id}/scan", status_code=201)
    def loading_scan(invoice_id: str, body: CustomerScanRequest) -> ScanOutcome:
        return loading.validate_loaded_bin(invoice_id, body.customer_payload, body.scanned_by)

    @app.delete("/loading/scans/{scan_id}")
    def remove_loading_scan(scan_id: str, removed_by: str) -> InvoiceLine:
        return loading.remove_loaded_bin(scan_id, removed_by)

    @app.post("/dispatch", status_code=201)
    def dispatch(body: DispatchRequest) -> Gatepass:
        return loading.dispatch_vehicle(body.invoice_ids, body.vehicle_number, body.dispatched_by)

    @app.get("/alerts")
    def list_alerts(status: AlertStatus | None = None, invoice_id: str | None = None) -> list[MismatchAlert]:
        return resolver.list_alerts(status=status, invoice_id=invoice_id)

    @app.post("/alerts", status_code=201)
    def report_mismatch(body: MismatchReportRequest) -> MismatchAlert:
        return resolver.report_mismatch(
            body.invoice_id,
            body.validation_step,
            body.reported_by,
            customer_scan=body.customer_scan,
            carrier_scan=body.carrier_scan,
            stage=body.stage,
        )

    @app.put("/alerts/{alert_id}")
    def decide_alert(alert_id: str, body: AlertDecisionRequest) -> ResolutionOutcome:
        return resolver.resolve(alert_id, body.status, body.reviewed_by)

    return app
