from __future__ import annotations

from typing import Any


class ScanError(Exception):
    code = "scan_error"
    http_status = 400

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.details = details

    def to_payload(self) -> dict[str, Any]:
        return {"error": self.code, "message": str(self), **self.details}


class LabelParseError(ScanError, ValueError):
    code = "label_parse_error"
    http_status = 422

    def __init__(self, label_type: str, message: str, **details: Any) -> None:
        super().__init__(message, label_type=label_type, **details)
        self.label_type = label_type


class TooShortError(LabelParseError):
    code = "too_short"


class InvalidQuantityError(LabelParseError):
    code = "invalid_quantity"


class EmptySegmentError(LabelParseError):
    code = "empty_segment"


class MissingMarkerError(LabelParseError):
    code = "missing_marker"

    def __init__(self, label_type: str, marker: str) -> None:
        super().__init__(label_type, f"{label_type} label missing '{marker}' marker", marker=marker)
        self.marker = marker


class UnparseableLabelError(LabelParseError):
    code = "unparseable"


class NoMatchError(ScanError):
    code = "no_match"
    http_status = 422


class AmbiguousMatchError(ScanError):
    code = "ambiguous_match"
    http_status = 422


class NoPendingCustomerScanError(ScanError):
    code = "no_pending_customer_scan"
    http_status = 409


class QuantityMismatchError(ScanError):
    code = "quantity_mismatch"
    http_status = 422


class DuplicateScanError(ScanError):
    code = "duplicate_scan"
    http_status = 409


class OverScanError(ScanError):
    code = "over_scan"
    http_status = 409

    def __init__(self, message: str, *, alert_id: str, validation_step: str) -> None:
        super().__init__(message, alert_id=alert_id, validation_step=validation_step, blocked=True)
        self.alert_id = alert_id
        self.validation_step = validation_step


class InvoiceBlockedError(ScanError):
    code = "invoice_blocked"
    http_status = 423


class InvoiceNotFoundError(ScanError):
    code = "invoice_not_found"
    http_status = 404


class DuplicateInvoiceError(ScanError):
    code = "duplicate_invoice"
    http_status = 409


class AlertNotFoundError(ScanError):
    code = "alert_not_found"
    http_status = 404


class ScanNotFoundError(ScanError):
    code = "scan_not_found"
    http_status = 404


class AlertAlreadyResolvedError(ScanError):
    code = "alert_already_resolved"
    http_status = 409


class DispatchRejectedError(ScanError):
    code = "dispatch_rejected"
    http_status = 400
