from __future__ import annotations

from datetime import datetime
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, field_validator

from dispatch_audit.nomenclature import normalize_field

ScanContext = Literal["audit", "loading"]
AlertStatus = Literal["pending", "approved", "rejected"]
ValidationStep = Literal[
    "over_scan_customer",
    "over_scan_inbound",
    "over_scan_loading",
    "customer_qr_no_match",
    "carrier_qr_no_match",
    "duplicate_customer_bin_scan",
    "invoice_mismatch",
    "bin_quantity_mismatch",
]

CUSTOMER_STAGE_STEPS: frozenset[str] = frozenset(
    {"customer_qr_no_match", "duplicate_customer_bin_scan", "over_scan_customer"}
)


class InvoiceLine(BaseModel):
    id: str
    invoice_id: str
    customer_part_code: str = Field(min_length=1)
    carrier_part_code: str = Field(min_length=1)
    expected_quantity: int = Field(ge=0)
    number_of_bins: int | None = None
    customer_scanned_quantity: int = Field(default=0, ge=0)
    customer_scanned_bins: int = Field(default=0, ge=0)
    carrier_scanned_quantity: int = Field(default=0, ge=0)
    carrier_scanned_bins: int = Field(default=0, ge=0)
    loaded_bins: int = Field(default=0, ge=0)

    @property
    def is_audited(self) -> bool:
        return self.expected_quantity == self.customer_scanned_quantity == self.carrier_scanned_quantity


class Invoice(BaseModel):
    id: str
    customer_code: str | None = None
    blocked: bool = False
    blocked_at: datetime | None = None
    audit_complete: bool = False
    dispatched_by: str | None = None
    dispatched_at: datetime | None = None
    vehicle_number: str | None = None
    gatepass_number: str | None = None
    lines: list[InvoiceLine] = Field(default_factory=list)


class _ScanBase(BaseModel):
    id: str
    invoice_id: str
    invoice_line_id: str
    customer_payload: str
    customer_bin_id: str
    bin_quantity: int = Field(ge=0)
    scanned_by: str | None = None
    scanned_at: datetime


class PendingCustomerScan(_ScanBase):
    stage: Literal["customer"] = "customer"
    status: Literal["pending"] = "pending"
    scan_context: Literal["audit"] = "audit"


class PairedScan(_ScanBase):
    stage: Literal["paired"] = "paired"
    status: Literal["matched"] = "matched"
    scan_context: Literal["audit"] = "audit"
    carrier_payload: str
    carrier_bin_id: str
    paired_by: str | None = None
    paired_at: datetime | None = None


class LoadedScan(_ScanBase):
    stage: Literal["loaded"] = "loaded"
    status: Literal["matched"] = "matched"
    scan_context: Literal["loading"] = "loading"


ScanRecord = Annotated[
    Union[PendingCustomerScan, PairedScan, LoadedScan],
    Field(discriminator="stage"),
]


class ScanSnapshot(BaseModel):
    part_code: str | None = None
    bin_id: str | None = None
    quantity: str | None = None
    raw: str | None = None


class MismatchAlert(BaseModel):
    id: str
    invoice_id: str
    stage: ScanContext
    validation_step: ValidationStep
    customer_scan: ScanSnapshot | None = None
    carrier_scan: ScanSnapshot | None = None
    status: AlertStatus = "pending"
    reported_by: str | None = None
    reviewed_by: str | None = None
    reviewed_at: datetime | None = None
    created_at: datetime

    @property
    def is_customer_stage(self) -> bool:
        return self.validation_step in CUSTOMER_STAGE_STEPS


class Gatepass(BaseModel):
    gatepass_number: str
    vehicle_number: str
    customer_code: str | None = None
    invoice_ids: list[str]
    total_bins: int = Field(ge=0)
    total_quantity: int = Field(ge=0)
    authorized_by: str
    dispatched_at: datetime


class ScanOutcome(BaseModel):
    record: ScanRecord
    line: InvoiceLine
    audit_complete: bool


class ResolutionOutcome(BaseModel):
    alert: MismatchAlert
    invoice_blocked: bool
    rolled_back_scan_ids: list[str] = Field(default_factory=list)


class InvoiceLineIn(BaseModel):
    id: str | None = None
    customer_part_code: str = Field(min_length=1)
    carrier_part_code: str = Field(min_length=1)
    expected_quantity: int = Field(ge=0)

    @field_validator("customer_part_code", "carrier_part_code")
    @classmethod
    def _normalize_part_code(cls, value: str) -> str:
        normalized = normalize_field(value)
        if not normalized:
            raise ValueError("part code must not be blank")
        return normalized


class InvoiceIn(BaseModel):
    id: str = Field(min_length=1)
    customer_code: str | None = None
    lines: list[InvoiceLineIn] = Field(min_length=1)


class CustomerScanRequest(BaseModel):
    customer_payload: str
    scanned_by: str = Field(min_length=1)


class CarrierScanRequest(BaseModel):
    carrier_payload: str
    scanned_by: str = Field(min_length=1)
    customer_payload: str | None = None


class PairedScanRequest(BaseModel):
    customer_payload: str
    carrier_payload: str
    scanned_by: str = Field(min_length=1)


class DispatchRequest(BaseModel):
    invoice_ids: list[str] = Field(min_length=1)
    vehicle_number: str = Field(min_length=1)
    dispatched_by: str = Field(min_length=1)


class MismatchReportRequest(BaseModel):
    invoice_id: str
    validation_step: ValidationStep
    reported_by: str = Field(min_length=1)
    stage: ScanContext = "audit"
    customer_scan: ScanSnapshot | None = None
    carrier_scan: ScanSnapshot | None = None


class AlertDecisionRequest(BaseModel):
    status: Literal["approved", "rejected"]
    reviewed_by: str = Field(min_length=1)
