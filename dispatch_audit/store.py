from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterator
from uuid import uuid4

from dispatch_audit.errors import (
    AlertNotFoundError,
    DuplicateInvoiceError,
    InvoiceNotFoundError,
)
from schemas.scan_schema import (
    Gatepass,
    Invoice,
    InvoiceLine,
    InvoiceLineIn,
    LoadedScan,
    MismatchAlert,
    PairedScan,
    PendingCustomerScan,
    ScanRecord,
    ScanSnapshot,
)

Clock = Callable[[], datetime]

_SCHEMA = """
CREATE TABLE IF NOT EXISTS invoices (
    id TEXT PRIMARY KEY,
    customer_code TEXT,
    blocked INTEGER NOT NULL DEFAULT 0,
    blocked_at TEXT,
    audit_complete INTEGER NOT NULL DEFAULT 0,
    dispatched_by TEXT,
    dispatched_at TEXT,
    vehicle_number TEXT,
    gatepass_number TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS invoice_lines (
    id TEXT PRIMARY KEY,
    invoice_id TEXT NOT NULL REFERENCES invoices(id) ON DELETE CASCADE,
    customer_part_code TEXT NOT NULL,
    carrier_part_code TEXT NOT NULL,
    expected_quantity INTEGER NOT NULL CHECK (expected_quantity >= 0),
    number_of_bins INTEGER,
    customer_scanned_quantity INTEGER NOT NULL DEFAULT 0,
    customer_scanned_bins INTEGER NOT NULL DEFAULT 0,
    carrier_scanned_quantity INTEGER NOT NULL DEFAULT 0,
    carrier_scanned_bins INTEGER NOT NULL DEFAULT 0,
    loaded_bins INTEGER NOT NULL DEFAULT 0,
    CHECK (customer_scanned_quantity <= expected_quantity),
    CHECK (carrier_scanned_quantity <= expected_quantity)
);

CREATE TABLE IF NOT EXISTS scan_records (
    id TEXT PRIMARY KEY,
    invoice_id TEXT NOT NULL REFERENCES invoices(id) ON DELETE CASCADE,
    invoice_line_id TEXT REFERENCES invoice_lines(id) ON DELETE CASCADE,
    stage TEXT NOT NULL CHECK (stage IN ('customer', 'paired')),
    scan_context TEXT NOT NULL CHECK (scan_context IN ('audit', 'loading')),
    status TEXT NOT NULL CHECK (status IN ('pending', 'matched')),
    customer_payload TEXT NOT NULL,
    carrier_payload TEXT,
    customer_bin_id TEXT,
    carrier_bin_id TEXT,
    bin_quantity INTEGER NOT NULL,
    scanned_by TEXT,
    scanned_at TEXT NOT NULL,
    paired_by TEXT,
    paired_at TEXT
);

CREATE TABLE IF NOT EXISTS mismatch_alerts (
    id TEXT PRIMARY KEY,
    invoice_id TEXT NOT NULL REFERENCES invoices(id) ON DELETE CASCADE,
    stage TEXT NOT NULL CHECK (stage IN ('audit', 'loading')),
    validation_step TEXT NOT NULL,
    customer_scan TEXT,
    carrier_scan TEXT,
    status TEXT NOT NULL DEFAULT 'pending' CHECK (status IN ('pending', 'approved', 'rejected')),
    reported_by TEXT,
    reviewed_by TEXT,
    reviewed_at TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS gatepasses (
    gatepass_number TEXT PRIMARY KEY,
    vehicle_number TEXT NOT NULL,
    customer_code TEXT,
    invoice_ids TEXT NOT NULL,
    total_bins INTEGER NOT NULL,
    total_quantity INTEGER NOT NULL,
    authorized_by TEXT NOT NULL,
    dispatched_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_lines_invoice_customer ON invoice_lines(invoice_id, customer_part_code);
CREATE INDEX IF NOT EXISTS idx_lines_invoice_carrier ON invoice_lines(invoice_id, carrier_part_code);
CREATE INDEX IF NOT EXISTS idx_scans_line_ctx_customer_bin
    ON scan_records(invoice_line_id, scan_context, customer_bin_id);
CREATE INDEX IF NOT EXISTS idx_scans_line_ctx_carrier_bin
    ON scan_records(invoice_line_id, scan_context, carrier_bin_id);
CREATE INDEX IF NOT EXISTS idx_scans_invoice_pending
    ON scan_records(invoice_id, scan_context, stage, status, scanned_at);
CREATE INDEX IF NOT EXISTS idx_alerts_invoice_status ON mismatch_alerts(invoice_id, status);
"""

_LINE_COLUMNS = (
    "id, invoice_id, customer_part_code, carrier_part_code, expected_quantity, number_of_bins, "
    "customer_scanned_quantity, customer_scanned_bins, carrier_scanned_quantity, "
    "carrier_scanned_bins, loaded_bins"
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _snapshot_json(snapshot: ScanSnapshot | None) -> str | None:
    if snapshot is None:
        return None
    return json.dumps(snapshot.model_dump(), ensure_ascii=True)


def _snapshot_from_json(value: str | None) -> ScanSnapshot | None:
    if not value:
        return None
    return ScanSnapshot.model_validate(json.loads(value))


def _row_to_line(row: sqlite3.Row) -> InvoiceLine:
    return InvoiceLine.model_validate(dict(row))


def _row_to_scan(row: sqlite3.Row) -> ScanRecord:
    data = dict(row)
    common = {
        "id": data["id"],
        "invoice_id": data["invoice_id"],
        "invoice_line_id": data["invoice_line_id"],
        "customer_payload": data["customer_payload"],
        "customer_bin_id": data["customer_bin_id"] or "",
        "bin_quantity": data["bin_quantity"],
        "scanned_by": data["scanned_by"],
        "scanned_at": data["scanned_at"],
    }
    if data["scan_context"] == "loading":
        return LoadedScan(**common)
    if data["stage"] == "paired":
        return PairedScan(
            **common,
            carrier_payload=data["carrier_payload"] or "",
            carrier_bin_id=data["carrier_bin_id"] or "",
            paired_by=data["paired_by"],
            paired_at=data["paired_at"],
        )
    return PendingCustomerScan(**common)


def _row_to_alert(row: sqlite3.Row) -> MismatchAlert:
    data = dict(row)
    data["customer_scan"] = _snapshot_from_json(data["customer_scan"])
    data["carrier_scan"] = _snapshot_from_json(data["carrier_scan"])
    return MismatchAlert.model_validate(data)


class ScanTransaction:
    """Unit of work over one open sqlite transaction.

    Every method uses parameterized queries. The transaction is opened with
    BEGIN IMMEDIATE, so the database write lock is already held when a pending
    row is read for pairing.
    """

    def __init__(self, conn: sqlite3.Connection, clock: Clock) -> None:
        self._conn = conn
        self._clock = clock

    def now(self) -> str:
        return format_timestamp(self._clock())

    # invoices

    def create_invoice(
        self,
        invoice_id: str,
        lines: list[InvoiceLineIn],
        customer_code: str | None = None,
    ) -> Invoice:
        now = self.now()
        try:
            self._conn.execute(
                "INSERT INTO invoices (id, customer_code, created_at) VALUES (?, ?, ?)",
                (invoice_id, customer_code, now),
            )
        except sqlite3.IntegrityError as exc:
            raise DuplicateInvoiceError(f"Invoice {invoice_id} already exists", invoice_id=invoice_id) from exc
        for line in lines:
            self._conn.execute(
                """
                INSERT INTO invoice_lines
                (id, invoice_id, customer_part_code, carrier_part_code, expected_quantity)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    line.id or str(uuid4()),
                    invoice_id,
                    line.customer_part_code,
                    line.carrier_part_code,
                    line.expected_quantity,
                ),
            )
        return self.require_invoice(invoice_id)

    def get_invoice(self, invoice_id: str) -> Invoice | None:
        row = self._conn.execute("SELECT * FROM invoices WHERE id = ?", (invoice_id,)).fetchone()
        if row is None:
            return None
        data = dict(row)
        data.pop("created_at", None)
        data["blocked"] = bool(data["blocked"])
        data["audit_complete"] = bool(data["audit_complete"])
        data["lines"] = self.lines_for_invoice(invoice_id)
        return Invoice.model_validate(data)

    def require_invoice(self, invoice_id: str) -> Invoice:
        invoice = self.get_invoice(invoice_id)
        if invoice is None:
            raise InvoiceNotFoundError(f"Invoice {invoice_id} not found", invoice_id=invoice_id)
        return invoice

    def set_blocked(self, invoice_id: str, blocked: bool) -> None:
        self._conn.execute(
            "UPDATE invoices SET blocked = ?, blocked_at = ? WHERE id = ?",
            (int(blocked), self.now() if blocked else None, invoice_id),
        )

    def recompute_audit_complete(self, invoice_id: str) -> bool:
        lines = self.lines_for_invoice(invoice_id)
        complete = bool(lines) and all(line.is_audited for line in lines)
        self._conn.execute(
            "UPDATE invoices SET audit_complete = ? WHERE id = ?",
            (int(complete), invoice_id),
        )
        return complete

    def mark_dispatched(
        self,
        invoice_id: str,
        *,
        dispatched_by: str,
        vehicle_number: str,
        gatepass_number: str,
        dispatched_at: str,
    ) -> None:
        self._conn.execute(
            """
            UPDATE invoices
            SET dispatched_by = ?, dispatched_at = ?, vehicle_number = ?, gatepass_number = ?
            WHERE id = ?
            """,
            (dispatched_by, dispatched_at, vehicle_number, gatepass_number, invoice_id),
        )

    # invoice lines

    def lines_for_invoice(self, invoice_id: str) -> list[InvoiceLine]:
        rows = self._conn.execute(
            f"SELECT {_LINE_COLUMNS} FROM invoice_lines WHERE invoice_id = ? ORDER BY rowid",
            (invoice_id,),
        ).fetchall()
        return [_row_to_line(row) for row in rows]

    def get_line(self, line_id: str) -> InvoiceLine:
        row = self._conn.execute(
            f"SELECT {_LINE_COLUMNS} FROM invoice_lines WHERE id = ?",
            (line_id,),
        ).fetchone()
        if row is None:
            raise LookupError(f"Invoice line {line_id} not found")
        return _row_to_line(row)

    def find_lines(
        self,
        invoice_id: str,
        *,
        customer_part_code: str | None = None,
        carrier_part_code: str | None = None,
    ) -> list[InvoiceLine]:
        clauses = ["invoice_id = ?"]
        params: list[Any] = [invoice_id]
        if customer_part_code is not None:
            clauses.append("customer_part_code = ?")
            params.append(customer_part_code)
        if carrier_part_code is not None:
            clauses.append("carrier_part_code = ?")
            params.append(carrier_part_code)
        rows = self._conn.execute(
            f"SELECT {_LINE_COLUMNS} FROM invoice_lines WHERE {' AND '.join(clauses)} ORDER BY rowid",
            tuple(params),
        ).fetchall()
        return [_row_to_line(row) for row in rows]

    def set_number_of_bins_if_unset(self, line_id: str, number_of_bins: int) -> None:
        self._conn.execute(
            "UPDATE invoice_lines SET number_of_bins = COALESCE(number_of_bins, ?) WHERE id = ?",
            (number_of_bins, line_id),
        )

    def add_customer_counts(self, line_id: str, quantity: int, bins: int = 1) -> None:
        self._conn.execute(
            """
            UPDATE invoice_lines
            SET customer_scanned_quantity = MAX(customer_scanned_quantity + ?, 0),
                customer_scanned_bins = MAX(customer_scanned_bins + ?, 0)
            WHERE id = ?
            """,
            (quantity, bins, line_id),
        )

    def add_carrier_counts(self, line_id: str, quantity: int, bins: int = 1) -> None:
        self._conn.execute(
            """
            UPDATE invoice_lines
            SET carrier_scanned_quantity = MAX(carrier_scanned_quantity + ?, 0),
                carrier_scanned_bins = MAX(carrier_scanned_bins + ?, 0)
            WHERE id = ?
            """,
            (quantity, bins, line_id),
        )

    def add_loaded_bins(self, line_id: str, bins: int = 1) -> None:
        self._conn.execute(
            "UPDATE invoice_lines SET loaded_bins = MAX(loaded_bins + ?, 0) WHERE id = ?",
            (bins, line_id),
        )

    # scan records

    def bin_recorded(
        self,
        line_id: str,
        scan_context: str,
        *,
        customer_bin_id: str | None = None,
        carrier_bin_id: str | None = None,
        payload_keys: tuple[str, ...] = (),
    ) -> bool:
        matches: list[str] = []
        params: list[Any] = [line_id, scan_context]
        if customer_bin_id is not None:
            matches.append("customer_bin_id = ?")
            params.append(customer_bin_id)
        if carrier_bin_id is not None:
            matches.append("carrier_bin_id = ?")
            params.append(carrier_bin_id)
        if payload_keys:
            placeholders = ", ".join("?" for _ in payload_keys)
            matches.append(f"customer_payload IN ({placeholders})")
            params.extend(payload_keys)
        if not matches:
            return False
        row = self._conn.execute(
            f"""
            SELECT 1 FROM scan_records
            WHERE invoice_line_id = ? AND scan_context = ? AND ({' OR '.join(matches)})
            LIMIT 1
            """,
            tuple(params),
        ).fetchone()
        return row is not None

    def latest_pending_customer_scan(
        self,
        line_id: str,
        customer_bin_id: str | None = None,
    ) -> PendingCustomerScan | None:
        query = """
            SELECT * FROM scan_records
            WHERE invoice_line_id = ? AND scan_context = 'audit'
              AND stage = 'customer' AND status = 'pending'
        """
        params: list[Any] = [line_id]
        if customer_bin_id is not None:
            query += " AND customer_bin_id = ?"
            params.append(customer_bin_id)
        query += " ORDER BY scanned_at DESC, rowid DESC LIMIT 1"
        row = self._conn.execute(query, tuple(params)).fetchone()
        if row is None:
            return None
        scan = _row_to_scan(row)
        if not isinstance(scan, PendingCustomerScan):
            raise LookupError(f"Scan {scan.id} is not a pending customer scan")
        return scan

    def pending_customer_scans_before(self, invoice_id: str, before: str) -> list[PendingCustomerScan]:
        rows = self._conn.execute(
            """
            SELECT * FROM scan_records
            WHERE invoice_id = ? AND scan_context = 'audit'
              AND stage = 'customer' AND status = 'pending'
              AND scanned_at < ?
            ORDER BY scanned_at, rowid
            """,
            (invoice_id, before),
        ).fetchall()
        return [scan for scan in map(_row_to_scan, rows) if isinstance(scan, PendingCustomerScan)]

    def _insert_scan(
        self,
        *,
        invoice_id: str,
        line_id: str,
        stage: str,
        scan_context: str,
        status: str,
        customer_payload: str,
        customer_bin_id: str,
        bin_quantity: int,
        scanned_by: str | None,
        carrier_payload: str | None = None,
        carrier_bin_id: str | None = None,
    ) -> ScanRecord:
        scan_id = str(uuid4())
        now = self.now()
        paired_at = now if stage == "paired" else None
        self._conn.execute(
            """
            INSERT INTO scan_records
            (id, invoice_id, invoice_line_id, stage, scan_context, status,
             customer_payload, carrier_payload, customer_bin_id, carrier_bin_id,
             bin_quantity, scanned_by, scanned_at, paired_by, paired_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                scan_id,
                invoice_id,
                line_id,
                stage,
                scan_context,
                status,
                customer_payload,
                carrier_payload,
                customer_bin_id,
                carrier_bin_id,
                bin_quantity,
                scanned_by,
                now,
                scanned_by if paired_at else None,
                paired_at,
            ),
        )
        return self.require_scan(scan_id)

    def insert_pending_customer_scan(
        self,
        *,
        invoice_id: str,
        line_id: str,
        customer_payload: str,
        customer_bin_id: str,
        bin_quantity: int,
        scanned_by: str | None,
    ) -> ScanRecord:
        return self._insert_scan(
            invoice_id=invoice_id,
            line_id=line_id,
            stage="customer",
            scan_context="audit",
            status="pending",
            customer_payload=customer_payload,
            customer_bin_id=customer_bin_id,
            bin_quantity=bin_quantity,
            scanned_by=scanned_by,
        )

    def insert_paired_scan(
        self,
        *,
        invoice_id: str,
        line_id: str,
        customer_payload: str,
        customer_bin_id: str,
        carrier_payload: str,
        carrier_bin_id: str,
        bin_quantity: int,
        scanned_by: str | None,
    ) -> ScanRecord:
        return self._insert_scan(
            invoice_id=invoice_id,
            line_id=line_id,
            stage="paired",
            scan_context="audit",
            status="matched",
            customer_payload=customer_payload,
            customer_bin_id=customer_bin_id,
            carrier_payload=carrier_payload,
            carrier_bin_id=carrier_bin_id,
            bin_quantity=bin_quantity,
            scanned_by=scanned_by,
        )

    def insert_loaded_scan(
        self,
        *,
        invoice_id: str,
        line_id: str,
        customer_payload: str,
        customer_bin_id: str,
        bin_quantity: int,
        scanned_by: str | None,
    ) -> ScanRecord:
        return self._insert_scan(
            invoice_id=invoice_id,
            line_id=line_id,
            stage="customer",
            scan_context="loading",
            status="matched",
            customer_payload=customer_payload,
            customer_bin_id=customer_bin_id,
            bin_quantity=bin_quantity,
            scanned_by=scanned_by,
        )

    def complete_pairing(
        self,
        scan_id: str,
        *,
        carrier_payload: str,
        carrier_bin_id: str,
        paired_by: str | None,
    ) -> ScanRecord:
        cursor = self._conn.execute(
            """
            UPDATE scan_records
            SET stage = 'paired', status = 'matched', carrier_payload = ?, carrier_bin_id = ?,
                paired_by = ?, paired_at = ?
            WHERE id = ? AND stage = 'customer' AND status = 'pending'
            """,
            (carrier_payload, carrier_bin_id, paired_by, self.now(), scan_id),
        )
        if cursor.rowcount != 1:
            raise LookupError(f"Pending scan {scan_id} is no longer pending")
        return self.require_scan(scan_id)

    def get_scan(self, scan_id: str) -> ScanRecord | None:
        row = self._conn.execute("SELECT * FROM scan_records WHERE id = ?", (scan_id,)).fetchone()
        return None if row is None else _row_to_scan(row)

    def require_scan(self, scan_id: str) -> ScanRecord:
        scan = self.get_scan(scan_id)
        if scan is None:
            raise LookupError(f"Scan {scan_id} not found")
        return scan

    def delete_scan(self, scan_id: str) -> None:
        self._conn.execute("DELETE FROM scan_records WHERE id = ?", (scan_id,))

    def list_scans(self, invoice_id: str, scan_context: str | None = None) -> list[ScanRecord]:
        query = "SELECT * FROM scan_records WHERE invoice_id = ?"
        params: list[Any] = [invoice_id]
        if scan_context is not None:
            query += " AND scan_context = ?"
            params.append(scan_context)
        query += " ORDER BY scanned_at DESC, rowid DESC"
        return [_row_to_scan(row) for row in self._conn.execute(query, tuple(params)).fetchall()]

    def count_loading_scans(self, line_id: str) -> int:
        row = self._conn.execute(
            "SELECT COUNT(*) FROM scan_records WHERE invoice_line_id = ? AND scan_context = 'loading'",
            (line_id,),
        ).fetchone()
        return int(row[0])

    def distinct_audit_customer_bins(self, line_id: str) -> int:
        row = self._conn.execute(
            """
            SELECT COUNT(DISTINCT customer_bin_id) FROM scan_records
            WHERE invoice_line_id = ? AND scan_context = 'audit' AND customer_bin_id IS NOT NULL
            """,
            (line_id,),
        ).fetchone()
        return int(row[0])

    # mismatch alerts

    def insert_alert(
        self,
        *,
        invoice_id: str,
        stage: str,
        validation_step: str,
        reported_by: str | None,
        customer_scan: ScanSnapshot | None = None,
        carrier_scan: ScanSnapshot | None = None,
    ) -> MismatchAlert:
        alert_id = str(uuid4())
        self._conn.execute(
            """
            INSERT INTO mismatch_alerts
            (id, invoice_id, stage, validation_step, customer_scan, carrier_scan,
             status, reported_by, created_at)
            VALUES (?, ?, ?, ?, ?, ?, 'pending', ?, ?)
            """,
            (
                alert_id,
                invoice_id,
                stage,
                validation_step,
                _snapshot_json(customer_scan),
                _snapshot_json(carrier_scan),
                reported_by,
                self.now(),
            ),
        )
        return self.require_alert(alert_id)

    def get_alert(self, alert_id: str) -> MismatchAlert | None:
        row = self._conn.execute("SELECT * FROM mismatch_alerts WHERE id = ?", (alert_id,)).fetchone()
        return None if row is None else _row_to_alert(row)

    def require_alert(self, alert_id: str) -> MismatchAlert:
        alert = self.get_alert(alert_id)
        if alert is None:
            raise AlertNotFoundError(f"Alert {alert_id} not found", alert_id=alert_id)
        return alert

    def update_alert_status(self, alert_id: str, status: str, reviewed_by: str) -> MismatchAlert:
        self._conn.execute(
            "UPDATE mismatch_alerts SET status = ?, reviewed_by = ?, reviewed_at = ? WHERE id = ?",
            (status, reviewed_by, self.now(), alert_id),
        )
        return self.require_alert(alert_id)

    def list_alerts(self, status: str | None = None, invoice_id: str | None = None) -> list[MismatchAlert]:
        clauses: list[str] = []
        params: list[Any] = []
        if status:
            clauses.append("status = ?")
            params.append(status)
        if invoice_id:
            clauses.append("invoice_id = ?")
            params.append(invoice_id)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._conn.execute(
            f"SELECT * FROM mismatch_alerts{where} ORDER BY created_at DESC, rowid DESC",
            tuple(params),
        ).fetchall()
        return [_row_to_alert(row) for row in rows]

    # gatepasses

    def insert_gatepass(self, gatepass: Gatepass) -> None:
        self._conn.execute(
            """
            INSERT INTO gatepasses
            (gatepass_number, vehicle_number, customer_code, invoice_ids,
             total_bins, total_quantity, authorized_by, dispatched_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                gatepass.gatepass_number,
                gatepass.vehicle_number,
                gatepass.customer_code,
                json.dumps(gatepass.invoice_ids),
                gatepass.total_bins,
                gatepass.total_quantity,
                gatepass.authorized_by,
                format_timestamp(gatepass.dispatched_at),
            ),
        )


class ScanStore:
    def __init__(
        self,
        db_path: str | Path = "data/dispatch.db",
        *,
        timeout_seconds: float = 10.0,
        clock: Clock = utc_now,
    ) -> None:
        self._db_path = str(db_path)
        self._timeout = timeout_seconds
        self._clock = clock
        Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, timeout=self._timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA foreign_keys=ON;")
        return conn

    def _ensure_schema(self) -> None:
        conn = self._connect()
        try:
            conn.executescript(_SCHEMA)
        finally:
            conn.close()

    def now(self) -> datetime:
        return self._clock()

    @contextmanager
    def transaction(self) -> Iterator[ScanTransaction]:
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield ScanTransaction(conn, self._clock)
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()
