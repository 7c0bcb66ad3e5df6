from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest

from dispatch_audit.store import ScanStore
from schemas.scan_schema import InvoiceLineIn


class _FakeClock:
    def __init__(self) -> None:
        self.current = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        self.current += timedelta(seconds=1)
        return self.current


class _RecordingPublisher:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    def publish(self, event_name: str, payload: dict[str, Any]) -> None:
        self.events.append((event_name, payload))

    def names(self) -> list[str]:
        return [name for name, _ in self.events]


class _Labels:
    @staticmethod
    def customer(bin_id: str, part_code: str, quantity: int | str) -> str:
        return f"{bin_id:<35}{part_code:<15}{quantity}"

    @staticmethod
    def carrier(bin_id: str, part_code: str, quantity: int | str) -> str:
        return f"S{bin_id}P{part_code}Q{quantity}"


@pytest.fixture
def clock() -> _FakeClock:
    return _FakeClock()


@pytest.fixture
def store(tmp_path: Path, clock: _FakeClock) -> ScanStore:
    return ScanStore(db_path=tmp_path / "dispatch.db", clock=clock)


@pytest.fixture
def publisher() -> _RecordingPublisher:
    return _RecordingPublisher()


@pytest.fixture
def labels() -> _Labels:
    return _Labels()


@pytest.fixture
def make_invoice(store: ScanStore):
    def _make(
        invoice_id: str = "INV-1",
        lines: list[tuple[str, str, int]] | None = None,
        customer_code: str | None = "CUST-01",
    ) -> list[str]:
        specs = lines or [("CUST-A1", "CAR-A1", 16)]
        line_ins = [
            InvoiceLineIn(
                id=f"{invoice_id}-L{index}",
                customer_part_code=customer_part,
                carrier_part_code=carrier_part,
                expected_quantity=expected,
            )
            for index, (customer_part, carrier_part, expected) in enumerate(specs, start=1)
        ]
        with store.transaction() as tx:
            tx.create_invoice(invoice_id, line_ins, customer_code)
        return [line.id for line in line_ins if line.id]

    return _make
