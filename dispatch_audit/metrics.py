from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Any


@dataclass
class MetricsCollector:
    counters: Counter[str] = field(default_factory=Counter)

    def increment(self, name: str, value: int = 1) -> None:
        self.counters[name] += value

    def snapshot(self) -> dict[str, Any]:
        return {
            "scans_accepted_total": self.counters.get("scans_accepted_total", 0),
            "scans_duplicate_total": self.counters.get("scans_duplicate_total", 0),
            "scans_over_scan_total": self.counters.get("scans_over_scan_total", 0),
            "scans_rejected_total": self.counters.get("scans_rejected_total", 0),
            "alerts_raised_total": self.counters.get("alerts_raised_total", 0),
            "alerts_approved_total": self.counters.get("alerts_approved_total", 0),
            "alerts_rejected_total": self.counters.get("alerts_rejected_total", 0),
            "dispatches_total": self.counters.get("dispatches_total", 0),
        }
