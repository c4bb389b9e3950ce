from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from threading import Lock
from typing import Dict


@dataclass
class LoyaltySnapshot:
    ledger: Dict[str, int]
    points: Dict[str, int]
    rejections: Dict[str, int]
    sweeps: Dict[str, int]

    def as_dict(self) -> Dict[str, object]:
        return {
            "ledger": dict(self.ledger),
            "points": dict(self.points),
            "rejections": dict(self.rejections),
            "sweeps": dict(self.sweeps),
        }


class LoyaltyObservabilityStore:
    """Collect ledger and sweep telemetry for dashboards and alerting."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._ledger: Dict[str, int] = defaultdict(int)
        self._points: Dict[str, int] = defaultdict(int)
        self._rejections: Dict[str, int] = defaultdict(int)
        self._sweeps: Dict[str, int] = defaultdict(int)

    def record_ledger_event(self, event: str, points: int) -> None:
        with self._lock:
            self._ledger[event] += 1
            self._points[event] += abs(points)

    def record_rejection(self, code: str) -> None:
        with self._lock:
            self._rejections[code] += 1

    def record_sweep(self, sweep: str, *, processed: int, expired: int, failures: int) -> None:
        with self._lock:
            self._sweeps[f"{sweep}:runs"] += 1
            self._sweeps[f"{sweep}:customers"] += processed
            self._sweeps[f"{sweep}:points"] += expired
            self._sweeps[f"{sweep}:failures"] += failures

    def snapshot(self) -> LoyaltySnapshot:
        with self._lock:
            return LoyaltySnapshot(
                ledger=dict(self._ledger),
                points=dict(self._points),
                rejections=dict(self._rejections),
                sweeps=dict(self._sweeps),
            )

    def reset(self) -> None:
        with self._lock:
            self._ledger.clear()
            self._points.clear()
            self._rejections.clear()
            self._sweeps.clear()


_STORE = LoyaltyObservabilityStore()


def get_loyalty_store() -> LoyaltyObservabilityStore:
    return _STORE


__all__ = ["get_loyalty_store", "LoyaltyObservabilityStore", "LoyaltySnapshot"]
