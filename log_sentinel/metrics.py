from __future__ import annotations

import threading
from typing import Dict


class MonitorStats:
    """In-memory counters for one monitor instance.

    Delivery counters are bumped from worker threads, so they share a lock.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.events = 0
        self.lines = 0
        self.alerts = 0
        self.deliveries: Dict[str, Dict[str, int]] = {}

    def increment_delivery(self, name: str, success: bool = True) -> None:
        with self._lock:
            entry = self.deliveries.setdefault(name, {"success": 0, "error": 0})
            entry["success" if success else "error"] += 1

    def as_dict(self) -> Dict[str, object]:
        with self._lock:
            deliveries = {k: dict(v) for k, v in self.deliveries.items()}
        return {
            "events": self.events,
            "lines": self.lines,
            "alerts": self.alerts,
            "deliveries": deliveries,
        }

    def summary(self) -> str:
        d = self.as_dict()
        sent = sum(v["success"] for v in d["deliveries"].values())
        failed = sum(v["error"] for v in d["deliveries"].values())
        return f"events={d['events']} lines={d['lines']} alerts={d['alerts']} sent={sent} failed={failed}"
