"""
In-process storage counters and gauges exposed through health endpoints.
"""

from __future__ import annotations

import threading
import time
from typing import Optional


def _series_key(name: str, labels: dict) -> str:
    if not labels:
        return name
    rendered = ",".join(f"{key}={labels[key]}" for key in sorted(labels))
    return f"{name}{{{rendered}}}"


class StorageMetrics:
    def __init__(self):
        self._lock = threading.Lock()
        self._counters: dict[str, int] = {}
        self._gauges: dict[str, float] = {}
        self._last_updated_ts: Optional[float] = None

    def increment(self, name: str, amount: int = 1, **labels) -> None:
        key = _series_key(name, labels)
        with self._lock:
            self._counters[key] = self._counters.get(key, 0) + amount
            self._last_updated_ts = time.time()

    def set_gauge(self, name: str, value: float, **labels) -> None:
        key = _series_key(name, labels)
        with self._lock:
            self._gauges[key] = value
            self._last_updated_ts = time.time()

    def counter(self, name: str, **labels) -> int:
        with self._lock:
            return self._counters.get(_series_key(name, labels), 0)

    def gauge(self, name: str, **labels) -> Optional[float]:
        with self._lock:
            return self._gauges.get(_series_key(name, labels))

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "counters": dict(self._counters),
                "gauges": dict(self._gauges),
                "last_updated_epoch": int(self._last_updated_ts) if self._last_updated_ts else None,
            }
