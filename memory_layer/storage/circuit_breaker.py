"""
Circuit breaker owned by the durable store.

State only changes through the transition methods below, all under one lock,
so a trip and a post-cooldown reset can never interleave.
"""

from __future__ import annotations

import threading
import time
from typing import Callable, Optional

CLOSED = "closed"
OPEN = "open"
RESET_DUE = "reset_due"


class StoreCircuitBreaker:
    def __init__(
        self,
        failure_threshold: int = 5,
        cooldown_seconds: float = 10.0,
        clock: Callable[[], float] = time.time,
    ):
        self._failure_threshold = max(1, failure_threshold)
        self._cooldown_seconds = max(0.0, cooldown_seconds)
        self._clock = clock
        self._lock = threading.Lock()
        self._consecutive_failures = 0
        self._open = False
        self._opened_at = 0.0
        self._reset_in_flight = False
        self._trip_count = 0
        self._last_error: Optional[str] = None
        self._last_failure_ts: Optional[float] = None
        self._last_success_ts: Optional[float] = None

    def is_open(self) -> bool:
        with self._lock:
            return self._open

    def record_failure(self, error: str) -> bool:
        """Count one consecutive failure. Returns True when this call trips the breaker."""
        with self._lock:
            self._consecutive_failures += 1
            self._last_error = error
            self._last_failure_ts = self._clock()
            if self._open or self._consecutive_failures < self._failure_threshold:
                return False
            self._open = True
            self._opened_at = self._last_failure_ts
            self._trip_count += 1
            return True

    def record_success(self) -> None:
        with self._lock:
            self._consecutive_failures = 0
            self._last_success_ts = self._clock()

    def check(self) -> str:
        """
        Return CLOSED, OPEN or RESET_DUE.

        RESET_DUE is handed to exactly one caller once the cooldown has
        elapsed; that caller must finish with ``complete_reset``. Everyone else
        keeps seeing OPEN until then.
        """
        with self._lock:
            if not self._open:
                return CLOSED
            if self._reset_in_flight:
                return OPEN
            if self._clock() - self._opened_at < self._cooldown_seconds:
                return OPEN
            self._reset_in_flight = True
            return RESET_DUE

    def complete_reset(self, succeeded: bool) -> None:
        with self._lock:
            self._reset_in_flight = False
            if succeeded:
                self._open = False
                self._consecutive_failures = 0
                self._last_success_ts = self._clock()
            else:
                # restart the cooldown window
                self._opened_at = self._clock()

    def status(self) -> dict:
        with self._lock:
            cooldown_until = self._opened_at + self._cooldown_seconds if self._open else None
            return {
                "open": self._open,
                "consecutive_failures": self._consecutive_failures,
                "failure_threshold": self._failure_threshold,
                "trip_count": self._trip_count,
                "cooldown_until_epoch": int(cooldown_until) if cooldown_until else None,
                "last_error": self._last_error,
                "last_failure_epoch": int(self._last_failure_ts) if self._last_failure_ts else None,
                "last_success_epoch": int(self._last_success_ts) if self._last_success_ts else None,
            }
