# src/chaosproxy/stats.py
"""In-memory request counters for one proxy."""

import threading
from dataclasses import dataclass, field
from typing import Any


@dataclass
class ProxyStats:
    """Thread-safe counters of fault-injection outcomes.

    Every request increments ``total_requests`` and exactly one of
    ``forwarded``, ``dropped``, ``forward_errors`` or ``cancelled``.
    """

    total_requests: int = 0
    forwarded: int = 0
    dropped: int = 0
    forward_errors: int = 0
    cancelled: int = 0
    pre_delay_ms: float = 0.0
    post_delay_ms: float = 0.0
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False, compare=False)

    def record_request(self) -> None:
        with self._lock:
            self.total_requests += 1

    def record_delay(self, *, pre_sec: float = 0.0, post_sec: float = 0.0) -> None:
        with self._lock:
            self.pre_delay_ms += pre_sec * 1000
            self.post_delay_ms += post_sec * 1000

    def record_outcome(self, outcome: str) -> None:
        """Count a finished request.

        Args:
            outcome: One of "forwarded", "dropped", "forward_error", "cancelled".
        """
        with self._lock:
            if outcome == "forwarded":
                self.forwarded += 1
            elif outcome == "dropped":
                self.dropped += 1
            elif outcome == "forward_error":
                self.forward_errors += 1
            elif outcome == "cancelled":
                self.cancelled += 1
            else:
                raise ValueError(f"Unknown outcome: {outcome}")

    def snapshot(self) -> dict[str, Any]:
        """Return a consistent copy of all counters."""
        with self._lock:
            return {
                "total_requests": self.total_requests,
                "forwarded": self.forwarded,
                "dropped": self.dropped,
                "forward_errors": self.forward_errors,
                "cancelled": self.cancelled,
                "pre_delay_ms": round(self.pre_delay_ms, 3),
                "post_delay_ms": round(self.post_delay_ms, 3),
            }

    def reset(self) -> None:
        with self._lock:
            self.total_requests = 0
            self.forwarded = 0
            self.dropped = 0
            self.forward_errors = 0
            self.cancelled = 0
            self.pre_delay_ms = 0.0
            self.post_delay_ms = 0.0
