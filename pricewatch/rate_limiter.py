from __future__ import annotations

import threading
import time
from typing import Optional

from .backoff import cancellable_sleep


class RateLimiter:
    """Thread-safe pacing of outgoing page requests by queries per second.

    Each caller reserves the next free send slot under the lock and then
    waits for it outside the lock, so a stop signal can interrupt the wait
    without holding other extractors up."""

    def __init__(self, qps: float) -> None:
        self._interval = 1.0 / qps if qps > 0 else 0.0
        self._lock = threading.Lock()
        self._next_allowed = 0.0

    def reserve(self) -> float:
        """Claim the next send slot and return how long to wait for it."""
        if self._interval <= 0:
            return 0.0
        with self._lock:
            now = time.monotonic()
            slot = max(self._next_allowed, now)
            self._next_allowed = slot + self._interval
            return slot - now

    def acquire(self, stop_event: Optional[threading.Event] = None) -> None:
        """Block until the next request is permitted, or raise CrawlCancelled."""
        wait = self.reserve()
        if wait > 0:
            cancellable_sleep(wait, stop_event)
