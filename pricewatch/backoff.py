from __future__ import annotations

import random
import threading
import time
from typing import Optional

from .errors import CrawlCancelled


class BackoffStrategy:
    """Exponential backoff for retry delays.

    Computes the delay before retry ``attempt`` (0-based) as
    base * 2^attempt, capped at max_seconds, plus optional jitter."""

    def __init__(self, base_seconds: float = 5.0, max_seconds: Optional[float] = None, jitter: float = 0.0) -> None:
        self._base = base_seconds
        self._max = max_seconds
        self._jitter = jitter

    def get_sleep(self, attempt: int) -> float:
        """Calculate the backoff delay in seconds before retry ``attempt``."""
        delay = self._base * (2 ** max(attempt, 0))
        if self._max is not None:
            delay = min(self._max, delay)
        if self._jitter > 0:
            delay += random.uniform(0, delay * self._jitter)
        return delay


def cancellable_sleep(seconds: float, stop_event: Optional[threading.Event]) -> None:
    """Sleep for ``seconds`` unless ``stop_event`` is set first.

    Raises CrawlCancelled as soon as the event is set, including when it
    was already set on entry."""
    if stop_event is None:
        time.sleep(max(seconds, 0.0))
        return
    if stop_event.wait(max(seconds, 0.0)) or stop_event.is_set():
        raise CrawlCancelled("stopped during sleep")
