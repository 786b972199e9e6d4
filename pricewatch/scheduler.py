from __future__ import annotations

import threading
import time
from collections import deque
from typing import Deque, Dict, List, Optional, Protocol

from .logging_config import get_logger
from .models import CrawlStatus

logger = get_logger("scheduler")

# statuses in which a source is not using the shared extraction resource
RELEASING_STATUSES = frozenset({CrawlStatus.SLEEPING, CrawlStatus.ERROR, CrawlStatus.IDLE})


class Schedulable(Protocol):
    key: str
    started: bool

    def start(self) -> None: ...

    def grant(self) -> None: ...

    def stop(self) -> None: ...

    def join(self, timeout: Optional[float] = None) -> None: ...


class BoundedScheduler:
    """Admits at most ``max_concurrent`` crawl cycles into active scraping.

    The limit bounds simultaneous use of the heavy extraction resource, not
    the number of scheduled sources. A source gives its slot back whenever
    it reports sleeping, error or idle; when its own sleep ends it asks for
    a slot again through request_slot() and waits in the same FIFO queue as
    sources that have never run.
    """

    def __init__(self, max_concurrent: int) -> None:
        self._lock = threading.Lock()
        self._cv = threading.Condition(self._lock)
        self._limit = max(1, int(max_concurrent))
        self._cycles: Dict[str, Schedulable] = {}
        self._pending: Deque[Schedulable] = deque()
        self._active: set = set()
        self._running = False
        self._stopped = False

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def active_count(self) -> int:
        with self._lock:
            return len(self._active)

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def active_keys(self) -> List[str]:
        with self._lock:
            return sorted(self._active)

    def register(self, cycle: Schedulable) -> None:
        with self._lock:
            if cycle.key in self._cycles:
                raise ValueError(f"Duplicate source: {cycle.key}")
            self._cycles[cycle.key] = cycle

    def start_all(self) -> None:
        """Queue every registered cycle and admit up to the limit."""
        with self._lock:
            if self._running:
                logger.warning("Scheduler already running")
                return
            if not self._cycles:
                logger.info("No sources configured, nothing to schedule")
                return
            self._running = True
            self._stopped = False
            self._pending.extend(self._cycles.values())
        logger.info(f"Scheduling {len(self._cycles)} sources with {self._limit} concurrent slots")
        self.admit_next()

    def request_slot(self, cycle: Schedulable) -> None:
        """Re-queue a source whose sleep has ended."""
        with self._lock:
            if not self._running or cycle.key in self._active or cycle in self._pending:
                return
            self._pending.append(cycle)
        self.admit_next()

    def admit_next(self) -> None:
        """Admit queued sources while free slots remain."""
        while True:
            with self._lock:
                if not self._running or len(self._active) >= self._limit or not self._pending:
                    return
                cycle = self._pending.popleft()
                self._active.add(cycle.key)
                first_run = not cycle.started
            logger.info(f"Admitting {cycle.key} ({'start' if first_run else 'resume'})")
            try:
                if first_run:
                    cycle.start()
                else:
                    cycle.grant()
            except Exception as exc:  # noqa: BLE001
                logger.error(f"Failed to start {cycle.key}: {exc}")
                self.release(cycle.key)

    def notify_status(self, key: str, status: str) -> None:
        """Status hook wired into every cycle; releasing statuses free the slot."""
        if status in RELEASING_STATUSES:
            self.release(key)

    def release(self, key: str) -> None:
        with self._cv:
            if key not in self._active:
                return
            self._active.discard(key)
            self._cv.notify_all()
        self.admit_next()

    def stop_all(self) -> None:
        """Clear the queue, free every slot and stop every cycle. Safe to call repeatedly."""
        with self._cv:
            if self._stopped:
                return
            self._stopped = True
            self._running = False
            self._pending.clear()
            self._active.clear()
            cycles = list(self._cycles.values())
            self._cv.notify_all()

        logger.info(f"Stopping {len(cycles)} crawlers")
        for cycle in cycles:
            try:
                cycle.stop()
            except Exception as exc:  # noqa: BLE001
                logger.error(f"Failed to stop {cycle.key}: {exc}")

    def join(self, timeout: Optional[float] = None) -> None:
        """Wait for every started cycle's loop to exit."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._lock:
            cycles = list(self._cycles.values())
        for cycle in cycles:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            cycle.join(remaining)

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no slot is held; returns False on timeout."""
        with self._cv:
            return self._cv.wait_for(lambda: not self._active, timeout=timeout)
