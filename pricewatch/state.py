from __future__ import annotations

from dataclasses import replace
from threading import Lock
from typing import Callable, Dict, List

from .logging_config import get_logger
from .models import CrawlerState, Source, utc_now_iso

logger = get_logger("state")

StateListener = Callable[[List[CrawlerState]], None]


class StateAggregator:
    """Thread-safe collector of per-source crawl status.

    Every change is pushed to subscribers as a full snapshot; this is the
    feed a dashboard renders from."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._states: Dict[str, CrawlerState] = {}
        self._listeners: List[StateListener] = []

    def register(self, source: Source) -> None:
        with self._lock:
            self._states[source.key] = CrawlerState(category=source.category, region=source.region)

    def subscribe(self, listener: StateListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def update_status(self, key: str, status: str) -> None:
        self._update(key, status=status)

    def set_preferred_method(self, key: str, method: str) -> None:
        self._update(key, preferred_method=method)

    def set_next_run(self, key: str, next_run: str) -> None:
        self._update(key, next_run=next_run)

    def add_records(self, key: str, count: int) -> None:
        """Add a stored-count delta and stamp the run time."""
        with self._lock:
            current = self._states.get(key)
            if current is None:
                return
            self._states[key] = replace(
                current, total_records=current.total_records + count, last_run=utc_now_iso()
            )
        self._emit()

    def get(self, key: str) -> CrawlerState:
        with self._lock:
            return replace(self._states[key])

    def snapshot(self) -> List[CrawlerState]:
        with self._lock:
            return [replace(self._states[k]) for k in sorted(self._states)]

    def _update(self, key: str, **changes) -> None:
        with self._lock:
            current = self._states.get(key)
            if current is None:
                return
            self._states[key] = replace(current, **changes)
        self._emit()

    def _emit(self) -> None:
        with self._lock:
            listeners = list(self._listeners)
        if not listeners:
            return
        states = self.snapshot()
        for listener in listeners:
            try:
                listener(states)
            except Exception as exc:  # noqa: BLE001
                logger.warning(f"State listener failed (ignored): {exc}")
