from __future__ import annotations

import threading
import time
from concurrent.futures import Future, wait
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from .backoff import BackoffStrategy, cancellable_sleep
from .base import BaseExtractor
from .config import CrawlerSettings
from .errors import CrawlCancelled, ExtractionError, ExtractionTimeout
from .logging_config import get_logger
from .models import CrawlStatus, CycleOutcome, ExtractionMethod, Record, Source
from .storage import RecordStore

logger = get_logger("crawler")

# how often a wait on an in-flight extraction re-checks the stop signal
WAIT_SLICE_SECS = 0.1

StatusCallback = Callable[[str], None]
StoredCallback = Callable[[int], None]
ReadyCallback = Callable[["CrawlCycle"], None]


class CyclePhase:
    IDLE = "idle"
    SCRAPING = "scraping"
    RETRYING = "retrying"
    FALLING_BACK = "falling_back"
    SLEEPING = "sleeping"
    COOLDOWN = "cooldown"
    ERROR = "error"


PHASE_STATUS: Dict[str, str] = {
    CyclePhase.IDLE: CrawlStatus.IDLE,
    CyclePhase.SCRAPING: CrawlStatus.SCRAPING,
    CyclePhase.RETRYING: CrawlStatus.SCRAPING,
    CyclePhase.FALLING_BACK: CrawlStatus.SCRAPING,
    CyclePhase.SLEEPING: CrawlStatus.SLEEPING,
    CyclePhase.COOLDOWN: CrawlStatus.ERROR,
    CyclePhase.ERROR: CrawlStatus.ERROR,
}


@dataclass(frozen=True)
class CycleState:
    is_running: bool
    phase: str
    stored_count_this_run: int
    consecutive_failures: int
    preferred_method: str
    next_run: Optional[str]


class CrawlCycle:
    """Continuous crawl loop for one (category, region) source.

    One run tries the preferred backend, retries it with exponential
    backoff, then tries the alternate backend once. A run only counts as a
    success when at least one record was persisted. When both backends come
    back empty the next sleep is the no-data cooldown instead of the poll
    interval.

    After ``adaptive_switch_threshold`` consecutive runs in which the primary
    backend failed, the fallback becomes the preferred backend. The primary is
    given another try as preferred every ``primary_reprobe_cycles`` runs, and
    preference returns to it as soon as it serves records again.

    All state below is owned by the loop thread; other threads only read it
    through ``state`` and signal through start()/grant()/stop().
    """

    def __init__(
        self,
        source: Source,
        store: RecordStore,
        primary: BaseExtractor,
        fallback: BaseExtractor,
        settings: CrawlerSettings,
        on_status: Optional[StatusCallback] = None,
        on_stored: Optional[StoredCallback] = None,
        on_ready: Optional[ReadyCallback] = None,
        backoff: Optional[BackoffStrategy] = None,
    ) -> None:
        self._source = source
        self._store = store
        self._extractors: Dict[str, BaseExtractor] = {
            ExtractionMethod.PRIMARY: primary,
            ExtractionMethod.FALLBACK: fallback,
        }
        self._settings = settings
        self._on_status = on_status
        self._on_stored = on_stored
        self._on_ready = on_ready
        self._backoff = backoff or BackoffStrategy(base_seconds=settings.retry_delay_base)
        self._tag = f"[{source.category}/{source.region}]"

        self._stop_event = threading.Event()
        self._admitted = threading.Event()
        self._thread: Optional[threading.Thread] = None

        self._phase = CyclePhase.IDLE
        self._is_running = False
        self._stored_count_this_run = 0
        self._consecutive_failures = 0
        self._preferred_method = ExtractionMethod.PRIMARY
        self._cycles_on_fallback = 0
        self._next_run: Optional[str] = None

    @property
    def source(self) -> Source:
        return self._source

    @property
    def key(self) -> str:
        return self._source.key

    @property
    def started(self) -> bool:
        """True while the loop thread is alive; a stopped cycle must be start()ed again."""
        return self._thread is not None and self._thread.is_alive()

    @property
    def preferred_method(self) -> str:
        return self._preferred_method

    @property
    def state(self) -> CycleState:
        return CycleState(
            is_running=self._is_running,
            phase=self._phase,
            stored_count_this_run=self._stored_count_this_run,
            consecutive_failures=self._consecutive_failures,
            preferred_method=self._preferred_method,
            next_run=self._next_run,
        )

    def set_ready_callback(self, on_ready: Optional[ReadyCallback]) -> None:
        self._on_ready = on_ready

    # -- lifecycle -----------------------------------------------------

    def start(self) -> None:
        """Spawn the loop thread; the first run begins immediately."""
        if self._thread is not None and self._thread.is_alive():
            logger.warning(f"{self._tag} Crawler already running")
            return
        self._stop_event.clear()
        self._admitted.set()
        self._thread = threading.Thread(target=self.run_forever, name=f"crawl-{self.key}", daemon=True)
        self._thread.start()

    def grant(self) -> None:
        """Let a loop waiting for re-admission start its next run."""
        self._admitted.set()

    def stop(self) -> None:
        logger.info(f"{self._tag} Stopping crawler")
        self._stop_event.set()
        self._admitted.set()

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_forever(self) -> None:
        self._is_running = True
        logger.info(f"{self._tag} Starting continuous crawl")
        first = True
        try:
            while not self._stop_event.is_set():
                if not first:
                    self._await_admission()
                first = False
                delay = self._run_once()
                cancellable_sleep(delay, self._stop_event)
        except CrawlCancelled:
            pass
        except Exception as exc:  # noqa: BLE001
            logger.error(f"{self._tag} Crawl loop crashed: {exc}", exc_info=True)
            self._set_phase(CyclePhase.ERROR)
        finally:
            self._reset()
            self._set_phase(CyclePhase.IDLE)
            logger.info(f"{self._tag} Crawl loop exited")

    def _run_once(self) -> float:
        """Run one cycle and return how long to sleep before the next."""
        try:
            outcome = self.run_cycle()
        except CrawlCancelled:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.error(f"{self._tag} Fatal error: {exc}", exc_info=True)
            delay = self._source.poll_interval
            self._mark_next_run(delay)
            self._set_phase(CyclePhase.ERROR)
            return delay

        if outcome.success:
            delay = self._source.poll_interval
            self._mark_next_run(delay)
            self._set_phase(CyclePhase.SLEEPING)
            logger.info(f"{self._tag} Run complete. Next run in {delay:g}s")
            return delay

        delay = self._settings.no_data_backoff
        self._mark_next_run(delay)
        self._set_phase(CyclePhase.COOLDOWN)
        logger.warning(f"{self._tag} Both backends returned 0 records. Cooling down for {delay:g}s")
        return delay

    def _await_admission(self) -> None:
        if self._on_ready is None:
            return
        self._admitted.clear()
        if self._stop_event.is_set():
            raise CrawlCancelled("stopped before re-admission")
        self._on_ready(self)
        self._admitted.wait()
        if self._stop_event.is_set():
            raise CrawlCancelled("stopped while queued")

    def _reset(self) -> None:
        self._is_running = False
        self._stored_count_this_run = 0
        self._consecutive_failures = 0
        self._preferred_method = ExtractionMethod.PRIMARY
        self._cycles_on_fallback = 0
        self._next_run = None

    # -- one cycle -----------------------------------------------------

    def run_cycle(self) -> CycleOutcome:
        """Run one attempt-through-completion cycle including retries and fallback."""
        self._stored_count_this_run = 0
        first = self._choose_method()
        alternate = ExtractionMethod.other(first)
        max_retries = self._settings.max_retries

        self._set_phase(CyclePhase.SCRAPING)
        attempts = 0
        stored = 0
        for attempt in range(max_retries + 1):
            if attempt > 0:
                delay = self._backoff.get_sleep(attempt - 1)
                self._set_phase(CyclePhase.RETRYING)
                logger.warning(
                    f"{self._tag} {first} stored 0 records, retrying in {delay:g}s (attempt {attempt}/{max_retries})"
                )
                cancellable_sleep(delay, self._stop_event)
            self._ensure_not_stopped()
            attempts += 1
            stored = self._attempt(first)
            if stored > 0:
                break

        served_by: Optional[str] = first if stored > 0 else None
        fallback_used = False
        if stored == 0:
            self._ensure_not_stopped()
            self._set_phase(CyclePhase.FALLING_BACK)
            logger.warning(f"{self._tag} {first} exhausted {max_retries} retries, falling back to {alternate}")
            fallback_used = True
            attempts += 1
            stored = self._attempt(alternate)
            if stored > 0:
                served_by = alternate
                logger.info(f"{self._tag} {alternate} fallback succeeded with {stored} records")

        self._record_result(first, served_by)
        return CycleOutcome(
            stored=self._stored_count_this_run,
            method=served_by,
            attempts=attempts,
            fallback_used=fallback_used,
            primary_failed=first == ExtractionMethod.PRIMARY and served_by != ExtractionMethod.PRIMARY,
        )

    def _choose_method(self) -> str:
        reprobe_every = self._settings.primary_reprobe_cycles
        if (
            self._preferred_method == ExtractionMethod.FALLBACK
            and reprobe_every > 0
            and self._cycles_on_fallback >= reprobe_every
        ):
            self._cycles_on_fallback = 0
            logger.info(f"{self._tag} Re-probing primary backend after {reprobe_every} fallback cycles")
            return ExtractionMethod.PRIMARY
        return self._preferred_method

    def _record_result(self, tried_first: str, served_by: Optional[str]) -> None:
        if served_by == ExtractionMethod.PRIMARY:
            if self._preferred_method != ExtractionMethod.PRIMARY:
                logger.info(f"{self._tag} Primary backend recovered, preferring it again")
            self._preferred_method = ExtractionMethod.PRIMARY
            self._consecutive_failures = 0
            self._cycles_on_fallback = 0
            return

        if tried_first == ExtractionMethod.PRIMARY:
            self._consecutive_failures += 1
            threshold = self._settings.adaptive_switch_threshold
            if self._preferred_method == ExtractionMethod.PRIMARY and self._consecutive_failures >= threshold:
                self._preferred_method = ExtractionMethod.FALLBACK
                self._cycles_on_fallback = 0
                logger.warning(
                    f"{self._tag} Primary failed {self._consecutive_failures} cycles in a row, preferring fallback"
                )
            return

        self._cycles_on_fallback += 1

    def _attempt(self, method: str) -> int:
        """One extraction + persist; returns the number of records stored."""
        extractor = self._extractors[method]
        timeout = (
            self._settings.primary_timeout if method == ExtractionMethod.PRIMARY else self._settings.fallback_timeout
        )
        try:
            records = self._extract_with_deadline(extractor, timeout)
        except CrawlCancelled:
            raise
        except ExtractionError as exc:
            logger.warning(f"{self._tag} {method} extraction failed: {exc}")
            return 0
        except Exception as exc:  # noqa: BLE001
            logger.error(f"{self._tag} {method} extraction raised unexpectedly: {exc}", exc_info=True)
            return 0

        if not records:
            logger.warning(f"{self._tag} {method} extracted no data")
            return 0

        try:
            stored = self._store.push(records)
        except Exception as exc:  # noqa: BLE001
            logger.error(f"{self._tag} Failed to persist {len(records)} records: {exc}")
            return 0

        count = len(stored)
        self._stored_count_this_run += count
        logger.info(f"{self._tag} Stored {count} records via {method}")
        self._report_stored(count)
        return count

    def _extract_with_deadline(self, extractor: BaseExtractor, timeout: float) -> List[Record]:
        """Run the extractor on a worker thread, bounded by ``timeout``.

        A timed-out worker is abandoned and the attempt is reported as
        ExtractionTimeout. The abandoned call may still be using its
        transport after the slot is released, until the transport's own
        timeout ends it.
        """
        future: "Future[List[Record]]" = Future()

        def _target() -> None:
            if not future.set_running_or_notify_cancel():
                return
            try:
                result = extractor.extract(self._source, self._stop_event)
            except BaseException as exc:  # noqa: BLE001
                future.set_exception(exc)
            else:
                future.set_result(result)

        worker = threading.Thread(target=_target, name=f"extract-{self.key}", daemon=True)
        worker.start()

        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ExtractionTimeout(f"{extractor.method} timed out after {timeout:g}s")
            done, _ = wait([future], timeout=min(remaining, WAIT_SLICE_SECS))
            if done:
                return future.result()
            if self._stop_event.is_set():
                raise CrawlCancelled("stopped during extraction")

    def _ensure_not_stopped(self) -> None:
        if self._stop_event.is_set():
            raise CrawlCancelled("stopped")

    # -- reporting -----------------------------------------------------

    def _mark_next_run(self, delay: float) -> None:
        next_run = datetime.now(timezone.utc) + timedelta(seconds=delay)
        self._next_run = next_run.isoformat().replace("+00:00", "Z")

    def _set_phase(self, phase: str) -> None:
        self._phase = phase
        if self._on_status is None:
            return
        try:
            self._on_status(PHASE_STATUS[phase])
        except Exception as exc:  # noqa: BLE001
            logger.error(f"{self._tag} Status callback failed: {exc}")

    def _report_stored(self, count: int) -> None:
        if self._on_stored is None:
            return
        try:
            self._on_stored(count)
        except Exception as exc:  # noqa: BLE001
            logger.error(f"{self._tag} Stored-count callback failed: {exc}")
