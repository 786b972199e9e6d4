"""Tests for source expansion and the CrawlerManager composition root."""

import json
import tempfile
import threading
import time
import unittest
from pathlib import Path

from pricewatch.config import DEFAULT_ROW_SELECTOR, CrawlerSettings, RedisSettings
from pricewatch.manager import CrawlerManager, build_sources, build_target_url
from pricewatch.models import CrawlStatus, ExtractionMethod, Record, utc_now_iso
from pricewatch.storage import StoreRegistry

SOURCES = {
    "commodities": {"baseUrl": "https://example.com/commodities", "regions": ["global"], "pollIntervalMs": 60000},
    "indices": {"baseUrl": "https://example.com/indices/", "regions": ["americas", "europe"]},
}


class CountingExtractor:
    """Returns one record per source and tracks overlapping calls."""

    def __init__(self, method, records=True):
        self.method = method
        self.records = records
        self._lock = threading.Lock()
        self.in_flight = 0
        self.max_in_flight = 0
        self.calls = 0

    def extract(self, source, stop_event=None):
        with self._lock:
            self.calls += 1
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            time.sleep(0.05)
            if not self.records:
                return []
            return [
                Record(
                    id=f"{source.category}-{source.region}-1",
                    name=f"{source.category} {source.region}",
                    region=source.region,
                    category=source.category,
                    last="100.0",
                    scraped_at=utc_now_iso(),
                )
            ]
        finally:
            with self._lock:
                self.in_flight -= 1


def _wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


class TestBuildSources(unittest.TestCase):
    """Verify expansion of the sources mapping."""

    def test_target_url(self):
        """The global region uses the base URL; others append the region."""
        self.assertEqual(build_target_url("https://e.com/x", "global"), "https://e.com/x")
        self.assertEqual(build_target_url("https://e.com/x/", "europe"), "https://e.com/x/europe")

    def test_one_source_per_region(self):
        """Every (category, region) pair becomes a source."""
        settings = CrawlerSettings(default_poll_interval=45.0)
        sources = build_sources(SOURCES, settings)

        self.assertEqual([s.key for s in sources], ["commodities-global", "indices-americas", "indices-europe"])
        self.assertEqual(sources[0].poll_interval, 60.0)
        self.assertEqual(sources[1].poll_interval, 45.0)
        self.assertEqual(sources[1].target_url, "https://example.com/indices/americas")
        self.assertEqual(sources[0].row_selector, DEFAULT_ROW_SELECTOR)


class TestCrawlerManager(unittest.TestCase):
    """End-to-end runs with extractor doubles and JSON storage."""

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.settings = CrawlerSettings(
            max_retries=0,
            max_concurrent=1,
            primary_timeout=2.0,
            fallback_timeout=2.0,
            no_data_backoff=60.0,
            default_poll_interval=60.0,
            data_dir=Path(self._tmp.name),
        )
        self.registry = StoreRegistry(self.settings, RedisSettings(disabled=True))
        self.manager = None

    def tearDown(self):
        if self.manager is not None:
            self.manager.close()
        self._tmp.cleanup()

    def _manager(self, primary, fallback, sources=SOURCES):
        self.manager = CrawlerManager(
            self.settings,
            sources,
            store_registry=self.registry,
            primary=primary,
            fallback=fallback,
        )
        return self.manager

    def test_registers_every_source(self):
        """One crawl cycle and state entry exists per source."""
        manager = self._manager(CountingExtractor(ExtractionMethod.PRIMARY), CountingExtractor(ExtractionMethod.FALLBACK))
        self.assertEqual(manager.crawler_count, 3)
        self.assertEqual(manager.get_categories(), ["commodities", "indices"])
        self.assertTrue(all(s.status == CrawlStatus.IDLE for s in manager.get_all_states()))

    def test_runs_all_sources_within_concurrency_limit(self):
        """Every source gets crawled while at most one extracts at a time."""
        primary = CountingExtractor(ExtractionMethod.PRIMARY)
        fallback = CountingExtractor(ExtractionMethod.FALLBACK)
        manager = self._manager(primary, fallback)

        manager.start_all()
        done = _wait_for(lambda: all(s.total_records > 0 for s in manager.get_all_states()))

        self.assertTrue(done)
        self.assertEqual(primary.max_in_flight, 1)
        self.assertEqual(fallback.calls, 0)

        states = {s.key: s for s in manager.get_all_states()}
        self.assertEqual(states["indices-europe"].total_records, 1)
        self.assertTrue(_wait_for(lambda: manager.get_all_states()[0].status == CrawlStatus.SLEEPING))

        with open(Path(self._tmp.name) / "indices.json", encoding="utf-8") as f:
            data = json.load(f)
        self.assertEqual(data["metadata"]["totalRecords"], 2)

    def test_double_failure_reports_error_and_cooldown(self):
        """Empty results from both backends show as error with a planned next run."""
        manager = self._manager(
            CountingExtractor(ExtractionMethod.PRIMARY, records=False),
            CountingExtractor(ExtractionMethod.FALLBACK, records=False),
            sources={"commodities": SOURCES["commodities"]},
        )
        manager.start_all()

        self.assertTrue(_wait_for(lambda: manager.get_all_states()[0].status == CrawlStatus.ERROR))
        state = manager.get_all_states()[0]
        self.assertEqual(state.total_records, 0)
        self.assertIsNotNone(state.next_run)

    def test_stop_all_is_bounded(self):
        """stop_all() returns promptly and leaves no loop running."""
        manager = self._manager(CountingExtractor(ExtractionMethod.PRIMARY), CountingExtractor(ExtractionMethod.FALLBACK))
        manager.start_all()
        _wait_for(lambda: manager.get_all_states()[0].total_records > 0)

        started = time.monotonic()
        manager.stop_all(timeout=2.0)

        self.assertLess(time.monotonic() - started, 3.0)
        for key in ("commodities-global", "indices-americas", "indices-europe"):
            self.assertFalse(manager.get_cycle(key).is_alive())

    def test_restart_after_stop_all(self):
        """Sources crawl again after stop_all() followed by start_all()."""
        primary = CountingExtractor(ExtractionMethod.PRIMARY)
        manager = self._manager(
            primary, CountingExtractor(ExtractionMethod.FALLBACK), sources={"commodities": SOURCES["commodities"]}
        )
        manager.start_all()
        self.assertTrue(_wait_for(lambda: primary.calls == 1))
        manager.stop_all(timeout=2.0)
        self.assertFalse(manager.get_cycle("commodities-global").is_alive())

        manager.start_all()

        self.assertTrue(_wait_for(lambda: primary.calls == 2))
        self.assertTrue(
            _wait_for(lambda: manager.get_all_states()[0].status == CrawlStatus.SLEEPING)
        )
        self.assertTrue(_wait_for(lambda: manager.scheduler.active_count == 0))

    def test_start_with_no_sources(self):
        """An empty configuration starts and stops cleanly."""
        manager = self._manager(
            CountingExtractor(ExtractionMethod.PRIMARY), CountingExtractor(ExtractionMethod.FALLBACK), sources={}
        )
        manager.start_all()
        self.assertEqual(manager.scheduler.active_count, 0)
        manager.stop_all()


if __name__ == "__main__":
    unittest.main()
