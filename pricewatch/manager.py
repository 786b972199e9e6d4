from __future__ import annotations

from typing import Any, Dict, List, Optional

from .base import BaseExtractor
from .config import DEFAULT_ROW_SELECTOR, CrawlerSettings, RedisSettings
from .crawler import CrawlCycle
from .extractors import BrowserlessExtractor, DirectExtractor
from .logging_config import get_logger
from .models import CrawlStatus, CrawlerState, Source
from .rate_limiter import RateLimiter
from .scheduler import BoundedScheduler
from .state import StateAggregator
from .storage import StoreRegistry

logger = get_logger("manager")


def build_target_url(base_url: str, region: str) -> str:
    if region == "global":
        return base_url
    return f"{base_url.rstrip('/')}/{region}"


def build_sources(sources_config: Dict[str, Dict[str, Any]], settings: CrawlerSettings) -> List[Source]:
    """Expand the category -> {baseUrl, regions, ...} mapping into sources."""
    sources: List[Source] = []
    for category, entry in sources_config.items():
        interval_ms = entry.get("pollIntervalMs")
        poll_interval = interval_ms / 1000.0 if interval_ms else settings.default_poll_interval
        for region in entry.get("regions", []):
            sources.append(
                Source(
                    category=category,
                    region=region,
                    target_url=build_target_url(entry["baseUrl"], region),
                    poll_interval=poll_interval,
                    row_selector=entry.get("rowSelector") or DEFAULT_ROW_SELECTOR,
                )
            )
    return sources


class CrawlerManager:
    """Composition root: owns the store registry, extractors, state feed,
    scheduler and one crawl cycle per source."""

    def __init__(
        self,
        settings: CrawlerSettings,
        sources_config: Dict[str, Dict[str, Any]],
        redis_settings: Optional[RedisSettings] = None,
        store_registry: Optional[StoreRegistry] = None,
        primary: Optional[BaseExtractor] = None,
        fallback: Optional[BaseExtractor] = None,
    ) -> None:
        self._settings = settings
        self._sources_config = sources_config
        self.stores = store_registry or StoreRegistry(settings, redis_settings)
        self.states = StateAggregator()
        self.scheduler = BoundedScheduler(settings.max_concurrent)

        rate_limiter = RateLimiter(qps=settings.qps)
        self._primary = primary or DirectExtractor(
            rate_limiter=rate_limiter,
            timeout=settings.primary_timeout,
            include_trace=settings.store_raw_trace,
        )
        self._fallback = fallback or BrowserlessExtractor(
            base_url=settings.browserless_url,
            token=settings.browserless_token,
            rate_limiter=rate_limiter,
            timeout=settings.fallback_timeout,
            wait_selector=settings.fallback_wait_selector,
            include_trace=settings.store_raw_trace,
        )

        self._cycles: Dict[str, CrawlCycle] = {}
        self._running = False
        for source in build_sources(sources_config, settings):
            self._add_source(source)
        logger.info(f"Loaded {len(sources_config)} source categories, {len(self._cycles)} sources")

    def _add_source(self, source: Source) -> None:
        key = source.key
        self.states.register(source)

        cycle = CrawlCycle(
            source=source,
            store=self.stores.get(source.category),
            primary=self._primary,
            fallback=self._fallback,
            settings=self._settings,
            on_status=lambda status, key=key: self._on_status(key, status),
            on_stored=lambda count, key=key: self.states.add_records(key, count),
            on_ready=self.scheduler.request_slot,
        )
        self._cycles[key] = cycle
        self.scheduler.register(cycle)

    def _on_status(self, key: str, status: str) -> None:
        cycle = self._cycles[key]
        self.states.set_preferred_method(key, cycle.preferred_method)
        if status in (CrawlStatus.SLEEPING, CrawlStatus.ERROR):
            next_run = cycle.state.next_run
            if next_run:
                self.states.set_next_run(key, next_run)
        self.states.update_status(key, status)
        self.scheduler.notify_status(key, status)

    @property
    def crawler_count(self) -> int:
        return len(self._cycles)

    def get_categories(self) -> List[str]:
        return list(self._sources_config)

    def get_cycle(self, key: str) -> CrawlCycle:
        return self._cycles[key]

    def get_all_states(self) -> List[CrawlerState]:
        return self.states.snapshot()

    def start_all(self) -> None:
        if self._running:
            logger.warning("CrawlerManager already running")
            return
        self._running = True
        self.stores.start_health_checks()
        self.scheduler.start_all()

    def stop_all(self, timeout: Optional[float] = 5.0) -> None:
        logger.info("Stopping all crawlers...")
        self._running = False
        self.scheduler.stop_all()
        self.scheduler.join(timeout)
        logger.info("All crawlers stopped")

    def close(self) -> None:
        self.stop_all()
        self.stores.close()
