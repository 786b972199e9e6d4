"""Continuous price-table crawler.

Polls one page per (category, region) source, stores the extracted records
per category and keeps going when a source or a storage backend fails.

Key modules:
    crawler         -- CrawlCycle per-source retry/fallback/cooldown loop
    scheduler       -- BoundedScheduler limiting concurrently active sources
    storage         -- RecordStore with Redis primary and JSON file fallback
    extractors      -- DirectExtractor (primary), BrowserlessExtractor (fallback)
    base            -- BaseExtractor shared parse/validate pipeline
    normalizer      -- header alias table and row normalisation
    validator       -- challenge-page detection and record validation
    state           -- StateAggregator status feed
    manager         -- CrawlerManager composition root
    config          -- environment tunables and sources file loading
    models          -- Source, Record, StoreSnapshot, CrawlerState dataclasses
"""

__version__ = "0.1.0"
