from __future__ import annotations


class PricewatchError(Exception):
    """Base class for all pricewatch errors."""


class ConfigError(PricewatchError):
    """Raised at startup when the source configuration is malformed."""


class ExtractionError(PricewatchError):
    """A retryable extraction failure (network error, bad response)."""


class ExtractionTimeout(ExtractionError):
    """The extraction backend did not finish before its deadline."""


class CrawlCancelled(PricewatchError):
    """A stop signal arrived while a crawl cycle was waiting.

    Never retried; unwinds the cycle loop immediately."""


class StorageError(PricewatchError):
    """A storage backend could not complete an operation."""
