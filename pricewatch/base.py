from __future__ import annotations

import threading
import time
from abc import ABC, abstractmethod
from typing import Any, List, Optional

from bs4 import BeautifulSoup

from .errors import CrawlCancelled, ExtractionError
from .logging_config import get_logger
from .models import Record, Source, utc_now_iso
from .normalizer import RawRow, RawTable, normalize_table
from .rate_limiter import RateLimiter
from .validator import detect_challenge_page, meets_minimum_quality, validate_records

logger = get_logger("extractor")

BODY_TEXT_LIMIT = 1000


class BaseExtractor(ABC):
    """Abstract base class defining the common extraction pipeline.

    fetch() retrieves the rendered page HTML; everything after that
    (table parsing, challenge detection, normalisation, validation) is
    shared, so the primary and fallback backends only differ in transport.

    - A challenge/interstitial page yields an empty list, not an error.
    - Transport failures are raised as ExtractionError (retryable).
    - A stop signal raised while waiting for pacing propagates unchanged.
    """

    method: str = ""

    def __init__(self, rate_limiter: Optional[RateLimiter] = None, include_trace: bool = False) -> None:
        self._rate_limiter = rate_limiter
        self._include_trace = include_trace

    def extract(self, source: Source, stop_event: Optional[threading.Event] = None) -> List[Record]:
        self.validate(source)
        if self._rate_limiter is not None:
            self._rate_limiter.acquire(stop_event)

        start_ms = self._now_ms()
        try:
            html = self.fetch(source)
        except (CrawlCancelled, ExtractionError):
            raise
        except Exception as exc:  # noqa: BLE001
            raise ExtractionError(f"{type(exc).__name__}: {exc}") from exc

        table = self.parse(html, source)
        tag = f"[{self.method}/{source.category}/{source.region}]"

        challenge = detect_challenge_page(table.title, table.body_text)
        if challenge.is_blocked:
            logger.warning(f"{tag} Challenge page detected: {', '.join(challenge.reasons)}")
            return []

        logger.info(f"{tag} Extracted {len(table.rows)} raw rows in {self._now_ms() - start_ms}ms")
        if not table.rows:
            return []

        records = normalize_table(table, source.category, source.region, self._include_trace)
        valid = validate_records(records, source.category, source.region)
        if not meets_minimum_quality(valid):
            logger.warning(f"{tag} No valid records after validation")
            return []
        return valid

    def validate(self, source: Source) -> None:
        if not source.target_url:
            raise ValueError("source.target_url is required")

    @abstractmethod
    def fetch(self, source: Source) -> str:
        """Return the page HTML for the source."""

    def parse(self, html: str, source: Source) -> RawTable:
        soup = BeautifulSoup(html or "", "html.parser")

        title = soup.title.get_text(strip=True) if soup.title else ""
        body = soup.body if soup.body is not None else soup
        body_text = body.get_text(" ", strip=True)[:BODY_TEXT_LIMIT]

        headers = [th.get_text(strip=True) for th in soup.find_all("th")]
        headers = [h for h in headers if h]

        rows: List[RawRow] = []
        for row in soup.select(source.row_selector):
            name_el = row.find("h4") or row.select_one("a.font-semibold")
            name = name_el.get_text(strip=True) if name_el else ""
            if not name:
                continue
            link = row.select_one("a[href]")
            href: Any = link.get("href") if link else None
            cells = [td.get_text(strip=True) for td in row.find_all("td")]
            rows.append(RawRow(name=name, href=href or None, cells=cells))

        return RawTable(
            url=source.target_url,
            scraped_at=utc_now_iso(),
            headers=headers,
            rows=rows,
            title=title,
            body_text=body_text,
        )

    @staticmethod
    def _now_ms() -> int:
        return int(time.time() * 1000)
