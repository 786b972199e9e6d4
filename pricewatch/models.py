from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


class CrawlStatus:
    IDLE = "idle"
    SCRAPING = "scraping"
    ERROR = "error"
    SLEEPING = "sleeping"


class ExtractionMethod:
    PRIMARY = "primary"
    FALLBACK = "fallback"

    @staticmethod
    def other(method: str) -> str:
        return ExtractionMethod.FALLBACK if method == ExtractionMethod.PRIMARY else ExtractionMethod.PRIMARY


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_timestamp(value: Optional[str]) -> float:
    """Epoch seconds for an ISO-8601 string; missing or unparseable is 0.0."""
    if not value:
        return 0.0
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (TypeError, ValueError):
        return 0.0
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


@dataclass(frozen=True)
class Source:
    category: str
    region: str
    target_url: str
    poll_interval: float
    row_selector: str

    @property
    def key(self) -> str:
        return f"{self.category}-{self.region}"


# python attribute -> persisted key, for optional scalar fields
_OPTIONAL_FIELDS: Dict[str, str] = {
    "high": "high",
    "low": "low",
    "change": "change",
    "change_pct": "changePct",
    "price": "price",
    "open": "open",
    "bid": "bid",
    "ask": "ask",
    "volume": "volume",
    "month": "month",
    "time": "time",
    "href": "href",
}
_CORE_KEYS = ("id", "name", "region", "category", "last", "scrapedAt")


@dataclass
class Record:
    """One extracted data point as persisted per category."""

    id: str
    name: str
    region: str
    category: str
    last: str = ""
    scraped_at: Optional[str] = None
    high: Optional[str] = None
    low: Optional[str] = None
    change: Optional[str] = None
    change_pct: Optional[str] = None
    price: Optional[str] = None
    open: Optional[str] = None
    bid: Optional[str] = None
    ask: Optional[str] = None
    volume: Optional[str] = None
    month: Optional[str] = None
    time: Optional[str] = None
    href: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def timestamp(self) -> float:
        return parse_timestamp(self.scraped_at)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = dict(self.extra)
        data.update(
            {
                "id": self.id,
                "name": self.name,
                "region": self.region,
                "category": self.category,
                "last": self.last,
            }
        )
        for attr, key in _OPTIONAL_FIELDS.items():
            value = getattr(self, attr)
            if value is not None:
                data[key] = value
        if self.scraped_at is not None:
            data["scrapedAt"] = self.scraped_at
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Record":
        known = set(_CORE_KEYS) | set(_OPTIONAL_FIELDS.values())
        kwargs: Dict[str, Any] = {
            attr: data.get(key) for attr, key in _OPTIONAL_FIELDS.items()
        }
        return cls(
            id=str(data.get("id", "")),
            name=str(data.get("name", "")),
            region=str(data.get("region", "")),
            category=str(data.get("category", "")),
            last=str(data.get("last") or ""),
            scraped_at=data.get("scrapedAt"),
            extra={k: v for k, v in data.items() if k not in known},
            **kwargs,
        )


@dataclass
class StoreSnapshot:
    category: str
    last_updated: str
    records: List[Record] = field(default_factory=list)

    @property
    def total_records(self) -> int:
        return len(self.records)

    @classmethod
    def empty(cls, category: str) -> "StoreSnapshot":
        return cls(category=category, last_updated=utc_now_iso(), records=[])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "metadata": {
                "category": self.category,
                "lastUpdated": self.last_updated,
                "totalRecords": self.total_records,
            },
            "records": [r.to_dict() for r in self.records],
        }

    @classmethod
    def from_dict(cls, category: str, data: Dict[str, Any]) -> "StoreSnapshot":
        meta = data.get("metadata") or {}
        records = [Record.from_dict(r) for r in data.get("records") or [] if isinstance(r, dict)]
        return cls(
            category=meta.get("category") or category,
            last_updated=meta.get("lastUpdated") or utc_now_iso(),
            records=records,
        )


@dataclass
class CrawlerState:
    category: str
    region: str
    status: str = CrawlStatus.IDLE
    total_records: int = 0
    last_run: Optional[str] = None
    next_run: Optional[str] = None
    preferred_method: str = ExtractionMethod.PRIMARY

    @property
    def key(self) -> str:
        return f"{self.category}-{self.region}"

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "category": self.category,
            "region": self.region,
            "status": self.status,
            "totalRecords": self.total_records,
        }
        if self.last_run:
            data["lastRun"] = self.last_run
        if self.next_run:
            data["nextRun"] = self.next_run
        return data


@dataclass(frozen=True)
class CycleOutcome:
    stored: int
    method: Optional[str]
    attempts: int
    fallback_used: bool
    primary_failed: bool

    @property
    def success(self) -> bool:
        return self.stored > 0
