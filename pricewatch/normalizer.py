"""Header-driven mapping of scraped table rows onto Record fields.

Columns are located by header text rather than position so the same
extraction works across categories whose tables order columns differently.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Optional

from .ids import generate_record_id
from .logging_config import get_logger
from .models import Record

logger = get_logger("normalizer")


@dataclass(frozen=True)
class RawRow:
    name: str
    href: Optional[str] = None
    cells: List[str] = field(default_factory=list)


@dataclass
class RawTable:
    url: str
    scraped_at: str
    headers: List[str] = field(default_factory=list)
    rows: List[RawRow] = field(default_factory=list)
    title: str = ""
    body_text: str = ""


# canonical field -> normalised header texts that map onto it
FIELD_ALIASES: Dict[str, FrozenSet[str]] = {
    "name": frozenset({"name", "pair", "symbol"}),
    "last": frozenset({"last"}),
    "price": frozenset({"price"}),
    "bid": frozenset({"bid"}),
    "ask": frozenset({"ask"}),
    "open": frozenset({"open"}),
    "high": frozenset({"high"}),
    "low": frozenset({"low"}),
    "change": frozenset({"chg", "change"}),
    "change_pct": frozenset({"chg %", "change %", "change percent", "chg%", "change%"}),
    "volume": frozenset({"vol", "volume"}),
    "month": frozenset({"month"}),
    "time": frozenset({"time"}),
}

_ALIAS_LOOKUP: Dict[str, str] = {
    alias: canonical for canonical, aliases in FIELD_ALIASES.items() for alias in aliases
}

_COPIED_FIELDS = ("price", "bid", "ask", "open", "high", "low", "change", "change_pct", "volume", "month", "time")

_SPACES = re.compile(r"\s+")
_PUNCT = re.compile(r"[.\-_]")


def normalize_header(text: str) -> str:
    return _PUNCT.sub("", _SPACES.sub(" ", text.lower().strip()))


def build_header_map(headers: List[str]) -> Dict[str, int]:
    """Map canonical field names to column indices.

    The first column matching a field wins. ``last`` falls back to the price
    column, then the bid column, when the table has no explicit "Last".
    """
    header_map: Dict[str, int] = {}
    for index, header in enumerate(headers):
        canonical = _ALIAS_LOOKUP.get(normalize_header(header))
        if canonical is not None and canonical not in header_map:
            header_map[canonical] = index

    if "last" not in header_map:
        for source in ("price", "bid"):
            if source in header_map:
                header_map["last"] = header_map[source]
                break
    return header_map


def _cell(cells: List[str], index: Optional[int]) -> Optional[str]:
    if index is None or index >= len(cells):
        return None
    return cells[index]


def normalize_row(
    row: RawRow,
    header_map: Dict[str, int],
    category: str,
    region: str,
    url: str,
    scraped_at: str,
    include_trace: bool = False,
) -> Record:
    record = Record(
        id=generate_record_id(row.name or "Unknown", region, row.href),
        name=row.name or "Unknown",
        region=region,
        category=category,
        last=_cell(row.cells, header_map.get("last")) or "",
        scraped_at=scraped_at,
        href=row.href,
    )
    for attr in _COPIED_FIELDS:
        value = _cell(row.cells, header_map.get(attr))
        if value is not None:
            setattr(record, attr, value)

    if include_trace:
        record.extra["rawTrace"] = {
            "url": url,
            "headers": sorted(header_map),
            "cells": list(row.cells),
            "headerMap": dict(header_map),
        }
    return record


def normalize_table(table: RawTable, category: str, region: str, include_trace: bool = False) -> List[Record]:
    """Convert a raw table into records with identifiers assigned."""
    header_map = build_header_map(table.headers)
    logger.debug(f"[{category}/{region}] header map: {header_map}")
    return [
        normalize_row(row, header_map, category, region, table.url, table.scraped_at, include_trace)
        for row in table.rows
    ]
