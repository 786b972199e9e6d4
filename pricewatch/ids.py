from __future__ import annotations

import hashlib
import re
from typing import Optional

_WHITESPACE = re.compile(r"\s+")


def generate_record_id(name: str, region: str, href: Optional[str] = None) -> str:
    """Stable identifier for a record.

    With a link, the last path segment plus a short hash of the full link is
    used so two entities sharing a display name stay distinct. Without one,
    falls back to the slugged name and region.
    """
    if href:
        parts = [p for p in href.split("/") if p]
        slug = parts[-1] if parts else ""
        if slug:
            digest = hashlib.md5(href.encode("utf-8")).hexdigest()[:8]
            return f"{slug}-{region}-{digest}"

    return f"{_WHITESPACE.sub('-', name or '').lower()}-{region}"
