from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

from .logging_config import get_logger
from .models import Record

logger = get_logger("validator")


@dataclass(frozen=True)
class ChallengeResult:
    is_blocked: bool
    reasons: List[str] = field(default_factory=list)


def detect_challenge_page(title: Optional[str], body_text: Optional[str]) -> ChallengeResult:
    """Detect bot-challenge interstitials (Cloudflare and similar)."""
    reasons: List[str] = []

    if title and "Just a moment" in title:
        reasons.append("Challenge title detected")

    if body_text:
        body = body_text.lower()
        if "verify you are human" in body:
            reasons.append("Human verification text detected")
        if "checking your browser" in body:
            reasons.append("Browser check text detected")
        if "turnstile" in body or "cf-turnstile" in body:
            reasons.append("Turnstile script detected")
        if "cloudflare" in body and "ray id" in body:
            reasons.append("Cloudflare Ray ID detected")

    return ChallengeResult(is_blocked=bool(reasons), reasons=reasons)


def validate_record(record: Record) -> bool:
    """A record needs a real name and at least one price value."""
    if not record.name or not record.name.strip() or record.name == "Unknown":
        return False
    return bool((record.last or "").strip() or (record.price or "").strip())


def validate_records(records: List[Record], category: str, region: str) -> List[Record]:
    valid = [r for r in records if validate_record(r)]
    dropped = len(records) - len(valid)
    if dropped > 0:
        logger.warning(f"[{category}/{region}] Filtered out {dropped} invalid records")
    return valid


def meets_minimum_quality(records: List[Record], min_records: int = 1) -> bool:
    return len(records) >= min_records
