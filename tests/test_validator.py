"""Tests for challenge detection and record validation."""

import unittest

from pricewatch.models import Record
from pricewatch.validator import (
    detect_challenge_page,
    meets_minimum_quality,
    validate_record,
    validate_records,
)


def _record(**overrides) -> Record:
    defaults = dict(id="a", name="Gold", region="global", category="commodities", last="1,000")
    defaults.update(overrides)
    return Record(**defaults)


class TestDetectChallengePage(unittest.TestCase):
    """Verify bot-challenge pages are recognised."""

    def test_normal_page_not_blocked(self):
        """An ordinary page should pass."""
        result = detect_challenge_page("Commodity Prices", "Gold 2,000 Silver 23")
        self.assertFalse(result.is_blocked)
        self.assertEqual(result.reasons, [])

    def test_just_a_moment_title(self):
        """The Cloudflare interstitial title should block."""
        self.assertTrue(detect_challenge_page("Just a moment...", "").is_blocked)

    def test_body_markers_collected(self):
        """Each body marker adds its own reason."""
        result = detect_challenge_page(
            "x", "Please verify you are human. Checking your browser. Cloudflare Ray ID: 123"
        )
        self.assertTrue(result.is_blocked)
        self.assertEqual(len(result.reasons), 3)


class TestValidateRecord(unittest.TestCase):
    """Verify per-record quality checks."""

    def test_valid_record(self):
        """A named record with a last price is valid."""
        self.assertTrue(validate_record(_record()))

    def test_unknown_name_rejected(self):
        """Placeholder and blank names are rejected."""
        self.assertFalse(validate_record(_record(name="Unknown")))
        self.assertFalse(validate_record(_record(name="  ")))

    def test_price_required(self):
        """A record needs last or price."""
        self.assertFalse(validate_record(_record(last="")))
        self.assertTrue(validate_record(_record(last="", price="5")))

    def test_validate_records_filters(self):
        """Invalid records are dropped from the list."""
        records = [_record(), _record(id="b", name="Unknown"), _record(id="c", last="")]
        self.assertEqual([r.id for r in validate_records(records, "c", "r")], ["a"])

    def test_minimum_quality(self):
        """At least one record is required by default."""
        self.assertFalse(meets_minimum_quality([]))
        self.assertTrue(meets_minimum_quality([_record()]))


if __name__ == "__main__":
    unittest.main()
