"""Tests for normalization helpers and fingerprinting in parsers.base."""

import hashlib
from datetime import date, datetime, timezone

import pytest

from ledgermatch.parsers.base import (
    DEFAULT_CONFIDENCE,
    canonical_date,
    compute_fingerprint,
    normalize_description,
    parse_amount,
    parse_bool,
    parse_confidence,
    parse_timestamp,
)


class TestNormalizeDescription:
    def test_lowercases_and_trims(self):
        assert normalize_description("  Coffee SHOP ") == "coffee shop"

    def test_collapses_whitespace(self):
        assert normalize_description("STARBUCKS   #123\tSEATTLE") == "starbucks #123 seattle"

    def test_none_is_empty(self):
        assert normalize_description(None) == ""


class TestParseAmount:
    @pytest.mark.parametrize("raw, expected", [
        ("$1,234.56", 1234.56),
        ("12,50", 12.5),
        ("1,250", 1250.0),
        ("1.234,56", 1234.56),
        ("(12.50)", -12.5),
        ("-€3.00", -3.0),
        ("£ 7.25", 7.25),
        ("¥1000", 1000.0),
        ("  42  ", 42.0),
        (42, 42.0),
        (-19.99, -19.99),
    ])
    def test_parses(self, raw, expected):
        assert parse_amount(raw) == pytest.approx(expected)

    @pytest.mark.parametrize("raw", ["", "abc", "12.3.4x", None, True, "nan", "inf", [1]])
    def test_unparseable_is_none(self, raw):
        assert parse_amount(raw) is None

    def test_unparseable_is_not_zero(self):
        assert parse_amount("N/A") is None
        assert parse_amount("0") == 0.0


class TestParseConfidence:
    @pytest.mark.parametrize("raw, expected", [
        ("85%", 0.85),
        ("0.85", 0.85),
        (0.85, 0.85),
        (85, 0.85),
        ("85", 0.85),
        ("1", 1.0),
        ("1%", 0.01),
        ("0", 0.0),
    ])
    def test_normalizes(self, raw, expected):
        assert parse_confidence(raw) == pytest.approx(expected)

    @pytest.mark.parametrize("raw, expected", [
        ("150%", 1.0),
        (250, 1.0),
        (-5, 0.0),
        ("-0.2", 0.0),
    ])
    def test_clamps(self, raw, expected):
        assert parse_confidence(raw) == expected

    @pytest.mark.parametrize("raw", ["", "   ", "high", None, True])
    def test_blank_or_unreadable_uses_default(self, raw):
        assert parse_confidence(raw) == DEFAULT_CONFIDENCE


class TestParseBool:
    @pytest.mark.parametrize("raw", ["confirmed", "Confirmed", "TRUE", "yes", "y", "1", "x", True])
    def test_true_values(self, raw):
        assert parse_bool(raw) is True

    @pytest.mark.parametrize("raw", ["", "unconfirmed", "no", "false", "0", None, False])
    def test_false_values(self, raw):
        assert parse_bool(raw) is False


class TestCanonicalDate:
    @pytest.mark.parametrize("raw", [
        "2025-07-01",
        "07/01/2025",
        "07-01-2025",
        "2025/07/01",
        "1 Jul 2025",
        "Jul 1, 2025",
        "July 1, 2025",
        "2025-07-01T15:30:00Z",
        " 2025-07-01 ",
        date(2025, 7, 1),
        datetime(2025, 7, 1, 23, 59),
    ])
    def test_canonicalizes(self, raw):
        assert canonical_date(raw) == "2025-07-01"

    @pytest.mark.parametrize("raw", ["", "not a date", "13/45/2025", None, 20250701])
    def test_unrecognized_is_none(self, raw):
        assert canonical_date(raw) is None


class TestParseTimestamp:
    def test_zulu(self):
        assert parse_timestamp("2025-01-01T00:00:00Z") == datetime(2025, 1, 1, tzinfo=timezone.utc)

    def test_offset_converted_to_utc(self):
        ts = parse_timestamp("2025-01-01T02:00:00+02:00")
        assert ts == datetime(2025, 1, 1, tzinfo=timezone.utc)
        assert ts.tzinfo == timezone.utc

    def test_naive_assumed_utc(self):
        assert parse_timestamp("2025-01-01 10:00:00") == datetime(2025, 1, 1, 10, tzinfo=timezone.utc)

    def test_sheets_typed_format(self):
        assert parse_timestamp("01/02/2025 10:00:00") == datetime(2025, 1, 2, 10, tzinfo=timezone.utc)

    @pytest.mark.parametrize("raw", ["", "   ", None, "yesterday"])
    def test_absent_or_invalid(self, raw):
        assert parse_timestamp(raw) is None


class TestComputeFingerprint:
    def test_known_value(self):
        expected = hashlib.sha256(b"coffee shop|12.50|2025-07-01").hexdigest()
        assert compute_fingerprint("Coffee Shop", 12.5, "2025-07-01") == expected

    def test_deterministic(self):
        a = compute_fingerprint("STARBUCKS #123", -42.99, "2025-07-01")
        b = compute_fingerprint("STARBUCKS #123", -42.99, "2025-07-01")
        assert a == b
        assert len(a) == 64

    def test_description_normalized(self):
        assert (compute_fingerprint("  Coffee Shop ", 12.5, "2025-07-01")
                == compute_fingerprint("coffee shop", 12.5, "2025-07-01"))

    @pytest.mark.parametrize("amount", ["12,50", "12.50", "$12.50", 12.5, 12.50000001])
    def test_amount_normalized(self, amount):
        assert (compute_fingerprint("coffee", amount, "2025-07-01")
                == compute_fingerprint("coffee", 12.5, "2025-07-01"))

    @pytest.mark.parametrize("day", ["07/01/2025", "2025/07/01", "Jul 1, 2025", date(2025, 7, 1)])
    def test_date_normalized(self, day):
        assert (compute_fingerprint("coffee", 12.5, day)
                == compute_fingerprint("coffee", 12.5, "2025-07-01"))

    def test_different_inputs_differ(self):
        base = compute_fingerprint("coffee", 12.5, "2025-07-01")
        assert compute_fingerprint("coffee", 12.51, "2025-07-01") != base
        assert compute_fingerprint("tea", 12.5, "2025-07-01") != base
        assert compute_fingerprint("coffee", 12.5, "2025-07-02") != base
        assert compute_fingerprint("coffee", -12.5, "2025-07-01") != base

    def test_negative_zero(self):
        assert compute_fingerprint("x", -0.0, "2025-07-01") == compute_fingerprint("x", 0, "2025-07-01")

    def test_unparseable_amount_raises(self):
        with pytest.raises(ValueError):
            compute_fingerprint("coffee", "abc", "2025-07-01")
