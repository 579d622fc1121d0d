"""Base parser: shared interface, data structures, and normalization helpers.

The helpers here are the single source of truth for how a transaction is
reduced to comparable values: amounts, dates, confidence scores, status
flags, and the content fingerprint used for duplicate detection across
independent imports (file uploads and spreadsheet pulls alike).
"""

from __future__ import annotations

import hashlib
import math
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, datetime, timezone
from pathlib import Path

# Symbols stripped from amount strings before parsing
_CURRENCY_RE = re.compile(r"[$€£¥\s]")

# Date formats accepted in addition to ISO 8601, tried in order
_DATE_FORMATS = (
    "%Y/%m/%d",
    "%m/%d/%Y",
    "%m-%d-%Y",
    "%d %b %Y",
    "%d %B %Y",
    "%b %d, %Y",
    "%B %d, %Y",
)

# Timestamp formats Google Sheets produces when a cell is typed by hand
_TIMESTAMP_FORMATS = (
    "%m/%d/%Y %H:%M:%S",
    "%m/%d/%Y %H:%M",
)

# Values that mark a row as user-confirmed
_TRUE_VALUES = frozenset({"confirmed", "true", "yes", "y", "1", "x"})

# Confidence used when the cell is blank or unreadable
DEFAULT_CONFIDENCE = 0.5


@dataclass
class RawTransaction:
    """Intermediate representation output by parsers, before DB insertion."""
    date: str              # YYYY-MM-DD (normalized by parser)
    amount: float          # signed: negative=outflow, positive=inflow
    description: str
    category: str | None = None
    subcategory: str | None = None
    confidence: float | None = None
    user_confirmed: bool = False


class BaseParser(ABC):
    """Abstract base for statement file parsers.

    Attributes:
        skipped_count: Number of rows skipped during parsing (unparseable
            amount, missing date). Check this after parse() to detect
            silent data loss.
    """

    def __init__(self):
        self.skipped_count: int = 0

    @abstractmethod
    def parse(self, file_path: Path) -> list[RawTransaction]:
        """Parse a statement file and return normalized transactions."""

    @abstractmethod
    def detect(self, file_path: Path) -> bool:
        """Return True if this parser can handle the given file."""


def normalize_description(desc: str | None) -> str:
    """Lowercase, trim, and collapse internal whitespace."""
    return " ".join((desc or "").lower().split())


def parse_amount(value: object) -> float | None:
    """Parse a numeric or string amount.

    Strips $ € £ ¥ and group separators. A lone comma followed by one or
    two digits is a decimal comma ("12,50" → 12.5); otherwise commas are
    group separators ("1,250" → 1250.0). When both separators appear, the
    last one is the decimal point. Accounting negatives "(12.50)" are
    supported.

    Returns None for anything unparseable. Callers must treat None as a
    hard skip, never as zero.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        amount = float(value)
        return amount if math.isfinite(amount) else None
    if not isinstance(value, str):
        return None

    text = value.strip()
    negative = False
    if text.startswith("(") and text.endswith(")"):
        negative = True
        text = text[1:-1]
    text = _CURRENCY_RE.sub("", text)

    if "," in text and "." in text:
        if text.rfind(",") > text.rfind("."):
            text = text.replace(".", "").replace(",", ".")
        else:
            text = text.replace(",", "")
    elif "," in text:
        head, _, tail = text.rpartition(",")
        if text.count(",") == 1 and len(tail) in (1, 2) and tail.isdigit():
            text = f"{head}.{tail}"
        else:
            text = text.replace(",", "")

    try:
        amount = float(text)
    except ValueError:
        return None
    if not math.isfinite(amount):
        return None
    return -amount if negative else amount


def parse_confidence(value: object) -> float:
    """Normalize a confidence value to [0, 1].

    Accepts "85%", "0.85", 0.85, or 85. Values above 1 are read as
    percentages. Blank or unreadable input yields DEFAULT_CONFIDENCE.
    """
    num: float | None = None
    percent = False
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        num = float(value)
    elif isinstance(value, str):
        text = value.strip()
        percent = text.endswith("%")
        try:
            num = float(text.rstrip("%").strip())
        except ValueError:
            num = None

    if num is None or not math.isfinite(num):
        return DEFAULT_CONFIDENCE
    if percent or num > 1:
        num = num / 100
    return max(0.0, min(1.0, num))


def parse_bool(value: object) -> bool:
    """Parse a status/boolean-like cell flexibly.

    Accepts: confirmed, TRUE, yes, y, 1, x (any case).
    Returns False for empty strings and other values.
    """
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in _TRUE_VALUES


def canonical_date(value: object) -> str | None:
    """Return the calendar date of value as YYYY-MM-DD, or None.

    Accepts date/datetime objects, ISO dates and timestamps, and the
    common slash/word formats listed in _DATE_FORMATS.
    """
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if not isinstance(value, str):
        return None

    text = value.strip()
    if not text:
        return None

    try:
        return date.fromisoformat(text[:10]).isoformat()
    except ValueError:
        pass

    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date().isoformat()
        except ValueError:
            continue
    return None


def parse_timestamp(value: object) -> datetime | None:
    """Parse an ISO 8601 (or Sheets-typed) timestamp into an aware UTC datetime.

    Naive timestamps are taken to be UTC. Returns None when unparseable.
    """
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value or "").strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            parsed = None
            for fmt in _TIMESTAMP_FORMATS:
                try:
                    parsed = datetime.strptime(text, fmt)
                    break
                except ValueError:
                    continue
            if parsed is None:
                return None

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def compute_fingerprint(description: str | None, amount: object, txn_date: object) -> str:
    """SHA256(description|amount|date) over normalized values.

    description: lowercased, trimmed, whitespace-collapsed.
    amount: parsed via parse_amount, formatted to 2 decimal places.
    date: canonicalized to YYYY-MM-DD when recognizable, else the trimmed text.

    Raises:
        ValueError: If the amount cannot be parsed.
    """
    parsed = parse_amount(amount)
    if parsed is None:
        raise ValueError(f"Unparseable amount for fingerprint: {amount!r}")
    # + 0.0 folds -0.0 into 0.0 so both format as "0.00"
    cents = round(parsed, 2) + 0.0
    day = canonical_date(txn_date) or str(txn_date or "").strip()
    key = f"{normalize_description(description)}|{cents:.2f}|{day}"
    return hashlib.sha256(key.encode()).hexdigest()
