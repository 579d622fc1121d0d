"""Match scoring between one transaction and one document.

Two windows gate a pairing:
- candidate: loose (amount within 100, dates within 60 days), for listing
  possible matches to a human reviewer
- auto-match: tight (amount within a cent, dates within 7 days), for
  unattended matching

Among auto-match-eligible documents, a weighted composite of amount, date,
and description similarity ranks the choice.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date

from ledgermatch.parsers.base import canonical_date

HIGH = "high"
MEDIUM = "medium"
LOW = "low"

TIER_RANK = {HIGH: 3, MEDIUM: 2, LOW: 1}


def _default_weights() -> dict[str, float]:
    return {"amount": 0.5, "date": 0.3, "description": 0.2}


@dataclass
class MatchThresholds:
    """Tunable windows and weights. Bounds marked max_*_diff are exclusive, *_days inclusive."""
    candidate_max_amount_diff: float = 100.0
    candidate_max_days: int = 60
    auto_max_amount_diff: float = 0.01
    auto_max_days: int = 7
    auto_min_score: float = 80.0
    medium_max_amount_diff: float = 1.00
    medium_max_days: int = 30
    weights: dict[str, float] = field(default_factory=_default_weights)
    max_candidates: int = 5
    missing_date_days: int = 999
    max_transactions_per_pass: int | None = None

    @classmethod
    def from_dict(cls, data: dict | None) -> MatchThresholds:
        """Build from a matching.yaml mapping; unknown keys are rejected."""
        data = dict(data or {})
        known = set(cls.__dataclass_fields__)
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown matching settings: {sorted(unknown)}")
        weights = _default_weights()
        weights.update(data.pop("weights", None) or {})
        return cls(weights=weights, **data)


@dataclass
class PairScore:
    amount_difference: float
    date_difference: int


def amount_difference(txn_amount: float, doc_amount: float | None) -> float:
    """||txn| - |doc||, treating a missing document total as 0.

    Bank debits are stored negative and document totals positive, so
    magnitudes are compared. Rounded to 6 places so float noise
    (100.01 - 100 = 0.0100000000000051) cannot push a value across a
    boundary.
    """
    return round(abs(abs(txn_amount) - abs(doc_amount or 0.0)), 6)



def date_difference(txn_date: str | None, doc_date: str | None,
                    missing_days: int = 999) -> int:
    """Absolute calendar-day difference, or missing_days if either date is absent."""
    a = canonical_date(txn_date)
    b = canonical_date(doc_date)
    if a is None or b is None:
        return missing_days
    return abs((date.fromisoformat(a) - date.fromisoformat(b)).days)


def score_pair(txn_amount: float, txn_date: str | None,
               doc_amount: float | None, doc_date: str | None,
               thresholds: MatchThresholds) -> PairScore:
    return PairScore(
        amount_difference=amount_difference(txn_amount, doc_amount),
        date_difference=date_difference(txn_date, doc_date, thresholds.missing_date_days),
    )


def is_candidate(pair: PairScore, thresholds: MatchThresholds) -> bool:
    return (pair.amount_difference < thresholds.candidate_max_amount_diff
            and pair.date_difference <= thresholds.candidate_max_days)


def is_auto_match_eligible(pair: PairScore, thresholds: MatchThresholds) -> bool:
    return (pair.amount_difference < thresholds.auto_max_amount_diff
            and pair.date_difference <= thresholds.auto_max_days)


def confidence_tier(pair: PairScore, thresholds: MatchThresholds) -> str:
    if is_auto_match_eligible(pair, thresholds):
        return HIGH
    if (pair.amount_difference < thresholds.medium_max_amount_diff
            and pair.date_difference <= thresholds.medium_max_days):
        return MEDIUM
    return LOW


def composite_score(pair: PairScore, similarity: float,
                    thresholds: MatchThresholds) -> float:
    """(100 - amountDiff)*w_amount + (100 - dateDiff)*w_date + similarity*w_description."""
    w = thresholds.weights
    return ((100 - pair.amount_difference) * w["amount"]
            + (100 - pair.date_difference) * w["date"]
            + similarity * w["description"])
