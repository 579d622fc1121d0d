"""Fingerprint-based duplicate detection for transaction imports.

Every stored transaction carries SHA256(description|amount|date) over
normalized values (see parsers.base.compute_fingerprint). An incoming
batch is compared against all of the owner's stored fingerprints:

- similarity = round(duplicates / incoming * 100)
- below 50: the batch is mostly new data, so everything is inserted into
  a fresh job (mode "insert")
- 50 or more (or force_merge): the batch is a re-import of something
  already stored, so only rows with an unseen fingerprint are inserted
  (mode "merge"); if nothing is new, no job is created at all

In merge mode, rows without a stored fingerprint are also checked for
near matches against the owner's transactions dated within a few days:

- description_diff: same amount and day, descriptions 50-80% similar
- amount_diff: similar description, same day, amount within 1%
- date_diff: similar description, same amount, dates up to 3 days apart

A near-matched row is not inserted. It is held as a sync conflict until
someone resolves it.

Fingerprints only cover description, amount and date, so two genuinely
distinct same-day same-amount charges with the same description are
indistinguishable here; within one incoming batch such rows are never
collapsed.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, timedelta
from difflib import SequenceMatcher

from ledgermatch.database.models import (
    CONFLICT_PENDING,
    RESOLUTION_CHOICES,
    SOURCE_GOOGLE_SHEETS,
    SOURCE_UPLOAD,
    Job,
    SyncConflict,
    Transaction,
)
from ledgermatch.database.repository import NotFoundError, Repository
from ledgermatch.parsers.base import (
    RawTransaction,
    canonical_date,
    compute_fingerprint,
    normalize_description,
)

logger = logging.getLogger(__name__)

MODE_INSERT = "insert"
MODE_MERGE = "merge"

DESCRIPTION_DIFF = "description_diff"
AMOUNT_DIFF = "amount_diff"
DATE_DIFF = "date_diff"

# Near-match thresholds
NEAR_DESCRIPTION_SIMILARITY = 80   # at or above: "same" description
NEAR_DESCRIPTION_FLOOR = 50        # below: unrelated description
NEAR_AMOUNT_PERCENT = 1.0
NEAR_DATE_DAYS = 3


def description_ratio(a: str | None, b: str | None) -> int:
    """Similarity of two descriptions as a whole percentage (0-100)."""
    a, b = normalize_description(a), normalize_description(b)
    if a == b:
        return 100
    if not a or not b:
        return 0
    return round(SequenceMatcher(None, a, b).ratio() * 100)


def classify_near_match(raw: RawTransaction, existing: Transaction) -> tuple[str, float] | None:
    """(match_type, difference) if raw nearly duplicates existing, else None."""
    raw_day = canonical_date(raw.date)
    stored_day = canonical_date(existing.date)
    if raw_day is None or stored_day is None:
        return None
    days = abs((date.fromisoformat(raw_day) - date.fromisoformat(stored_day)).days)
    if days > NEAR_DATE_DAYS:
        return None

    similarity = description_ratio(raw.description, existing.original_description)
    similar = similarity >= NEAR_DESCRIPTION_SIMILARITY
    amount_diff = round(abs(raw.amount - existing.amount), 6)
    if raw.amount:
        percent = amount_diff / abs(raw.amount) * 100
    else:
        percent = 100.0 if existing.amount else 0.0

    if amount_diff < 0.01 and days == 0 and not similar and similarity >= NEAR_DESCRIPTION_FLOOR:
        return DESCRIPTION_DIFF, float(similarity)
    if similar and days == 0 and percent <= NEAR_AMOUNT_PERCENT:
        return AMOUNT_DIFF, amount_diff
    if similar and amount_diff < 0.01:
        return DATE_DIFF, float(days)
    return None


@dataclass
class NearMatch:
    incoming: RawTransaction
    existing: Transaction
    match_type: str
    difference: float


@dataclass
class DetectionResult:
    """Outcome of comparing an incoming batch against stored fingerprints."""
    similarity_score: int
    total: int
    duplicates: list[RawTransaction] = field(default_factory=list)
    new: list[RawTransaction] = field(default_factory=list)
    fingerprints: dict[int, str] = field(default_factory=dict)  # id(raw) → fingerprint
    existing_job_id: str | None = None
    existing_job_ids: list[str] = field(default_factory=list)
    near_matches: list[NearMatch] = field(default_factory=list)

    @property
    def matching_count(self) -> int:
        return len(self.duplicates)


@dataclass
class MergeResult:
    mode: str
    inserted: int
    skipped: int
    similarity_score: int
    job_id: str | None = None
    matched_job_id: str | None = None
    message: str = ""
    conflict_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "mode": self.mode,
            "inserted": self.inserted,
            "skipped": self.skipped,
            "similarity_score": self.similarity_score,
            "job_id": self.job_id,
            "matched_job_id": self.matched_job_id,
            "conflicts": len(self.conflict_ids),
            "conflict_ids": self.conflict_ids,
            "message": self.message,
        }


class DuplicateDetector:
    def __init__(self, repo: Repository, check_near_matches: bool = True):
        self.repo = repo
        self.check_near_matches = check_near_matches

    def detect(self, raw_txns: list[RawTransaction], owner_id: str) -> DetectionResult:
        if not raw_txns:
            return DetectionResult(similarity_score=0, total=0)

        index = self.repo.get_fingerprint_index(owner_id)
        result = DetectionResult(similarity_score=0, total=len(raw_txns))
        job_hits: Counter[str] = Counter()

        for raw in raw_txns:
            fp = compute_fingerprint(raw.description, raw.amount, raw.date)
            result.fingerprints[id(raw)] = fp
            existing_jobs = index.get(fp)
            if existing_jobs:
                result.duplicates.append(raw)
                job_hits.update(existing_jobs)
            else:
                result.new.append(raw)

        # Half rounds up (49.5 → 50), unlike round()
        result.similarity_score = int(result.matching_count * 100 / result.total + 0.5)
        if job_hits:
            # most_common keeps first-seen order among equal counts
            result.existing_job_id = job_hits.most_common(1)[0][0]
            result.existing_job_ids = list(job_hits)
        if self.check_near_matches and result.new:
            self._split_near_matches(result, owner_id)
        return result

    def _split_near_matches(self, result: DetectionResult, owner_id: str) -> None:
        """Move rows that nearly duplicate a stored transaction from new to near_matches."""
        days = sorted(d for d in (canonical_date(r.date) for r in result.new) if d)
        if not days:
            return
        window = timedelta(days=NEAR_DATE_DAYS)
        start = (date.fromisoformat(days[0]) - window).isoformat()
        end = (date.fromisoformat(days[-1]) + window).isoformat()
        stored = self.repo.list_transactions_between(owner_id, start, end)
        if not stored:
            return

        still_new: list[RawTransaction] = []
        for raw in result.new:
            for existing in stored:
                found = classify_near_match(raw, existing)
                if found is not None:
                    match_type, difference = found
                    result.near_matches.append(
                        NearMatch(raw, existing, match_type, difference)
                    )
                    break
            else:
                still_new.append(raw)
        result.new = still_new


class ImportMerger:
    """Insert a parsed batch, merging against what the owner already has."""

    MERGE_THRESHOLD: int = 50

    def __init__(self, repo: Repository, detector: DuplicateDetector | None = None):
        self.repo = repo
        self.detector = detector or DuplicateDetector(repo)

    def merge(
        self,
        raw_txns: list[RawTransaction],
        owner_id: str,
        job_name: str,
        *,
        job_id: str | None = None,
        source_type: str = SOURCE_UPLOAD,
        source_identifier: str | None = None,
        force_merge: bool = False,
        skip_duplicate_check: bool = False,
    ) -> MergeResult:
        """Insert raw_txns for owner_id.

        With job_id, rows go into that existing job (which must belong to
        owner_id); otherwise a new job named job_name is created, but only
        when there is something to insert.

        Raises:
            NotFoundError: job_id is given but not owned by owner_id.
        """
        if job_id is not None and self.repo.get_job_for_user(job_id, owner_id) is None:
            raise NotFoundError("job", job_id)

        if skip_duplicate_check:
            fingerprints = {
                id(r): compute_fingerprint(r.description, r.amount, r.date) for r in raw_txns
            }
            return self._insert_all(raw_txns, fingerprints, owner_id, job_name, job_id,
                                    source_type, source_identifier, similarity=0)

        detection = self.detector.detect(raw_txns, owner_id)
        logger.info(
            "Duplicate check for %s: %d/%d already stored (similarity %d%%)",
            owner_id, detection.matching_count, detection.total, detection.similarity_score,
        )

        if detection.similarity_score < self.MERGE_THRESHOLD and not force_merge:
            return self._insert_all(raw_txns, detection.fingerprints, owner_id, job_name,
                                    job_id, source_type, source_identifier,
                                    similarity=detection.similarity_score)

        conflict_ids = self._hold_near_matches(detection, owner_id, source_type)
        held = ""
        if conflict_ids:
            held = f" Held {len(conflict_ids)} near-duplicates for review."

        if not detection.new:
            if conflict_ids:
                message = (f"No new transactions; skipped {detection.matching_count}"
                           f" duplicates.{held}")
            else:
                message = (f"All {detection.matching_count} transactions already exist."
                           " No new data added.")
            return MergeResult(
                mode=MODE_MERGE,
                inserted=0,
                skipped=detection.matching_count,
                similarity_score=detection.similarity_score,
                job_id=job_id,
                matched_job_id=detection.existing_job_id,
                message=message,
                conflict_ids=conflict_ids,
            )

        target_job = job_id or self._create_job(owner_id, job_name, source_type,
                                                source_identifier)
        txns = self._build(detection.new, detection.fingerprints, target_job,
                           source_type, source_identifier)
        self.repo.insert_transactions_batch(txns)
        return MergeResult(
            mode=MODE_MERGE,
            inserted=len(txns),
            skipped=detection.matching_count,
            similarity_score=detection.similarity_score,
            job_id=target_job,
            matched_job_id=detection.existing_job_id,
            message=(f"Merged {len(txns)} new transactions;"
                     f" skipped {detection.matching_count} duplicates.{held}"),
            conflict_ids=conflict_ids,
        )

    # ── Helpers ───────────────────────────────────────────

    def _hold_near_matches(self, detection: DetectionResult, owner_id: str,
                           source_type: str) -> list[str]:
        """Record one pending conflict per near-matched row. Returns their ids."""
        if not detection.near_matches:
            return []
        conflicts = [
            SyncConflict(
                user_id=owner_id,
                transaction_id=nm.existing.id,
                match_type=nm.match_type,
                difference=nm.difference,
                source_type=source_type,
                incoming_date=canonical_date(nm.incoming.date) or nm.incoming.date,
                incoming_description=nm.incoming.description,
                incoming_amount=nm.incoming.amount,
                incoming_category=nm.incoming.category,
                incoming_subcategory=nm.incoming.subcategory,
                incoming_fingerprint=detection.fingerprints[id(nm.incoming)],
            )
            for nm in detection.near_matches
        ]
        self.repo.insert_conflicts_batch(conflicts)
        logger.info("Held %d near-duplicate rows for %s as conflicts", len(conflicts), owner_id)
        return [c.id for c in conflicts]

    def _insert_all(self, raw_txns, fingerprints, owner_id, job_name, job_id,
                    source_type, source_identifier, similarity: int) -> MergeResult:
        if not raw_txns:
            return MergeResult(mode=MODE_INSERT, inserted=0, skipped=0,
                               similarity_score=similarity, job_id=job_id,
                               message="No transactions to import.")
        target_job = job_id or self._create_job(owner_id, job_name, source_type,
                                                source_identifier)
        txns = self._build(raw_txns, fingerprints, target_job, source_type, source_identifier)
        self.repo.insert_transactions_batch(txns)
        return MergeResult(
            mode=MODE_INSERT,
            inserted=len(txns),
            skipped=0,
            similarity_score=similarity,
            job_id=target_job,
            message=f"Imported {len(txns)} transactions.",
        )

    def _create_job(self, owner_id: str, name: str, source_type: str,
                    source_identifier: str | None) -> str:
        job = Job(user_id=owner_id, name=name, source_type=source_type,
                  spreadsheet_id=source_identifier if source_type == SOURCE_GOOGLE_SHEETS else None)
        self.repo.insert_job(job)
        logger.info("Created job %s (%s) for %s", job.id, name, owner_id)
        return job.id

    @staticmethod
    def _build(raws: list[RawTransaction], fingerprints: dict[int, str], job_id: str,
               source_type: str, source_identifier: str | None) -> list[Transaction]:
        return [
            Transaction(
                job_id=job_id,
                date=raw.date,
                original_description=raw.description,
                amount=raw.amount,
                category=raw.category,
                subcategory=raw.subcategory,
                confidence_score=raw.confidence,
                user_confirmed=raw.user_confirmed,
                source_type=source_type,
                source_identifier=source_identifier,
                sync_version=1,
                transaction_fingerprint=fingerprints[id(raw)],
            )
            for raw in raws
        ]


class ConflictResolver:
    """List and settle the near-duplicate conflicts an import held back."""

    def __init__(self, repo: Repository):
        self.repo = repo

    def list_conflicts(self, owner_id: str, status: str = CONFLICT_PENDING,
                       limit: int = 50) -> list[dict]:
        return [_conflict_to_dict(c) for c in self.repo.list_conflicts(owner_id, status, limit)]

    def resolve(self, owner_id: str, conflict_id: str, choice: str) -> dict:
        """Apply "db", "external" or "insert" to one of owner_id's pending conflicts.

        Raises:
            ValueError: Unknown choice.
            NotFoundError: The conflict is missing, not owned by owner_id,
                or already resolved.
        """
        if choice not in RESOLUTION_CHOICES:
            raise ValueError(
                f"Invalid resolution '{choice}', expected one of {', '.join(RESOLUTION_CHOICES)}"
            )
        conflict = self.repo.get_conflict_for_user(conflict_id, owner_id)
        if conflict is None:
            raise NotFoundError("conflict", conflict_id)
        txn_id = self.repo.resolve_conflict(conflict, choice)
        logger.info("Resolved conflict %s with '%s' (txn %s)", conflict_id, choice, txn_id)
        return {
            "conflict_id": conflict_id,
            "resolution": choice,
            "transaction_id": txn_id,
            "message": f"Conflict resolved with '{choice}' strategy",
        }


def _conflict_to_dict(c: SyncConflict) -> dict:
    return {
        "conflict_id": c.id,
        "transaction_id": c.transaction_id,
        "match_type": c.match_type,
        "difference": c.difference,
        "incoming": {
            "date": c.incoming_date,
            "description": c.incoming_description,
            "amount": c.incoming_amount,
        },
        "status": c.resolution_status,
        "created_at": c.created_at,
    }
