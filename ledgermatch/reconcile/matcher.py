"""Reconciliation matcher: pairs bank transactions with receipts/invoices.

Three entry points:
- auto_match(): unattended pass that commits the best tight-window match
  for every unlinked transaction
- list_candidates(): read-only listing of up to N loose-window candidates
  per transaction, tiered high/medium/low for a human reviewer
- match() / unmatch(): manual linking with an ownership check first

Every pass re-reads the unmatched sets from the repository. Documents
claimed during a pass are tracked in a set local to that call so a
document is never offered to a second transaction; the repository's
conditional update is the only guard against a concurrent pass.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from ledgermatch.database import queries
from ledgermatch.database.models import Document, Transaction
from ledgermatch.database.repository import (
    AlreadyMatchedError,
    NotFoundError,
    Repository,
)
from ledgermatch.reconcile.scoring import (
    TIER_RANK,
    MatchThresholds,
    PairScore,
    composite_score,
    confidence_tier,
    is_auto_match_eligible,
    is_candidate,
    score_pair,
)
from ledgermatch.reconcile.similarity import description_similarity

logger = logging.getLogger(__name__)


@dataclass
class ScoredMatch:
    document: Document
    pair: PairScore
    similarity: float
    score: float


@dataclass
class Candidate:
    document: Document
    pair: PairScore
    confidence: str

    def to_dict(self) -> dict:
        doc = self.document
        return {
            "document_id": doc.id,
            "original_filename": doc.original_filename,
            "vendor_name": doc.vendor_name,
            "document_date": doc.document_date,
            "total_amount": doc.total_amount,
            "match_confidence": self.confidence,
            "amount_difference": self.pair.amount_difference,
            "days_difference": self.pair.date_difference,
        }


@dataclass
class AutoMatchResult:
    matches: list[tuple[str, str]] = field(default_factory=list)
    errors: int = 0

    @property
    def matched_count(self) -> int:
        return len(self.matches)

    def to_dict(self) -> dict:
        return {
            "matched_count": self.matched_count,
            "matches": [
                {"transaction_id": t, "document_id": d} for t, d in self.matches
            ],
            "message": f"Matched {self.matched_count} transactions",
        }


def _vendor_text(doc: Document) -> str:
    return doc.vendor_name or doc.original_filename or ""


def _is_linked(doc: Document, claimed: set[str] | frozenset[str]) -> bool:
    return doc.id in claimed or doc.matched_transaction_id is not None


def best_match(
    txn: Transaction,
    documents: list[Document],
    thresholds: MatchThresholds,
    claimed: set[str] | frozenset[str] = frozenset(),
) -> ScoredMatch | None:
    """Best auto-match-eligible document for a transaction, or None.

    Only a strictly higher score replaces the current best, so equal
    scores resolve to the document seen first.
    """
    best: ScoredMatch | None = None
    for doc in documents:
        if _is_linked(doc, claimed):
            continue
        pair = score_pair(txn.amount, txn.date, doc.total_amount,
                          doc.document_date, thresholds)
        if not is_auto_match_eligible(pair, thresholds):
            continue
        similarity = description_similarity(txn.original_description, _vendor_text(doc))
        total = composite_score(pair, similarity, thresholds)
        if total < thresholds.auto_min_score:
            continue
        if best is None or total > best.score:
            best = ScoredMatch(document=doc, pair=pair, similarity=similarity, score=total)
    return best


def candidates_for(
    txn: Transaction,
    documents: list[Document],
    thresholds: MatchThresholds,
) -> list[Candidate]:
    """Loose-window candidates, best tier first then smallest amount difference."""
    found: list[Candidate] = []
    for doc in documents:
        if doc.matched_transaction_id is not None:
            continue
        pair = score_pair(txn.amount, txn.date, doc.total_amount,
                          doc.document_date, thresholds)
        if not is_candidate(pair, thresholds):
            continue
        found.append(Candidate(document=doc, pair=pair,
                               confidence=confidence_tier(pair, thresholds)))
    # sorted() is stable: ties keep document order
    found = sorted(
        found, key=lambda c: (-TIER_RANK[c.confidence], c.pair.amount_difference)
    )
    return found[: thresholds.max_candidates]


class ReconciliationMatcher:
    def __init__(self, repo: Repository, thresholds: MatchThresholds | None = None):
        self.repo = repo
        self.thresholds = thresholds or MatchThresholds()

    # ── Auto-match ────────────────────────────────────────

    def auto_match(self, owner_id: str, source_type: str | None = None) -> AutoMatchResult:
        """Run one auto-match pass for a user.

        A failed commit is logged and counted and the pass moves on to the
        next transaction. Read failures propagate.
        """
        txns = self.repo.list_unreconciled_transactions(owner_id, source_type=source_type)
        docs = self.repo.list_unreconciled_documents(owner_id)
        cap = self.thresholds.max_transactions_per_pass
        if cap is not None:
            txns = txns[:cap]

        result = AutoMatchResult()
        claimed: set[str] = set()

        for txn in txns:
            if txn.matched_document_id:
                continue
            found = best_match(txn, docs, self.thresholds, claimed)
            if found is None:
                continue
            doc = found.document
            try:
                self.repo.set_match(txn.id, doc.id)
            except AlreadyMatchedError as e:
                logger.warning("Skipping match %s → %s: %s", txn.id, doc.id, e)
                result.errors += 1
                if e.kind == "document":
                    claimed.add(doc.id)
                continue
            except Exception:
                logger.exception("Failed to commit match %s → %s", txn.id, doc.id)
                result.errors += 1
                continue
            claimed.add(doc.id)
            result.matches.append((txn.id, doc.id))
            logger.info("Matched txn %s → doc %s (score %.1f)", txn.id, doc.id, found.score)

        logger.info(
            "Auto-match for %s: %d matched, %d errors (%d transactions, %d documents)",
            owner_id, result.matched_count, result.errors, len(txns), len(docs),
        )
        return result

    # ── Candidate listing ─────────────────────────────────

    def list_candidates(
        self, owner_id: str, source_type: str | None = None,
        limit: int = 100, offset: int = 0,
    ) -> dict:
        """Potential matches per unreconciled transaction, never committing anything."""
        txns = self.repo.list_unreconciled_transactions(
            owner_id, source_type=source_type, limit=limit, offset=offset,
        )
        docs = self.repo.list_unreconciled_documents(owner_id)

        listed = []
        for txn in txns:
            listed.append({
                "id": txn.id,
                "job_id": txn.job_id,
                "date": txn.date,
                "description": txn.original_description,
                "amount": txn.amount,
                "category": txn.category,
                "subcategory": txn.subcategory,
                "reconciliation_status": txn.reconciliation_status,
                "potential_matches": [
                    c.to_dict() for c in candidates_for(txn, docs, self.thresholds)
                ],
                "sync_info": {
                    "source_type": txn.source_type or "upload",
                    "source_identifier": txn.source_identifier,
                    "last_synced_at": txn.last_synced_at,
                    "sync_version": txn.sync_version or 1,
                },
            })

        return {
            "transactions": listed,
            "summary": queries.get_reconciliation_summary(self.repo.conn, owner_id),
        }

    # ── Manual match / unmatch ────────────────────────────

    def match(self, owner_id: str, txn_id: str, doc_id: str) -> dict:
        """Link a transaction to a document after checking both belong to owner_id.

        Raises:
            NotFoundError: Either record is missing or owned by someone else.
            AlreadyMatchedError: Either record is already linked.
        """
        if self.repo.get_transaction_for_user(txn_id, owner_id) is None:
            raise NotFoundError("transaction", txn_id)
        if self.repo.get_document_for_user(doc_id, owner_id) is None:
            raise NotFoundError("document", doc_id)
        reconciled_at = self.repo.set_match(txn_id, doc_id)
        logger.info("Manually matched txn %s → doc %s", txn_id, doc_id)
        return {
            "transaction_id": txn_id,
            "document_id": doc_id,
            "reconciled_at": reconciled_at,
        }

    def unmatch(self, owner_id: str, txn_id: str) -> dict:
        """Clear a transaction's link (and the document's reciprocal link).

        Raises:
            NotFoundError: The transaction is missing or owned by someone else.
        """
        if self.repo.get_transaction_for_user(txn_id, owner_id) is None:
            raise NotFoundError("transaction", txn_id)
        doc_id = self.repo.clear_match(txn_id)
        logger.info("Unmatched txn %s (was doc %s)", txn_id, doc_id)
        return {"transaction_id": txn_id, "document_id": doc_id}
