"""Tests for auto-match, candidate listing, and manual match/unmatch."""

from pathlib import Path

import pytest

from ledgermatch.database.dedup import ImportMerger
from ledgermatch.database.models import (
    MATCHED,
    SOURCE_GOOGLE_SHEETS,
    UNRECONCILED,
    Document,
    Job,
    Transaction,
)
from ledgermatch.database.queries import find_double_booked_documents
from ledgermatch.database.repository import AlreadyMatchedError, NotFoundError, Repository
from ledgermatch.parsers.csv_parser import StatementCsvParser
from ledgermatch.reconcile.matcher import ReconciliationMatcher, best_match, candidates_for
from ledgermatch.reconcile.scoring import HIGH, LOW, MEDIUM, MatchThresholds

MIGRATIONS_DIR = Path(__file__).parent.parent.parent / "ledgermatch" / "database" / "migrations"


@pytest.fixture
def repo():
    r = Repository(":memory:")
    r.apply_migrations(MIGRATIONS_DIR)
    yield r
    r.close()


@pytest.fixture
def job(repo):
    return repo.insert_job(Job(user_id="alice", name="July"))


@pytest.fixture
def matcher(repo):
    return ReconciliationMatcher(repo)


def _txn(repo, job_id, amount=42.99, date="2025-07-01", desc="STARBUCKS #123", **kw):
    return repo.insert_transaction(Transaction(
        job_id=job_id, date=date, original_description=desc, amount=amount, **kw,
    ))


def _doc(repo, amount=42.99, date="2025-07-02", vendor="Starbucks", user_id="alice", **kw):
    return repo.insert_document(Document(
        user_id=user_id, original_filename=kw.pop("filename", "receipt.pdf"),
        vendor_name=vendor, document_date=date, total_amount=amount, **kw,
    ))


# ── best_match / candidates_for ────────────────────────────


class TestBestMatch:
    def test_exact_next_day_vendor_match(self):
        txn = Transaction(job_id="j", date="2025-07-01",
                          original_description="STARBUCKS #123", amount=42.99)
        doc = Document(user_id="alice", original_filename="r.pdf", vendor_name="Starbucks",
                       document_date="2025-07-02", total_amount=42.99)
        found = best_match(txn, [doc], MatchThresholds())
        assert found.document is doc
        assert found.pair.amount_difference == 0.0
        assert found.pair.date_difference == 1
        assert found.similarity == 100.0
        assert found.score == pytest.approx(99.7)

    def test_tie_resolves_to_first_document(self):
        txn = Transaction(job_id="j", date="2025-07-01",
                          original_description="STARBUCKS", amount=10.0)
        d1 = Document(user_id="u", original_filename="a.pdf", vendor_name="Starbucks",
                      document_date="2025-07-01", total_amount=10.0)
        d2 = Document(user_id="u", original_filename="b.pdf", vendor_name="Starbucks",
                      document_date="2025-07-01", total_amount=10.0)
        assert best_match(txn, [d1, d2], MatchThresholds()).document is d1
        assert best_match(txn, [d2, d1], MatchThresholds()).document is d2

    def test_higher_score_wins(self):
        txn = Transaction(job_id="j", date="2025-07-01",
                          original_description="STARBUCKS", amount=10.0)
        far = Document(user_id="u", original_filename="a.pdf", vendor_name="Starbucks",
                       document_date="2025-07-06", total_amount=10.0)
        near = Document(user_id="u", original_filename="b.pdf", vendor_name="Starbucks",
                        document_date="2025-07-01", total_amount=10.0)
        assert best_match(txn, [far, near], MatchThresholds()).document is near

    def test_claimed_and_linked_skipped(self):
        txn = Transaction(job_id="j", date="2025-07-01",
                          original_description="STARBUCKS", amount=10.0)
        claimed = Document(user_id="u", original_filename="a.pdf", vendor_name="Starbucks",
                           document_date="2025-07-01", total_amount=10.0)
        linked = Document(user_id="u", original_filename="b.pdf", vendor_name="Starbucks",
                          document_date="2025-07-01", total_amount=10.0,
                          matched_transaction_id="other")
        assert best_match(txn, [claimed, linked], MatchThresholds(), {claimed.id}) is None

    def test_filename_used_without_vendor(self):
        txn = Transaction(job_id="j", date="2025-07-01",
                          original_description="HOME DEPOT 4411", amount=10.0)
        doc = Document(user_id="u", original_filename="home depot", vendor_name=None,
                       document_date="2025-07-01", total_amount=10.0)
        assert best_match(txn, [doc], MatchThresholds()).similarity == 100.0

    def test_below_min_score_rejected(self):
        txn = Transaction(job_id="j", date="2025-07-01",
                          original_description="SHELL OIL", amount=10.0)
        doc = Document(user_id="u", original_filename="x.pdf", vendor_name="Chevron",
                       document_date="2025-07-08", total_amount=10.0)
        # 50 + 93 * 0.3 + 0 = 77.9
        assert best_match(txn, [doc], MatchThresholds()) is None

    def test_outside_tight_window_rejected(self):
        txn = Transaction(job_id="j", date="2025-07-01",
                          original_description="STARBUCKS", amount=10.0)
        doc = Document(user_id="u", original_filename="x.pdf", vendor_name="Starbucks",
                       document_date="2025-07-01", total_amount=10.01)
        assert best_match(txn, [doc], MatchThresholds()) is None


class TestCandidatesFor:
    def test_sorted_by_tier_then_amount(self):
        txn = Transaction(job_id="j", date="2025-07-01",
                          original_description="x", amount=100.0)
        low = Document(user_id="u", original_filename="low", document_date="2025-08-10",
                       total_amount=150.0)
        medium_far = Document(user_id="u", original_filename="m2", document_date="2025-07-11",
                              total_amount=100.75)
        medium = Document(user_id="u", original_filename="m1", document_date="2025-07-11",
                          total_amount=100.5)
        high = Document(user_id="u", original_filename="high", document_date="2025-07-01",
                        total_amount=100.0)
        found = candidates_for(txn, [low, medium_far, medium, high], MatchThresholds())
        assert [c.document.original_filename for c in found] == ["high", "m1", "m2", "low"]
        assert [c.confidence for c in found] == [HIGH, MEDIUM, MEDIUM, LOW]

    def test_truncated_to_max_candidates(self):
        txn = Transaction(job_id="j", date="2025-07-01", original_description="x", amount=10.0)
        docs = [Document(user_id="u", original_filename=f"d{i}", document_date="2025-07-01",
                         total_amount=10.0 + i) for i in range(8)]
        found = candidates_for(txn, docs, MatchThresholds())
        assert [c.document.original_filename for c in found] == ["d0", "d1", "d2", "d3", "d4"]

    def test_excludes_outside_window_and_linked(self):
        txn = Transaction(job_id="j", date="2025-07-01", original_description="x", amount=10.0)
        docs = [
            Document(user_id="u", original_filename="far", document_date="2025-09-30",
                     total_amount=10.0),
            Document(user_id="u", original_filename="big", document_date="2025-07-01",
                     total_amount=500.0),
            Document(user_id="u", original_filename="undated", total_amount=10.0),
            Document(user_id="u", original_filename="linked", document_date="2025-07-01",
                     total_amount=10.0, matched_transaction_id="t9"),
        ]
        assert candidates_for(txn, docs, MatchThresholds()) == []

    def test_to_dict(self):
        txn = Transaction(job_id="j", date="2025-07-01", original_description="x", amount=10.0)
        doc = Document(user_id="u", original_filename="r.pdf", vendor_name="V",
                       document_date="2025-07-03", total_amount=10.5)
        entry = candidates_for(txn, [doc], MatchThresholds())[0].to_dict()
        assert entry == {
            "document_id": doc.id,
            "original_filename": "r.pdf",
            "vendor_name": "V",
            "document_date": "2025-07-03",
            "total_amount": 10.5,
            "match_confidence": MEDIUM,
            "amount_difference": 0.5,
            "days_difference": 2,
        }


# ── Auto-match ─────────────────────────────────────────────


class TestAutoMatch:
    def test_exact_scenario(self, repo, job, matcher):
        txn = _txn(repo, job.id)
        doc = _doc(repo)
        result = matcher.auto_match("alice")
        assert result.matched_count == 1
        assert result.matches == [(txn.id, doc.id)]
        assert result.errors == 0
        assert repo.get_transaction(txn.id).reconciliation_status == MATCHED
        assert repo.get_document(doc.id).matched_transaction_id == txn.id

    def test_no_double_booking(self, repo, job, matcher):
        txns = [_txn(repo, job.id, date=f"2025-07-0{d}") for d in (1, 2, 3)]
        docs = [_doc(repo, date="2025-07-02") for _ in range(2)]
        result = matcher.auto_match("alice")

        assert result.matched_count == 2
        matched_docs = [d for _, d in result.matches]
        assert len(set(matched_docs)) == 2
        assert set(matched_docs) == {d.id for d in docs}
        assert find_double_booked_documents(repo.conn) == []
        unmatched = [t for t in txns if repo.get_transaction(t.id).matched_document_id is None]
        assert len(unmatched) == 1

    def test_imported_debit_matches_its_receipt(self, repo, tmp_path):
        statement = tmp_path / "statement.csv"
        statement.write_text("Date,Description,Debit,Credit\n2025-07-01,STARBUCKS #123,42.99,\n")
        raws = StatementCsvParser().parse(statement)
        assert raws[0].amount == pytest.approx(-42.99)
        imported = ImportMerger(repo).merge(raws, "alice", "July")
        doc = _doc(repo, amount=42.99, date="2025-07-02", vendor="Starbucks")

        result = ReconciliationMatcher(repo).auto_match("alice")
        assert result.matched_count == 1
        txn = repo.get_transactions_by_job(imported.job_id)[0]
        assert result.matches == [(txn.id, doc.id)]

    def test_second_pass_finds_nothing(self, repo, job, matcher):
        _txn(repo, job.id)
        _doc(repo)
        matcher.auto_match("alice")
        assert matcher.auto_match("alice").matched_count == 0

    def test_ignores_other_users(self, repo, job, matcher):
        _txn(repo, job.id)
        _doc(repo, user_id="bob")
        assert matcher.auto_match("alice").matched_count == 0

    def test_to_dict(self, repo, job, matcher):
        txn = _txn(repo, job.id)
        doc = _doc(repo)
        assert matcher.auto_match("alice").to_dict() == {
            "matched_count": 1,
            "matches": [{"transaction_id": txn.id, "document_id": doc.id}],
            "message": "Matched 1 transactions",
        }

    def test_commit_failure_continues(self, repo, job, matcher, monkeypatch):
        failing = _txn(repo, job.id, date="2025-07-03")
        ok = _txn(repo, job.id, date="2025-07-01", amount=10.0)
        _doc(repo, date="2025-07-03")
        ok_doc = _doc(repo, amount=10.0, date="2025-07-01")
        original = repo.set_match

        def flaky(txn_id, doc_id):
            if txn_id == failing.id:
                raise RuntimeError("disk I/O error")
            return original(txn_id, doc_id)

        monkeypatch.setattr(repo, "set_match", flaky)
        result = matcher.auto_match("alice")
        assert result.errors == 1
        assert result.matches == [(ok.id, ok_doc.id)]
        assert repo.get_transaction(failing.id).reconciliation_status == UNRECONCILED

    def test_concurrent_claim_marks_document_taken(self, repo, job, matcher, monkeypatch):
        bob_job = repo.insert_job(Job(user_id="bob", name="Bob's"))
        racer = _txn(repo, bob_job.id)
        first = _txn(repo, job.id, date="2025-07-02")
        second = _txn(repo, job.id, date="2025-07-01")
        doc = _doc(repo)
        original = repo.set_match
        calls = []

        def racing(txn_id, doc_id):
            calls.append(txn_id)
            if len(calls) == 1:
                original(racer.id, doc_id)
            return original(txn_id, doc_id)

        monkeypatch.setattr(repo, "set_match", racing)
        result = matcher.auto_match("alice")
        assert result.matched_count == 0
        assert result.errors == 1
        assert calls == [first.id]
        assert repo.get_transaction(second.id).matched_document_id is None
        assert repo.get_document(doc.id).matched_transaction_id == racer.id

    def test_per_pass_cap(self, repo, job):
        _txn(repo, job.id, amount=10.0, date="2025-07-01")
        _txn(repo, job.id, amount=20.0, date="2025-07-02")
        _doc(repo, amount=10.0, date="2025-07-01")
        _doc(repo, amount=20.0, date="2025-07-02")
        capped = ReconciliationMatcher(repo, MatchThresholds(max_transactions_per_pass=1))
        result = capped.auto_match("alice")
        assert result.matched_count == 1
        assert capped.auto_match("alice").matched_count == 1

    def test_source_type_filter(self, repo, job, matcher):
        upload = _txn(repo, job.id, amount=10.0)
        sheet = _txn(repo, job.id, amount=20.0, source_type=SOURCE_GOOGLE_SHEETS)
        _doc(repo, amount=10.0)
        _doc(repo, amount=20.0)
        result = matcher.auto_match("alice", source_type=SOURCE_GOOGLE_SHEETS)
        assert [t for t, _ in result.matches] == [sheet.id]
        assert repo.get_transaction(upload.id).matched_document_id is None


# ── Candidate listing ──────────────────────────────────────


class TestListCandidates:
    def test_listing_shape(self, repo, job, matcher):
        txn = _txn(repo, job.id, category="Food", source_identifier=None)
        doc = _doc(repo)
        listing = matcher.list_candidates("alice")

        assert listing["summary"] == {
            "total_unreconciled": 1, "total_matched": 0, "total_documents": 1,
        }
        entry = listing["transactions"][0]
        assert entry["id"] == txn.id
        assert entry["job_id"] == job.id
        assert entry["description"] == "STARBUCKS #123"
        assert entry["category"] == "Food"
        assert entry["reconciliation_status"] == UNRECONCILED
        assert entry["sync_info"] == {
            "source_type": "upload",
            "source_identifier": None,
            "last_synced_at": None,
            "sync_version": 1,
        }
        assert [m["document_id"] for m in entry["potential_matches"]] == [doc.id]
        assert entry["potential_matches"][0]["match_confidence"] == HIGH

    def test_never_commits(self, repo, job, matcher):
        txn = _txn(repo, job.id)
        _doc(repo)
        matcher.list_candidates("alice")
        assert repo.get_transaction(txn.id).matched_document_id is None

    def test_at_most_five(self, repo, job, matcher):
        _txn(repo, job.id, amount=100.0)
        for i in range(7):
            _doc(repo, amount=100.0 + i)
        entry = matcher.list_candidates("alice")["transactions"][0]
        assert len(entry["potential_matches"]) == 5

    def test_matched_excluded(self, repo, job, matcher):
        matched = _txn(repo, job.id)
        open_txn = _txn(repo, job.id, amount=10.0)
        doc = _doc(repo)
        repo.set_match(matched.id, doc.id)
        listing = matcher.list_candidates("alice")
        assert [t["id"] for t in listing["transactions"]] == [open_txn.id]
        assert listing["transactions"][0]["potential_matches"] == []

    def test_paging(self, repo, job, matcher):
        for d in range(1, 6):
            _txn(repo, job.id, date=f"2025-07-0{d}")
        listing = matcher.list_candidates("alice", limit=2, offset=2)
        assert [t["date"] for t in listing["transactions"]] == ["2025-07-03", "2025-07-02"]
        assert listing["summary"]["total_unreconciled"] == 5


# ── Manual match / unmatch ─────────────────────────────────


class TestManualMatch:
    def test_match(self, repo, job, matcher):
        txn = _txn(repo, job.id)
        doc = _doc(repo, amount=999.0)
        result = matcher.match("alice", txn.id, doc.id)
        assert result["transaction_id"] == txn.id
        assert result["document_id"] == doc.id
        assert result["reconciled_at"]
        assert repo.get_document(doc.id).matched_transaction_id == txn.id

    def test_other_users_transaction(self, repo, job, matcher):
        txn = _txn(repo, job.id)
        doc = _doc(repo, user_id="bob")
        with pytest.raises(NotFoundError):
            matcher.match("bob", txn.id, doc.id)

    def test_other_users_document(self, repo, job, matcher):
        txn = _txn(repo, job.id)
        doc = _doc(repo, user_id="bob")
        with pytest.raises(NotFoundError) as exc_info:
            matcher.match("alice", txn.id, doc.id)
        assert exc_info.value.kind == "document"
        assert repo.get_transaction(txn.id).matched_document_id is None

    def test_already_linked(self, repo, job, matcher):
        first = _txn(repo, job.id)
        second = _txn(repo, job.id)
        doc = _doc(repo)
        matcher.match("alice", first.id, doc.id)
        with pytest.raises(AlreadyMatchedError):
            matcher.match("alice", second.id, doc.id)

    def test_unmatch(self, repo, job, matcher):
        txn = _txn(repo, job.id)
        doc = _doc(repo)
        matcher.match("alice", txn.id, doc.id)
        assert matcher.unmatch("alice", txn.id) == {"transaction_id": txn.id,
                                                    "document_id": doc.id}
        assert repo.get_transaction(txn.id).reconciliation_status == UNRECONCILED
        assert repo.get_document(doc.id).reconciliation_status == UNRECONCILED

    def test_unmatch_unlinked(self, repo, job, matcher):
        txn = _txn(repo, job.id)
        assert matcher.unmatch("alice", txn.id) == {"transaction_id": txn.id,
                                                    "document_id": None}

    def test_unmatch_other_user(self, repo, job, matcher):
        txn = _txn(repo, job.id)
        with pytest.raises(NotFoundError):
            matcher.unmatch("bob", txn.id)
