"""Aggregate queries that span multiple tables.

These go beyond single-table CRUD and back the reconciliation summary
and the `ledgermatch status` command.
"""

from __future__ import annotations

import sqlite3


def get_reconciliation_summary(conn: sqlite3.Connection, user_id: str) -> dict:
    """Counts shown alongside the candidate listing."""
    row = conn.execute(
        "SELECT"
        "  (SELECT COUNT(*) FROM transactions t JOIN jobs j ON j.id = t.job_id"
        "    WHERE j.user_id = ? AND t.reconciliation_status = 'unreconciled')"
        "    AS total_unreconciled,"
        "  (SELECT COUNT(*) FROM transactions t JOIN jobs j ON j.id = t.job_id"
        "    WHERE j.user_id = ? AND t.reconciliation_status = 'matched')"
        "    AS total_matched,"
        "  (SELECT COUNT(*) FROM documents"
        "    WHERE user_id = ? AND reconciliation_status = 'unreconciled'"
        "      AND matched_transaction_id IS NULL)"
        "    AS total_documents",
        (user_id, user_id, user_id),
    ).fetchone()
    return dict(row)


def get_status_counts(conn: sqlite3.Connection, user_id: str) -> dict:
    """Counts for the `ledgermatch status` command."""
    row = conn.execute(
        "SELECT"
        "  (SELECT COUNT(*) FROM jobs WHERE user_id = ?) AS total_jobs,"
        "  (SELECT COUNT(*) FROM transactions t JOIN jobs j ON j.id = t.job_id"
        "    WHERE j.user_id = ?) AS total_txns,"
        "  (SELECT COUNT(*) FROM transactions t JOIN jobs j ON j.id = t.job_id"
        "    WHERE j.user_id = ? AND t.reconciliation_status = 'matched') AS matched,"
        "  (SELECT COUNT(*) FROM transactions t JOIN jobs j ON j.id = t.job_id"
        "    WHERE j.user_id = ? AND t.source_type = 'google_sheets') AS from_sheets,"
        "  (SELECT COUNT(*) FROM documents WHERE user_id = ?) AS total_documents,"
        "  (SELECT COUNT(*) FROM documents"
        "    WHERE user_id = ? AND reconciliation_status = 'unreconciled')"
        "    AS unmatched_documents",
        (user_id,) * 6,
    ).fetchone()
    counts = dict(row)
    counts["unreconciled"] = counts["total_txns"] - counts["matched"]
    return counts


def find_double_booked_documents(conn: sqlite3.Connection) -> list[str]:
    """Document ids referenced by more than one transaction (should be empty)."""
    rows = conn.execute(
        "SELECT matched_document_id FROM transactions"
        " WHERE matched_document_id IS NOT NULL"
        " GROUP BY matched_document_id HAVING COUNT(*) > 1"
    ).fetchall()
    return [r[0] for r in rows]
