"""Repository: CRUD operations against SQLite using raw SQL.

All methods take/return dataclass instances from models.py.
Connection management uses a single connection with WAL mode and
foreign keys enabled.

Ownership: transactions belong to a user through their job; documents
carry user_id directly. The *_for_user lookups return None for records
the user does not own, so callers can check ownership before mutating.
"""

from __future__ import annotations

import sqlite3
from datetime import datetime, timezone
from pathlib import Path

from .models import (
    CONFLICT_PENDING,
    CONFLICT_RESOLVED,
    MATCHED,
    RESOLVE_EXTERNAL,
    RESOLVE_INSERT,
    SOURCE_GOOGLE_SHEETS,
    UNRECONCILED,
    Document,
    Job,
    SyncConflict,
    Transaction,
)

_TXN_COLUMNS = (
    "id", "job_id", "date", "original_description", "amount",
    "category", "subcategory", "confidence_score", "user_confirmed",
    "reconciliation_status", "matched_document_id", "source_type",
    "source_identifier", "sync_version", "last_synced_at",
    "transaction_fingerprint", "last_modified_source", "sync_status",
    "reconciled_at", "created_at", "updated_at",
)

_INSERT_TXN_SQL = (
    f"INSERT INTO transactions ({', '.join(_TXN_COLUMNS)})"
    f" VALUES ({','.join('?' * len(_TXN_COLUMNS))})"
)

_CONFLICT_COLUMNS = (
    "id", "user_id", "transaction_id", "source_type", "match_type", "difference",
    "incoming_date", "incoming_description", "incoming_amount", "incoming_category",
    "incoming_subcategory", "incoming_fingerprint", "resolution_status",
    "resolution_choice", "resolved_at", "created_at",
)


class NotFoundError(Exception):
    """Raised when a record does not exist or is not owned by the caller."""

    def __init__(self, kind: str, record_id: str):
        self.kind = kind
        self.record_id = record_id
        super().__init__(f"{kind} '{record_id}' not found")


class AlreadyMatchedError(Exception):
    """Raised when set_match finds either side already linked at commit time."""

    def __init__(self, kind: str, record_id: str):
        self.kind = kind
        self.record_id = record_id
        super().__init__(f"{kind} '{record_id}' is already matched")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class Repository:
    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._conn: sqlite3.Connection | None = None

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
            self._conn.execute("PRAGMA journal_mode = WAL")
        return self._conn

    def close(self):
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    # ── Migrations ──────────────────────────────────────────

    def apply_migrations(self, migrations_dir: Path):
        """Apply all pending SQL migrations in order.

        Each migration runs in a transaction: if the SQL fails, the
        schema_version row is not inserted, allowing retry on next startup.
        """
        self.conn.execute(
            "CREATE TABLE IF NOT EXISTS schema_version ("
            "  version INTEGER PRIMARY KEY,"
            "  description TEXT,"
            "  applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP"
            ")"
        )
        self.conn.commit()

        row = self.conn.execute(
            "SELECT MAX(version) FROM schema_version"
        ).fetchone()
        current = row[0] or 0

        for sql_file in sorted(Path(migrations_dir).glob("*.sql")):
            version = int(sql_file.name.split("_")[0])
            if version <= current:
                continue
            try:
                self.conn.execute("BEGIN")
                # executescript auto-commits, so we split statements manually
                for statement in sql_file.read_text().split(";"):
                    statement = statement.strip()
                    if statement:
                        self.conn.execute(statement)
                self.conn.execute(
                    "INSERT INTO schema_version (version, description) VALUES (?, ?)",
                    (version, sql_file.stem),
                )
                self.conn.commit()
            except Exception:
                self.conn.rollback()
                raise

    # ── Jobs ────────────────────────────────────────────────

    def insert_job(self, job: Job) -> Job:
        self.conn.execute(
            "INSERT INTO jobs (id, user_id, name, spreadsheet_id, source_type, created_at)"
            " VALUES (?,?,?,?,?,?)",
            (job.id, job.user_id, job.name, job.spreadsheet_id,
             job.source_type, job.created_at),
        )
        self.conn.commit()
        return job

    def get_job(self, job_id: str) -> Job | None:
        row = self.conn.execute(
            "SELECT * FROM jobs WHERE id = ?", (job_id,)
        ).fetchone()
        return self._row_to_job(row) if row else None

    def get_job_for_user(self, job_id: str, user_id: str) -> Job | None:
        row = self.conn.execute(
            "SELECT * FROM jobs WHERE id = ? AND user_id = ?", (job_id, user_id)
        ).fetchone()
        return self._row_to_job(row) if row else None

    def list_jobs(self, user_id: str) -> list[Job]:
        rows = self.conn.execute(
            "SELECT * FROM jobs WHERE user_id = ? ORDER BY created_at DESC, rowid DESC",
            (user_id,),
        ).fetchall()
        return [self._row_to_job(r) for r in rows]

    # ── Transactions ────────────────────────────────────────

    def insert_transaction(self, txn: Transaction) -> Transaction:
        self.conn.execute(_INSERT_TXN_SQL, self._transaction_values(txn))
        self.conn.commit()
        return txn

    def insert_transactions_batch(self, txns: list[Transaction]):
        """Insert multiple transactions atomically.

        Uses a transaction wrapper so either all inserts succeed or none do.
        """
        try:
            self.conn.execute("BEGIN")
            self.conn.executemany(
                _INSERT_TXN_SQL, [self._transaction_values(t) for t in txns]
            )
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise

    def get_transaction(self, txn_id: str) -> Transaction | None:
        row = self.conn.execute(
            "SELECT * FROM transactions WHERE id = ?", (txn_id,)
        ).fetchone()
        return self._row_to_transaction(row) if row else None

    def get_transaction_for_user(self, txn_id: str, user_id: str) -> Transaction | None:
        row = self.conn.execute(
            "SELECT t.* FROM transactions t"
            " JOIN jobs j ON j.id = t.job_id"
            " WHERE t.id = ? AND j.user_id = ?",
            (txn_id, user_id),
        ).fetchone()
        return self._row_to_transaction(row) if row else None

    def get_transactions_by_job(self, job_id: str) -> list[Transaction]:
        rows = self.conn.execute(
            "SELECT * FROM transactions WHERE job_id = ? ORDER BY date, rowid",
            (job_id,),
        ).fetchall()
        return [self._row_to_transaction(r) for r in rows]

    def list_unreconciled_transactions(
        self, user_id: str, source_type: str | None = None,
        limit: int | None = None, offset: int = 0,
    ) -> list[Transaction]:
        """Unreconciled transactions for a user, newest first."""
        sql = (
            "SELECT t.* FROM transactions t"
            " JOIN jobs j ON j.id = t.job_id"
            " WHERE j.user_id = ? AND t.reconciliation_status = ?"
        )
        params: list = [user_id, UNRECONCILED]
        if source_type:
            sql += " AND t.source_type = ?"
            params.append(source_type)
        sql += " ORDER BY t.date DESC, t.rowid DESC"
        if limit is not None:
            sql += " LIMIT ? OFFSET ?"
            params.extend([limit, offset])
        elif offset:
            sql += " LIMIT -1 OFFSET ?"
            params.append(offset)
        rows = self.conn.execute(sql, params).fetchall()
        return [self._row_to_transaction(r) for r in rows]

    def list_transactions_between(self, user_id: str, start: str, end: str) -> list[Transaction]:
        """A user's transactions dated start..end inclusive (YYYY-MM-DD), oldest first."""
        rows = self.conn.execute(
            "SELECT t.* FROM transactions t"
            " JOIN jobs j ON j.id = t.job_id"
            " WHERE j.user_id = ? AND t.date BETWEEN ? AND ?"
            " ORDER BY t.date, t.rowid",
            (user_id, start, end),
        ).fetchall()
        return [self._row_to_transaction(r) for r in rows]

    def get_fingerprint_index(self, user_id: str) -> dict[str, list[str]]:
        """Map each stored fingerprint of the user's transactions to its job ids."""
        rows = self.conn.execute(
            "SELECT t.transaction_fingerprint, t.job_id FROM transactions t"
            " JOIN jobs j ON j.id = t.job_id"
            " WHERE j.user_id = ? AND t.transaction_fingerprint IS NOT NULL",
            (user_id,),
        ).fetchall()
        index: dict[str, list[str]] = {}
        for r in rows:
            index.setdefault(r["transaction_fingerprint"], []).append(r["job_id"])
        return index

    def get_job_fingerprint_ids(self, job_id: str) -> dict[str, list[str]]:
        """Map each fingerprint in a job to its transaction ids, oldest first."""
        rows = self.conn.execute(
            "SELECT transaction_fingerprint, id FROM transactions"
            " WHERE job_id = ? AND transaction_fingerprint IS NOT NULL ORDER BY rowid",
            (job_id,),
        ).fetchall()
        index: dict[str, list[str]] = {}
        for r in rows:
            index.setdefault(r["transaction_fingerprint"], []).append(r["id"])
        return index

    def apply_sheet_update(
        self, txn_id: str, job_id: str, *,
        date: str, description: str, amount: float,
        category: str | None, subcategory: str | None,
        confidence: float, user_confirmed: bool,
        fingerprint: str, synced_at: str | None = None,
    ) -> int:
        """Overwrite a transaction from an edited sheet row and bump its sync version.

        Restricted to transactions of the given job. Returns the new
        sync_version.

        Raises:
            NotFoundError: If the transaction is not part of the job.
        """
        synced_at = synced_at or _now()
        row = self.conn.execute(
            "SELECT sync_version FROM transactions WHERE id = ? AND job_id = ?",
            (txn_id, job_id),
        ).fetchone()
        if row is None:
            raise NotFoundError("transaction", txn_id)
        new_version = (row["sync_version"] or 1) + 1
        cur = self.conn.execute(
            "UPDATE transactions SET date = ?, original_description = ?, amount = ?,"
            " category = ?, subcategory = ?, confidence_score = ?, user_confirmed = ?,"
            " transaction_fingerprint = ?, sync_version = ?,"
            " last_modified_source = ?, sync_status = 'synced',"
            " last_synced_at = ?, updated_at = ?"
            " WHERE id = ? AND job_id = ?",
            (date, description, amount, category, subcategory, confidence,
             int(user_confirmed), fingerprint, new_version,
             SOURCE_GOOGLE_SHEETS, synced_at, synced_at, txn_id, job_id),
        )
        self.conn.commit()
        if cur.rowcount != 1:
            raise NotFoundError("transaction", txn_id)
        return new_version

    def mark_transactions_synced(self, txn_ids: list[str], synced_at: str):
        """Stamp last_synced_at after a push. Chunked for SQLite's variable limit."""
        chunk_size = 500
        for i in range(0, len(txn_ids), chunk_size):
            chunk = txn_ids[i : i + chunk_size]
            ph = ",".join("?" * len(chunk))
            self.conn.execute(
                f"UPDATE transactions SET last_synced_at = ?, sync_status = 'synced'"
                f" WHERE id IN ({ph})",
                [synced_at, *chunk],
            )
        self.conn.commit()

    # ── Documents ───────────────────────────────────────────

    def insert_document(self, doc: Document) -> Document:
        self.conn.execute(
            "INSERT INTO documents"
            " (id, user_id, original_filename, vendor_name, document_date,"
            "  total_amount, subtotal_amount, tax_amount, fee_amount,"
            "  reconciliation_status, matched_transaction_id, reconciled_at, created_at)"
            " VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?)",
            (doc.id, doc.user_id, doc.original_filename, doc.vendor_name,
             doc.document_date, doc.total_amount, doc.subtotal_amount,
             doc.tax_amount, doc.fee_amount, doc.reconciliation_status,
             doc.matched_transaction_id, doc.reconciled_at, doc.created_at),
        )
        self.conn.commit()
        return doc

    def get_document(self, doc_id: str) -> Document | None:
        row = self.conn.execute(
            "SELECT * FROM documents WHERE id = ?", (doc_id,)
        ).fetchone()
        return self._row_to_document(row) if row else None

    def get_document_for_user(self, doc_id: str, user_id: str) -> Document | None:
        row = self.conn.execute(
            "SELECT * FROM documents WHERE id = ? AND user_id = ?", (doc_id, user_id)
        ).fetchone()
        return self._row_to_document(row) if row else None

    def list_unreconciled_documents(self, user_id: str) -> list[Document]:
        """Unreconciled documents for a user, newest first (undated last)."""
        rows = self.conn.execute(
            "SELECT * FROM documents"
            " WHERE user_id = ? AND reconciliation_status = ?"
            " ORDER BY document_date IS NULL, document_date DESC, rowid DESC",
            (user_id, UNRECONCILED),
        ).fetchall()
        return [self._row_to_document(r) for r in rows]

    # ── Matching ────────────────────────────────────────────

    def set_match(self, txn_id: str, doc_id: str) -> str:
        """Link a transaction and a document, marking both matched.

        Both updates are conditional on the side still being unlinked, so a
        concurrent pass that claimed either record first wins and nothing is
        written here. Returns the reconciled_at timestamp.

        Raises:
            AlreadyMatchedError: If either side is already linked (or missing).
        """
        now = _now()
        try:
            self.conn.execute("BEGIN")
            cur = self.conn.execute(
                "UPDATE transactions SET matched_document_id = ?,"
                " reconciliation_status = ?, reconciled_at = ?, updated_at = ?"
                " WHERE id = ? AND matched_document_id IS NULL",
                (doc_id, MATCHED, now, now, txn_id),
            )
            if cur.rowcount != 1:
                raise AlreadyMatchedError("transaction", txn_id)
            cur = self.conn.execute(
                "UPDATE documents SET matched_transaction_id = ?,"
                " reconciliation_status = ?, reconciled_at = ?"
                " WHERE id = ? AND matched_transaction_id IS NULL",
                (txn_id, MATCHED, now, doc_id),
            )
            if cur.rowcount != 1:
                raise AlreadyMatchedError("document", doc_id)
            self.conn.commit()
        except sqlite3.IntegrityError as e:
            # Unique link index: another transaction already holds this document
            self.conn.rollback()
            raise AlreadyMatchedError("document", doc_id) from e
        except Exception:
            self.conn.rollback()
            raise
        return now

    def clear_match(self, txn_id: str) -> str | None:
        """Unlink a transaction and its document, resetting both to unreconciled.

        Returns the previously linked document id, or None if the
        transaction was not linked.

        Raises:
            NotFoundError: If the transaction does not exist.
        """
        row = self.conn.execute(
            "SELECT matched_document_id FROM transactions WHERE id = ?", (txn_id,)
        ).fetchone()
        if row is None:
            raise NotFoundError("transaction", txn_id)
        doc_id = row["matched_document_id"]
        now = _now()
        try:
            self.conn.execute("BEGIN")
            self.conn.execute(
                "UPDATE transactions SET matched_document_id = NULL,"
                " reconciliation_status = ?, reconciled_at = NULL, updated_at = ?"
                " WHERE id = ?",
                (UNRECONCILED, now, txn_id),
            )
            self.conn.execute(
                "UPDATE documents SET matched_transaction_id = NULL,"
                " reconciliation_status = ?, reconciled_at = NULL"
                " WHERE matched_transaction_id = ?",
                (UNRECONCILED, txn_id),
            )
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise
        return doc_id

    # ── Sync conflicts ──────────────────────────────────────

    def insert_conflicts_batch(self, conflicts: list[SyncConflict]):
        sql = (
            f"INSERT INTO sync_conflicts ({', '.join(_CONFLICT_COLUMNS)})"
            f" VALUES ({','.join('?' * len(_CONFLICT_COLUMNS))})"
        )
        try:
            self.conn.execute("BEGIN")
            self.conn.executemany(sql, [self._conflict_values(c) for c in conflicts])
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise

    def get_conflict_for_user(self, conflict_id: str, user_id: str) -> SyncConflict | None:
        row = self.conn.execute(
            "SELECT * FROM sync_conflicts WHERE id = ? AND user_id = ?",
            (conflict_id, user_id),
        ).fetchone()
        return self._row_to_conflict(row) if row else None

    def list_conflicts(self, user_id: str, status: str = CONFLICT_PENDING,
                       limit: int = 50) -> list[SyncConflict]:
        """A user's conflicts in the given status, newest first."""
        rows = self.conn.execute(
            "SELECT * FROM sync_conflicts WHERE user_id = ? AND resolution_status = ?"
            " ORDER BY created_at DESC, rowid DESC LIMIT ?",
            (user_id, status, limit),
        ).fetchall()
        return [self._row_to_conflict(r) for r in rows]

    def resolve_conflict(self, conflict: SyncConflict, choice: str) -> str:
        """Settle a pending conflict and apply the chosen side atomically.

        "external" overwrites the stored transaction with the incoming row
        and bumps its sync_version; "insert" stores the incoming row as a
        new transaction in the stored one's job; "db" keeps the stored
        transaction unchanged. Returns the id of the transaction that now
        holds the row.

        Raises:
            NotFoundError: If the conflict is no longer pending or its
                transaction is gone.
        """
        now = _now()
        txn_id = conflict.transaction_id
        try:
            self.conn.execute("BEGIN")
            cur = self.conn.execute(
                "UPDATE sync_conflicts SET resolution_status = ?, resolution_choice = ?,"
                " resolved_at = ? WHERE id = ? AND resolution_status = ?",
                (CONFLICT_RESOLVED, choice, now, conflict.id, CONFLICT_PENDING),
            )
            if cur.rowcount != 1:
                raise NotFoundError("pending conflict", conflict.id)

            if choice == RESOLVE_EXTERNAL:
                cur = self.conn.execute(
                    "UPDATE transactions SET date = ?, original_description = ?, amount = ?,"
                    " category = COALESCE(?, category), subcategory = COALESCE(?, subcategory),"
                    " transaction_fingerprint = ?, sync_version = sync_version + 1,"
                    " last_modified_source = ?, updated_at = ? WHERE id = ?",
                    (conflict.incoming_date, conflict.incoming_description,
                     conflict.incoming_amount, conflict.incoming_category,
                     conflict.incoming_subcategory, conflict.incoming_fingerprint,
                     conflict.source_type, now, txn_id),
                )
                if cur.rowcount != 1:
                    raise NotFoundError("transaction", txn_id)
            elif choice == RESOLVE_INSERT:
                row = self.conn.execute(
                    "SELECT job_id FROM transactions WHERE id = ?", (txn_id,)
                ).fetchone()
                if row is None:
                    raise NotFoundError("transaction", txn_id)
                txn = Transaction(
                    job_id=row["job_id"],
                    date=conflict.incoming_date,
                    original_description=conflict.incoming_description,
                    amount=conflict.incoming_amount,
                    category=conflict.incoming_category,
                    subcategory=conflict.incoming_subcategory,
                    source_type=conflict.source_type,
                    transaction_fingerprint=conflict.incoming_fingerprint,
                    last_modified_source=conflict.source_type,
                )
                self.conn.execute(_INSERT_TXN_SQL, self._transaction_values(txn))
                txn_id = txn.id
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise
        return txn_id

    # ── Row Converters ──────────────────────────────────────

    @staticmethod
    def _transaction_values(t: Transaction) -> tuple:
        return (
            t.id, t.job_id, t.date, t.original_description, t.amount,
            t.category, t.subcategory, t.confidence_score, int(t.user_confirmed),
            t.reconciliation_status, t.matched_document_id, t.source_type,
            t.source_identifier, t.sync_version, t.last_synced_at,
            t.transaction_fingerprint, t.last_modified_source, t.sync_status,
            t.reconciled_at, t.created_at, t.updated_at,
        )

    @staticmethod
    def _conflict_values(c: SyncConflict) -> tuple:
        return (
            c.id, c.user_id, c.transaction_id, c.source_type, c.match_type, c.difference,
            c.incoming_date, c.incoming_description, c.incoming_amount, c.incoming_category,
            c.incoming_subcategory, c.incoming_fingerprint, c.resolution_status,
            c.resolution_choice, c.resolved_at, c.created_at,
        )

    @staticmethod
    def _row_to_conflict(row: sqlite3.Row) -> SyncConflict:
        return SyncConflict(**{col: row[col] for col in _CONFLICT_COLUMNS})

    @staticmethod
    def _row_to_job(row: sqlite3.Row) -> Job:
        return Job(
            id=row["id"], user_id=row["user_id"], name=row["name"],
            spreadsheet_id=row["spreadsheet_id"],
            source_type=row["source_type"], created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_transaction(row: sqlite3.Row) -> Transaction:
        return Transaction(
            id=row["id"], job_id=row["job_id"], date=row["date"],
            original_description=row["original_description"],
            amount=row["amount"], category=row["category"],
            subcategory=row["subcategory"],
            confidence_score=row["confidence_score"],
            user_confirmed=bool(row["user_confirmed"]),
            reconciliation_status=row["reconciliation_status"],
            matched_document_id=row["matched_document_id"],
            source_type=row["source_type"],
            source_identifier=row["source_identifier"],
            sync_version=row["sync_version"],
            last_synced_at=row["last_synced_at"],
            transaction_fingerprint=row["transaction_fingerprint"],
            last_modified_source=row["last_modified_source"],
            sync_status=row["sync_status"],
            reconciled_at=row["reconciled_at"],
            created_at=row["created_at"], updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_document(row: sqlite3.Row) -> Document:
        return Document(
            id=row["id"], user_id=row["user_id"],
            original_filename=row["original_filename"],
            vendor_name=row["vendor_name"],
            document_date=row["document_date"],
            total_amount=row["total_amount"],
            subtotal_amount=row["subtotal_amount"],
            tax_amount=row["tax_amount"], fee_amount=row["fee_amount"],
            reconciliation_status=row["reconciliation_status"],
            matched_transaction_id=row["matched_transaction_id"],
            reconciled_at=row["reconciled_at"],
            created_at=row["created_at"],
        )
