"""Sheet pull: merge human edits from the "All Transactions" tab into SQLite.

Each data row is classified on its own:

1. no Sheet Modified At (L)        → not edited since last sync, ignored
2. Sheet Modified At <= Portal (K) → stale edit or round-trip echo, skipped
3. missing date/description/amount → incomplete edit, skipped
4. Transaction ID (J) present       → update, sync_version + 1
5. no Transaction ID                → insert with sync_version = 1, unless
   the job already holds an unlinked transaction with the same fingerprint
   (left by a pull whose write-back failed), which is relinked instead

Rows from steps 2-5 count as processed. After the database writes, each
committed row gets its fingerprint, transaction id and a fresh portal stamp
written back, and its L/M cells cleared, so pulling again without new
edits changes nothing.

The gspread client is injected via constructor for testability: tests
pass a mock, production passes the real authenticated client.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from ledgermatch.database.models import SOURCE_GOOGLE_SHEETS, Job, Transaction
from ledgermatch.database.repository import NotFoundError, Repository
from ledgermatch.parsers.base import (
    canonical_date,
    compute_fingerprint,
    parse_amount,
    parse_bool,
    parse_confidence,
    parse_timestamp,
)
from ledgermatch.sheets.layout import (
    ALL_TRANSACTIONS_TAB,
    COL_AMOUNT,
    COL_CATEGORY,
    COL_CONFIDENCE,
    COL_DATE,
    COL_DESCRIPTION,
    COL_FINGERPRINT,
    COL_PORTAL_MODIFIED_AT,
    COL_SHEET_MODIFIED_AT,
    COL_SHEET_MODIFIED_BY,
    COL_STATUS,
    COL_SUBCATEGORY,
    COL_TRANSACTION_ID,
    cell,
    open_or_create_tab,
    row_range,
)

logger = logging.getLogger(__name__)

# Row classifications
UNEDITED = "unedited"
STALE = "stale"
INCOMPLETE = "incomplete"
UPDATE = "update"
INSERT = "insert"


class SheetReadError(Exception):
    """Raised when the sheet grid cannot be read; nothing is merged."""


@dataclass
class SheetRow:
    """One parsed row of the tab. Lives only for the duration of a pull."""
    row_number: int
    date: str | None
    description: str
    amount: float | None
    category: str | None
    subcategory: str | None
    confidence: float
    user_confirmed: bool
    transaction_id: str | None
    portal_modified_at: datetime | None
    sheet_modified_at: datetime | None

    @classmethod
    def from_cells(cls, row_number: int, row: list) -> SheetRow:
        return cls(
            row_number=row_number,
            date=canonical_date(cell(row, COL_DATE)),
            description=cell(row, COL_DESCRIPTION),
            amount=parse_amount(cell(row, COL_AMOUNT)),
            category=cell(row, COL_CATEGORY) or None,
            subcategory=cell(row, COL_SUBCATEGORY) or None,
            confidence=parse_confidence(cell(row, COL_CONFIDENCE)),
            user_confirmed=parse_bool(cell(row, COL_STATUS)),
            transaction_id=cell(row, COL_TRANSACTION_ID) or None,
            portal_modified_at=parse_timestamp(cell(row, COL_PORTAL_MODIFIED_AT)),
            sheet_modified_at=parse_timestamp(cell(row, COL_SHEET_MODIFIED_AT)),
        )


def classify_row(row: SheetRow) -> str:
    """Decide what a pull does with one row. Pure: no I/O."""
    if row.sheet_modified_at is None:
        return UNEDITED
    if row.portal_modified_at is not None and row.sheet_modified_at <= row.portal_modified_at:
        return STALE
    if not row.date or not row.description or row.amount is None:
        return INCOMPLETE
    return UPDATE if row.transaction_id else INSERT


@dataclass
class PullResult:
    rows_processed: int = 0
    rows_updated: int = 0
    rows_inserted: int = 0
    rows_skipped: int = 0
    errors: list[str] = field(default_factory=list)
    message: str = "Pull sync completed"

    def to_dict(self) -> dict:
        return {
            "rowsProcessed": self.rows_processed,
            "rowsUpdated": self.rows_updated,
            "rowsInserted": self.rows_inserted,
            "rowsSkipped": self.rows_skipped,
            "errors": self.errors,
            "message": self.message,
        }


class SheetPull:
    """Pull edits from a job's linked spreadsheet into the repository.

    Args:
        client: An authorized gspread.Client (or mock).
        repo: The database repository.
        tab_name: Name of the transactions tab.
    """

    def __init__(self, client: object, repo: Repository,
                 tab_name: str = ALL_TRANSACTIONS_TAB):
        self.client = client
        self.repo = repo
        self.tab_name = tab_name

    def pull(self, job_id: str, owner_id: str) -> PullResult:
        """Merge sheet edits for one of owner_id's jobs.

        Raises:
            NotFoundError: The job is missing or owned by someone else.
            SheetReadError: The job has no linked sheet, or the grid
                could not be read.
        """
        job = self.repo.get_job_for_user(job_id, owner_id)
        if job is None:
            raise NotFoundError("job", job_id)
        if not job.spreadsheet_id:
            raise SheetReadError(f"Job {job_id} has no linked spreadsheet")

        try:
            spreadsheet = self.client.open_by_key(job.spreadsheet_id)
            ws = open_or_create_tab(spreadsheet, self.tab_name)
            grid = ws.get_all_values()
        except Exception as e:
            raise SheetReadError(
                f"Failed to read '{self.tab_name}' from {job.spreadsheet_id}: {e}"
            ) from e

        result = self.merge(job, grid, ws)
        logger.info(
            "Pull for job %s: %d processed, %d updated, %d inserted, %d skipped, %d errors",
            job.id, result.rows_processed, result.rows_updated,
            result.rows_inserted, result.rows_skipped, len(result.errors),
        )
        return result

    def merge(self, job: Job, grid: list[list], ws: object) -> PullResult:
        """Apply an already-read grid (header row first) to the repository."""
        result = PullResult()
        if len(grid) <= 1:
            result.message = "No rows found to sync"
            return result

        now = datetime.now(timezone.utc).isoformat()
        reusable = self._unlinked_fingerprints(job, grid)
        # (row_number, fingerprint, transaction_id) for rows committed to the DB
        committed: list[tuple[int, str, str]] = []

        for row_number, cells in enumerate(grid[1:], start=2):  # 1-indexed, skip header
            row = SheetRow.from_cells(row_number, cells)
            action = classify_row(row)
            if action == UNEDITED:
                continue

            result.rows_processed += 1
            if action in (STALE, INCOMPLETE):
                result.rows_skipped += 1
                continue

            fingerprint = compute_fingerprint(row.description, row.amount, row.date)
            if action == UPDATE:
                txn_id = self._apply_update(job, row, fingerprint, now, result)
            else:
                txn_id = self._relink(row, fingerprint, reusable, result)
                if txn_id is None:
                    txn_id = self._apply_insert(job, row, fingerprint, now, result)
            if txn_id is not None:
                committed.append((row_number, fingerprint, txn_id))

        if committed:
            self._write_back(ws, committed, now, result)
        return result

    # ── Per-row writes ───────────────────────────────────

    def _apply_update(self, job: Job, row: SheetRow, fingerprint: str,
                      now: str, result: PullResult) -> str | None:
        try:
            version = self.repo.apply_sheet_update(
                row.transaction_id, job.id,
                date=row.date, description=row.description, amount=row.amount,
                category=row.category, subcategory=row.subcategory,
                confidence=row.confidence, user_confirmed=row.user_confirmed,
                fingerprint=fingerprint, synced_at=now,
            )
        except Exception:
            logger.exception("Failed to update txn %s from row %d",
                             row.transaction_id, row.row_number)
            result.errors.append(f"row {row.row_number}: update failed")
            return None
        result.rows_updated += 1
        logger.debug("Row %d updated txn %s to version %d",
                     row.row_number, row.transaction_id, version)
        return row.transaction_id

    def _unlinked_fingerprints(self, job: Job, grid: list[list]) -> dict[str, list[str]]:
        """Job transactions by fingerprint, minus those some row already links to."""
        linked = {cell(cells, COL_TRANSACTION_ID) for cells in grid[1:]}
        return {
            fp: [txn_id for txn_id in ids if txn_id not in linked]
            for fp, ids in self.repo.get_job_fingerprint_ids(job.id).items()
        }

    def _relink(self, row: SheetRow, fingerprint: str,
                reusable: dict[str, list[str]], result: PullResult) -> str | None:
        ids = reusable.get(fingerprint)
        if not ids:
            return None
        txn_id = ids.pop(0)
        result.rows_skipped += 1
        logger.info("Row %d already stored as txn %s, relinking", row.row_number, txn_id)
        return txn_id

    def _apply_insert(self, job: Job, row: SheetRow, fingerprint: str,
                      now: str, result: PullResult) -> str | None:
        txn = Transaction(
            job_id=job.id,
            date=row.date,
            original_description=row.description,
            amount=row.amount,
            category=row.category,
            subcategory=row.subcategory,
            confidence_score=row.confidence,
            user_confirmed=row.user_confirmed,
            source_type=SOURCE_GOOGLE_SHEETS,
            source_identifier=job.spreadsheet_id,
            sync_version=1,
            last_synced_at=now,
            transaction_fingerprint=fingerprint,
            last_modified_source=SOURCE_GOOGLE_SHEETS,
            sync_status="synced",
        )
        try:
            self.repo.insert_transaction(txn)
        except Exception:
            logger.exception("Failed to insert row %d", row.row_number)
            result.errors.append(f"row {row.row_number}: insert failed")
            return None
        result.rows_inserted += 1
        return txn.id

    # ── Write-back ───────────────────────────────────────

    def _write_back(self, ws: object, committed: list[tuple[int, str, str]],
                    now: str, result: PullResult) -> None:
        """Stamp I-K and clear L-M of every committed row in one batch."""
        data = [
            {
                "range": row_range(row_number, COL_FINGERPRINT, COL_SHEET_MODIFIED_BY),
                "values": [[fingerprint, txn_id, now, "", ""]],
            }
            for row_number, fingerprint, txn_id in committed
        ]
        try:
            ws.batch_update(data, value_input_option="RAW")
        except Exception:
            logger.exception("Failed to write back %d rows", len(committed))
            result.errors.append("sheet write-back failed")
            result.message = "Pull sync completed; sheet write-back failed"
