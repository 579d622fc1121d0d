"""Google Sheets push: write a job's transactions into its "All Transactions" tab.

Existing rows are located by transaction id (column J), falling back to
fingerprint (column I) for rows that never received an id, and rewritten
in place; everything else is appended. Each pushed row is stamped with
the push time in Portal Modified At and has its Sheet Modified cells
cleared. Rows carrying an edit newer than their portal stamp are left
alone so the next pull can merge them.

Writes are chunked and rate limited to respect the Google Sheets API
quota (50 writes/minute by default); quota errors are retried with
backoff.

The gspread client is injected via constructor for testability: tests
pass a mock, production passes the real authenticated client.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone

import gspread

from ledgermatch.database.models import Job, Transaction
from ledgermatch.database.repository import NotFoundError, Repository
from ledgermatch.parsers.base import compute_fingerprint, parse_timestamp
from ledgermatch.sheets.layout import (
    ALL_TRANSACTIONS_TAB,
    COL_FINGERPRINT,
    COL_PORTAL_MODIFIED_AT,
    COL_SHEET_MODIFIED_AT,
    COL_TRANSACTION_ID,
    HEADERS,
    STATUS_CONFIRMED,
    STATUS_UNCONFIRMED,
    cell,
    open_or_create_tab,
    row_range,
)
from ledgermatch.sheets.pull import SheetReadError

logger = logging.getLogger(__name__)

# Rate limiting
MAX_WRITES_PER_MINUTE = 50
WRITE_CHUNK_SIZE = 200
MAX_QUOTA_RETRIES = 3
QUOTA_BACKOFF_SECONDS = 30.0


# ── Data transformation ──────────────────────────────────


def _val(v: object) -> str | float | int:
    """Convert a value for Sheets: None → empty string, else pass through."""
    if v is None:
        return ""
    return v


def format_confidence(value: float | None) -> str:
    """0.85 → "85%"; None → ""."""
    if value is None:
        return ""
    return f"{round(value * 100)}%"


def txn_to_row(txn: Transaction, fingerprint: str, pushed_at: str) -> list:
    """Convert a Transaction dataclass to a 13-column sheet row."""
    return [
        txn.date,
        txn.original_description,
        txn.amount,
        _val(txn.category),
        _val(txn.subcategory),
        format_confidence(txn.confidence_score),
        STATUS_CONFIRMED if txn.user_confirmed else STATUS_UNCONFIRMED,
        _val(txn.source_type),
        fingerprint,
        txn.id,
        pushed_at,
        "",
        "",
    ]


def has_pending_edit(row: list) -> bool:
    """True if the row was edited in the sheet after the portal last wrote it."""
    edited = parse_timestamp(cell(row, COL_SHEET_MODIFIED_AT))
    if edited is None:
        return False
    portal = parse_timestamp(cell(row, COL_PORTAL_MODIFIED_AT))
    return portal is None or edited > portal


def _is_quota_error(e: Exception) -> bool:
    code = getattr(e, "code", None)
    if code is None:
        code = getattr(getattr(e, "response", None), "status_code", None)
    return code == 429


# ── Push result ──────────────────────────────────────────


@dataclass
class PushResult:
    """Result of a push operation."""
    rows_updated: int = 0
    rows_appended: int = 0
    rows_skipped_pending_edit: int = 0
    api_calls: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "rows_updated": self.rows_updated,
            "rows_appended": self.rows_appended,
            "rows_skipped_pending_edit": self.rows_skipped_pending_edit,
            "errors": self.errors,
        }


# ── SheetsPush ───────────────────────────────────────────


class SheetsPush:
    """SQLite → Google Sheets upsert with batching and rate limiting.

    Args:
        client: An authorized gspread.Client (or mock).
        repo: The database repository.
        tab_name: Name of the transactions tab.
        chunk_size: Rows per append/batch-update call.
        max_writes_per_minute: Write quota to stay under.
    """

    def __init__(self, client: object, repo: Repository,
                 tab_name: str = ALL_TRANSACTIONS_TAB,
                 chunk_size: int = WRITE_CHUNK_SIZE,
                 max_writes_per_minute: int = MAX_WRITES_PER_MINUTE):
        self.client = client
        self.repo = repo
        self.tab_name = tab_name
        self.chunk_size = chunk_size
        self.max_writes_per_minute = max_writes_per_minute
        self._write_times: deque[float] = deque()

    # ── Rate limiting ────────────────────────────────────

    def _wait_for_rate_limit(self) -> None:
        """Sleep if we're approaching the write rate limit."""
        now = time.monotonic()
        cutoff = now - 60.0
        # Purge timestamps older than 60 seconds
        while self._write_times and self._write_times[0] <= cutoff:
            self._write_times.popleft()

        if len(self._write_times) >= self.max_writes_per_minute:
            sleep_until = self._write_times[0] + 60.0
            time.sleep(sleep_until - now)

    def _record_write(self) -> None:
        """Record a write operation timestamp."""
        self._write_times.append(time.monotonic())

    def _write(self, fn, *args, **kwargs) -> None:
        """Run one rate-limited write, retrying quota errors with backoff."""
        for attempt in range(MAX_QUOTA_RETRIES + 1):
            self._wait_for_rate_limit()
            try:
                fn(*args, **kwargs)
                self._record_write()
                return
            except gspread.exceptions.APIError as e:
                self._record_write()
                if not _is_quota_error(e) or attempt == MAX_QUOTA_RETRIES:
                    raise
                delay = QUOTA_BACKOFF_SECONDS * (attempt + 1)
                logger.warning("Sheets quota hit, retrying in %.0fs", delay)
                time.sleep(delay)

    # ── Push ─────────────────────────────────────────────

    def push(self, job_id: str, owner_id: str) -> PushResult:
        """Push one of owner_id's jobs to its linked spreadsheet.

        Raises:
            NotFoundError: The job is missing or owned by someone else.
            SheetReadError: The job has no linked sheet, or the tab could
                not be read.
        """
        job = self.repo.get_job_for_user(job_id, owner_id)
        if job is None:
            raise NotFoundError("job", job_id)
        return self.push_job(job)

    def push_job(self, job: Job) -> PushResult:
        if not job.spreadsheet_id:
            raise SheetReadError(f"Job {job.id} has no linked spreadsheet")
        try:
            spreadsheet = self.client.open_by_key(job.spreadsheet_id)
            ws = open_or_create_tab(spreadsheet, self.tab_name)
            grid = ws.get_all_values()
        except Exception as e:
            raise SheetReadError(
                f"Failed to read '{self.tab_name}' from {job.spreadsheet_id}: {e}"
            ) from e

        result = PushResult()
        if not grid:
            self._write(ws.update, range_name=row_range(1), values=[HEADERS])
            result.api_calls += 1
            grid = [HEADERS]

        by_id: dict[str, int] = {}
        by_fingerprint: dict[str, list[int]] = {}
        pending: set[int] = set()
        for row_number, row in enumerate(grid[1:], start=2):
            txn_id = cell(row, COL_TRANSACTION_ID)
            if txn_id:
                by_id[txn_id] = row_number
            else:
                fp = cell(row, COL_FINGERPRINT)
                if fp:
                    by_fingerprint.setdefault(fp, []).append(row_number)
            if has_pending_edit(row):
                pending.add(row_number)

        pushed_at = datetime.now(timezone.utc).isoformat()
        updates: list[tuple[str, dict]] = []
        appends: list[tuple[str, list]] = []

        for txn in self.repo.get_transactions_by_job(job.id):
            fp = txn.transaction_fingerprint or compute_fingerprint(
                txn.original_description, txn.amount, txn.date
            )
            row_number = by_id.get(txn.id)
            if row_number is None and by_fingerprint.get(fp):
                row_number = by_fingerprint[fp].pop(0)
            row = txn_to_row(txn, fp, pushed_at)
            if row_number is None:
                appends.append((txn.id, row))
            elif row_number in pending:
                result.rows_skipped_pending_edit += 1
            else:
                updates.append((txn.id, {"range": row_range(row_number), "values": [row]}))

        synced: list[str] = []

        for i in range(0, len(updates), self.chunk_size):
            chunk = updates[i : i + self.chunk_size]
            try:
                self._write(ws.batch_update, [d for _, d in chunk],
                            value_input_option="RAW")
            except Exception:
                logger.exception("Failed to update %d rows for job %s", len(chunk), job.id)
                result.errors.append(f"update chunk {i // self.chunk_size}")
                continue
            result.api_calls += 1
            result.rows_updated += len(chunk)
            synced.extend(txn_id for txn_id, _ in chunk)

        for i in range(0, len(appends), self.chunk_size):
            chunk = appends[i : i + self.chunk_size]
            try:
                self._write(ws.append_rows, [r for _, r in chunk],
                            value_input_option="RAW")
            except Exception:
                logger.exception("Failed to append %d rows for job %s", len(chunk), job.id)
                result.errors.append(f"append chunk {i // self.chunk_size}")
                continue
            result.api_calls += 1
            result.rows_appended += len(chunk)
            synced.extend(txn_id for txn_id, _ in chunk)

        if synced:
            self.repo.mark_transactions_synced(synced, pushed_at)

        if result.errors:
            logger.warning("Push for job %s completed with %d error(s): %s",
                           job.id, len(result.errors), result.errors)
        logger.info(
            "Push for job %s: %d updated, %d appended, %d pending edits kept",
            job.id, result.rows_updated, result.rows_appended,
            result.rows_skipped_pending_edit,
        )
        return result
