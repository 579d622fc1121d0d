"""Column layout of the "All Transactions" tab shared by pull and push.

Columns A-H carry the transaction itself, I-K are written only by the
portal (fingerprint, transaction id, portal-modified stamp), and L-M are
written by the sheet's edit trigger whenever a human changes a row.
"""

from __future__ import annotations

import logging

import gspread

logger = logging.getLogger(__name__)

ALL_TRANSACTIONS_TAB = "All Transactions"

# 0-indexed column positions
COL_DATE = 0               # A
COL_DESCRIPTION = 1        # B
COL_AMOUNT = 2             # C
COL_CATEGORY = 3           # D
COL_SUBCATEGORY = 4        # E
COL_CONFIDENCE = 5         # F
COL_STATUS = 6             # G
COL_SOURCE = 7             # H
COL_FINGERPRINT = 8        # I
COL_TRANSACTION_ID = 9     # J
COL_PORTAL_MODIFIED_AT = 10  # K
COL_SHEET_MODIFIED_AT = 11   # L
COL_SHEET_MODIFIED_BY = 12   # M

NUM_COLUMNS = 13

HEADERS = [
    "Date", "Description", "Amount", "Category", "Subcategory",
    "Confidence", "Status", "Source", "Fingerprint", "Transaction ID",
    "Portal Modified At", "Sheet Modified At", "Sheet Modified By",
]

STATUS_CONFIRMED = "confirmed"
STATUS_UNCONFIRMED = "unconfirmed"


def cell(row: list, col: int) -> str:
    """Trimmed string value of row[col]; short rows read as blank."""
    if col >= len(row) or row[col] is None:
        return ""
    return str(row[col]).strip()


def cell_label(row: int, col: int) -> str:
    """Convert 1-indexed (row, col) to A1 notation. E.g., (2, 14) → 'N2'."""
    label = ""
    c = col
    while c > 0:
        c, remainder = divmod(c - 1, 26)
        label = chr(65 + remainder) + label
    return f"{label}{row}"


def row_range(row: int, first_col: int = 0, last_col: int = NUM_COLUMNS - 1) -> str:
    """A1 range for 0-indexed columns first_col..last_col of a 1-indexed row."""
    return f"{cell_label(row, first_col + 1)}:{cell_label(row, last_col + 1)}"


def open_or_create_tab(spreadsheet: object, tab_name: str = ALL_TRANSACTIONS_TAB) -> object:
    """Return the named worksheet, creating it with the header row if missing."""
    try:
        return spreadsheet.worksheet(tab_name)
    except gspread.exceptions.WorksheetNotFound:
        logger.info("Creating missing tab '%s'", tab_name)
        ws = spreadsheet.add_worksheet(title=tab_name, rows=1000, cols=NUM_COLUMNS)
        ws.update(range_name=row_range(1), values=[HEADERS])
        return ws
