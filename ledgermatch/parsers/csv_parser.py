"""Bank statement CSV parser.

Columns are located by header name, so exports from most banks work
without per-bank configuration. A single signed Amount column is used
when present; otherwise separate Debit/Credit columns are combined
(debits negative).

Rows with an unparseable date or amount are skipped and counted.
"""

from __future__ import annotations

import csv
import logging
from pathlib import Path

from .base import BaseParser, RawTransaction, canonical_date, parse_amount, parse_confidence

logger = logging.getLogger(__name__)

# Header aliases, compared lowercased and trimmed
DATE_HEADERS = ("date", "transaction date", "posted date", "posting date", "date (utc)")
DESCRIPTION_HEADERS = ("description", "payee", "merchant", "details", "name", "memo")
AMOUNT_HEADERS = ("amount", "transaction amount")
DEBIT_HEADERS = ("debit", "withdrawal", "withdrawals")
CREDIT_HEADERS = ("credit", "deposit", "deposits")
CATEGORY_HEADERS = ("category",)
SUBCATEGORY_HEADERS = ("subcategory", "sub-category", "sub category")
CONFIDENCE_HEADERS = ("confidence",)


def _find(headers: dict[str, str], aliases: tuple[str, ...]) -> str | None:
    for alias in aliases:
        if alias in headers:
            return headers[alias]
    return None


class StatementCsvParser(BaseParser):
    """Parse generic bank statement CSV exports."""

    def detect(self, file_path: Path) -> bool:
        """Needs a date, a description, and an amount (or debit/credit) column."""
        try:
            with open(file_path, "r", newline="", encoding="utf-8-sig", errors="replace") as f:
                header = next(csv.reader(f), [])
        except (OSError, UnicodeDecodeError):
            return False
        headers = {h.strip().lower(): h for h in header}
        has_amount = (_find(headers, AMOUNT_HEADERS) is not None
                      or _find(headers, DEBIT_HEADERS) is not None)
        return (_find(headers, DATE_HEADERS) is not None
                and _find(headers, DESCRIPTION_HEADERS) is not None
                and has_amount)

    def parse(self, file_path: Path) -> list[RawTransaction]:
        transactions: list[RawTransaction] = []
        self.skipped_count = 0  # Reset for each parse

        with open(file_path, "r", newline="", encoding="utf-8-sig", errors="replace") as f:
            reader = csv.DictReader(f)
            headers = {h.strip().lower(): h for h in (reader.fieldnames or [])}
            columns = {
                "date": _find(headers, DATE_HEADERS),
                "description": _find(headers, DESCRIPTION_HEADERS),
                "amount": _find(headers, AMOUNT_HEADERS),
                "debit": _find(headers, DEBIT_HEADERS),
                "credit": _find(headers, CREDIT_HEADERS),
                "category": _find(headers, CATEGORY_HEADERS),
                "subcategory": _find(headers, SUBCATEGORY_HEADERS),
                "confidence": _find(headers, CONFIDENCE_HEADERS),
            }
            if columns["date"] is None or columns["description"] is None:
                raise ValueError(f"{file_path}: no date/description columns in header")

            for line_no, row in enumerate(reader, start=2):
                txn = self._parse_row(row, columns)
                if txn is None:
                    logger.debug("Skipping %s line %d: unparseable date or amount",
                                 file_path.name, line_no)
                    self.skipped_count += 1
                    continue
                transactions.append(txn)

        if self.skipped_count:
            logger.warning("Skipped %d unparseable rows in %s",
                           self.skipped_count, file_path.name)
        return transactions

    @staticmethod
    def _get(row: dict, column: str | None) -> str:
        if column is None:
            return ""
        return (row.get(column) or "").strip()

    def _parse_row(self, row: dict, columns: dict[str, str | None]) -> RawTransaction | None:
        date = canonical_date(self._get(row, columns["date"]))
        if date is None:
            return None

        amount = self._parse_signed_amount(row, columns)
        if amount is None:
            return None

        description = self._get(row, columns["description"])
        if not description:
            return None

        confidence_text = self._get(row, columns["confidence"])
        return RawTransaction(
            date=date,
            amount=amount,
            description=description,
            category=self._get(row, columns["category"]) or None,
            subcategory=self._get(row, columns["subcategory"]) or None,
            confidence=parse_confidence(confidence_text) if confidence_text else None,
        )

    def _parse_signed_amount(self, row: dict, columns: dict[str, str | None]) -> float | None:
        if columns["amount"] is not None:
            return parse_amount(self._get(row, columns["amount"]))

        debit_text = self._get(row, columns["debit"])
        credit_text = self._get(row, columns["credit"])
        if debit_text:
            debit = parse_amount(debit_text)
            return -abs(debit) if debit is not None else None
        if credit_text:
            credit = parse_amount(credit_text)
            return abs(credit) if credit is not None else None
        return None
