"""Dataclass models matching the SQLite schema.

Each dataclass corresponds to one table. Fields match column names exactly.
All primary keys are TEXT (UUID strings generated via uuid4()).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from uuid import uuid4

UNRECONCILED = "unreconciled"
MATCHED = "matched"

SOURCE_UPLOAD = "upload"
SOURCE_GOOGLE_SHEETS = "google_sheets"
SOURCE_MANUAL = "manual"
SOURCE_API = "api"

CONFLICT_PENDING = "pending"
CONFLICT_RESOLVED = "resolved"

# How a conflict was settled
RESOLVE_DB = "db"
RESOLVE_EXTERNAL = "external"
RESOLVE_INSERT = "insert"
RESOLUTION_CHOICES = (RESOLVE_DB, RESOLVE_EXTERNAL, RESOLVE_INSERT)


def _new_id() -> str:
    return str(uuid4())


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Job:
    """One import batch (file upload or linked spreadsheet) owned by a user."""
    user_id: str
    name: str
    id: str = field(default_factory=_new_id)
    spreadsheet_id: str | None = None
    source_type: str = SOURCE_UPLOAD
    created_at: str = field(default_factory=_now)


@dataclass
class Transaction:
    job_id: str
    date: str
    original_description: str
    amount: float
    id: str = field(default_factory=_new_id)
    category: str | None = None
    subcategory: str | None = None
    confidence_score: float | None = None
    user_confirmed: bool = False
    reconciliation_status: str = UNRECONCILED
    matched_document_id: str | None = None
    source_type: str = SOURCE_UPLOAD
    source_identifier: str | None = None
    sync_version: int = 1
    last_synced_at: str | None = None
    transaction_fingerprint: str | None = None
    last_modified_source: str | None = None
    sync_status: str | None = None
    reconciled_at: str | None = None
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)


@dataclass
class Document:
    """A receipt or invoice extracted from an uploaded file."""
    user_id: str
    original_filename: str
    id: str = field(default_factory=_new_id)
    vendor_name: str | None = None
    document_date: str | None = None
    total_amount: float | None = None
    subtotal_amount: float | None = None
    tax_amount: float | None = None
    fee_amount: float | None = None
    reconciliation_status: str = UNRECONCILED
    matched_transaction_id: str | None = None
    reconciled_at: str | None = None
    created_at: str = field(default_factory=_now)


@dataclass
class SyncConflict:
    """An imported row that nearly matches a stored transaction, awaiting review.

    The incoming row is not stored as a transaction until the conflict is
    resolved with "external" (overwrite) or "insert" (keep both).
    """
    user_id: str
    transaction_id: str
    match_type: str
    incoming_date: str
    incoming_description: str
    incoming_amount: float
    incoming_fingerprint: str
    id: str = field(default_factory=_new_id)
    source_type: str = SOURCE_UPLOAD
    difference: float | None = None
    incoming_category: str | None = None
    incoming_subcategory: str | None = None
    resolution_status: str = CONFLICT_PENDING
    resolution_choice: str | None = None
    resolved_at: str | None = None
    created_at: str = field(default_factory=_now)
