"""CLI entry point for ledgermatch.

Commands:
    ledgermatch import FILE [--job ID]          Import a bank statement CSV
    ledgermatch add-document FILENAME [...]     Record a receipt/invoice
    ledgermatch link-sheet NAME SPREADSHEET_ID  Create a job backed by a sheet
    ledgermatch candidates [--source-type]      List potential matches (JSON)
    ledgermatch auto-match [--source-type]      Commit tight-window matches (JSON)
    ledgermatch match TXN DOC                   Manually link a transaction
    ledgermatch unmatch TXN                     Remove a transaction's link
    ledgermatch pull JOB                        Merge sheet edits into SQLite (JSON)
    ledgermatch push JOB                        Write a job's rows to its sheet (JSON)
    ledgermatch status                          Reconciliation counts
    ledgermatch conflicts [--status]            Near-duplicates held for review (JSON)
    ledgermatch resolve-conflict ID CHOICE      Settle one (db | external | insert)

Every command acts for the user in LEDGERMATCH_USER_ID.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path

logger = logging.getLogger(__name__)

_DEFAULT_MIGRATIONS_DIR = Path(__file__).resolve().parent / "database" / "migrations"


def _setup_logging() -> None:
    """Configure logging based on LEDGERMATCH_LOG_LEVEL env var."""
    level = os.environ.get("LEDGERMATCH_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _get_config():
    """Load application config from config directory."""
    from ledgermatch.config import Config

    config_dir = os.environ.get("LEDGERMATCH_CONFIG_DIR", "config")
    return Config(config_dir=config_dir)


def _get_repo():
    """Create a Repository connected to the configured database, schema applied."""
    from ledgermatch.database.repository import Repository

    db_path = os.environ.get("LEDGERMATCH_DB_PATH", "ledgermatch.db")
    repo = Repository(db_path=db_path)
    repo.apply_migrations(_get_migrations_dir())
    return repo


def _get_migrations_dir() -> Path:
    """Get the migrations directory path."""
    return Path(os.environ.get("LEDGERMATCH_MIGRATIONS_DIR", _DEFAULT_MIGRATIONS_DIR))


def _get_user_id() -> str:
    return os.environ.get("LEDGERMATCH_USER_ID", "local")


def _get_sheets_client():
    """Authorize a gspread client from service-account credentials.

    Returns None if LEDGERMATCH_CREDENTIALS is unset or unusable.
    """
    credentials_path = os.environ.get("LEDGERMATCH_CREDENTIALS")
    if not credentials_path:
        return None

    try:
        import gspread
        from google.oauth2.service_account import Credentials

        scopes = [
            "https://www.googleapis.com/auth/spreadsheets",
            "https://www.googleapis.com/auth/drive",
        ]
        creds = Credentials.from_service_account_file(credentials_path, scopes=scopes)
        return gspread.authorize(creds)
    except Exception as e:
        logger.warning("Sheets not available: %s", e)
        return None


def _print_json(data: dict) -> None:
    print(json.dumps(data, indent=2, default=str))


# ── Command handlers ─────────────────────────────────────


def cmd_import(args: argparse.Namespace) -> int:
    """Parse a statement CSV and merge it into the user's transactions."""
    from ledgermatch.database.dedup import ImportMerger
    from ledgermatch.parsers.csv_parser import StatementCsvParser

    filepath = args.file.resolve()
    if not filepath.exists():
        print(f"Error: File not found: {filepath}")
        return 1

    parser = StatementCsvParser()
    if not parser.detect(filepath):
        print(f"Error: Unrecognized statement format: {filepath.name}")
        return 1

    raw_txns = parser.parse(filepath)
    repo = _get_repo()
    try:
        result = ImportMerger(repo).merge(
            raw_txns, _get_user_id(), args.name or filepath.name,
            job_id=args.job,
            force_merge=args.force_merge,
            skip_duplicate_check=args.skip_duplicate_check,
        )
    finally:
        repo.close()

    output = result.to_dict()
    output["rows_skipped_unparseable"] = parser.skipped_count
    _print_json(output)
    return 0


def cmd_add_document(args: argparse.Namespace) -> int:
    """Record a receipt/invoice so it can be matched."""
    from ledgermatch.database.models import Document
    from ledgermatch.parsers.base import canonical_date

    document_date = None
    if args.date:
        document_date = canonical_date(args.date)
        if document_date is None:
            print(f"Error: Unrecognized date: {args.date}")
            return 1

    doc = Document(
        user_id=_get_user_id(),
        original_filename=args.filename,
        vendor_name=args.vendor,
        document_date=document_date,
        total_amount=args.total,
        subtotal_amount=args.subtotal,
        tax_amount=args.tax,
        fee_amount=args.fee,
    )
    repo = _get_repo()
    try:
        repo.insert_document(doc)
    finally:
        repo.close()
    _print_json({"document_id": doc.id})
    return 0


def cmd_link_sheet(args: argparse.Namespace) -> int:
    """Create a job whose rows live in a Google Sheet."""
    from ledgermatch.database.models import SOURCE_GOOGLE_SHEETS, Job

    job = Job(user_id=_get_user_id(), name=args.name,
              spreadsheet_id=args.spreadsheet_id, source_type=SOURCE_GOOGLE_SHEETS)
    repo = _get_repo()
    try:
        repo.insert_job(job)
    finally:
        repo.close()
    _print_json({"job_id": job.id})
    return 0


def _get_matcher(repo):
    from ledgermatch.reconcile.matcher import ReconciliationMatcher

    return ReconciliationMatcher(repo, _get_config().match_thresholds)


def cmd_candidates(args: argparse.Namespace) -> int:
    """List potential document matches per unreconciled transaction."""
    repo = _get_repo()
    try:
        listing = _get_matcher(repo).list_candidates(
            _get_user_id(), source_type=args.source_type,
            limit=args.limit, offset=args.offset,
        )
    finally:
        repo.close()
    _print_json(listing)
    return 0


def cmd_auto_match(args: argparse.Namespace) -> int:
    """Run one auto-match pass."""
    repo = _get_repo()
    try:
        result = _get_matcher(repo).auto_match(_get_user_id(), source_type=args.source_type)
    finally:
        repo.close()
    output = result.to_dict()
    if args.source_type:
        output["source_type"] = args.source_type
    _print_json(output)
    return 0


def cmd_match(args: argparse.Namespace) -> int:
    """Manually link a transaction and a document."""
    repo = _get_repo()
    try:
        _print_json(_get_matcher(repo).match(_get_user_id(), args.transaction, args.document))
    finally:
        repo.close()
    return 0


def cmd_unmatch(args: argparse.Namespace) -> int:
    """Clear a transaction's document link."""
    repo = _get_repo()
    try:
        _print_json(_get_matcher(repo).unmatch(_get_user_id(), args.transaction))
    finally:
        repo.close()
    return 0


def cmd_pull(args: argparse.Namespace) -> int:
    """Merge edits from the job's sheet into SQLite."""
    client = _get_sheets_client()
    if client is None:
        print("Error: Sheets not configured. Set LEDGERMATCH_CREDENTIALS.")
        return 1

    from ledgermatch.sheets.pull import SheetPull

    config = _get_config()
    repo = _get_repo()
    try:
        result = SheetPull(client, repo, tab_name=config.tab_name).pull(args.job, _get_user_id())
    finally:
        repo.close()
    _print_json(result.to_dict())
    return 0


def cmd_push(args: argparse.Namespace) -> int:
    """Write the job's transactions to its sheet."""
    client = _get_sheets_client()
    if client is None:
        print("Error: Sheets not configured. Set LEDGERMATCH_CREDENTIALS.")
        return 1

    from ledgermatch.sheets.push import SheetsPush

    config = _get_config()
    repo = _get_repo()
    try:
        pusher = SheetsPush(
            client, repo, tab_name=config.tab_name,
            chunk_size=config.write_chunk_size,
            max_writes_per_minute=config.max_writes_per_minute,
        )
        result = pusher.push(args.job, _get_user_id())
    finally:
        repo.close()
    _print_json(result.to_dict())
    return 1 if result.errors else 0


def cmd_status(args: argparse.Namespace) -> int:
    """Display reconciliation counts."""
    from ledgermatch.database.queries import find_double_booked_documents, get_status_counts

    repo = _get_repo()
    try:
        counts = get_status_counts(repo.conn, _get_user_id())
        double_booked = find_double_booked_documents(repo.conn)
    finally:
        repo.close()

    print("ledgermatch status")
    print("=" * 40)
    print(f"  Jobs:                   {counts['total_jobs']:,}")
    print(f"  Transactions:           {counts['total_txns']:,}")
    print(f"  Matched:                {counts['matched']:,}")
    print(f"  Unreconciled:           {counts['unreconciled']:,}")
    print(f"  From Google Sheets:     {counts['from_sheets']:,}")
    print(f"  Documents:              {counts['total_documents']:,}")
    print(f"  Unmatched documents:    {counts['unmatched_documents']:,}")
    if double_booked:
        print(f"\n  WARNING: {len(double_booked)} document(s) linked to more than one transaction")
        return 1
    return 0


def cmd_conflicts(args: argparse.Namespace) -> int:
    """List near-duplicate import rows held for review."""
    from ledgermatch.database.dedup import ConflictResolver

    repo = _get_repo()
    try:
        conflicts = ConflictResolver(repo).list_conflicts(
            _get_user_id(), status=args.status, limit=args.limit,
        )
    finally:
        repo.close()
    _print_json({"conflicts": conflicts, "count": len(conflicts)})
    return 0


def cmd_resolve_conflict(args: argparse.Namespace) -> int:
    """Settle one held conflict."""
    from ledgermatch.database.dedup import ConflictResolver

    repo = _get_repo()
    try:
        _print_json(ConflictResolver(repo).resolve(_get_user_id(), args.conflict, args.resolution))
    finally:
        repo.close()
    return 0


_COMMANDS = {
    "import": cmd_import,
    "add-document": cmd_add_document,
    "link-sheet": cmd_link_sheet,
    "candidates": cmd_candidates,
    "auto-match": cmd_auto_match,
    "match": cmd_match,
    "unmatch": cmd_unmatch,
    "pull": cmd_pull,
    "push": cmd_push,
    "status": cmd_status,
    "conflicts": cmd_conflicts,
    "resolve-conflict": cmd_resolve_conflict,
}


def _run(handler, args: argparse.Namespace) -> int:
    """Run a handler, turning expected failures into exit code 1."""
    from ledgermatch.database.repository import AlreadyMatchedError, NotFoundError
    from ledgermatch.sheets.pull import SheetReadError

    try:
        return handler(args)
    except (NotFoundError, AlreadyMatchedError, SheetReadError) as e:
        print(f"Error: {e}")
        return 1
    except (FileNotFoundError, ValueError) as e:
        # Missing config directory, bad YAML, unknown matching settings
        print(f"Error: {e}")
        return 1


def main(argv: list[str] | None = None):
    _setup_logging()

    parser = argparse.ArgumentParser(
        prog="ledgermatch",
        description="Transaction/receipt reconciliation and Google Sheets sync",
    )
    subparsers = parser.add_subparsers(dest="command")

    # import
    import_p = subparsers.add_parser("import", help="Import a bank statement CSV")
    import_p.add_argument("file", type=Path, help="Statement CSV file")
    import_p.add_argument("--name", help="Job name (default: file name)")
    import_p.add_argument("--job", help="Add to this existing job instead of a new one")
    import_p.add_argument("--force-merge", action="store_true",
                          help="Skip already-stored rows even when most rows are new")
    import_p.add_argument("--skip-duplicate-check", action="store_true",
                          help="Insert every row without fingerprint comparison")

    # add-document
    doc_p = subparsers.add_parser("add-document", help="Record a receipt or invoice")
    doc_p.add_argument("filename", help="Original file name")
    doc_p.add_argument("--vendor", help="Vendor/supplier name")
    doc_p.add_argument("--date", help="Document date")
    doc_p.add_argument("--total", type=float, help="Total amount")
    doc_p.add_argument("--subtotal", type=float)
    doc_p.add_argument("--tax", type=float)
    doc_p.add_argument("--fee", type=float)

    # link-sheet
    link_p = subparsers.add_parser("link-sheet", help="Create a job backed by a Google Sheet")
    link_p.add_argument("name", help="Job name")
    link_p.add_argument("spreadsheet_id", help="Google spreadsheet ID")

    # candidates
    cand_p = subparsers.add_parser("candidates", help="List potential matches")
    cand_p.add_argument("--source-type", help="Only transactions from this source")
    cand_p.add_argument("--limit", type=int, default=100)
    cand_p.add_argument("--offset", type=int, default=0)

    # auto-match
    auto_p = subparsers.add_parser("auto-match", help="Commit tight-window matches")
    auto_p.add_argument("--source-type", help="Only transactions from this source")

    # match / unmatch
    match_p = subparsers.add_parser("match", help="Link a transaction to a document")
    match_p.add_argument("transaction", help="Transaction ID")
    match_p.add_argument("document", help="Document ID")
    unmatch_p = subparsers.add_parser("unmatch", help="Remove a transaction's document link")
    unmatch_p.add_argument("transaction", help="Transaction ID")

    # pull / push
    pull_p = subparsers.add_parser("pull", help="Merge sheet edits into SQLite")
    pull_p.add_argument("job", help="Job ID")
    push_p = subparsers.add_parser("push", help="Write a job's transactions to its sheet")
    push_p.add_argument("job", help="Job ID")

    # status
    subparsers.add_parser("status", help="Show reconciliation counts")

    # conflicts
    conf_p = subparsers.add_parser("conflicts", help="List near-duplicates held for review")
    conf_p.add_argument("--status", default="pending", choices=["pending", "resolved"])
    conf_p.add_argument("--limit", type=int, default=50)
    resolve_p = subparsers.add_parser("resolve-conflict", help="Settle a held near-duplicate")
    resolve_p.add_argument("conflict", help="Conflict ID")
    resolve_p.add_argument("resolution", choices=["db", "external", "insert"],
                           help="db: keep stored row, external: overwrite it, insert: keep both")

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    handler = _COMMANDS.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}")
        sys.exit(1)

    sys.exit(_run(handler, args))


if __name__ == "__main__":
    main()
