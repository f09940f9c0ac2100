"""
main.py - CLI for the reconciliation engine.

Subcommands:
    import-csv     import a bank/card statement CSV
    import-square  import a Square payments/deposits/loan report
    categorize     re-run rules over uncategorized transactions
    export-ledger  write the unified ledger to CSV

The store comes from configuration (DATABASE_URL, RECON_STORE_FILE).
Without either, data only lives for the run, so the CLI defaults
RECON_STORE_FILE to data/recon_store.json.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import date
from pathlib import Path
from typing import Optional

from categorize import bulk_categorize
from config import Settings, load_settings
from errors import ReconError
from ledger import build_ledger, ledger_frame
from logging_config import get_logger, setup_logging
from models import CsvImportRequest, ReportType, SquareImportRequest
from pipeline import import_bank_csv, import_square_csv
from store import LedgerStore, create_store

logger = get_logger("recon-cli")

DEFAULT_STORE_FILE = "data/recon_store.json"


def read_csv_text(csv_path: str) -> str:
    """Read a CSV file as text, accepting UTF-8 (with or without BOM) or Latin-1."""
    if csv_path is None or not str(csv_path).strip():
        raise ValueError("csv_path cannot be empty")

    path = Path(str(csv_path).strip())
    if not path.exists():
        raise FileNotFoundError(f"CSV file not found: {path}")

    raw = path.read_bytes()
    try:
        return raw.decode("utf-8-sig")
    except UnicodeDecodeError:
        logger.warning("csv_encoding_fallback | path=%s | encoding=latin-1", path)
        return raw.decode("latin-1")


def _parse_day(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise ValueError(f"invalid date {value!r}; expected YYYY-MM-DD") from exc


def _store_for_cli(settings: Settings) -> LedgerStore:
    if not settings.database_url and not settings.store_file:
        settings = settings.model_copy(update={"store_file": DEFAULT_STORE_FILE})
    return create_store(settings)


def _print_json(payload) -> None:
    print(json.dumps(payload, indent=2, default=str))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="recon",
        description="Import bank and Square CSV exports, match receipts and categorize transactions.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  %(prog)s import-csv statement.csv --tenant acme --source-label Chase\n"
            "  %(prog)s import-square payments.csv --tenant acme --report-type payments\n"
            "  %(prog)s categorize --tenant acme --start 2024-01-01\n"
            "  %(prog)s export-ledger --tenant acme --out ledger.csv\n"
        ),
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable DEBUG-level logging")
    parser.add_argument(
        "--log-json",
        action="store_true",
        help="Output logs as JSON lines (for production/log aggregation)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    csv_cmd = sub.add_parser("import-csv", help="Import a bank/card statement CSV")
    csv_cmd.add_argument("csv", help="Path to the CSV file")
    csv_cmd.add_argument("--tenant", required=True)
    csv_cmd.add_argument("--account-id")
    csv_cmd.add_argument("--source-label", help="Institution label, e.g. 'Chase'")
    csv_cmd.add_argument("--account-name")

    square_cmd = sub.add_parser("import-square", help="Import a Square report CSV")
    square_cmd.add_argument("csv", help="Path to the CSV file")
    square_cmd.add_argument("--tenant", required=True)
    square_cmd.add_argument(
        "--report-type",
        required=True,
        choices=[report_type.value for report_type in ReportType],
    )
    square_cmd.add_argument("--account-id")

    cat_cmd = sub.add_parser("categorize", help="Re-run rules over uncategorized transactions")
    cat_cmd.add_argument("--tenant", required=True)
    cat_cmd.add_argument("--start", help="First date (YYYY-MM-DD)")
    cat_cmd.add_argument("--end", help="Last date (YYYY-MM-DD)")

    ledger_cmd = sub.add_parser("export-ledger", help="Write the unified ledger as CSV")
    ledger_cmd.add_argument("--tenant", required=True)
    ledger_cmd.add_argument("--start", help="First date (YYYY-MM-DD)")
    ledger_cmd.add_argument("--end", help="Last date (YYYY-MM-DD)")
    ledger_cmd.add_argument("--out", help="Output path (default: stdout)")

    return parser


def run(args: argparse.Namespace, settings: Settings, store: LedgerStore) -> int:
    """Execute one parsed command. Returns the process exit code."""
    if args.command == "import-csv":
        request = CsvImportRequest(
            csv_content=read_csv_text(args.csv),
            tenant_id=args.tenant,
            account_id=args.account_id,
            source_label=args.source_label,
            account_name=args.account_name,
        )
        report = import_bank_csv(store, request, settings)
        _print_json(report.model_dump(mode="json"))
        return 0

    if args.command == "import-square":
        request = SquareImportRequest(
            report_type=ReportType(args.report_type),
            csv_content=read_csv_text(args.csv),
            tenant_id=args.tenant,
            account_id=args.account_id,
        )
        report = import_square_csv(store, request, settings)
        _print_json(report.model_dump(mode="json"))
        return 0

    if args.command == "categorize":
        updated = bulk_categorize(
            store,
            args.tenant,
            start=_parse_day(args.start),
            end=_parse_day(args.end),
            batch_size=settings.bulk_update_batch_size,
        )
        _print_json({"updated": updated})
        return 0

    if args.command == "export-ledger":
        entries = build_ledger(store, args.tenant, start=_parse_day(args.start), end=_parse_day(args.end))
        df = ledger_frame(entries)
        if args.out:
            df.to_csv(args.out, index=False)
            logger.info("ledger_exported | path=%s | rows=%s", args.out, len(df))
        else:
            df.to_csv(sys.stdout, index=False)
        return 0

    raise ValueError(f"unknown command: {args.command}")


def main(argv: Optional[list[str]] = None) -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    settings = load_settings()
    setup_logging(
        level=logging.DEBUG if args.verbose else settings.log_level,
        json_format=args.log_json or settings.log_json,
    )

    try:
        logger.info("cli_mode | command=%s | tenant=%s", args.command, args.tenant)
        code = run(args, settings, _store_for_cli(settings))
    except FileNotFoundError as exc:
        logger.error("cli_error | type=FileNotFoundError | error=%s", exc)
        print(f"\nError: {exc}")
        raise SystemExit(1) from exc
    except (ReconError, ValueError) as exc:
        logger.error("cli_error | type=%s | error=%s", type(exc).__name__, exc)
        print(f"\nError: {exc}")
        raise SystemExit(1) from exc
    except KeyboardInterrupt:
        print("\nInterrupted.")
        raise SystemExit(130)
    except Exception as exc:
        logger.error(
            "cli_error | type=%s | error=%s",
            type(exc).__name__,
            exc,
            exc_info=True,
        )
        print(f"\nUnexpected error: {exc}")
        print("Run with --verbose for full traceback.")
        raise SystemExit(1) from exc

    raise SystemExit(code)


if __name__ == "__main__":
    main()
