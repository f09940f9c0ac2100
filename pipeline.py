"""
pipeline.py - Import orchestration for bank and Square CSV submissions.

One submission runs through:

    size/row limits -> parse_csv_rows -> adapter.resolve(headers)
    per row, sequentially:
        to_row -> adapt -> (skip) | categorize (unset only) -> admit
        admitted: auto_match, apply loan delta
        duplicate: counted, nothing else happens

Whole-file problems (empty CSV, missing columns, limits) raise MalformedInput.
Anything that goes wrong inside one row is recorded in the report and the
batch continues.
"""

from __future__ import annotations

from datetime import date
from typing import Optional

from adapters import SQUARE_ADAPTERS, BankStatementAdapter, SourceAdapter
from categorize import TenantRules
from config import Settings
from dedup import admit
from errors import MalformedInput
from loans import apply_loan_delta
from logging_config import get_logger
from match import auto_match
from models import UNCATEGORIZED, BatchReport, CsvImportRequest, SquareImportRequest
from normalize import parse_csv_rows
from report import BatchReportBuilder
from store import LedgerStore

logger = get_logger(__name__)


def _check_size(csv_content: str, max_bytes: int, label: str) -> None:
    size = len((csv_content or "").encode("utf-8"))
    if size > max_bytes:
        raise MalformedInput(f"{label} CSV is too large: {size} bytes (limit {max_bytes})")


def _check_rows(rows: list[dict[str, str]], max_rows: int, label: str) -> None:
    if len(rows) > max_rows:
        raise MalformedInput(f"{label} CSV has too many rows: {len(rows)} (limit {max_rows})")


def run_batch(
    store: LedgerStore,
    adapter: SourceAdapter,
    rows: list[dict[str, str]],
    settings: Settings,
) -> BatchReport:
    """Process already-parsed rows through one adapter; never raises per row."""
    adapter.resolve(list(rows[0].keys()) if rows else [])
    rules = TenantRules(store, adapter.tenant_id)
    report = BatchReportBuilder(max_errors=settings.max_reported_errors)

    for row_number, row in enumerate(rows, start=1):
        ref = ""
        try:
            typed = adapter.to_row(row_number, row)
            ref = getattr(typed, adapter.id_field, "") or ""
            output = adapter.adapt(typed)
            if output.skipped:
                logger.debug(
                    "row_skipped | kind=%s | row=%s | ref=%s | reason=%s",
                    adapter.kind,
                    row_number,
                    ref,
                    output.skip_reason,
                )
                report.skipped()
                continue

            for candidate in output.candidates:
                if candidate.category is None:
                    candidate = candidate.model_copy(update={"category": rules.categorize(candidate)})
                    categorized = candidate.category != UNCATEGORIZED
                else:
                    categorized = False

                txn = admit(store, candidate)
                if txn is None:
                    report.duplicate()
                    continue

                report.imported()
                if categorized:
                    report.categorized()
                if auto_match(store, txn, adapter.match_source, settings) is not None:
                    report.matched()
                if output.loan_delta is not None:
                    apply_loan_delta(store, adapter.tenant_id, output.loan_delta)
        except Exception as exc:
            message = f"Row {row_number} ({ref or 'no id'}): {exc}"
            logger.warning(
                "row_failed | kind=%s | tenant=%s | %s",
                adapter.kind,
                adapter.tenant_id,
                message,
                exc_info=True,
            )
            report.error(message)

    result = report.build()
    logger.info(
        "batch_complete | kind=%s | tenant=%s | rows=%s | imported=%s | duplicates=%s | skipped=%s | "
        "errors=%s | matched=%s | categorized=%s",
        adapter.kind,
        adapter.tenant_id,
        len(rows),
        result.imported,
        result.duplicates,
        result.skipped,
        result.error_count,
        result.matched,
        result.categorized,
    )
    return result


def import_bank_csv(
    store: LedgerStore,
    request: CsvImportRequest,
    settings: Optional[Settings] = None,
    today: Optional[date] = None,
) -> BatchReport:
    """Import a generic bank/card statement CSV for one tenant."""
    settings = settings or Settings()
    _check_size(request.csv_content, settings.max_bank_csv_bytes, "Bank")
    rows = parse_csv_rows(request.csv_content)
    _check_rows(rows, settings.max_bank_csv_rows, "Bank")

    adapter = BankStatementAdapter(
        request.tenant_id,
        account_id=request.account_id,
        source_label=request.source_label,
        account_name=request.account_name,
        today=today,
    )
    logger.info(
        "import_start | kind=bank | tenant=%s | rows=%s | institution=%s",
        request.tenant_id,
        len(rows),
        adapter.institution,
    )
    return run_batch(store, adapter, rows, settings)


def import_square_csv(
    store: LedgerStore,
    request: SquareImportRequest,
    settings: Optional[Settings] = None,
    today: Optional[date] = None,
) -> BatchReport:
    """Import one Square report (payments, deposits or loan) for one tenant."""
    settings = settings or Settings()
    _check_size(request.csv_content, settings.max_square_csv_bytes, "Square")
    rows = parse_csv_rows(request.csv_content)
    _check_rows(rows, settings.max_square_csv_rows, "Square")

    adapter_cls = SQUARE_ADAPTERS[request.report_type]
    adapter = adapter_cls(request.tenant_id, account_id=request.account_id, today=today)
    logger.info(
        "import_start | kind=%s | tenant=%s | rows=%s",
        adapter.kind,
        request.tenant_id,
        len(rows),
    )
    return run_batch(store, adapter, rows, settings)
