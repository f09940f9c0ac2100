"""
test_pipeline.py - End-to-end import tests: dedup, matching, loans, reporting.

Usage: pytest test_pipeline.py
"""

from __future__ import annotations

import os
import sys
from datetime import date
from decimal import Decimal

import pytest

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import pipeline
from adapters import BankStatementAdapter
from config import Settings
from errors import MalformedInput
from models import (
    CsvImportRequest,
    Direction,
    OrgCategory,
    Receipt,
    ReportType,
    SquareImportRequest,
    VendorRule,
)
from pipeline import import_bank_csv, import_square_csv
from store import MemoryStore

TODAY = date(2024, 6, 15)

BANK_CSV = (
    "Date,Description,Amount,Vendor\n"
    "2024-01-02,SQ *COFFEE BAR,-4.50,Coffee Bar\n"
    "2024-01-03,Office Depot #44,-120.00,Office Depot\n"
    "2024-01-04,Client payment,1500.00,\n"
)


def _bank(store, text=BANK_CSV, tenant="t1", settings=None):
    request = CsvImportRequest(csvContent=text, tenantId=tenant, sourceLabel="Chase")
    return import_bank_csv(store, request, settings or Settings(), today=TODAY)


def _square(store, report_type, text, tenant="t1"):
    request = SquareImportRequest(reportType=report_type, csvContent=text, tenantId=tenant)
    return import_square_csv(store, request, Settings(), today=TODAY)


def test_reimport_is_all_duplicates():
    store = MemoryStore()
    first = _bank(store)
    second = _bank(store)

    assert first.imported == 3 and first.duplicates == 0
    assert second.imported == 0
    assert second.duplicates == 3
    assert len(store.list_transactions("t1")) == 3


def test_identical_rows_in_one_file_are_both_imported():
    store = MemoryStore()
    text = "Date,Description,Amount\n2024-01-02,Coffee,-3\n2024-01-02,Coffee,-3\n"
    assert _bank(store, text).imported == 2
    again = _bank(store, text)
    assert again.imported == 0 and again.duplicates == 2


def test_dedup_is_scoped_by_tenant():
    store = MemoryStore()
    _bank(store, tenant="t1")
    other = _bank(store, tenant="t2")
    assert other.imported == 3


def test_bank_import_categorizes_with_rules():
    store = MemoryStore()
    store.upsert_category(OrgCategory(tenant_id="t1", name="Office Supplies"))
    store.add_vendor_rule(VendorRule(tenant_id="t1", vendor_pattern="office depot", category="Office Supplies"))

    report = _bank(store)
    categories = {t.description: t.category for t in store.list_transactions("t1")}

    assert report.categorized == 1
    assert categories["Office Depot #44"] == "Office Supplies"
    assert categories["Client payment"] == "Uncategorized"


def test_bank_import_auto_matches_receipt():
    store = MemoryStore()
    receipt = store.add_receipt(
        Receipt(tenant_id="t1", vendor="Office Depot", receipt_date=date(2024, 1, 5), total=Decimal("120.00"))
    )

    report = _bank(store)
    txn = next(t for t in store.list_transactions("t1") if t.description == "Office Depot #44")
    match = store.get_match("t1", txn.id)

    assert report.matched == 1
    assert match.receipt_id == receipt.id
    assert match.method == "csv_auto"
    assert match.confidence == pytest.approx(0.85)


def test_square_payments_end_to_end():
    store = MemoryStore()
    report = _square(
        store,
        ReportType.PAYMENTS,
        "Payment ID,Gross Sales,Net Total,Fees\np1,100.00,97.10,2.90\n",
    )
    by_id = {t.external_id: t for t in store.list_transactions("t1")}

    assert report.imported == 2
    assert by_id["p1"].direction == Direction.CREDIT
    assert by_id["p1"].amount == Decimal("97.10")
    assert by_id["p1"].category == "Income"
    assert by_id["p1-fee"].direction == Direction.DEBIT
    assert by_id["p1-fee"].amount == Decimal("2.90")
    assert by_id["p1-fee"].category == "Bank Fees"

    again = _square(
        store,
        ReportType.PAYMENTS,
        "Payment ID,Gross Sales,Net Total,Fees\np1,100.00,97.10,2.90\n",
    )
    assert again.imported == 0 and again.duplicates == 2


LOAN_CSV = (
    "Loan ID,Date,Repayment Amount,Interest,Outstanding Balance\n"
    "L1,2024-03-01,50,5,950\n"
    "L1,2024-03-08,50,4,900\n"
)


def test_loan_end_to_end():
    store = MemoryStore()
    report = _square(store, ReportType.LOAN, LOAN_CSV)
    ledger = store.get_loan("t1", "L1")

    assert report.imported == 2
    assert ledger.outstanding_balance == Decimal("900")
    assert ledger.interest_paid == Decimal("9")
    assert ledger.total_repayments == Decimal("100")
    assert ledger.status.value == "active"


def test_loan_same_day_rows_without_ids_share_one_key():
    store = MemoryStore()
    report = _square(
        store,
        ReportType.LOAN,
        "Loan ID,Repayment Amount,Interest,Outstanding Balance\nL1,50,5,950\nL1,50,4,900\n",
    )
    ledger = store.get_loan("t1", "L1")
    txn = store.list_transactions("t1")[0]

    assert report.imported == 1
    assert report.duplicates == 1
    assert txn.external_id == f"L1-{TODAY.isoformat()}"
    assert ledger.interest_paid == Decimal("5")
    assert ledger.total_repayments == Decimal("50")


def test_loan_reimport_does_not_double_count():
    store = MemoryStore()
    _square(store, ReportType.LOAN, LOAN_CSV)
    again = _square(store, ReportType.LOAN, LOAN_CSV)
    ledger = store.get_loan("t1", "L1")

    assert again.duplicates == 2
    assert ledger.interest_paid == Decimal("9")
    assert ledger.total_repayments == Decimal("100")


def test_square_deposits_skip_counts():
    store = MemoryStore()
    report = _square(
        store,
        ReportType.DEPOSITS,
        "Transfer ID,Date,Net\nd1,2024-02-01,500.00\n,2024-02-02,10\nd3,2024-02-03,0\n",
    )
    assert report.imported == 1
    assert report.skipped == 2
    assert report.errors == []


def test_row_error_is_recorded_and_batch_continues(monkeypatch):
    store = MemoryStore()
    real_admit = pipeline.admit

    def flaky_admit(target_store, candidate):
        if candidate.external_id == "ref-2":
            raise RuntimeError("database hiccup")
        return real_admit(target_store, candidate)

    monkeypatch.setattr(pipeline, "admit", flaky_admit)
    text = (
        "Date,Description,Amount,Transaction ID\n"
        "2024-01-02,Coffee,-4.50,ref-1\n"
        "2024-01-03,Office Depot,-120.00,ref-2\n"
        "2024-01-04,Client payment,1500.00,ref-3\n"
    )
    report = _bank(store, text)

    assert report.imported == 2
    assert report.error_count == 1
    assert report.errors == ["Row 2 (ref-2): database hiccup"]


def test_errors_list_is_capped(monkeypatch):
    store = MemoryStore()

    def broken_adapt(self, row):
        raise ValueError("bad row")

    monkeypatch.setattr(BankStatementAdapter, "adapt", broken_adapt)
    lines = "\n".join(f"2024-01-{day:02d},Item {day},-{day}" for day in range(1, 6))
    report = _bank(store, "Date,Description,Amount\n" + lines + "\n", settings=Settings(max_reported_errors=2))

    assert report.error_count == 5
    assert len(report.errors) == 2
    assert report.errors[0] == "Row 1 (no id): bad row"
    assert report.imported == 0


def test_failed_auto_match_does_not_fail_row(monkeypatch):
    store = MemoryStore()

    def broken_find(*args, **kwargs):
        raise RuntimeError("receipt lookup down")

    monkeypatch.setattr(store, "find_receipts", broken_find)
    report = _bank(store)
    assert report.imported == 3
    assert report.error_count == 0
    assert report.matched == 0


def test_empty_csv_rejects_whole_batch():
    with pytest.raises(MalformedInput):
        _bank(MemoryStore(), "")


def test_missing_columns_reject_whole_batch():
    with pytest.raises(MalformedInput):
        _square(MemoryStore(), ReportType.PAYMENTS, "Date,Amount\n2024-01-01,5\n")


def test_size_and_row_limits():
    store = MemoryStore()
    with pytest.raises(MalformedInput):
        _bank(store, settings=Settings(max_bank_csv_bytes=10))
    with pytest.raises(MalformedInput):
        _bank(store, settings=Settings(max_bank_csv_rows=2))
    assert store.list_transactions("t1") == []
