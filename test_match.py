"""
test_match.py - Matching engine tests.

Covers:
- date/amount window boundaries
- deterministic ranking between several candidates
- one match per transaction
- manual match, unmatch and receipt deletion

Usage: pytest test_match.py
"""

from __future__ import annotations

import os
import sys
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from config import Settings
from errors import MatchConflict, NotFound
from match import auto_match, delete_receipt, edit_receipt, find_candidates, manual_match, unmatch
from models import Direction, Receipt, TransactionCandidate
from store import MemoryStore

TXN_DATE = date(2024, 3, 10)


def _txn(store, amount="42.00", external_id="x1", tenant="t1"):
    candidate = TransactionCandidate(
        tenant_id=tenant,
        txn_date=TXN_DATE,
        description="Hardware store",
        amount=Decimal(amount),
        direction=Direction.DEBIT,
        imported_via="csv",
        external_id=external_id,
    )
    return store.insert_transaction(candidate)


def _receipt(store, days=0, total="42.00", tenant="t1", created_offset=0, receipt_id=None):
    receipt = Receipt(
        tenant_id=tenant,
        vendor="Hardware",
        receipt_date=TXN_DATE + timedelta(days=days),
        total=Decimal(total),
        created_at=datetime(2024, 1, 1, tzinfo=timezone.utc) + timedelta(minutes=created_offset),
    )
    if receipt_id:
        receipt.id = receipt_id
    return store.add_receipt(receipt)


@pytest.mark.parametrize(
    "days, total, expected",
    [
        (0, "42.00", True),
        (5, "42.00", True),
        (-5, "42.00", True),
        (6, "42.00", False),
        (-6, "42.00", False),
        (0, "42.01", True),
        (0, "41.99", True),
        (0, "42.02", False),
    ],
)
def test_window_boundaries(days, total, expected):
    store = MemoryStore()
    txn = _txn(store)
    _receipt(store, days=days, total=total)
    assert (len(find_candidates(store, txn)) == 1) is expected


def test_receipts_of_other_tenants_are_ignored():
    store = MemoryStore()
    txn = _txn(store)
    _receipt(store, tenant="t2")
    assert auto_match(store, txn, "csv") is None


def test_ranking_prefers_closest_date_then_amount_then_created():
    store = MemoryStore()
    txn = _txn(store)
    far = _receipt(store, days=3)
    near_off_amount = _receipt(store, days=1, total="42.01", created_offset=0)
    near_exact_late = _receipt(store, days=-1, created_offset=10)
    near_exact_early = _receipt(store, days=1, created_offset=5)

    ranked = find_candidates(store, txn)
    assert [r.id for r in ranked] == [
        near_exact_early.id,
        near_exact_late.id,
        near_off_amount.id,
        far.id,
    ]


def test_ranking_falls_back_to_receipt_id():
    store = MemoryStore()
    txn = _txn(store)
    b = _receipt(store, receipt_id="b-receipt")
    a = _receipt(store, receipt_id="a-receipt")
    assert [r.id for r in find_candidates(store, txn)] == [a.id, b.id]


def test_two_receipts_in_window_create_exactly_one_match():
    store = MemoryStore()
    txn = _txn(store)
    _receipt(store, days=1)
    _receipt(store, days=2)

    first = auto_match(store, txn, "square", Settings())
    second = auto_match(store, txn, "square", Settings())

    assert first is not None
    assert first.method == "square_auto"
    assert first.confidence == pytest.approx(0.85)
    assert first.matched_amount == Decimal("42.00")
    assert second is None
    assert len(store.list_matches("t1")) == 1


def test_receipt_may_match_several_transactions():
    store = MemoryStore()
    receipt = _receipt(store)
    first = auto_match(store, _txn(store, external_id="a"), "csv")
    second = auto_match(store, _txn(store, external_id="b"), "csv")
    assert first.receipt_id == receipt.id
    assert second.receipt_id == receipt.id


def test_configurable_window():
    store = MemoryStore()
    txn = _txn(store)
    _receipt(store, days=8)
    assert auto_match(store, txn, "csv", Settings(match_window_days=10)) is not None


def test_manual_match_and_conflict():
    store = MemoryStore()
    txn = _txn(store)
    receipt = _receipt(store, days=30, total="1.00")
    other = _receipt(store)

    match = manual_match(store, "t1", txn.id, receipt.id)
    assert match.method == "manual"
    assert match.confidence == 1.0

    with pytest.raises(MatchConflict):
        manual_match(store, "t1", txn.id, other.id)


def test_manual_match_unknown_ids():
    store = MemoryStore()
    txn = _txn(store)
    receipt = _receipt(store)
    with pytest.raises(NotFound):
        manual_match(store, "t1", "missing", receipt.id)
    with pytest.raises(NotFound):
        manual_match(store, "t1", txn.id, "missing")
    with pytest.raises(NotFound):
        manual_match(store, "t2", txn.id, receipt.id)


def test_unmatch_then_rematch():
    store = MemoryStore()
    txn = _txn(store)
    receipt = _receipt(store)
    manual_match(store, "t1", txn.id, receipt.id)

    unmatch(store, "t1", txn.id)
    assert store.get_match("t1", txn.id) is None
    with pytest.raises(NotFound):
        unmatch(store, "t1", txn.id)
    assert manual_match(store, "t1", txn.id, receipt.id).receipt_id == receipt.id


def test_delete_receipt_removes_matches_first():
    store = MemoryStore()
    txn = _txn(store)
    receipt = _receipt(store)
    auto_match(store, txn, "csv")

    assert delete_receipt(store, "t1", receipt.id) == 1
    assert store.get_receipt("t1", receipt.id) is None
    assert store.get_match("t1", txn.id) is None
    with pytest.raises(NotFound):
        delete_receipt(store, "t1", receipt.id)


def test_edit_receipt_keeps_match_and_validates():
    store = MemoryStore()
    txn = _txn(store)
    receipt = _receipt(store)
    manual_match(store, "t1", txn.id, receipt.id)

    edited = edit_receipt(store, "t1", receipt.id, {"vendor": "Shell", "tax": Decimal("2.00")})

    assert edited.vendor == "Shell"
    assert edited.total == Decimal("42.00")
    assert edited.subtotal == Decimal("40.00")
    assert store.get_match("t1", txn.id).receipt_id == receipt.id

    with pytest.raises(ValueError):
        edit_receipt(store, "t1", receipt.id, {"total": Decimal("-1")})
    with pytest.raises(NotFound):
        edit_receipt(store, "t2", receipt.id, {"vendor": "x"})
