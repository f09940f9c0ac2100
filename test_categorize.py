"""
test_categorize.py - Categorization rule engine tests.

Usage: pytest test_categorize.py
"""

from __future__ import annotations

import os
import sys
from datetime import date
from decimal import Decimal

import pytest

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from categorize import bulk_categorize, categorize, clamp_category, compile_pattern, pick_category
from models import (
    UNCATEGORIZED,
    Direction,
    FallbackRule,
    OrgCategory,
    TransactionCandidate,
    VendorRule,
)
from store import MemoryStore

ALLOWED = {"Fuel", "Office Supplies", "Meals", "Sales Income"}


def _candidate(description, direction=Direction.DEBIT, vendor=None, external_id="e1", txn_date=date(2024, 1, 1)):
    return TransactionCandidate(
        tenant_id="t1",
        txn_date=txn_date,
        description=description,
        vendor_clean=vendor,
        amount=Decimal("10"),
        direction=direction,
        imported_via="csv",
        external_id=external_id,
    )


def _vendor(pattern, category, direction=None):
    return VendorRule(tenant_id="t1", vendor_pattern=pattern, category=category, direction_filter=direction)


def _fallback(pattern, category, enabled=True):
    return FallbackRule(tenant_id="t1", match_pattern=pattern, default_category=category, enabled=enabled)


def test_vendor_rule_beats_fallback_rule():
    txn = _candidate("SHELL OIL 1234")
    result = categorize(txn, [_vendor("shell", "Fuel")], [_fallback("oil", "Office Supplies")], ALLOWED)
    assert result == "Fuel"


def test_vendor_rules_apply_in_insertion_order():
    txn = _candidate("Shell Cafe")
    rules = [_vendor("cafe", "Meals"), _vendor("shell", "Fuel")]
    assert categorize(txn, rules, [], ALLOWED) == "Meals"


def test_pattern_tests_vendor_as_well_as_description():
    txn = _candidate("POS 88231", vendor="Chevron")
    assert categorize(txn, [_vendor("chevron", "Fuel")], [], ALLOWED) == "Fuel"


def test_direction_filter():
    rules = [_vendor("acme", "Office Supplies", direction=Direction.DEBIT)]
    assert categorize(_candidate("ACME"), rules, [], ALLOWED) == "Office Supplies"
    assert categorize(_candidate("ACME", direction=Direction.CREDIT), rules, [], ALLOWED) == UNCATEGORIZED


def test_matching_rule_without_category_stops_evaluation():
    txn = _candidate("shell")
    rules = [_vendor("shell", None), _vendor("shell", "Fuel")]
    assert pick_category(txn, rules, [_fallback("shell", "Fuel")]) == UNCATEGORIZED


def test_disabled_fallback_is_ignored():
    txn = _candidate("lunch")
    assert categorize(txn, [], [_fallback("lunch", "Meals", enabled=False)], ALLOWED) == UNCATEGORIZED
    assert categorize(txn, [], [_fallback("lunch", "Meals")], ALLOWED) == "Meals"


def test_square_credit_special_case():
    credit = _candidate("Square Inc deposit", direction=Direction.CREDIT)
    debit = _candidate("Square Inc fee")
    assert categorize(credit, [_vendor("square", "Fuel")], [], ALLOWED) == "Sales Income"
    assert categorize(debit, [_vendor("square", "Fuel")], [], ALLOWED) == "Fuel"


def test_result_is_clamped_to_allow_list():
    txn = _candidate("shell")
    assert categorize(txn, [_vendor("shell", "Gasoline")], [], ALLOWED) == UNCATEGORIZED
    assert categorize(txn, [_vendor("shell", "fuel")], [], ALLOWED) == UNCATEGORIZED
    assert clamp_category("Fuel", ALLOWED) == "Fuel"
    assert clamp_category(None, ALLOWED) == UNCATEGORIZED
    assert clamp_category("Uncategorized", set()) == UNCATEGORIZED


def test_invalid_pattern_is_a_non_match():
    assert compile_pattern("([unclosed") is None
    txn = _candidate("([unclosed")
    rules = [_vendor("([unclosed", "Meals"), _vendor("unclosed", "Fuel")]
    assert categorize(txn, rules, [], ALLOWED) == "Fuel"


@pytest.mark.parametrize(
    "description",
    ["", "(((", "*+?", "[a-", "\\", "$^.|", "a" * 5000, "SHELL (unclosed", "💥 emoji ☕", "\x00\n\t"],
)
def test_output_always_in_allow_list(description):
    vendor_rules = [_vendor("(", "Meals"), _vendor(".*", "Not Allowed"), _vendor("shell", "Fuel")]
    fallback_rules = [_fallback("[", "Fuel"), _fallback("x+", "Office Supplies")]
    for direction in (Direction.DEBIT, Direction.CREDIT):
        result = categorize(_candidate(description, direction=direction, vendor=description), vendor_rules, fallback_rules, ALLOWED)
        assert result in ALLOWED | {UNCATEGORIZED}


def _seed_store():
    store = MemoryStore()
    for name in ("Fuel", "Meals"):
        store.upsert_category(OrgCategory(tenant_id="t1", name=name))
    store.add_vendor_rule(_vendor("shell", "Fuel"))
    store.add_fallback_rule(_fallback("cafe", "Meals"))
    return store


def test_bulk_categorize_never_overwrites_existing_category():
    store = _seed_store()
    manual = store.insert_transaction(_candidate("Shell station", external_id="m"))
    store.update_transaction_category("t1", manual.id, "Meals")
    open_txn = store.insert_transaction(_candidate("Shell station", external_id="o"))
    uncategorized = store.insert_transaction(_candidate("Cafe", external_id="u"))
    store.update_transaction_category("t1", uncategorized.id, UNCATEGORIZED)
    nothing = store.insert_transaction(_candidate("Mystery", external_id="n"))

    updated = bulk_categorize(store, "t1")

    assert updated == 2
    assert store.get_transaction("t1", manual.id).category == "Meals"
    assert store.get_transaction("t1", open_txn.id).category == "Fuel"
    assert store.get_transaction("t1", uncategorized.id).category == "Meals"
    assert store.get_transaction("t1", nothing.id).category is None


def test_bulk_categorize_respects_date_window_and_batches():
    store = _seed_store()
    for day in range(1, 31):
        store.insert_transaction(_candidate("Shell", external_id=f"s{day}", txn_date=date(2024, 1, day)))

    updated = bulk_categorize(store, "t1", start=date(2024, 1, 5), end=date(2024, 1, 10), batch_size=4)
    assert updated == 6
    assert bulk_categorize(store, "t1", batch_size=25) == 24
    assert bulk_categorize(store, "t1") == 0


class _OperatorEditsAfterRead(MemoryStore):
    """Assigns a category to every listed row right after the bulk read."""

    def list_transactions(self, tenant_id, start=None, end=None, uncategorized_only=False):
        rows = super().list_transactions(tenant_id, start, end, uncategorized_only)
        if uncategorized_only:
            for txn in rows:
                self.update_transaction_category(tenant_id, txn.id, "Travel")
        return rows


def test_bulk_categorize_keeps_category_set_after_read():
    store = _OperatorEditsAfterRead()
    store.upsert_category(OrgCategory(tenant_id="t1", name="Fuel"))
    store.add_vendor_rule(_vendor("shell", "Fuel"))
    txn = store.insert_transaction(_candidate("Shell station", external_id="race"))

    assert bulk_categorize(store, "t1") == 0
    assert store.get_transaction("t1", txn.id).category == "Travel"


def test_conditional_category_update():
    store = MemoryStore()
    txn = store.insert_transaction(_candidate("Shell station", external_id="c"))

    assert store.update_transaction_category("t1", txn.id, "Fuel", only_if_uncategorized=True) is True
    assert store.update_transaction_category("t1", txn.id, "Meals", only_if_uncategorized=True) is False
    assert store.get_transaction("t1", txn.id).category == "Fuel"
    assert store.update_transaction_category("t1", txn.id, "Meals") is True
