"""
categorize.py - Rule engine assigning accounting categories to transactions.

Evaluation order (first hit wins):
    1. credit whose description mentions Square  -> "Sales Income"
    2. VendorRules in insertion order; pattern tested against description
       OR vendor; optional direction filter
    3. enabled FallbackRules in insertion order
    4. "Uncategorized"

A rule that matches but carries no category yields "Uncategorized"; later
rules are not consulted. Every result is clamped to the tenant's active
category names plus "Uncategorized". Patterns are case-insensitive regular
expressions; a pattern that does not compile never matches.
"""

from __future__ import annotations

import re
from concurrent.futures import ThreadPoolExecutor
from datetime import date
from functools import lru_cache
from typing import Iterable, Optional, Sequence

from logging_config import get_logger
from models import UNCATEGORIZED, Direction, FallbackRule, TransactionCandidate, VendorRule
from store import LedgerStore

logger = get_logger(__name__)

SALES_INCOME = "Sales Income"
_SQUARE_MARKER = re.compile(r"square", re.IGNORECASE)


@lru_cache(maxsize=1024)
def compile_pattern(pattern: str) -> Optional[re.Pattern]:
    """Compile a rule pattern once. Invalid patterns return None."""
    try:
        return re.compile(pattern, re.IGNORECASE)
    except re.error as exc:
        logger.warning("rule_pattern_invalid | pattern=%r | error=%s", pattern, exc)
        return None


def _pattern_hits(pattern: str, description: str, vendor: Optional[str]) -> bool:
    compiled = compile_pattern(pattern)
    if compiled is None:
        return False
    if compiled.search(description or ""):
        return True
    return bool(vendor) and compiled.search(vendor) is not None


def pick_category(
    txn: TransactionCandidate,
    vendor_rules: Sequence[VendorRule],
    fallback_rules: Sequence[FallbackRule],
) -> str:
    """Raw rule result, before clamping to the allow-list."""
    if txn.direction == Direction.CREDIT and _SQUARE_MARKER.search(txn.description or ""):
        return SALES_INCOME

    for rule in vendor_rules:
        if rule.direction_filter is not None and rule.direction_filter != txn.direction:
            continue
        if _pattern_hits(rule.vendor_pattern, txn.description, txn.vendor_clean):
            return rule.category or UNCATEGORIZED

    for rule in fallback_rules:
        if not rule.enabled:
            continue
        if _pattern_hits(rule.match_pattern, txn.description, txn.vendor_clean):
            return rule.default_category or UNCATEGORIZED

    return UNCATEGORIZED


def clamp_category(category: Optional[str], allowed: Iterable[str]) -> str:
    """Return `category` if it is an allowed name (exact match), else "Uncategorized"."""
    if category and (category == UNCATEGORIZED or category in set(allowed)):
        return category
    return UNCATEGORIZED


def categorize(
    txn: TransactionCandidate,
    vendor_rules: Sequence[VendorRule],
    fallback_rules: Sequence[FallbackRule],
    allowed: Iterable[str],
) -> str:
    return clamp_category(pick_category(txn, vendor_rules, fallback_rules), allowed)


class TenantRules:
    """Rules and allow-list of one tenant, loaded once per batch."""

    def __init__(self, store: LedgerStore, tenant_id: str) -> None:
        self.tenant_id = tenant_id
        self.vendor_rules = store.list_vendor_rules(tenant_id)
        self.fallback_rules = store.list_fallback_rules(tenant_id, enabled_only=True)
        self.allowed = frozenset(c.name for c in store.list_categories(tenant_id, active_only=True))

    def categorize(self, txn: TransactionCandidate) -> str:
        return categorize(txn, self.vendor_rules, self.fallback_rules, self.allowed)


def bulk_categorize(
    store: LedgerStore,
    tenant_id: str,
    start: Optional[date] = None,
    end: Optional[date] = None,
    batch_size: int = 25,
) -> int:
    """Re-run the rules over uncategorized transactions of a tenant.

    Only rows whose category is empty or "Uncategorized" are considered, and
    only rows whose new category is a real one are written. Each write is
    conditional, so a category an operator set after the read is kept. Writes
    go out in concurrent groups of `batch_size`. Returns the number of rows
    updated.
    """
    rules = TenantRules(store, tenant_id)
    targets = store.list_transactions(tenant_id, start=start, end=end, uncategorized_only=True)

    updates: list[tuple[str, str]] = []
    for txn in targets:
        category = rules.categorize(txn)
        if category != UNCATEGORIZED:
            updates.append((txn.id, category))

    updated = 0
    with ThreadPoolExecutor(max_workers=batch_size) as pool:
        for offset in range(0, len(updates), batch_size):
            group = updates[offset : offset + batch_size]
            results = pool.map(
                lambda item: store.update_transaction_category(
                    tenant_id, item[0], item[1], only_if_uncategorized=True
                ),
                group,
            )
            updated += sum(1 for ok in results if ok)

    logger.info(
        "bulk_categorize | tenant=%s | start=%s | end=%s | candidates=%s | updated=%s",
        tenant_id,
        start.isoformat() if start else None,
        end.isoformat() if end else None,
        len(targets),
        updated,
    )
    return updated
