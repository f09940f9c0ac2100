"""
match.py - Matching engine: link imported transactions to receipts.

Auto matching looks for receipts inside a date/amount window around a freshly
admitted transaction:

    receipt_date in [txn_date - window_days, txn_date + window_days]
    total        in [amount - tolerance, amount + tolerance]

Candidates are ranked by a fixed order so the result is deterministic:
    1. smallest |date difference|
    2. smallest |amount difference|
    3. earliest receipt created_at
    4. receipt id

Only the best candidate is linked. A transaction has at most one match; the
store rejects a second one atomically. Matching is greedy per transaction,
not a global assignment.
"""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal
from typing import Optional

from config import Settings
from errors import MatchConflict, NotFound
from logging_config import get_logger, graceful
from models import Match, Receipt, Transaction
from store import LedgerStore

logger = get_logger(__name__)

MANUAL_METHOD = "manual"
MANUAL_CONFIDENCE = 1.0


def _rank_key(txn: Transaction, receipt: Receipt):
    return (
        abs((receipt.receipt_date - txn.txn_date).days),
        abs(receipt.total - txn.amount),
        receipt.created_at,
        receipt.id,
    )


def find_candidates(
    store: LedgerStore,
    txn: Transaction,
    window_days: int = 5,
    tolerance: Decimal = Decimal("0.01"),
) -> list[Receipt]:
    """Receipts inside the match window for `txn`, best first."""
    window = timedelta(days=window_days)
    receipts = store.find_receipts(
        txn.tenant_id,
        txn.txn_date - window,
        txn.txn_date + window,
        txn.amount - tolerance,
        txn.amount + tolerance,
    )
    ranked = sorted(receipts, key=lambda receipt: _rank_key(txn, receipt))
    logger.debug(
        "match_candidates | transaction_id=%s | amount=%s | date=%s | found=%s",
        txn.id,
        txn.amount,
        txn.txn_date.isoformat(),
        len(ranked),
    )
    return ranked


@graceful(default_factory=lambda: None)
def auto_match(
    store: LedgerStore,
    txn: Transaction,
    source: str,
    settings: Optional[Settings] = None,
) -> Optional[Match]:
    """Link `txn` to its best receipt candidate. Returns None when nothing links.

    Failures are logged and swallowed: a row is never failed by matching.
    """
    settings = settings or Settings()
    candidates = find_candidates(
        store,
        txn,
        window_days=settings.match_window_days,
        tolerance=settings.match_amount_tolerance,
    )
    if not candidates:
        return None

    best = candidates[0]
    match = Match(
        tenant_id=txn.tenant_id,
        transaction_id=txn.id,
        receipt_id=best.id,
        method=f"{source}_auto",
        confidence=settings.auto_match_confidence,
        matched_amount=txn.amount,
    )
    stored = store.insert_match(match)
    if stored is None:
        logger.info(
            "auto_match_conflict | transaction_id=%s | receipt_id=%s | reason='already matched'",
            txn.id,
            best.id,
        )
        return None

    logger.info(
        "auto_match | transaction_id=%s | receipt_id=%s | method=%s | confidence=%.2f | candidates=%s",
        txn.id,
        best.id,
        stored.method,
        stored.confidence,
        len(candidates),
    )
    return stored


def manual_match(store: LedgerStore, tenant_id: str, transaction_id: str, receipt_id: str) -> Match:
    """Operator link between a transaction and a receipt, outside any window."""
    txn = store.get_transaction(tenant_id, transaction_id)
    if txn is None:
        raise NotFound(f"transaction {transaction_id} not found")
    receipt = store.get_receipt(tenant_id, receipt_id)
    if receipt is None:
        raise NotFound(f"receipt {receipt_id} not found")

    match = Match(
        tenant_id=tenant_id,
        transaction_id=txn.id,
        receipt_id=receipt.id,
        method=MANUAL_METHOD,
        confidence=MANUAL_CONFIDENCE,
        matched_amount=txn.amount,
    )
    stored = store.insert_match(match)
    if stored is None:
        existing = store.get_match(tenant_id, transaction_id)
        raise MatchConflict(
            f"transaction {transaction_id} is already matched to receipt "
            f"{existing.receipt_id if existing else 'unknown'}"
        )

    logger.info(
        "manual_match | tenant=%s | transaction_id=%s | receipt_id=%s",
        tenant_id,
        transaction_id,
        receipt_id,
    )
    return stored


def unmatch(store: LedgerStore, tenant_id: str, transaction_id: str) -> None:
    """Remove the match of a transaction."""
    if not store.delete_match(tenant_id, transaction_id):
        raise NotFound(f"transaction {transaction_id} has no match")
    logger.info("unmatch | tenant=%s | transaction_id=%s", tenant_id, transaction_id)


def delete_receipt(store: LedgerStore, tenant_id: str, receipt_id: str) -> int:
    """Delete a receipt after removing the matches that reference it.

    Returns the number of matches removed.
    """
    if store.get_receipt(tenant_id, receipt_id) is None:
        raise NotFound(f"receipt {receipt_id} not found")
    removed = store.delete_matches_for_receipt(tenant_id, receipt_id)
    store.delete_receipt(tenant_id, receipt_id)
    logger.info(
        "receipt_deleted | tenant=%s | receipt_id=%s | matches_removed=%s",
        tenant_id,
        receipt_id,
        removed,
    )
    return removed


def edit_receipt(store: LedgerStore, tenant_id: str, receipt_id: str, changes: dict) -> Receipt:
    """Apply an operator edit to a receipt. Existing matches are kept."""
    current = store.get_receipt(tenant_id, receipt_id)
    if current is None:
        raise NotFound(f"receipt {receipt_id} not found")
    edited = Receipt.model_validate({**current.model_dump(), **changes, "id": current.id, "tenant_id": tenant_id})
    stored = store.update_receipt(edited)
    if stored is None:
        raise NotFound(f"receipt {receipt_id} not found")
    logger.info(
        "receipt_edited | tenant=%s | receipt_id=%s | fields=%s",
        tenant_id,
        receipt_id,
        sorted(changes),
    )
    return stored
