"""
ledger.py - Unified signed-amount ledger for downstream accounting.

Rows:
    matched  - transaction with a linked receipt (receipt columns filled)
    bank_cc  - transaction without a receipt
    cash     - cash receipt with no matching transaction, counted as money in

Credits are positive and debits negative in `amount_signed`.
"""

from __future__ import annotations

from datetime import date
from typing import Optional

import pandas as pd

from logging_config import get_logger
from models import Direction, EntryType, LedgerEntry, Receipt
from normalize import sanitize_cell
from store import LedgerStore

logger = get_logger(__name__)

CASH_DEFAULT_CATEGORY = "Sales Income"

LEDGER_COLUMNS = list(LedgerEntry.model_fields.keys())
_TEXT_COLUMNS = [
    "description",
    "vendor",
    "category",
    "source",
    "receipt_vendor",
    "receipt_category",
    "receipt_source",
    "receipt_image_ref",
]


def _receipt_columns(receipt: Optional[Receipt]) -> dict:
    if receipt is None:
        return {}
    return {
        "receipt_id": receipt.id,
        "receipt_date": receipt.receipt_date,
        "receipt_vendor": receipt.vendor,
        "receipt_total": receipt.total,
        "receipt_tax": receipt.tax,
        "receipt_subtotal": receipt.subtotal,
        "receipt_category": receipt.category,
        "receipt_source": receipt.source,
        "receipt_image_ref": receipt.image_ref,
    }


def build_ledger(
    store: LedgerStore,
    tenant_id: str,
    start: Optional[date] = None,
    end: Optional[date] = None,
) -> list[LedgerEntry]:
    """Collect ledger rows for a tenant inside an optional date window."""
    transactions = store.list_transactions(tenant_id, start=start, end=end)
    receipts = {receipt.id: receipt for receipt in store.list_receipts(tenant_id)}
    matches = {match.transaction_id: match for match in store.list_matches(tenant_id)}
    matched_receipt_ids = {match.receipt_id for match in matches.values()}

    entries: list[LedgerEntry] = []
    for txn in transactions:
        match = matches.get(txn.id)
        receipt = receipts.get(match.receipt_id) if match else None
        entries.append(
            LedgerEntry(
                entry_type=EntryType.MATCHED if receipt is not None else EntryType.BANK_CC,
                entry_date=txn.txn_date,
                description=txn.description,
                vendor=txn.vendor_clean or "",
                amount_signed=txn.signed_amount,
                direction=txn.direction,
                category=txn.category or "Uncategorized",
                source=txn.source_account_name or txn.institution or "",
                transaction_id=txn.id,
                **_receipt_columns(receipt),
            )
        )

    cash_count = 0
    for receipt in store.list_receipts(tenant_id, start=start, end=end):
        if not receipt.is_cash or receipt.id in matched_receipt_ids:
            continue
        cash_count += 1
        entries.append(
            LedgerEntry(
                entry_type=EntryType.CASH,
                entry_date=receipt.receipt_date,
                description=receipt.vendor or "Cash Receipt",
                vendor=receipt.vendor,
                amount_signed=receipt.total,
                direction=Direction.CREDIT,
                category=receipt.category or CASH_DEFAULT_CATEGORY,
                source=receipt.source or "Cash",
                **_receipt_columns(receipt),
            )
        )

    entries.sort(key=lambda entry: entry.entry_date)
    logger.info(
        "ledger_built | tenant=%s | transactions=%s | cash_receipts=%s",
        tenant_id,
        len(transactions),
        cash_count,
    )
    return entries


def ledger_frame(entries: list[LedgerEntry]) -> pd.DataFrame:
    """Ledger rows as a DataFrame with spreadsheet-safe text columns."""
    if not entries:
        return pd.DataFrame(columns=LEDGER_COLUMNS)

    df = pd.DataFrame([entry.model_dump(mode="json") for entry in entries], columns=LEDGER_COLUMNS)
    for column in _TEXT_COLUMNS:
        df[column] = df[column].fillna("").astype(str).map(sanitize_cell)
    df["amount_signed"] = pd.to_numeric(df["amount_signed"], errors="coerce")
    return df
