"""
dedup.py - Dedup gate.

A candidate is admitted when the store accepts it under its dedup key
(provider id, else derived hash). The check and the insert are one atomic
store operation: two concurrent imports of the same row cannot both admit it.
"""

from __future__ import annotations

import hashlib
from typing import Iterable, Optional

from errors import AdapterError
from logging_config import get_logger
from models import Transaction, TransactionCandidate
from store import LedgerStore

logger = get_logger(__name__)


def derive_txn_hash(parts: Iterable[str], occurrence: int = 0) -> str:
    """Stable sha256 over the identifying fields of a row without a provider id.

    `occurrence` distinguishes identical rows inside one file, so they are
    stored separately on first import and all collapse on re-import.
    """
    base = "|".join(str(part) for part in parts)
    return hashlib.sha256(f"{base}|{occurrence}".encode("utf-8")).hexdigest()


def admit(store: LedgerStore, candidate: TransactionCandidate) -> Optional[Transaction]:
    """Persist the candidate unless its dedup key already exists for the tenant.

    Returns the stored Transaction, or None for a duplicate.
    """
    key = candidate.dedup_key
    if key is None:
        raise AdapterError("transaction candidate has neither external_id nor txn_hash")

    stored = store.insert_transaction(candidate)
    if stored is None:
        logger.debug("dedup_duplicate | tenant=%s | key=%s", candidate.tenant_id, key)
        return None

    logger.debug(
        "dedup_admitted | tenant=%s | key=%s | transaction_id=%s",
        candidate.tenant_id,
        key,
        stored.id,
    )
    return stored
