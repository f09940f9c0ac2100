"""
store.py - Tenant-scoped durable storage for transactions, receipts, matches,
rules, categories and loan ledgers.

Three implementations share one interface:

    MemoryStore    - process-local, guarded by a lock (tests, API default)
    FileStore      - MemoryStore persisted to one JSON snapshot with atomic
                     temp-file + replace writes (CLI use)
    PostgresStore  - psycopg; uniqueness enforced by the database

Uniqueness guarantees every implementation enforces atomically:
    (tenant_id, dedup_key) on transactions  -> insert_transaction() returns None
    transaction_id on matches               -> insert_match() returns None

Loan ledgers are folded in one atomic step (apply_loan_delta), and bulk
category writes can be made conditional on the row still being uncategorized.
"""

from __future__ import annotations

import json
import os
import tempfile
import threading
from datetime import date, datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Iterable, Optional

from pydantic import BaseModel, Field

from config import Settings
from errors import PersistenceError
from logging_config import get_logger
from models import (
    UNCATEGORIZED,
    FallbackRule,
    LoanLedger,
    LoanLedgerDelta,
    LoanStatus,
    Match,
    OrgCategory,
    Receipt,
    Transaction,
    TransactionCandidate,
    VendorRule,
)

logger = get_logger(__name__)


class LedgerStore:
    """Interface of every store. All reads and writes are scoped by tenant."""

    # transactions
    def insert_transaction(self, candidate: TransactionCandidate) -> Optional[Transaction]:
        raise NotImplementedError

    def get_transaction(self, tenant_id: str, transaction_id: str) -> Optional[Transaction]:
        raise NotImplementedError

    def list_transactions(
        self,
        tenant_id: str,
        start: Optional[date] = None,
        end: Optional[date] = None,
        uncategorized_only: bool = False,
    ) -> list[Transaction]:
        raise NotImplementedError

    def update_transaction_category(
        self,
        tenant_id: str,
        transaction_id: str,
        category: str,
        only_if_uncategorized: bool = False,
    ) -> bool:
        """Set a category. With `only_if_uncategorized` the write is skipped when
        the row already holds a real category at write time."""
        raise NotImplementedError

    # receipts
    def add_receipt(self, receipt: Receipt) -> Receipt:
        raise NotImplementedError

    def get_receipt(self, tenant_id: str, receipt_id: str) -> Optional[Receipt]:
        raise NotImplementedError

    def update_receipt(self, receipt: Receipt) -> Optional[Receipt]:
        """Replace the editable fields of an existing receipt; None when absent."""
        raise NotImplementedError

    def list_receipts(
        self,
        tenant_id: str,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> list[Receipt]:
        raise NotImplementedError

    def find_receipts(
        self,
        tenant_id: str,
        start: date,
        end: date,
        min_total: Decimal,
        max_total: Decimal,
    ) -> list[Receipt]:
        raise NotImplementedError

    def delete_receipt(self, tenant_id: str, receipt_id: str) -> bool:
        raise NotImplementedError

    # matches
    def insert_match(self, match: Match) -> Optional[Match]:
        raise NotImplementedError

    def get_match(self, tenant_id: str, transaction_id: str) -> Optional[Match]:
        raise NotImplementedError

    def list_matches(self, tenant_id: str) -> list[Match]:
        raise NotImplementedError

    def delete_match(self, tenant_id: str, transaction_id: str) -> bool:
        raise NotImplementedError

    def delete_matches_for_receipt(self, tenant_id: str, receipt_id: str) -> int:
        raise NotImplementedError

    # rules and categories
    def add_vendor_rule(self, rule: VendorRule) -> VendorRule:
        raise NotImplementedError

    def list_vendor_rules(self, tenant_id: str) -> list[VendorRule]:
        raise NotImplementedError

    def add_fallback_rule(self, rule: FallbackRule) -> FallbackRule:
        raise NotImplementedError

    def list_fallback_rules(self, tenant_id: str, enabled_only: bool = True) -> list[FallbackRule]:
        raise NotImplementedError

    def upsert_category(self, category: OrgCategory) -> OrgCategory:
        raise NotImplementedError

    def list_categories(self, tenant_id: str, active_only: bool = True) -> list[OrgCategory]:
        raise NotImplementedError

    # loans
    def get_loan(self, tenant_id: str, loan_id: str) -> Optional[LoanLedger]:
        raise NotImplementedError

    def apply_loan_delta(self, tenant_id: str, delta: LoanLedgerDelta) -> LoanLedger:
        """Fold one repayment into the loan ledger in a single atomic step."""
        raise NotImplementedError


def _in_window(value: date, start: Optional[date], end: Optional[date]) -> bool:
    if start is not None and value < start:
        return False
    if end is not None and value > end:
        return False
    return True


def _is_uncategorized(category: Optional[str]) -> bool:
    return category is None or not category.strip() or category == UNCATEGORIZED


def loan_status_for(balance: Decimal) -> LoanStatus:
    return LoanStatus.ACTIVE if balance > 0 else LoanStatus.PAID


def fold_loan_delta(ledger: Optional[LoanLedger], tenant_id: str, delta: LoanLedgerDelta) -> LoanLedger:
    """Balance is overwritten; interest and repayments accumulate."""
    if ledger is None:
        return LoanLedger(
            tenant_id=tenant_id,
            loan_id=delta.loan_id,
            principal=delta.principal,
            outstanding_balance=delta.balance,
            interest_paid=delta.interest,
            total_repayments=delta.repayment,
            start_date=delta.payment_date,
            status=loan_status_for(delta.balance),
        )
    ledger.outstanding_balance = delta.balance
    ledger.interest_paid += delta.interest
    ledger.total_repayments += delta.repayment
    if ledger.start_date is None or delta.payment_date < ledger.start_date:
        ledger.start_date = delta.payment_date
    ledger.status = loan_status_for(delta.balance)
    ledger.updated_at = datetime.now(timezone.utc)
    return ledger


class MemoryStore(LedgerStore):
    """In-process store. One lock serializes every mutation."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._transactions: dict[str, Transaction] = {}
        self._dedup_index: dict[tuple[str, str], str] = {}
        self._receipts: dict[str, Receipt] = {}
        self._matches: dict[tuple[str, str], Match] = {}
        self._vendor_rules: list[VendorRule] = []
        self._fallback_rules: list[FallbackRule] = []
        self._categories: dict[tuple[str, str], OrgCategory] = {}
        self._loans: dict[tuple[str, str], LoanLedger] = {}

    def _after_write(self) -> None:
        """Hook for subclasses that persist state; called with the lock held."""

    # transactions

    def insert_transaction(self, candidate: TransactionCandidate) -> Optional[Transaction]:
        key = candidate.dedup_key
        if key is None:
            raise PersistenceError("transaction has neither external_id nor txn_hash")
        with self._lock:
            index_key = (candidate.tenant_id, key)
            if index_key in self._dedup_index:
                return None
            stored = Transaction.from_candidate(candidate)
            self._transactions[stored.id] = stored
            self._dedup_index[index_key] = stored.id
            self._after_write()
            return stored.model_copy(deep=True)

    def get_transaction(self, tenant_id: str, transaction_id: str) -> Optional[Transaction]:
        with self._lock:
            txn = self._transactions.get(transaction_id)
            if txn is None or txn.tenant_id != tenant_id:
                return None
            return txn.model_copy(deep=True)

    def list_transactions(
        self,
        tenant_id: str,
        start: Optional[date] = None,
        end: Optional[date] = None,
        uncategorized_only: bool = False,
    ) -> list[Transaction]:
        with self._lock:
            rows = [
                txn.model_copy(deep=True)
                for txn in self._transactions.values()
                if txn.tenant_id == tenant_id
                and _in_window(txn.txn_date, start, end)
                and (not uncategorized_only or _is_uncategorized(txn.category))
            ]
        rows.sort(key=lambda txn: (txn.txn_date, txn.created_at))
        return rows

    def update_transaction_category(
        self,
        tenant_id: str,
        transaction_id: str,
        category: str,
        only_if_uncategorized: bool = False,
    ) -> bool:
        with self._lock:
            txn = self._transactions.get(transaction_id)
            if txn is None or txn.tenant_id != tenant_id:
                return False
            if only_if_uncategorized and not _is_uncategorized(txn.category):
                return False
            txn.category = category
            self._after_write()
            return True

    # receipts

    def add_receipt(self, receipt: Receipt) -> Receipt:
        with self._lock:
            self._receipts[receipt.id] = receipt.model_copy(deep=True)
            self._after_write()
        return receipt

    def get_receipt(self, tenant_id: str, receipt_id: str) -> Optional[Receipt]:
        with self._lock:
            receipt = self._receipts.get(receipt_id)
            if receipt is None or receipt.tenant_id != tenant_id:
                return None
            return receipt.model_copy(deep=True)

    def update_receipt(self, receipt: Receipt) -> Optional[Receipt]:
        with self._lock:
            current = self._receipts.get(receipt.id)
            if current is None or current.tenant_id != receipt.tenant_id:
                return None
            updated = receipt.model_copy(update={"created_at": current.created_at}, deep=True)
            self._receipts[receipt.id] = updated
            self._after_write()
            return updated.model_copy(deep=True)

    def list_receipts(
        self,
        tenant_id: str,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> list[Receipt]:
        with self._lock:
            rows = [
                receipt.model_copy(deep=True)
                for receipt in self._receipts.values()
                if receipt.tenant_id == tenant_id and _in_window(receipt.receipt_date, start, end)
            ]
        rows.sort(key=lambda receipt: (receipt.receipt_date, receipt.created_at))
        return rows

    def find_receipts(
        self,
        tenant_id: str,
        start: date,
        end: date,
        min_total: Decimal,
        max_total: Decimal,
    ) -> list[Receipt]:
        with self._lock:
            return [
                receipt.model_copy(deep=True)
                for receipt in self._receipts.values()
                if receipt.tenant_id == tenant_id
                and start <= receipt.receipt_date <= end
                and min_total <= receipt.total <= max_total
            ]

    def delete_receipt(self, tenant_id: str, receipt_id: str) -> bool:
        with self._lock:
            receipt = self._receipts.get(receipt_id)
            if receipt is None or receipt.tenant_id != tenant_id:
                return False
            if any(m.receipt_id == receipt_id for m in self._matches.values()):
                raise PersistenceError(f"receipt {receipt_id} still has matches")
            del self._receipts[receipt_id]
            self._after_write()
            return True

    # matches

    def insert_match(self, match: Match) -> Optional[Match]:
        with self._lock:
            key = (match.tenant_id, match.transaction_id)
            if key in self._matches:
                return None
            self._matches[key] = match.model_copy(deep=True)
            self._after_write()
            return match

    def get_match(self, tenant_id: str, transaction_id: str) -> Optional[Match]:
        with self._lock:
            match = self._matches.get((tenant_id, transaction_id))
            return match.model_copy(deep=True) if match else None

    def list_matches(self, tenant_id: str) -> list[Match]:
        with self._lock:
            return [m.model_copy(deep=True) for (tenant, _), m in self._matches.items() if tenant == tenant_id]

    def delete_match(self, tenant_id: str, transaction_id: str) -> bool:
        with self._lock:
            removed = self._matches.pop((tenant_id, transaction_id), None)
            if removed is not None:
                self._after_write()
            return removed is not None

    def delete_matches_for_receipt(self, tenant_id: str, receipt_id: str) -> int:
        with self._lock:
            keys = [
                key
                for key, match in self._matches.items()
                if key[0] == tenant_id and match.receipt_id == receipt_id
            ]
            for key in keys:
                del self._matches[key]
            if keys:
                self._after_write()
            return len(keys)

    # rules and categories

    def add_vendor_rule(self, rule: VendorRule) -> VendorRule:
        with self._lock:
            self._vendor_rules.append(rule.model_copy(deep=True))
            self._after_write()
        return rule

    def list_vendor_rules(self, tenant_id: str) -> list[VendorRule]:
        with self._lock:
            return [r.model_copy(deep=True) for r in self._vendor_rules if r.tenant_id == tenant_id]

    def add_fallback_rule(self, rule: FallbackRule) -> FallbackRule:
        with self._lock:
            self._fallback_rules.append(rule.model_copy(deep=True))
            self._after_write()
        return rule

    def list_fallback_rules(self, tenant_id: str, enabled_only: bool = True) -> list[FallbackRule]:
        with self._lock:
            return [
                r.model_copy(deep=True)
                for r in self._fallback_rules
                if r.tenant_id == tenant_id and (r.enabled or not enabled_only)
            ]

    def upsert_category(self, category: OrgCategory) -> OrgCategory:
        with self._lock:
            self._categories[(category.tenant_id, category.name)] = category.model_copy(deep=True)
            self._after_write()
        return category

    def list_categories(self, tenant_id: str, active_only: bool = True) -> list[OrgCategory]:
        with self._lock:
            rows = [
                c.model_copy(deep=True)
                for (tenant, _), c in self._categories.items()
                if tenant == tenant_id and (c.is_active or not active_only)
            ]
        rows.sort(key=lambda c: (c.sort, c.name))
        return rows

    # loans

    def get_loan(self, tenant_id: str, loan_id: str) -> Optional[LoanLedger]:
        with self._lock:
            ledger = self._loans.get((tenant_id, loan_id))
            return ledger.model_copy(deep=True) if ledger else None

    def apply_loan_delta(self, tenant_id: str, delta: LoanLedgerDelta) -> LoanLedger:
        with self._lock:
            key = (tenant_id, delta.loan_id)
            ledger = fold_loan_delta(self._loans.get(key), tenant_id, delta)
            self._loans[key] = ledger
            self._after_write()
            return ledger.model_copy(deep=True)


class StoreSnapshot(BaseModel):
    """Serialized form of a MemoryStore."""

    transactions: list[Transaction] = Field(default_factory=list)
    receipts: list[Receipt] = Field(default_factory=list)
    matches: list[Match] = Field(default_factory=list)
    vendor_rules: list[VendorRule] = Field(default_factory=list)
    fallback_rules: list[FallbackRule] = Field(default_factory=list)
    categories: list[OrgCategory] = Field(default_factory=list)
    loans: list[LoanLedger] = Field(default_factory=list)
    updated_at: Optional[str] = None


class FileStore(MemoryStore):
    """MemoryStore persisted to a JSON file after every write."""

    def __init__(self, path: Optional[str] = None) -> None:
        super().__init__()
        target = path or os.getenv("RECON_STORE_FILE", "data/recon_store.json")
        self.path = Path(target).resolve()
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            return
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            snapshot = StoreSnapshot.model_validate(raw)
        except (OSError, ValueError) as exc:
            # An unreadable store file is never overwritten.
            logger.error(
                "store_load_failed | path=%s | error_type=%s | error=%s",
                self.path,
                type(exc).__name__,
                exc,
            )
            raise PersistenceError(
                f"store file {self.path} could not be read ({type(exc).__name__}); "
                "fix or move it before starting"
            ) from exc

        for txn in snapshot.transactions:
            self._transactions[txn.id] = txn
            if txn.dedup_key:
                self._dedup_index[(txn.tenant_id, txn.dedup_key)] = txn.id
        self._receipts = {receipt.id: receipt for receipt in snapshot.receipts}
        self._matches = {(m.tenant_id, m.transaction_id): m for m in snapshot.matches}
        self._vendor_rules = list(snapshot.vendor_rules)
        self._fallback_rules = list(snapshot.fallback_rules)
        self._categories = {(c.tenant_id, c.name): c for c in snapshot.categories}
        self._loans = {(loan.tenant_id, loan.loan_id): loan for loan in snapshot.loans}
        logger.info(
            "store_loaded | path=%s | transactions=%s | receipts=%s | matches=%s",
            self.path,
            len(self._transactions),
            len(self._receipts),
            len(self._matches),
        )

    def _after_write(self) -> None:
        snapshot = StoreSnapshot(
            transactions=list(self._transactions.values()),
            receipts=list(self._receipts.values()),
            matches=list(self._matches.values()),
            vendor_rules=self._vendor_rules,
            fallback_rules=self._fallback_rules,
            categories=list(self._categories.values()),
            loans=list(self._loans.values()),
            updated_at=datetime.now(timezone.utc).isoformat(),
        )
        payload = snapshot.model_dump(mode="json")

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                mode="w",
                encoding="utf-8",
                dir=str(self.path.parent),
                delete=False,
                suffix=".tmp",
                prefix="recon-store-",
            ) as tmp_file:
                json.dump(payload, tmp_file, ensure_ascii=False, indent=2)
                tmp_file.flush()
                os.fsync(tmp_file.fileno())
                tmp_path = Path(tmp_file.name)
            os.replace(tmp_path, self.path)
        except OSError as exc:
            raise PersistenceError(f"failed to write store file {self.path}: {exc}") from exc


_POSTGRES_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS transactions (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        account_id TEXT,
        txn_date DATE NOT NULL,
        description TEXT NOT NULL,
        vendor_clean TEXT,
        amount NUMERIC NOT NULL CHECK (amount >= 0),
        direction TEXT NOT NULL CHECK (direction IN ('debit', 'credit')),
        category TEXT,
        institution TEXT,
        source_account_name TEXT,
        imported_via TEXT NOT NULL,
        external_id TEXT,
        txn_hash TEXT,
        dedup_key TEXT NOT NULL,
        raw JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        UNIQUE (tenant_id, dedup_key)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS receipts (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        vendor TEXT NOT NULL DEFAULT '',
        receipt_date DATE NOT NULL,
        total NUMERIC NOT NULL,
        tax NUMERIC NOT NULL DEFAULT 0,
        category TEXT,
        source TEXT,
        notes TEXT,
        image_ref TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS matches (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        transaction_id TEXT NOT NULL UNIQUE REFERENCES transactions(id) ON DELETE CASCADE,
        receipt_id TEXT NOT NULL REFERENCES receipts(id) ON DELETE RESTRICT,
        method TEXT NOT NULL,
        confidence NUMERIC NOT NULL,
        matched_amount NUMERIC NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS vendor_rules (
        seq BIGSERIAL,
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        vendor_pattern TEXT NOT NULL,
        category TEXT,
        direction_filter TEXT CHECK (direction_filter IN ('debit', 'credit')),
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS fallback_rules (
        seq BIGSERIAL,
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        match_pattern TEXT NOT NULL,
        default_category TEXT,
        enabled BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS org_categories (
        tenant_id TEXT NOT NULL,
        name TEXT NOT NULL,
        sort INTEGER NOT NULL DEFAULT 0,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        PRIMARY KEY (tenant_id, name)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS loan_ledgers (
        tenant_id TEXT NOT NULL,
        loan_id TEXT NOT NULL,
        principal NUMERIC NOT NULL DEFAULT 0,
        outstanding_balance NUMERIC NOT NULL DEFAULT 0,
        interest_paid NUMERIC NOT NULL DEFAULT 0,
        total_repayments NUMERIC NOT NULL DEFAULT 0,
        start_date DATE,
        status TEXT NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        PRIMARY KEY (tenant_id, loan_id)
    )
    """,
]

_TXN_COLUMNS = (
    "id, tenant_id, account_id, txn_date, description, vendor_clean, amount, direction, "
    "category, institution, source_account_name, imported_via, external_id, txn_hash, raw, created_at"
)
_RECEIPT_COLUMNS = (
    "id, tenant_id, vendor, receipt_date, total, tax, category, source, notes, image_ref, created_at"
)
_MATCH_COLUMNS = "id, tenant_id, transaction_id, receipt_id, method, confidence, matched_amount, created_at"


class PostgresStore(LedgerStore):
    """PostgreSQL-backed store. Uniqueness is enforced by table constraints."""

    def __init__(self, database_url: str) -> None:
        self.database_url = str(database_url or "").strip()
        if not self.database_url:
            raise ValueError("database_url is required for PostgresStore.")
        self._psycopg, self._dict_row, self._json = self._import_psycopg()
        self._schema_ready = False
        self._schema_lock = threading.Lock()

    @staticmethod
    def _import_psycopg():
        try:
            import psycopg  # type: ignore
            from psycopg.rows import dict_row  # type: ignore
            from psycopg.types.json import Json  # type: ignore

            return psycopg, dict_row, Json
        except Exception as exc:
            raise RuntimeError(
                "PostgreSQL store requires psycopg. Install with: pip install 'psycopg[binary]'"
            ) from exc

    def _connect(self):
        return self._psycopg.connect(self.database_url, autocommit=True, row_factory=self._dict_row)

    def _ensure_schema(self, conn) -> None:
        if self._schema_ready:
            return
        with self._schema_lock:
            if self._schema_ready:
                return
            with conn.cursor() as cur:
                for statement in _POSTGRES_SCHEMA:
                    cur.execute(statement)
            self._schema_ready = True

    def _execute(self, query: str, params: Iterable[Any] = ()) -> list[dict[str, Any]]:
        try:
            with self._connect() as conn:
                self._ensure_schema(conn)
                with conn.cursor() as cur:
                    cur.execute(query, tuple(params))
                    if cur.description is None:
                        return [{"rowcount": cur.rowcount}]
                    return list(cur.fetchall())
        except self._psycopg.Error as exc:
            logger.error(
                "store_pg_error | error_type=%s | error=%s",
                type(exc).__name__,
                exc,
            )
            raise PersistenceError(str(exc)) from exc

    @staticmethod
    def _window_clause(column: str, start: Optional[date], end: Optional[date]) -> tuple[str, list[Any]]:
        clause = ""
        params: list[Any] = []
        if start is not None:
            clause += f" AND {column} >= %s"
            params.append(start)
        if end is not None:
            clause += f" AND {column} <= %s"
            params.append(end)
        return clause, params

    # transactions

    def insert_transaction(self, candidate: TransactionCandidate) -> Optional[Transaction]:
        key = candidate.dedup_key
        if key is None:
            raise PersistenceError("transaction has neither external_id nor txn_hash")
        txn = Transaction.from_candidate(candidate)
        rows = self._execute(
            f"INSERT INTO transactions ({_TXN_COLUMNS}, dedup_key) "
            "VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s) "
            "ON CONFLICT (tenant_id, dedup_key) DO NOTHING RETURNING id",
            (
                txn.id,
                txn.tenant_id,
                txn.account_id,
                txn.txn_date,
                txn.description,
                txn.vendor_clean,
                txn.amount,
                txn.direction.value,
                txn.category,
                txn.institution,
                txn.source_account_name,
                txn.imported_via,
                txn.external_id,
                txn.txn_hash,
                self._json(txn.model_dump(mode="json")["raw"]),
                txn.created_at,
                key,
            ),
        )
        return txn if rows else None

    def get_transaction(self, tenant_id: str, transaction_id: str) -> Optional[Transaction]:
        rows = self._execute(
            f"SELECT {_TXN_COLUMNS} FROM transactions WHERE tenant_id = %s AND id = %s",
            (tenant_id, transaction_id),
        )
        return Transaction.model_validate(rows[0]) if rows else None

    def list_transactions(
        self,
        tenant_id: str,
        start: Optional[date] = None,
        end: Optional[date] = None,
        uncategorized_only: bool = False,
    ) -> list[Transaction]:
        clause, params = self._window_clause("txn_date", start, end)
        if uncategorized_only:
            clause += " AND (category IS NULL OR btrim(category) = '' OR category = %s)"
            params.append(UNCATEGORIZED)
        rows = self._execute(
            f"SELECT {_TXN_COLUMNS} FROM transactions WHERE tenant_id = %s{clause} "
            "ORDER BY txn_date, created_at",
            [tenant_id, *params],
        )
        return [Transaction.model_validate(row) for row in rows]

    def update_transaction_category(
        self,
        tenant_id: str,
        transaction_id: str,
        category: str,
        only_if_uncategorized: bool = False,
    ) -> bool:
        query = "UPDATE transactions SET category = %s WHERE tenant_id = %s AND id = %s"
        params: list[Any] = [category, tenant_id, transaction_id]
        if only_if_uncategorized:
            query += " AND (category IS NULL OR btrim(category) = '' OR category = %s)"
            params.append(UNCATEGORIZED)
        rows = self._execute(query, params)
        return bool(rows and rows[0].get("rowcount"))

    # receipts

    def add_receipt(self, receipt: Receipt) -> Receipt:
        self._execute(
            f"INSERT INTO receipts ({_RECEIPT_COLUMNS}) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)",
            (
                receipt.id,
                receipt.tenant_id,
                receipt.vendor,
                receipt.receipt_date,
                receipt.total,
                receipt.tax,
                receipt.category,
                receipt.source,
                receipt.notes,
                receipt.image_ref,
                receipt.created_at,
            ),
        )
        return receipt

    def get_receipt(self, tenant_id: str, receipt_id: str) -> Optional[Receipt]:
        rows = self._execute(
            f"SELECT {_RECEIPT_COLUMNS} FROM receipts WHERE tenant_id = %s AND id = %s",
            (tenant_id, receipt_id),
        )
        return Receipt.model_validate(rows[0]) if rows else None

    def update_receipt(self, receipt: Receipt) -> Optional[Receipt]:
        rows = self._execute(
            "UPDATE receipts SET vendor = %s, receipt_date = %s, total = %s, tax = %s, category = %s, "
            "source = %s, notes = %s, image_ref = %s WHERE tenant_id = %s AND id = %s "
            f"RETURNING {_RECEIPT_COLUMNS}",
            (
                receipt.vendor,
                receipt.receipt_date,
                receipt.total,
                receipt.tax,
                receipt.category,
                receipt.source,
                receipt.notes,
                receipt.image_ref,
                receipt.tenant_id,
                receipt.id,
            ),
        )
        return Receipt.model_validate(rows[0]) if rows else None

    def list_receipts(
        self,
        tenant_id: str,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> list[Receipt]:
        clause, params = self._window_clause("receipt_date", start, end)
        rows = self._execute(
            f"SELECT {_RECEIPT_COLUMNS} FROM receipts WHERE tenant_id = %s{clause} "
            "ORDER BY receipt_date, created_at",
            [tenant_id, *params],
        )
        return [Receipt.model_validate(row) for row in rows]

    def find_receipts(
        self,
        tenant_id: str,
        start: date,
        end: date,
        min_total: Decimal,
        max_total: Decimal,
    ) -> list[Receipt]:
        rows = self._execute(
            f"SELECT {_RECEIPT_COLUMNS} FROM receipts WHERE tenant_id = %s "
            "AND receipt_date BETWEEN %s AND %s AND total BETWEEN %s AND %s",
            (tenant_id, start, end, min_total, max_total),
        )
        return [Receipt.model_validate(row) for row in rows]

    def delete_receipt(self, tenant_id: str, receipt_id: str) -> bool:
        rows = self._execute(
            "DELETE FROM receipts WHERE tenant_id = %s AND id = %s",
            (tenant_id, receipt_id),
        )
        return bool(rows and rows[0].get("rowcount"))

    # matches

    def insert_match(self, match: Match) -> Optional[Match]:
        rows = self._execute(
            f"INSERT INTO matches ({_MATCH_COLUMNS}) VALUES (%s, %s, %s, %s, %s, %s, %s, %s) "
            "ON CONFLICT (transaction_id) DO NOTHING RETURNING id",
            (
                match.id,
                match.tenant_id,
                match.transaction_id,
                match.receipt_id,
                match.method,
                match.confidence,
                match.matched_amount,
                match.created_at,
            ),
        )
        return match if rows else None

    def get_match(self, tenant_id: str, transaction_id: str) -> Optional[Match]:
        rows = self._execute(
            f"SELECT {_MATCH_COLUMNS} FROM matches WHERE tenant_id = %s AND transaction_id = %s",
            (tenant_id, transaction_id),
        )
        return Match.model_validate(rows[0]) if rows else None

    def list_matches(self, tenant_id: str) -> list[Match]:
        rows = self._execute(
            f"SELECT {_MATCH_COLUMNS} FROM matches WHERE tenant_id = %s ORDER BY created_at",
            (tenant_id,),
        )
        return [Match.model_validate(row) for row in rows]

    def delete_match(self, tenant_id: str, transaction_id: str) -> bool:
        rows = self._execute(
            "DELETE FROM matches WHERE tenant_id = %s AND transaction_id = %s",
            (tenant_id, transaction_id),
        )
        return bool(rows and rows[0].get("rowcount"))

    def delete_matches_for_receipt(self, tenant_id: str, receipt_id: str) -> int:
        rows = self._execute(
            "DELETE FROM matches WHERE tenant_id = %s AND receipt_id = %s",
            (tenant_id, receipt_id),
        )
        return int(rows[0].get("rowcount") or 0) if rows else 0

    # rules and categories

    def add_vendor_rule(self, rule: VendorRule) -> VendorRule:
        self._execute(
            "INSERT INTO vendor_rules (id, tenant_id, vendor_pattern, category, direction_filter, created_at) "
            "VALUES (%s, %s, %s, %s, %s, %s)",
            (
                rule.id,
                rule.tenant_id,
                rule.vendor_pattern,
                rule.category,
                rule.direction_filter.value if rule.direction_filter else None,
                rule.created_at,
            ),
        )
        return rule

    def list_vendor_rules(self, tenant_id: str) -> list[VendorRule]:
        rows = self._execute(
            "SELECT id, tenant_id, vendor_pattern, category, direction_filter, created_at "
            "FROM vendor_rules WHERE tenant_id = %s ORDER BY seq",
            (tenant_id,),
        )
        return [VendorRule.model_validate(row) for row in rows]

    def add_fallback_rule(self, rule: FallbackRule) -> FallbackRule:
        self._execute(
            "INSERT INTO fallback_rules (id, tenant_id, match_pattern, default_category, enabled, created_at) "
            "VALUES (%s, %s, %s, %s, %s, %s)",
            (rule.id, rule.tenant_id, rule.match_pattern, rule.default_category, rule.enabled, rule.created_at),
        )
        return rule

    def list_fallback_rules(self, tenant_id: str, enabled_only: bool = True) -> list[FallbackRule]:
        clause = " AND enabled" if enabled_only else ""
        rows = self._execute(
            "SELECT id, tenant_id, match_pattern, default_category, enabled, created_at "
            f"FROM fallback_rules WHERE tenant_id = %s{clause} ORDER BY seq",
            (tenant_id,),
        )
        return [FallbackRule.model_validate(row) for row in rows]

    def upsert_category(self, category: OrgCategory) -> OrgCategory:
        self._execute(
            "INSERT INTO org_categories (tenant_id, name, sort, is_active) VALUES (%s, %s, %s, %s) "
            "ON CONFLICT (tenant_id, name) DO UPDATE SET sort = EXCLUDED.sort, is_active = EXCLUDED.is_active",
            (category.tenant_id, category.name, category.sort, category.is_active),
        )
        return category

    def list_categories(self, tenant_id: str, active_only: bool = True) -> list[OrgCategory]:
        clause = " AND is_active" if active_only else ""
        rows = self._execute(
            f"SELECT tenant_id, name, sort, is_active FROM org_categories WHERE tenant_id = %s{clause} "
            "ORDER BY sort, name",
            (tenant_id,),
        )
        return [OrgCategory.model_validate(row) for row in rows]

    # loans

    def get_loan(self, tenant_id: str, loan_id: str) -> Optional[LoanLedger]:
        rows = self._execute(
            "SELECT tenant_id, loan_id, principal, outstanding_balance, interest_paid, total_repayments, "
            "start_date, status, updated_at FROM loan_ledgers WHERE tenant_id = %s AND loan_id = %s",
            (tenant_id, loan_id),
        )
        return LoanLedger.model_validate(rows[0]) if rows else None

    def apply_loan_delta(self, tenant_id: str, delta: LoanLedgerDelta) -> LoanLedger:
        fresh = fold_loan_delta(None, tenant_id, delta)
        rows = self._execute(
            "INSERT INTO loan_ledgers (tenant_id, loan_id, principal, outstanding_balance, interest_paid, "
            "total_repayments, start_date, status, updated_at) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s) "
            "ON CONFLICT (tenant_id, loan_id) DO UPDATE SET "
            "outstanding_balance = EXCLUDED.outstanding_balance, "
            "interest_paid = loan_ledgers.interest_paid + EXCLUDED.interest_paid, "
            "total_repayments = loan_ledgers.total_repayments + EXCLUDED.total_repayments, "
            "start_date = LEAST(loan_ledgers.start_date, EXCLUDED.start_date), "
            "status = EXCLUDED.status, updated_at = NOW() "
            "RETURNING tenant_id, loan_id, principal, outstanding_balance, interest_paid, total_repayments, "
            "start_date, status, updated_at",
            (
                fresh.tenant_id,
                fresh.loan_id,
                fresh.principal,
                fresh.outstanding_balance,
                fresh.interest_paid,
                fresh.total_repayments,
                fresh.start_date,
                fresh.status.value,
                fresh.updated_at,
            ),
        )
        return LoanLedger.model_validate(rows[0])


def create_store(settings: Settings) -> LedgerStore:
    """Pick the store implementation from configuration."""
    if settings.database_url:
        logger.info("store_selected | kind=postgres")
        return PostgresStore(settings.database_url)
    if settings.store_file:
        logger.info("store_selected | kind=file | path=%s", settings.store_file)
        return FileStore(settings.store_file)
    logger.info("store_selected | kind=memory")
    return MemoryStore()
