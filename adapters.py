"""
adapters.py - Source adapters: header-keyed rows -> TransactionCandidate.

Each adapter owns an alias table mapping a logical field to the header
spellings seen in real exports. Headers are resolved once per batch:

    resolve(headers)  -> fails fast (MalformedInput) when a required field
                         has no alias among the CSV headers
    to_row(n, row)    -> typed row model (BankRow | SquarePaymentsRow | ...)
    adapt(typed_row)  -> AdapterOutput (candidates, optional loan delta,
                         or a skip reason)

Per row, the first alias with a non-empty value wins.

Adapters never touch storage and never decide duplicates; they only shape
data. Skipping (missing id, zero amount) is an outcome, not an error.
"""

from __future__ import annotations

from collections import Counter
from datetime import date
from decimal import Decimal
from typing import Optional

from pydantic import TypeAdapter

from dedup import derive_txn_hash
from errors import AdapterError, MalformedInput
from logging_config import get_logger
from models import (
    AdapterOutput,
    Direction,
    LoanLedgerDelta,
    ReportType,
    SourceRow,
    TransactionCandidate,
)
from normalize import clean_vendor, parse_amount, parse_date, sanitize_cell

logger = get_logger(__name__)

_SOURCE_ROW = TypeAdapter(SourceRow)

AliasTable = dict[str, list[str]]

BANK_ALIASES: AliasTable = {
    "date": ["Date", "date", "Transaction Date", "Posted Date", "Posting Date", "Created At"],
    "description": ["Description", "description", "Details", "Memo", "Transaction Description", "Name"],
    "amount": ["Amount", "amount", "Transaction Amount"],
    "debit": ["Debit", "debit", "Withdrawal", "Withdrawals", "Money Out"],
    "credit": ["Credit", "credit", "Deposit", "Deposits", "Money In"],
    "vendor": ["Vendor", "vendor", "Merchant", "Merchant Name", "Payee"],
    "external_id": ["Transaction ID", "transaction_id", "Reference", "Reference Number", "FITID"],
}

SQUARE_PAYMENTS_ALIASES: AliasTable = {
    "payment_id": ["Payment ID", "payment_id"],
    "date": ["Date", "date", "Transaction Date", "Created At"],
    "gross_sales": ["Gross Sales", "Amount"],
    "net_total": ["Net Total", "Net Amount"],
    "fees": ["Fees", "Fee", "Processing Fee"],
    "tip": ["Tip", "Tips"],
    "refund": ["Refunded Amount", "Refund"],
    "tax": ["Tax"],
    "description": ["Description", "Details", "Notes"],
    "payment_method": ["Card Brand", "Payment Method", "Tender Type"],
    "customer_name": ["Customer Name", "Customer"],
    "card_last_four": ["PAN Suffix", "Card Last 4"],
}

SQUARE_DEPOSITS_ALIASES: AliasTable = {
    "transfer_id": ["Transfer ID", "Deposit ID", "transfer_id"],
    "date": ["Date", "date", "Deposit Date", "Transfer Date"],
    "net": ["Net", "Amount", "Net Amount"],
    "status": ["Status", "status"],
    "description": ["Description"],
}

SQUARE_LOAN_ALIASES: AliasTable = {
    "loan_id": ["Loan ID", "loan_id", "ID"],
    "repayment_id": ["Payment ID", "Repayment ID", "payment_id"],
    "date": ["Date", "date", "Payment Date", "Repayment Date"],
    "repayment_amount": ["Repayment Amount", "Amount", "Payment"],
    "principal": ["Principal", "Loan Amount"],
    "interest": ["Interest", "Fee"],
    "balance": ["Outstanding Balance", "Balance"],
}


def resolve_headers(headers: list[str], aliases: AliasTable) -> dict[str, list[str]]:
    """Map each logical field to the alias headers present, in alias order."""
    present = set(headers)
    return {
        field: [alias for alias in candidates if alias in present]
        for field, candidates in aliases.items()
    }


def _first_value(row: dict[str, str], headers: list[str]) -> str:
    for header in headers:
        value = (row.get(header) or "").strip()
        if value:
            return value
    return ""


def _money(value: Decimal) -> str:
    return str(value)


class SourceAdapter:
    """Base class: alias resolution and typed-row construction."""

    kind: str = ""
    aliases: AliasTable = {}
    required: tuple[str, ...] = ()
    imported_via: str = ""
    match_source: str = ""
    id_field: str = ""

    def __init__(
        self,
        tenant_id: str,
        account_id: Optional[str] = None,
        today: Optional[date] = None,
    ) -> None:
        self.tenant_id = tenant_id
        self.account_id = account_id or None
        self.today = today
        self._resolved: Optional[dict[str, list[str]]] = None

    def resolve(self, headers: list[str]) -> dict[str, list[str]]:
        """Resolve CSV headers; raise MalformedInput for missing required fields."""
        resolved = resolve_headers(headers, self.aliases)
        missing = [field for field in self.required if not resolved.get(field)]
        missing.extend(self._extra_missing(resolved))
        if missing:
            expected = {field: self.aliases[field] for field in missing if field in self.aliases}
            raise MalformedInput(
                f"CSV is missing required columns for {self.kind}: {missing}. "
                f"Accepted headers: {expected}. Found: {headers}"
            )
        self._resolved = resolved
        logger.debug(
            "adapter_headers_resolved | kind=%s | fields=%s",
            self.kind,
            {field: found[0] for field, found in resolved.items() if found},
        )
        return resolved

    def _extra_missing(self, resolved: dict[str, list[str]]) -> list[str]:
        return []

    def to_row(self, row_number: int, row: dict[str, str]):
        """Build the typed row model for one header-keyed mapping."""
        if self._resolved is None:
            raise AdapterError("resolve() must be called before to_row()")
        values: dict[str, object] = {}
        for field, headers in self._resolved.items():
            if headers:
                values[field] = _first_value(row, headers)
            elif field in self._optional_none_fields():
                values[field] = None
        payload = {"kind": self.kind, "row_number": row_number, "source": dict(row), **values}
        return _SOURCE_ROW.validate_python(payload)

    def _optional_none_fields(self) -> tuple[str, ...]:
        return ()

    def _date(self, raw: str) -> date:
        return parse_date(raw, today=self.today)

    def adapt(self, row) -> AdapterOutput:  # pragma: no cover - abstract
        raise NotImplementedError


class BankStatementAdapter(SourceAdapter):
    """Generic bank/card CSV. Labels come from the caller, never the content."""

    kind = "bank"
    id_field = "external_id"
    aliases = BANK_ALIASES
    required = ("date", "description")
    imported_via = "csv"
    match_source = "csv"

    def __init__(
        self,
        tenant_id: str,
        account_id: Optional[str] = None,
        source_label: Optional[str] = None,
        account_name: Optional[str] = None,
        today: Optional[date] = None,
    ) -> None:
        super().__init__(tenant_id, account_id=account_id, today=today)
        self.institution = (source_label or "").strip() or None
        self.source_account_name = (account_name or "").strip() or self.institution or "Bank CSV"
        self._occurrences: Counter[tuple[str, ...]] = Counter()

    def _extra_missing(self, resolved: dict[str, list[str]]) -> list[str]:
        if resolved.get("amount") or resolved.get("debit") or resolved.get("credit"):
            return []
        return ["amount"]

    def _optional_none_fields(self) -> tuple[str, ...]:
        return ("amount", "debit", "credit")

    def _signed_amount(self, row) -> Decimal:
        if row.amount is not None and row.amount != "":
            return parse_amount(row.amount)
        debit = abs(parse_amount(row.debit or ""))
        if debit != 0:
            return -debit
        return abs(parse_amount(row.credit or ""))

    def txn_hash(self, txn_date: date, description: str, amount: Decimal, direction: Direction) -> str:
        """Derive a stable dedup hash; identical rows in one file get distinct hashes."""
        parts = (
            self.tenant_id,
            txn_date.isoformat(),
            description.lower(),
            f"{amount.quantize(Decimal('0.01'))}",
            direction.value,
            (self.institution or "").lower(),
            self.account_id or "",
        )
        occurrence = self._occurrences[parts]
        self._occurrences[parts] += 1
        return derive_txn_hash(parts, occurrence)

    def adapt(self, row) -> AdapterOutput:
        description = sanitize_cell(row.description)
        if not description:
            return AdapterOutput(skip_reason="missing description")

        signed = self._signed_amount(row)
        if signed == 0:
            return AdapterOutput(skip_reason="zero amount")

        direction = Direction.CREDIT if signed > 0 else Direction.DEBIT
        amount = abs(signed)
        txn_date = self._date(row.date)
        vendor = sanitize_cell(row.vendor) or clean_vendor(description)
        external_id = row.external_id or None

        candidate = TransactionCandidate(
            tenant_id=self.tenant_id,
            account_id=self.account_id,
            txn_date=txn_date,
            description=description,
            vendor_clean=vendor,
            amount=amount,
            direction=direction,
            institution=self.institution,
            source_account_name=self.source_account_name,
            imported_via=self.imported_via,
            external_id=external_id,
            txn_hash=None if external_id else self.txn_hash(txn_date, description, amount, direction),
            raw={
                "csv_row": row.row_number,
                "imported_from": f"{self.institution.lower()}_csv" if self.institution else "bank_csv",
                "row": row.source,
            },
        )
        return AdapterOutput(candidates=[candidate])


class SquarePaymentsAdapter(SourceAdapter):
    """Square payments report: net credit leg plus an optional fee debit leg."""

    kind = "square_payments"
    id_field = "payment_id"
    aliases = SQUARE_PAYMENTS_ALIASES
    required = ("payment_id", "net_total")
    imported_via = "square_csv"
    match_source = "square"

    def adapt(self, row) -> AdapterOutput:
        payment_id = row.payment_id
        net = parse_amount(row.net_total)
        if not payment_id:
            return AdapterOutput(skip_reason="missing payment id")
        if net == 0:
            return AdapterOutput(skip_reason="zero net total")

        txn_date = self._date(row.date)
        fees = abs(parse_amount(row.fees))
        description = sanitize_cell(row.description) or "Square Payment"
        customer = sanitize_cell(row.customer_name)
        last_four = row.card_last_four
        vendor = customer or ("Square Sale ****" + last_four if last_four else "Square Sale")

        payment = TransactionCandidate(
            tenant_id=self.tenant_id,
            account_id=self.account_id,
            txn_date=txn_date,
            description=f"{description} - Payment {payment_id}",
            vendor_clean=vendor,
            amount=abs(net),
            # A negative net total is a refund and leaves the account.
            direction=Direction.CREDIT if net > 0 else Direction.DEBIT,
            category="Income",
            institution="Square",
            source_account_name="Square Payments",
            imported_via=self.imported_via,
            external_id=payment_id,
            raw={
                "payment_id": payment_id,
                "payment_method": row.payment_method or "Card",
                "gross_amount": _money(parse_amount(row.gross_sales)),
                "net_amount": _money(net),
                "fees": _money(fees),
                "tip": _money(parse_amount(row.tip)),
                "tax": _money(parse_amount(row.tax)),
                "refund": _money(parse_amount(row.refund)),
                "customer": customer,
            },
        )
        candidates = [payment]

        if fees > 0:
            candidates.append(
                TransactionCandidate(
                    tenant_id=self.tenant_id,
                    account_id=self.account_id,
                    txn_date=txn_date,
                    description=f"Square Processing Fee - {payment_id}",
                    vendor_clean="Square",
                    amount=fees,
                    direction=Direction.DEBIT,
                    category="Bank Fees",
                    institution="Square",
                    source_account_name="Square Payments",
                    imported_via=self.imported_via,
                    external_id=f"{payment_id}-fee",
                    raw={"payment_id": payment_id, "fee": _money(fees)},
                )
            )
        return AdapterOutput(candidates=candidates)


class SquareDepositsAdapter(SourceAdapter):
    """Square transfers out to the bank: debit transfers."""

    kind = "square_deposits"
    id_field = "transfer_id"
    aliases = SQUARE_DEPOSITS_ALIASES
    required = ("transfer_id", "net")
    imported_via = "square_csv"
    match_source = "square"

    def adapt(self, row) -> AdapterOutput:
        transfer_id = row.transfer_id
        net = parse_amount(row.net)
        if not transfer_id:
            return AdapterOutput(skip_reason="missing transfer id")
        if net == 0:
            return AdapterOutput(skip_reason="zero net amount")

        candidate = TransactionCandidate(
            tenant_id=self.tenant_id,
            account_id=self.account_id,
            txn_date=self._date(row.date),
            description=sanitize_cell(row.description) or f"Square Deposit {transfer_id}",
            vendor_clean="Square",
            amount=abs(net),
            direction=Direction.DEBIT,
            category="Transfer",
            institution="Square",
            source_account_name="Square Deposits",
            imported_via=self.imported_via,
            external_id=transfer_id,
            raw={"deposit_id": transfer_id, "status": row.status or "completed"},
        )
        return AdapterOutput(candidates=[candidate])


class SquareLoanAdapter(SourceAdapter):
    """Square Capital repayments: ledger delta plus a debit cash-effect transaction."""

    kind = "square_loan"
    id_field = "loan_id"
    aliases = SQUARE_LOAN_ALIASES
    required = ("loan_id", "repayment_amount")
    imported_via = "square_csv"
    match_source = "square"

    def adapt(self, row) -> AdapterOutput:
        loan_id = row.loan_id
        repayment = abs(parse_amount(row.repayment_amount))
        if not loan_id:
            return AdapterOutput(skip_reason="missing loan id")
        if repayment == 0:
            return AdapterOutput(skip_reason="zero repayment amount")

        payment_date = self._date(row.date)
        interest = abs(parse_amount(row.interest))
        balance = parse_amount(row.balance)

        delta = LoanLedgerDelta(
            loan_id=loan_id,
            principal=abs(parse_amount(row.principal)),
            interest=interest,
            repayment=repayment,
            balance=balance,
            payment_date=payment_date,
        )
        external_id = row.repayment_id or f"{loan_id}-{payment_date.isoformat()}"

        candidate = TransactionCandidate(
            tenant_id=self.tenant_id,
            account_id=self.account_id,
            txn_date=payment_date,
            description=f"Square Capital Repayment - Loan {loan_id}",
            vendor_clean="Square Capital",
            amount=repayment,
            direction=Direction.DEBIT,
            category="Loan Repayment",
            institution="Square Capital",
            source_account_name="Square Loan",
            imported_via=self.imported_via,
            external_id=external_id,
            raw={
                "loan_id": loan_id,
                "principal_payment": _money(repayment - interest),
                "interest_payment": _money(interest),
                "outstanding_balance": _money(balance),
            },
        )
        return AdapterOutput(candidates=[candidate], loan_delta=delta)


SQUARE_ADAPTERS: dict[ReportType, type[SourceAdapter]] = {
    ReportType.PAYMENTS: SquarePaymentsAdapter,
    ReportType.DEPOSITS: SquareDepositsAdapter,
    ReportType.LOAN: SquareLoanAdapter,
}
