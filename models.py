"""
models.py - Data models for the reconciliation engine.

Every stage of the import pipeline communicates through these models:

    normalize.py  ->  list[dict[str, str]]          (header-keyed rows)
    adapters.py   ->  SourceRow -> AdapterOutput    (TransactionCandidate[, LoanLedgerDelta])
    dedup.py      ->  Transaction | None            (None = duplicate)
    match.py      ->  Match | None
    categorize.py ->  str                           (clamped category name)
    loans.py      ->  LoanLedger
    report.py     ->  BatchReport

Conventions:
1. Money is Decimal and always non-negative on transactions. The sign of the
   cash flow lives in `direction`, never in `amount`.
2. Dates are calendar dates (no time component); they serialize as ISO.
3. Every stored record carries `tenant_id`; there is no cross-tenant read.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

UNCATEGORIZED = "Uncategorized"


def _new_id() -> str:
    return str(uuid.uuid4())


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Direction(str, Enum):
    """Direction of the cash flow relative to the tenant's account."""

    DEBIT = "debit"
    CREDIT = "credit"


class ReportType(str, Enum):
    """Square report flavours accepted by the Square import."""

    PAYMENTS = "payments"
    DEPOSITS = "deposits"
    LOAN = "loan"


class LoanStatus(str, Enum):
    ACTIVE = "active"
    PAID = "paid"


class EntryType(str, Enum):
    """Ledger export row kinds."""

    MATCHED = "matched"
    BANK_CC = "bank_cc"
    CASH = "cash"


# --------------------------------------------------------------------------
# Transactions
# --------------------------------------------------------------------------


class TransactionCandidate(BaseModel):
    """Canonical transaction produced by a source adapter, before dedup.

    The dedup key is the provider-assigned `external_id` when the source
    supplies one, otherwise the derived `txn_hash`. `(tenant_id, dedup_key)`
    is unique in every store.
    """

    tenant_id: str = Field(..., min_length=1)
    txn_date: date = Field(..., description="Calendar date of the transaction.")
    description: str = Field(default="", description="Free text as exported by the source.")
    vendor_clean: Optional[str] = Field(
        default=None,
        description="Cleaned vendor/merchant name used for rule matching.",
    )
    amount: Decimal = Field(
        ...,
        ge=0,
        description="Magnitude of the cash flow. Sign lives in `direction`.",
    )
    direction: Direction
    category: Optional[str] = Field(
        default=None,
        description="Accounting category; None until categorized.",
    )
    institution: Optional[str] = Field(default=None)
    source_account_name: Optional[str] = Field(default=None)
    account_id: Optional[str] = Field(default=None)
    external_id: Optional[str] = Field(
        default=None,
        description="Provider-assigned id (Square payment id, transfer id, ...).",
    )
    txn_hash: Optional[str] = Field(
        default=None,
        description="Derived dedup hash for sources without provider ids.",
    )
    imported_via: str = Field(..., description="Adapter tag, e.g. 'csv' or 'square_csv'.")
    raw: dict[str, Any] = Field(
        default_factory=dict,
        description="Opaque source payload kept for audit.",
    )

    @field_validator("external_id", "txn_hash", "vendor_clean", "category", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    @property
    def dedup_key(self) -> Optional[str]:
        if self.external_id:
            return self.external_id
        if self.txn_hash:
            return f"hash:{self.txn_hash}"
        return None

    @property
    def signed_amount(self) -> Decimal:
        return self.amount if self.direction == Direction.CREDIT else -self.amount


class Transaction(TransactionCandidate):
    """A persisted transaction."""

    id: str = Field(default_factory=_new_id)
    created_at: datetime = Field(default_factory=_utc_now)

    @classmethod
    def from_candidate(cls, candidate: TransactionCandidate) -> "Transaction":
        return cls(**candidate.model_dump())


# --------------------------------------------------------------------------
# Receipts and matches
# --------------------------------------------------------------------------


class Receipt(BaseModel):
    """A recorded purchase, entered manually or from AI-assisted extraction."""

    id: str = Field(default_factory=_new_id)
    tenant_id: str = Field(..., min_length=1)
    vendor: str = Field(default="")
    receipt_date: date
    total: Decimal = Field(..., ge=0)
    tax: Decimal = Field(default=Decimal("0"), ge=0)
    category: Optional[str] = None
    source: Optional[str] = Field(
        default=None,
        description="Payment method as written on the receipt; may be 'cash'.",
    )
    notes: Optional[str] = None
    image_ref: Optional[str] = Field(
        default=None,
        description="Reference into external image storage (not managed here).",
    )
    created_at: datetime = Field(default_factory=_utc_now)

    @property
    def subtotal(self) -> Decimal:
        return self.total - self.tax

    @property
    def is_cash(self) -> bool:
        haystack = " ".join(
            part for part in (self.source, self.notes, self.vendor) if part
        ).lower()
        return "cash" in haystack


class Match(BaseModel):
    """Link between one transaction and one receipt."""

    id: str = Field(default_factory=_new_id)
    tenant_id: str = Field(..., min_length=1)
    transaction_id: str
    receipt_id: str
    method: str = Field(
        ...,
        description="'manual' or '<source>_auto' (e.g. 'square_auto').",
    )
    confidence: float = Field(..., ge=0.0, le=1.0)
    matched_amount: Decimal = Field(..., ge=0)
    created_at: datetime = Field(default_factory=_utc_now)


# --------------------------------------------------------------------------
# Rules and categories
# --------------------------------------------------------------------------


class VendorRule(BaseModel):
    """Primary categorization rule, evaluated in insertion order."""

    id: str = Field(default_factory=_new_id)
    tenant_id: str = Field(..., min_length=1)
    vendor_pattern: str = Field(..., min_length=1, description="Case-insensitive regex.")
    category: Optional[str] = None
    direction_filter: Optional[Direction] = None
    created_at: datetime = Field(default_factory=_utc_now)

    @field_validator("direction_filter", mode="before")
    @classmethod
    def _empty_filter(cls, value: Any) -> Any:
        if value is None or str(value).strip() == "":
            return None
        return value


class FallbackRule(BaseModel):
    """Secondary rule, consulted only when no VendorRule matched."""

    id: str = Field(default_factory=_new_id)
    tenant_id: str = Field(..., min_length=1)
    match_pattern: str = Field(..., min_length=1)
    default_category: Optional[str] = None
    enabled: bool = True
    created_at: datetime = Field(default_factory=_utc_now)


class OrgCategory(BaseModel):
    """One entry of a tenant's category allow-list."""

    tenant_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    sort: int = 0
    is_active: bool = True


# --------------------------------------------------------------------------
# Loans
# --------------------------------------------------------------------------


class LoanLedgerDelta(BaseModel):
    """One repayment row from a Square Capital loan report."""

    loan_id: str = Field(..., min_length=1)
    principal: Decimal = Field(default=Decimal("0"))
    interest: Decimal = Field(default=Decimal("0"))
    repayment: Decimal = Field(default=Decimal("0"))
    balance: Decimal = Field(
        default=Decimal("0"),
        description="Outstanding balance as of this statement row.",
    )
    payment_date: date


class LoanLedger(BaseModel):
    """Running per-loan totals. Balance is point-in-time; totals are cumulative."""

    tenant_id: str = Field(..., min_length=1)
    loan_id: str = Field(..., min_length=1)
    principal: Decimal = Decimal("0")
    outstanding_balance: Decimal = Decimal("0")
    interest_paid: Decimal = Decimal("0")
    total_repayments: Decimal = Decimal("0")
    start_date: Optional[date] = None
    status: LoanStatus = LoanStatus.ACTIVE
    updated_at: datetime = Field(default_factory=_utc_now)


# --------------------------------------------------------------------------
# Typed adapter inputs (raw strings, resolved through alias tables)
# --------------------------------------------------------------------------


class _RowBase(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    row_number: int = Field(..., ge=1, description="1-based data row index in the CSV.")
    source: dict[str, str] = Field(default_factory=dict, description="Original row mapping.")


class BankRow(_RowBase):
    kind: Literal["bank"] = "bank"
    date: str = ""
    description: str = ""
    amount: Optional[str] = None
    debit: Optional[str] = None
    credit: Optional[str] = None
    vendor: str = ""
    external_id: str = ""


class SquarePaymentsRow(_RowBase):
    kind: Literal["square_payments"] = "square_payments"
    payment_id: str = ""
    date: str = ""
    gross_sales: str = ""
    net_total: str = ""
    fees: str = ""
    tip: str = ""
    refund: str = ""
    tax: str = ""
    description: str = ""
    payment_method: str = ""
    customer_name: str = ""
    card_last_four: str = ""


class SquareDepositsRow(_RowBase):
    kind: Literal["square_deposits"] = "square_deposits"
    transfer_id: str = ""
    date: str = ""
    net: str = ""
    status: str = ""
    description: str = ""


class SquareLoanRow(_RowBase):
    kind: Literal["square_loan"] = "square_loan"
    loan_id: str = ""
    repayment_id: str = ""
    date: str = ""
    repayment_amount: str = ""
    principal: str = ""
    interest: str = ""
    balance: str = ""


SourceRow = Annotated[
    Union[BankRow, SquarePaymentsRow, SquareDepositsRow, SquareLoanRow],
    Field(discriminator="kind"),
]


class AdapterOutput(BaseModel):
    """What one source row turns into. `skip_reason` set means 'skipped'."""

    candidates: list[TransactionCandidate] = Field(default_factory=list)
    loan_delta: Optional[LoanLedgerDelta] = None
    skip_reason: Optional[str] = None

    @property
    def skipped(self) -> bool:
        return self.skip_reason is not None


# --------------------------------------------------------------------------
# Reports, requests and exports
# --------------------------------------------------------------------------


class BatchReport(BaseModel):
    """Outcome counters for one CSV submission."""

    imported: int = 0
    duplicates: int = 0
    skipped: int = 0
    errors: list[str] = Field(
        default_factory=list,
        description="First few per-row error messages, for display.",
    )
    error_count: int = 0
    matched: int = 0
    categorized: int = 0


class _CamelRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class CsvImportRequest(_CamelRequest):
    csv_content: str = Field(..., alias="csvContent")
    tenant_id: str = Field(..., alias="tenantId", min_length=1)
    account_id: Optional[str] = Field(default=None, alias="accountId")
    source_label: Optional[str] = Field(
        default=None,
        alias="sourceLabel",
        description="Institution label chosen by the operator (never inferred).",
    )
    account_name: Optional[str] = Field(default=None, alias="accountName")


class SquareImportRequest(_CamelRequest):
    report_type: ReportType = Field(..., alias="reportType")
    csv_content: str = Field(..., alias="csvContent")
    tenant_id: str = Field(..., alias="tenantId", min_length=1)
    account_id: Optional[str] = Field(default=None, alias="accountId")


class BulkCategorizeRequest(_CamelRequest):
    tenant_id: str = Field(..., alias="tenantId", min_length=1)
    start_date: Optional[date] = Field(default=None, alias="startDate")
    end_date: Optional[date] = Field(default=None, alias="endDate")


class ManualMatchRequest(_CamelRequest):
    tenant_id: str = Field(..., alias="tenantId", min_length=1)
    transaction_id: str = Field(..., alias="transactionId")
    receipt_id: str = Field(..., alias="receiptId")


class ExtractedReceipt(BaseModel):
    """Response of the external AI vision service. Untrusted input."""

    model_config = ConfigDict(extra="ignore")

    vendor: Optional[str] = None
    date: Optional[str] = None
    total: Any = None
    tax: Any = None
    category: Optional[str] = None
    source: Optional[str] = None
    notes: Optional[str] = None


class LedgerEntry(BaseModel):
    """One row of the unified signed-amount ledger export."""

    entry_type: EntryType
    entry_date: date
    description: str = ""
    vendor: str = ""
    amount_signed: Decimal
    direction: Direction
    category: str = UNCATEGORIZED
    source: str = ""
    transaction_id: Optional[str] = None
    receipt_id: Optional[str] = None
    receipt_date: Optional[date] = None
    receipt_vendor: Optional[str] = None
    receipt_total: Optional[Decimal] = None
    receipt_tax: Optional[Decimal] = None
    receipt_subtotal: Optional[Decimal] = None
    receipt_category: Optional[str] = None
    receipt_source: Optional[str] = None
    receipt_image_ref: Optional[str] = None


class ReceiptCreateRequest(_CamelRequest):
    tenant_id: str = Field(..., alias="tenantId", min_length=1)
    vendor: str = ""
    receipt_date: date = Field(..., alias="receiptDate")
    total: Decimal = Field(..., ge=0)
    tax: Decimal = Field(default=Decimal("0"), ge=0)
    category: Optional[str] = None
    source: Optional[str] = None
    notes: Optional[str] = None
    image_ref: Optional[str] = Field(default=None, alias="imageRef")


class ReceiptUpdateRequest(_CamelRequest):
    """Partial edit: only the fields present in the request change."""

    tenant_id: str = Field(..., alias="tenantId", min_length=1)
    vendor: Optional[str] = None
    receipt_date: Optional[date] = Field(default=None, alias="receiptDate")
    total: Optional[Decimal] = Field(default=None, ge=0)
    tax: Optional[Decimal] = Field(default=None, ge=0)
    category: Optional[str] = None
    source: Optional[str] = None
    notes: Optional[str] = None
    image_ref: Optional[str] = Field(default=None, alias="imageRef")

    def changes(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True, exclude={"tenant_id"})


class ExtractedReceiptRequest(_CamelRequest):
    tenant_id: str = Field(..., alias="tenantId", min_length=1)
    extraction: dict[str, Any] = Field(..., description="Raw JSON returned by the extraction service.")
    image_ref: Optional[str] = Field(default=None, alias="imageRef")


class VendorRuleRequest(_CamelRequest):
    tenant_id: str = Field(..., alias="tenantId", min_length=1)
    vendor_pattern: str = Field(..., alias="vendorPattern", min_length=1)
    category: Optional[str] = None
    direction_filter: Optional[Direction] = Field(default=None, alias="directionFilter")

    @field_validator("direction_filter", mode="before")
    @classmethod
    def _empty_filter(cls, value: Any) -> Any:
        if value is None or str(value).strip() == "":
            return None
        return value


class FallbackRuleRequest(_CamelRequest):
    tenant_id: str = Field(..., alias="tenantId", min_length=1)
    match_pattern: str = Field(..., alias="matchPattern", min_length=1)
    default_category: Optional[str] = Field(default=None, alias="defaultCategory")
    enabled: bool = True


class CategoryRequest(_CamelRequest):
    tenant_id: str = Field(..., alias="tenantId", min_length=1)
    name: str = Field(..., min_length=1)
    sort: int = 0
    is_active: bool = Field(default=True, alias="isActive")
