"""
loans.py - Running per-loan totals from Square Capital repayment rows.

The outstanding balance is a point-in-time value and is overwritten by each
applied row. Interest and repayments are cumulative. The read-modify-write
happens inside the store (lock or single upsert), so concurrent imports for
one loan never lose an accumulation.
"""

from __future__ import annotations

from logging_config import get_logger
from models import LoanLedger, LoanLedgerDelta
from store import LedgerStore

logger = get_logger(__name__)


def apply_loan_delta(store: LedgerStore, tenant_id: str, delta: LoanLedgerDelta) -> LoanLedger:
    """Fold one repayment row into the tenant's ledger for `delta.loan_id`."""
    ledger = store.apply_loan_delta(tenant_id, delta)
    logger.info(
        "loan_applied | tenant=%s | loan_id=%s | balance=%s | interest_paid=%s | repayments=%s | status=%s",
        tenant_id,
        delta.loan_id,
        ledger.outstanding_balance,
        ledger.interest_paid,
        ledger.total_repayments,
        ledger.status.value,
    )
    return ledger
