"""
errors.py - Error taxonomy for the reconciliation engine.

Batch-fatal:
    MalformedInput   - the whole submission is rejected (empty CSV, missing
                       required headers, size limits).

Per-row (caught by the pipeline, counted into BatchReport.errors):
    AdapterError     - one row could not be mapped to a candidate.
    PersistenceError - the store failed while writing one row.

Operator actions:
    MatchConflict    - a transaction already carries a match.
    NotFound         - referenced record does not exist for the tenant.

Dedup hits and skipped rows are outcomes, not errors, and have no class here.
"""

from __future__ import annotations


class ReconError(Exception):
    """Base class for engine errors."""


class MalformedInput(ReconError, ValueError):
    """Input cannot be processed at all; reject the batch."""


class AdapterError(ReconError, ValueError):
    """A single source row could not be converted."""


class PersistenceError(ReconError):
    """The durable store rejected or failed a write."""


class MatchConflict(ReconError):
    """A transaction already has a match."""


class NotFound(ReconError, LookupError):
    """A tenant-scoped record was not found."""
