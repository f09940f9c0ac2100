"""
report.py - Counters for one import batch.
"""

from __future__ import annotations

from models import BatchReport


class BatchReportBuilder:
    """Accumulates per-row outcomes; only the first `max_errors` messages are kept."""

    def __init__(self, max_errors: int = 10) -> None:
        self.max_errors = max_errors
        self._imported = 0
        self._duplicates = 0
        self._skipped = 0
        self._matched = 0
        self._categorized = 0
        self._errors: list[str] = []
        self._error_count = 0

    def imported(self, count: int = 1) -> None:
        self._imported += count

    def duplicate(self, count: int = 1) -> None:
        self._duplicates += count

    def skipped(self, count: int = 1) -> None:
        self._skipped += count

    def matched(self, count: int = 1) -> None:
        self._matched += count

    def categorized(self, count: int = 1) -> None:
        self._categorized += count

    def error(self, message: str) -> None:
        self._error_count += 1
        if len(self._errors) < self.max_errors:
            self._errors.append(message)

    def build(self) -> BatchReport:
        return BatchReport(
            imported=self._imported,
            duplicates=self._duplicates,
            skipped=self._skipped,
            errors=list(self._errors),
            error_count=self._error_count,
            matched=self._matched,
            categorized=self._categorized,
        )
