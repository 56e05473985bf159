"""
Exception hierarchy for the Expense Ledger service.
"""

from typing import Optional


class LedgerError(Exception):
    """Base exception for expense ledger errors."""
    pass


class FetchError(LedgerError):
    """A PDF or CSV source could not be retrieved."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class ParseError(LedgerError):
    """Bytes are not a readable PDF, or the CSV text is malformed."""
    pass


class ValidationError(LedgerError):
    """
    A bank statement column or row failed its checks.

    Attributes:
        row: 1-based data row number, or None for header-level failures
        value: The offending raw value, if any
    """

    def __init__(self, message: str, row: Optional[int] = None, value: Optional[str] = None):
        self.row = row
        self.value = value
        if row is not None:
            message = f"Row {row}: {message}"
        super().__init__(message)


class StoreError(LedgerError):
    """A row store or blob store operation failed."""
    pass


class DuplicateKeyError(StoreError):
    """An insert collided with an existing primary key."""

    def __init__(self, table: str, key: str, value: str):
        self.table = table
        self.key = key
        self.value = value
        super().__init__(f"Duplicate {key} '{value}' in table '{table}'")
