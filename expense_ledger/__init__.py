"""
Expense Ledger

A Python service that extracts receipt totals from emailed PDF invoices and
reconciles them against uploaded bank statements into a single ledger.
"""

__version__ = "0.1.0"
__author__ = "Expense Ledger Team"

from .schemas import BankStatementRow, ExtractionResult, LedgerEntry, TransactionLedgerEntry
from .extractor import extract
from .batch import batch_extract
from .ingestor import ingest
from .reconcile import reconcile, apply_reconciliation, upload_bank_statement
from .sync import SyncOrchestrator
from .scheduler import SyncScheduler

__all__ = [
    "BankStatementRow",
    "ExtractionResult",
    "LedgerEntry",
    "TransactionLedgerEntry",
    "extract",
    "batch_extract",
    "ingest",
    "reconcile",
    "apply_reconciliation",
    "upload_bank_statement",
    "SyncOrchestrator",
    "SyncScheduler",
]
