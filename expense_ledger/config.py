"""
Configuration constants and enums for the Expense Ledger service.
"""

import logging
import os
from enum import Enum
from typing import Final

# ============================================================================
# Source Tags
# ============================================================================

SOURCE_EMAIL: Final[str] = "email"
SOURCE_BANK: Final[str] = "bank statement"
SOURCE_COMBINED: Final[str] = "email, bank statement"

# ============================================================================
# Store Tables
# ============================================================================

LEDGER_TABLE: Final[str] = "ledger"
UPLOADED_TABLE: Final[str] = "uploaded"
EMAILS_TABLE: Final[str] = "emails"

DATABASE_PATH: Final[str] = os.getenv("DATABASE_PATH", "data/ledger.db")
BLOB_ROOT: Final[str] = os.getenv("BLOB_ROOT", "data/invoices")
BLOB_PUBLIC_BASE_URL: Final[str] = os.getenv("BLOB_PUBLIC_BASE_URL", "http://localhost:8000/invoices")

# ============================================================================
# PDF Extraction
# ============================================================================

# Seconds before a single PDF download is abandoned
FETCH_TIMEOUT_SECONDS: Final[float] = float(os.getenv("FETCH_TIMEOUT_SECONDS", "30"))

# Upper bound on concurrent PDF fetch+parse jobs in a batch
BATCH_MAX_WORKERS: Final[int] = int(os.getenv("BATCH_MAX_WORKERS", "8"))

# Aggressive matches at or above this are treated as phone numbers, ids, etc.
AGGRESSIVE_AMOUNT_CEILING: Final[float] = float(os.getenv("AGGRESSIVE_AMOUNT_CEILING", "10000"))

# ============================================================================
# CSV Bank Statements
# ============================================================================

REQUIRED_CSV_COLUMNS: Final[list[str]] = ["Invoice Number", "Date", "Amount"]

STATEMENT_DATE_FORMATS: Final[list[str]] = [
    "%Y-%m-%d",      # ISO format: 2024-01-05
    "%m/%d/%Y",      # US: 1/5/2024
    "%m-%d-%Y",      # US with dashes: 01-05-2024
]

MIN_STATEMENT_YEAR: Final[int] = 1900
MAX_YEARS_AHEAD: Final[int] = 5

MIN_STATEMENT_AMOUNT: Final[float] = -1_000_000.0
MAX_STATEMENT_AMOUNT: Final[float] = 1_000_000.0

# ============================================================================
# Ledger Defaults
# ============================================================================

DEFAULT_CATEGORY: Final[str] = "Business Expense"
BANK_CATEGORY: Final[str] = "Bank Statement"
REVIEW_CATEGORY: Final[str] = "Needs Review"
UNKNOWN_VENDOR: Final[str] = "Unknown"

# Substring of the vendor name -> ledger category
VENDOR_CATEGORIES: Final[dict[str, str]] = {
    "Amazon": "Office Supplies",
    "Office": "Office Supplies",
    "Starbucks": "Food & Beverage",
    "Whole Foods": "Groceries",
    "Shell": "Transportation",
}


class OnExtractionFailure(str, Enum):
    """What the sync does with an email whose PDF yields no amount."""
    PLACEHOLDER = "placeholder"
    SKIP = "skip"
    FLAG_FOR_REVIEW = "flag_for_review"


# NOTE: the placeholder policy writes a fabricated amount into the ledger.
# Rows produced this way are logged as needing manual review.
ON_EXTRACTION_FAILURE: Final[OnExtractionFailure] = OnExtractionFailure(
    os.getenv("ON_EXTRACTION_FAILURE", OnExtractionFailure.PLACEHOLDER.value)
)
PLACEHOLDER_AMOUNT_MIN: Final[int] = int(os.getenv("PLACEHOLDER_AMOUNT_MIN", "75"))
PLACEHOLDER_AMOUNT_MAX: Final[int] = int(os.getenv("PLACEHOLDER_AMOUNT_MAX", "125"))

# ============================================================================
# Scheduler
# ============================================================================

SYNC_INTERVAL_SECONDS: Final[float] = float(os.getenv("SYNC_INTERVAL_SECONDS", "60"))

# Start the periodic sync together with the API server
ENABLE_BACKGROUND_SYNC: Final[bool] = os.getenv("ENABLE_BACKGROUND_SYNC", "false").lower() == "true"

# ============================================================================
# API Configuration
# ============================================================================

API_HOST: Final[str] = os.getenv("API_HOST", "0.0.0.0")
API_PORT: Final[int] = int(os.getenv("API_PORT", "8000"))
MAX_UPLOAD_SIZE_MB: Final[int] = int(os.getenv("MAX_UPLOAD_SIZE_MB", "10"))

# ============================================================================
# Logging Configuration
# ============================================================================

LOG_LEVEL: Final[str] = os.getenv("LOG_LEVEL", "INFO")

def setup_logging() -> logging.Logger:
    """Configure and return the application logger."""
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    return logging.getLogger("expense_ledger")


logger = setup_logging()
