"""
Pydantic models for ledger data and pipeline results.

This module defines the core data structures used throughout the Expense Ledger:
- ExtractionResult for a single PDF amount extraction
- BankStatementRow for one validated CSV bank statement line
- LedgerEntry / TransactionLedgerEntry for reconciled ledger rows
- EmailRecord for a source email with a receipt attachment
- Summary models returned by ingest, reconciliation and sync runs
"""

from typing import Literal, Optional

from pydantic import BaseModel, Field

from .config import SOURCE_BANK, SOURCE_EMAIL


SourceTag = Literal["email", "bank statement", "email, bank statement"]


class SourceDocument(BaseModel):
    """A PDF reachable by URL or blob-store path."""
    url_or_path: str = Field(..., min_length=1, description="HTTP(S) URL or blob-store path")
    invoice_number: Optional[str] = Field(None, description="Invoice number hint, if known")

    model_config = {"frozen": True}


class ExtractionResult(BaseModel):
    """
    Outcome of extracting a monetary total from one PDF.

    A failed fetch or unreadable PDF is a normal result with success=False,
    never an exception.
    """
    raw_text: str = Field("", description="Plain text decoded from the PDF")
    amount: float = Field(0.0, ge=0, description="Best-guess total, 0 if none found")
    success: bool = Field(False, description="True iff a positive amount was found")
    error: Optional[str] = Field(None, description="Failure message for fetch or parse errors")
    source: Optional[str] = Field(None, description="URL or label of the extracted document")
    strategy: Optional[Literal["primary", "aggressive"]] = Field(
        None,
        description="Which heuristic produced the amount"
    )

    @classmethod
    def failure(cls, error: str, source: Optional[str] = None) -> "ExtractionResult":
        return cls(raw_text="", amount=0.0, success=False, error=error, source=source)


class BankStatementRow(BaseModel):
    """One validated row from an uploaded bank statement CSV."""
    invoice_number: str = Field(..., min_length=1)
    date: str = Field(..., description="ISO date, YYYY-MM-DD")
    amount: float = Field(..., description="Amount rounded to 2 decimal places")
    source: Literal["bank statement"] = SOURCE_BANK

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "invoice_number": "INV-001",
                    "date": "2024-02-01",
                    "amount": 45.0,
                    "source": "bank statement"
                }
            ]
        }
    }


class LedgerEntry(BaseModel):
    """
    A reconciled ledger row. invoice_number is the primary key.

    bank_amount and bank_date hold the matching bank statement evidence;
    they are never persisted on the ledger row itself.
    """
    invoice_number: str = Field(..., min_length=1, description="Primary key")
    date: str = Field(..., description="ISO date, YYYY-MM-DD")
    amount: float
    description: str = ""
    category: Optional[str] = None
    vendor: Optional[str] = None
    source: SourceTag = SOURCE_EMAIL
    pdf_path: Optional[str] = None

    def to_row(self) -> dict:
        """Row shape stored in the ledger table."""
        return self.model_dump()

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "invoice_number": "INV-001",
                    "date": "2024-01-28",
                    "amount": 45.0,
                    "description": "Your Shell receipt",
                    "category": "Transportation",
                    "vendor": "Shell",
                    "source": "email",
                    "pdf_path": "INV-001.pdf"
                }
            ]
        }
    }


class TransactionLedgerEntry(LedgerEntry):
    """Ledger row joined with its uploaded bank statement record."""
    bank_amount: Optional[float] = None
    bank_date: Optional[str] = None


class EmailRecord(BaseModel):
    """A source email, optionally carrying a PDF receipt."""
    id: str = Field(..., min_length=1)
    subject: str = ""
    sender: str = Field(..., description="Sender address, e.g. receipts@shell.com")
    received_at: str = Field(..., description="ISO timestamp")
    has_attachment: bool = False
    body: str = ""
    invoice_number: Optional[str] = None
    pdf_url: Optional[str] = None
    pdf_path: Optional[str] = Field(None, description="Blob-store path of the attachment")


class UploadedRecord(BaseModel):
    """Bank statement row remembered in the uploaded table."""
    invoice_number: str
    date: str
    amount: float


# ============================================================================
# Summaries
# ============================================================================

class ReconcileResult(BaseModel):
    """Pure reconciliation outcome."""
    matched: list[TransactionLedgerEntry] = Field(default_factory=list)
    unmatched: list[BankStatementRow] = Field(default_factory=list)
    conflicts: list[BankStatementRow] = Field(
        default_factory=list,
        description="Rows whose invoice is in the ledger with a different amount"
    )
    new_entries: list[LedgerEntry] = Field(
        default_factory=list,
        description="Ledger entries synthesized from unmatched bank rows"
    )


class UploadSummary(BaseModel):
    """Result of persisting a reconciled bank statement upload."""
    matched: int = Field(0, ge=0)
    unmatched: int = Field(0, ge=0)
    conflicts: int = Field(0, ge=0)
    message: str = ""
    details: ReconcileResult = Field(default_factory=ReconcileResult)


class IngestReport(BaseModel):
    """Lenient ingest outcome: good rows plus per-row errors."""
    rows: list[BankStatementRow] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)


class SyncItemResult(BaseModel):
    """Per-email outcome of a sync run."""
    email_id: str
    invoice_number: Optional[str] = None
    success: bool
    amount: Optional[float] = None
    vendor: Optional[str] = None
    description: Optional[str] = None
    needs_review: bool = False
    error: Optional[str] = None


class SyncSummary(BaseModel):
    """Aggregate result of a sync run."""
    processed_count: int = Field(0, ge=0)
    total_count: int = Field(0, ge=0)
    results: list[SyncItemResult] = Field(default_factory=list)

    @property
    def failed_count(self) -> int:
        return sum(1 for r in self.results if not r.success)


class BatchSummary(BaseModel):
    """Response for a batch extraction request."""
    total: int = Field(0, ge=0)
    successful: int = Field(0, ge=0)
    results: list[ExtractionResult] = Field(default_factory=list)
