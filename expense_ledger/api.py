"""
FastAPI application for the Expense Ledger service.

Provides REST API endpoints for:
- Health check
- PDF amount extraction (single URL and batch)
- Bank statement CSV upload and reconciliation
- Ledger sync, listing and the periodic sync scheduler
"""

from typing import List, Optional

from fastapi import FastAPI, File, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import AliasChoices, BaseModel, Field

from .batch import batch_extract, summarize_batch
from .config import (
    API_HOST,
    API_PORT,
    BLOB_PUBLIC_BASE_URL,
    BLOB_ROOT,
    DATABASE_PATH,
    EMAILS_TABLE,
    ENABLE_BACKGROUND_SYNC,
    MAX_UPLOAD_SIZE_MB,
    logger,
)
from .errors import DuplicateKeyError, ParseError, StoreError, ValidationError
from .extractor import extract
from .reconcile import transaction_ledger, upload_bank_statement
from .scheduler import SyncScheduler
from .schemas import (
    BatchSummary,
    EmailRecord,
    ExtractionResult,
    SyncSummary,
    TransactionLedgerEntry,
    UploadSummary,
)
from .store import BlobStore, LocalBlobStore, RowStore, SQLiteStore
from .sync import SyncOrchestrator


# ============================================================================
# Request/Response Models
# ============================================================================

class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str


class ExtractRequest(BaseModel):
    """Request body for single PDF extraction."""
    url: str = Field(..., validation_alias=AliasChoices("url", "pdfUrl"))


class BatchExtractRequest(BaseModel):
    """Request body for batch PDF extraction."""
    urls: List[str] = Field(..., min_length=1)


class SchedulerStatus(BaseModel):
    """Scheduler state."""
    is_running: bool
    interval_seconds: float
    last_summary: Optional[SyncSummary] = None


# ============================================================================
# App Factory
# ============================================================================

def create_app(
    store: RowStore,
    blob_store: Optional[BlobStore] = None,
    orchestrator: Optional[SyncOrchestrator] = None,
    scheduler: Optional[SyncScheduler] = None,
    start_scheduler: bool = False,
) -> FastAPI:
    """
    Build the API around an explicit store, orchestrator and scheduler.

    Args:
        store: Row store for emails, ledger and uploaded rows
        blob_store: Blob store for attachments stored by path
        orchestrator: Sync orchestrator; built from store/blob_store if omitted
        scheduler: Sync scheduler; built from the orchestrator if omitted
        start_scheduler: Start periodic sync when the app starts
    """
    orchestrator = orchestrator or SyncOrchestrator(store, blob_store)
    scheduler = scheduler or SyncScheduler(orchestrator)

    app = FastAPI(
        title="Expense Ledger API",
        description="""
        Expense Ledger API.

        Extracts receipt totals from emailed PDF invoices and reconciles them
        against uploaded bank statements into a single transaction ledger.
        """,
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
    )

    app.state.store = store
    app.state.orchestrator = orchestrator
    app.state.scheduler = scheduler

    # Configure CORS for local development
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ========================================================================
    # Endpoints
    # ========================================================================

    @app.get("/health", response_model=HealthResponse, tags=["System"])
    async def health_check() -> HealthResponse:
        """Health check endpoint."""
        from . import __version__
        return HealthResponse(status="ok", version=__version__)

    @app.post(
        "/extract-pdf-amount",
        response_model=ExtractionResult,
        tags=["Extraction"],
        summary="Extract the total from a PDF URL",
    )
    def extract_pdf_amount(request: ExtractRequest) -> ExtractionResult:
        """
        Download a PDF and return its text and best-guess total.

        Download and parse failures come back as success=false with an
        error message, not as an HTTP error.
        """
        return extract(request.url)

    @app.post(
        "/batch-extract",
        response_model=BatchSummary,
        tags=["Extraction"],
        summary="Extract totals from many PDF URLs",
    )
    def batch_extract_pdfs(request: BatchExtractRequest) -> BatchSummary:
        """Extract totals concurrently; results are in request order."""
        return summarize_batch(batch_extract(request.urls))

    @app.post(
        "/upload-csv",
        response_model=UploadSummary,
        tags=["Reconciliation"],
        summary="Upload a bank statement CSV",
    )
    def upload_csv(
        file: UploadFile = File(..., description="CSV with Invoice Number, Date and Amount columns")
    ) -> UploadSummary:
        """
        Ingest a bank statement and reconcile it against the ledger.

        Rows matching a ledger entry by invoice number and rounded amount
        mark that entry as "email, bank statement"; the rest become new
        "bank statement" entries. Any invalid row rejects the whole file.
        """
        if not file.filename or not file.filename.lower().endswith(".csv"):
            raise HTTPException(status_code=400, detail="Please upload a CSV file")

        content = file.file.read()
        if len(content) > MAX_UPLOAD_SIZE_MB * 1024 * 1024:
            raise HTTPException(status_code=400, detail=f"File too large (max {MAX_UPLOAD_SIZE_MB}MB)")

        try:
            text = content.decode("utf-8-sig")
        except UnicodeDecodeError:
            raise HTTPException(status_code=400, detail="CSV file must be UTF-8 encoded")

        return upload_bank_statement(store, text)

    @app.post("/emails", response_model=EmailRecord, status_code=201, tags=["Ledger"])
    def create_email(email: EmailRecord) -> EmailRecord:
        """Register a source email so the next sync can pick it up."""
        try:
            store.insert_one(EMAILS_TABLE, email.model_dump())
        except DuplicateKeyError as e:
            raise HTTPException(status_code=409, detail=str(e))
        return email

    @app.get("/emails", response_model=List[EmailRecord], tags=["Ledger"])
    def list_emails() -> List[EmailRecord]:
        """Registered emails, most recently received first."""
        emails = [EmailRecord.model_validate(row) for row in store.find(EMAILS_TABLE)]
        emails.sort(key=lambda e: e.received_at, reverse=True)
        return emails

    @app.post("/sync-ledger", response_model=SyncSummary, tags=["Ledger"])
    def sync_ledger() -> SyncSummary:
        """Create ledger entries for emails whose invoice is not in the ledger yet."""
        return orchestrator.sync_pending()

    @app.get("/ledger", response_model=List[TransactionLedgerEntry], tags=["Ledger"])
    def list_ledger() -> List[TransactionLedgerEntry]:
        """Ledger entries with matching bank amounts and dates, newest first."""
        return transaction_ledger(store)

    @app.get("/scheduler", response_model=SchedulerStatus, tags=["Scheduler"])
    def scheduler_status() -> SchedulerStatus:
        return SchedulerStatus(
            is_running=scheduler.is_running(),
            interval_seconds=scheduler.interval_seconds,
            last_summary=scheduler.last_summary,
        )

    @app.post("/scheduler/start", response_model=SchedulerStatus, tags=["Scheduler"])
    def scheduler_start() -> SchedulerStatus:
        scheduler.start()
        return scheduler_status()

    @app.post("/scheduler/stop", response_model=SchedulerStatus, tags=["Scheduler"])
    def scheduler_stop() -> SchedulerStatus:
        scheduler.stop()
        return scheduler_status()

    # ========================================================================
    # Error Handlers
    # ========================================================================

    @app.exception_handler(ValidationError)
    @app.exception_handler(ParseError)
    async def bad_input_handler(request: Request, exc: Exception):
        """Rejected CSV input."""
        logger.warning(f"Rejected input: {exc}")
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(StoreError)
    async def store_error_handler(request: Request, exc: StoreError):
        """Store failures abort the request."""
        logger.error(f"Store error: {exc}")
        return JSONResponse(status_code=500, content={"detail": str(exc)})

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        """Handle unexpected exceptions."""
        logger.exception(f"Unexpected error: {exc}")
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )

    # ========================================================================
    # Startup/Shutdown Events
    # ========================================================================

    @app.on_event("startup")
    async def startup_event():
        logger.info(f"Expense Ledger API starting on {API_HOST}:{API_PORT}")
        if start_scheduler:
            scheduler.start()

    @app.on_event("shutdown")
    async def shutdown_event():
        logger.info("Expense Ledger API shutting down")
        scheduler.stop()

    return app


# ============================================================================
# Main Entry Point
# ============================================================================

def build_default_app() -> FastAPI:
    """App wired to the configured SQLite database and blob directory."""
    store = SQLiteStore(DATABASE_PATH)
    blob_store = LocalBlobStore(BLOB_ROOT, BLOB_PUBLIC_BASE_URL)
    return create_app(store, blob_store, start_scheduler=ENABLE_BACKGROUND_SYNC)


def run_server(host: str = API_HOST, port: int = API_PORT):
    """Run the API server using uvicorn."""
    import uvicorn
    uvicorn.run(build_default_app(), host=host, port=port)


if __name__ == "__main__":
    run_server()
