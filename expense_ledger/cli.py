"""
Command-line interface for the Expense Ledger service.

Provides commands to:
- extract / batch-extract: Pull receipt totals out of PDFs
- ingest-csv: Reconcile a bank statement CSV into the ledger
- add-email / sync: Register receipt emails and sync them into the ledger
- ledger: Print the reconciled ledger
- schedule / serve: Run the periodic sync or the API server
"""

import json
import time
from pathlib import Path
from typing import List, Optional

import typer

from .batch import batch_extract, summarize_batch
from .config import (
    API_HOST,
    API_PORT,
    BLOB_PUBLIC_BASE_URL,
    BLOB_ROOT,
    DATABASE_PATH,
    EMAILS_TABLE,
    ON_EXTRACTION_FAILURE,
    SYNC_INTERVAL_SECONDS,
    OnExtractionFailure,
    logger,
)
from .errors import LedgerError
from .extractor import extract
from .reconcile import transaction_ledger, upload_bank_statement
from .scheduler import SyncScheduler
from .schemas import EmailRecord
from .store import LocalBlobStore, SQLiteStore
from .sync import SyncOrchestrator


# Create Typer app
app = typer.Typer(
    name="expense-ledger",
    help="Expense Ledger: receipt extraction and bank statement reconciliation",
    add_completion=False,
)

DB_OPTION = typer.Option(DATABASE_PATH, "--db", help="SQLite ledger database path")


def _orchestrator(db: Path, on_failure: OnExtractionFailure) -> SyncOrchestrator:
    store = SQLiteStore(db)
    blob_store = LocalBlobStore(BLOB_ROOT, BLOB_PUBLIC_BASE_URL)
    return SyncOrchestrator(store, blob_store, on_failure=on_failure)


@app.command("extract")
def extract_cmd(
    source: str = typer.Argument(..., help="PDF URL or local PDF file path"),
    show_text: bool = typer.Option(False, "--show-text", help="Also print the extracted text"),
) -> None:
    """
    Extract the best-guess total from one PDF.
    """
    path = Path(source)
    result = extract(path.read_bytes(), label=source) if path.is_file() else extract(source)

    if not result.success:
        typer.echo(f"[FAILED] {source}: {result.error or 'no amount found'}", err=True)
        raise typer.Exit(code=1)

    typer.echo(f"[OK] {source}: {result.amount:.2f} ({result.strategy} strategy)")
    if show_text:
        typer.echo("\n" + result.raw_text)


@app.command("batch-extract")
def batch_extract_cmd(
    urls: List[str] = typer.Argument(..., help="PDF URLs"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write results as JSON"),
) -> None:
    """
    Extract totals from many PDF URLs concurrently.
    """
    summary = summarize_batch(batch_extract(urls))

    for url, result in zip(urls, summary.results):
        status = "OK" if result.success else "FAILED"
        detail = f"{result.amount:.2f}" if result.success else (result.error or "no amount found")
        typer.echo(f"  [{status}] {url}: {detail}")

    typer.echo(f"\n{summary.successful}/{summary.total} successful")

    if output:
        with open(output, "w", encoding="utf-8") as f:
            json.dump(summary.model_dump(exclude={"results": {"__all__": {"raw_text"}}}), f, indent=2)
        typer.echo(f"Results saved to: {output}")


@app.command("ingest-csv")
def ingest_csv(
    csv_file: Path = typer.Argument(
        ...,
        help="Bank statement CSV with Invoice Number, Date, Amount columns",
        exists=True,
        file_okay=True,
        dir_okay=False,
        resolve_path=True,
    ),
    db: Path = DB_OPTION,
    skip_invalid: bool = typer.Option(
        False,
        "--skip-invalid",
        help="Skip invalid rows instead of rejecting the whole file",
    ),
) -> None:
    """
    Reconcile a bank statement CSV into the ledger.
    """
    try:
        text = csv_file.read_text(encoding="utf-8-sig")
        summary = upload_bank_statement(SQLiteStore(db), text, fail_fast=not skip_invalid)
    except LedgerError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1)

    typer.echo(f"[OK] {summary.message}")


@app.command("add-email")
def add_email(
    email_id: str = typer.Option(..., "--id", help="Email id"),
    sender: str = typer.Option(..., "--sender", help="Sender address"),
    invoice_number: str = typer.Option(..., "--invoice", help="Invoice number"),
    received_at: str = typer.Option(..., "--received-at", help="ISO timestamp"),
    subject: str = typer.Option("", "--subject"),
    pdf_url: Optional[str] = typer.Option(None, "--pdf-url", help="Receipt PDF URL"),
    pdf_path: Optional[str] = typer.Option(None, "--pdf-path", help="Receipt path in the blob store"),
    db: Path = DB_OPTION,
) -> None:
    """
    Register a receipt email for the next sync.
    """
    email = EmailRecord(
        id=email_id,
        subject=subject,
        sender=sender,
        received_at=received_at,
        has_attachment=bool(pdf_url or pdf_path),
        invoice_number=invoice_number,
        pdf_url=pdf_url,
        pdf_path=pdf_path,
    )
    try:
        SQLiteStore(db).insert_one(EMAILS_TABLE, email.model_dump())
    except LedgerError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1)

    typer.echo(f"[OK] Added email {email.id} ({email.invoice_number})")


@app.command()
def sync(
    db: Path = DB_OPTION,
    on_failure: OnExtractionFailure = typer.Option(
        ON_EXTRACTION_FAILURE,
        "--on-failure",
        help="What to do when a PDF yields no amount",
    ),
) -> None:
    """
    Create ledger entries for pending receipt emails.
    """
    try:
        summary = _orchestrator(db, on_failure).sync_pending()
    except LedgerError as e:
        typer.echo(f"Error: {e}", err=True)
        logger.exception("Sync failed")
        raise typer.Exit(code=1)

    typer.echo(f"[OK] Processed {summary.processed_count}/{summary.total_count} pending email(s)")
    for item in summary.results:
        if not item.success:
            typer.echo(f"  - {item.invoice_number}: {item.error}")
        elif item.needs_review:
            typer.echo(f"  - {item.invoice_number}: {item.amount:.2f} (needs manual review)")


@app.command()
def ledger(db: Path = DB_OPTION) -> None:
    """
    Print the reconciled ledger, newest first.
    """
    entries = transaction_ledger(SQLiteStore(db))
    if not entries:
        typer.echo("Ledger is empty.")
        return

    for entry in entries:
        bank = f" | bank {entry.bank_amount:.2f} on {entry.bank_date}" if entry.bank_amount is not None else ""
        typer.echo(
            f"  {entry.date} | {entry.invoice_number} | {entry.vendor} | "
            f"{entry.amount:.2f} | {entry.source}{bank}"
        )


@app.command()
def schedule(
    db: Path = DB_OPTION,
    interval: float = typer.Option(SYNC_INTERVAL_SECONDS, "--interval", help="Seconds between syncs"),
    on_failure: OnExtractionFailure = typer.Option(ON_EXTRACTION_FAILURE, "--on-failure"),
) -> None:
    """
    Run the ledger sync every interval until interrupted.
    """
    scheduler = SyncScheduler(_orchestrator(db, on_failure), interval_seconds=interval)
    scheduler.start()
    try:
        while scheduler.is_running():
            time.sleep(1)
    except KeyboardInterrupt:
        typer.echo("Stopping scheduler...")
    finally:
        scheduler.stop()


@app.command()
def serve(
    host: str = typer.Option(API_HOST, "--host"),
    port: int = typer.Option(API_PORT, "--port"),
) -> None:
    """Run the API server."""
    from .api import run_server
    run_server(host=host, port=port)


@app.command()
def version() -> None:
    """Show version information."""
    from . import __version__
    typer.echo(f"Expense Ledger v{__version__}")


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
