"""
Sync of pending receipt emails into the ledger.

An email is pending when it carries a PDF receipt and its invoice number is
not in the ledger yet. Each pending email is turned into one "email" ledger
entry: the amount comes from its PDF, the vendor from the sender's domain and
the description from the subject line.
"""

import random
import threading
from email.utils import parseaddr
from typing import Optional, Union
from urllib.parse import urlparse

from .batch import batch_extract
from .config import (
    BATCH_MAX_WORKERS,
    DEFAULT_CATEGORY,
    EMAILS_TABLE,
    FETCH_TIMEOUT_SECONDS,
    LEDGER_TABLE,
    ON_EXTRACTION_FAILURE,
    PLACEHOLDER_AMOUNT_MAX,
    PLACEHOLDER_AMOUNT_MIN,
    REVIEW_CATEGORY,
    SOURCE_EMAIL,
    UNKNOWN_VENDOR,
    VENDOR_CATEGORIES,
    OnExtractionFailure,
    logger,
)
from .errors import StoreError
from .schemas import (
    EmailRecord,
    ExtractionResult,
    LedgerEntry,
    SourceDocument,
    SyncItemResult,
    SyncSummary,
)
from .store import BlobStore, RowStore, write_ledger_entry


# ============================================================================
# Field Derivation
# ============================================================================

def vendor_from_sender(sender: str) -> str:
    """
    Vendor name from a sender address.

    "receipts@shell.com" -> "Shell"; "Acme <billing@acme.co.uk>" -> "Acme".
    """
    _, address = parseaddr(sender)
    domain = (address or sender).rpartition("@")[2].strip().lower()
    name = domain.split(".")[0]
    if not name:
        return UNKNOWN_VENDOR
    return name[0].upper() + name[1:]


def category_for_vendor(vendor: str) -> str:
    for needle, category in VENDOR_CATEGORIES.items():
        if needle.lower() in vendor.lower():
            return category
    return DEFAULT_CATEGORY


def pdf_filename(email: EmailRecord) -> Optional[str]:
    """Stored pdf_path for the ledger: the URL's last segment or the blob path."""
    if email.pdf_url:
        return urlparse(email.pdf_url).path.rsplit("/", 1)[-1] or None
    return email.pdf_path


def is_http_url(value: Optional[str]) -> bool:
    return bool(value) and urlparse(value).scheme in ("http", "https")


def attachment(email: EmailRecord) -> SourceDocument:
    """The email's receipt PDF: its HTTP(S) URL if it has one, else its blob path."""
    if is_http_url(email.pdf_url):
        location = email.pdf_url
    else:
        location = email.pdf_path or email.pdf_url
    return SourceDocument(url_or_path=location, invoice_number=email.invoice_number)


# ============================================================================
# Orchestrator
# ============================================================================

class SyncOrchestrator:
    """
    Drives extraction and ledger writes for pending emails.

    Args:
        store: Row store holding the emails, ledger and uploaded tables
        blob_store: Used for attachments stored by path rather than URL
        on_failure: What to do when a PDF yields no amount. The default,
            PLACEHOLDER, writes a random amount in [75, 125] and logs the
            entry as needing manual review.
        max_workers: Concurrent PDF extractions
        timeout: Per-fetch timeout in seconds
        rng: Random source for placeholder amounts
    """

    def __init__(
        self,
        store: RowStore,
        blob_store: Optional[BlobStore] = None,
        on_failure: OnExtractionFailure = ON_EXTRACTION_FAILURE,
        max_workers: int = BATCH_MAX_WORKERS,
        timeout: float = FETCH_TIMEOUT_SECONDS,
        rng: Optional[random.Random] = None,
    ):
        self.store = store
        self.blob_store = blob_store
        self.on_failure = OnExtractionFailure(on_failure)
        self.max_workers = max_workers
        self.timeout = timeout
        self.rng = rng or random.Random()

    def pending_emails(self) -> list[EmailRecord]:
        """Emails with a PDF whose invoice number is not in the ledger, newest first."""
        ledger_keys = {row["invoice_number"] for row in self.store.find(LEDGER_TABLE)}
        emails = [
            EmailRecord.model_validate(row)
            for row in self.store.find(EMAILS_TABLE, {"has_attachment": True})
        ]

        pending = [
            email for email in emails
            if email.invoice_number
            and (email.pdf_url or email.pdf_path)
            and email.invoice_number not in ledger_keys
        ]
        pending.sort(key=lambda e: e.received_at, reverse=True)
        return pending

    def _resolve_source(self, document: SourceDocument) -> Union[str, bytes]:
        """URL for the extractor, or PDF bytes downloaded from the blob store."""
        if is_http_url(document.url_or_path):
            return document.url_or_path

        if self.blob_store is None:
            raise StoreError(f"No blob store configured to download '{document.url_or_path}'")
        return self.blob_store.download(document.url_or_path)

    def _resolve_amount(
        self,
        email: EmailRecord,
        extraction: ExtractionResult,
    ) -> tuple[Optional[float], bool]:
        """
        Amount to record and whether the entry needs review.

        Returns (None, False) when the policy is to skip the email.
        """
        if extraction.success and extraction.amount > 0:
            return extraction.amount, False

        reason = extraction.error or "no amount found"

        if self.on_failure is OnExtractionFailure.SKIP:
            logger.warning(f"No amount extracted for {email.invoice_number} ({reason}); skipping")
            return None, False

        if self.on_failure is OnExtractionFailure.FLAG_FOR_REVIEW:
            logger.warning(
                f"No amount extracted for {email.invoice_number} ({reason}); "
                f"recording 0.00, needs manual review"
            )
            return 0.0, True

        amount = float(self.rng.randint(PLACEHOLDER_AMOUNT_MIN, PLACEHOLDER_AMOUNT_MAX))
        logger.warning(
            f"No amount extracted for {email.invoice_number} ({reason}); "
            f"using placeholder {amount:.2f}, needs manual review"
        )
        return amount, True

    def _build_entry(self, email: EmailRecord, amount: float, needs_review: bool) -> LedgerEntry:
        vendor = vendor_from_sender(email.sender)
        return LedgerEntry(
            invoice_number=email.invoice_number,
            date=email.received_at.split("T")[0],
            amount=amount,
            description=email.subject,
            category=REVIEW_CATEGORY if needs_review and amount == 0 else category_for_vendor(vendor),
            vendor=vendor,
            source=SOURCE_EMAIL,
            pdf_path=pdf_filename(email),
        )

    def sync_pending(self, cancel_event: Optional[threading.Event] = None) -> SyncSummary:
        """
        Create ledger entries for every pending email.

        A failure on one email (download, store write) is recorded in the
        summary and the run moves on to the next email.

        Args:
            cancel_event: When set, remaining emails are reported as cancelled

        Returns:
            SyncSummary with processed/total counts and per-email results
        """
        logger.info("Starting ledger sync")
        pending = self.pending_emails()
        results: list[SyncItemResult] = []

        if not pending:
            logger.info("Ledger synchronized: no new emails to process")
            return SyncSummary(processed_count=0, total_count=0, results=[])

        logger.info(f"Found {len(pending)} email(s) with invoice numbers not in ledger")

        prepared: list[tuple[EmailRecord, Union[str, bytes]]] = []
        seen: set[str] = set()
        for email in pending:
            if email.invoice_number in seen:
                results.append(SyncItemResult(
                    email_id=email.id,
                    invoice_number=email.invoice_number,
                    success=False,
                    error=f"Duplicate invoice number {email.invoice_number} in pending emails",
                ))
                continue
            seen.add(email.invoice_number)
            try:
                prepared.append((email, self._resolve_source(attachment(email))))
            except StoreError as e:
                logger.error(f"Could not load PDF for email {email.id}: {e}")
                results.append(SyncItemResult(
                    email_id=email.id,
                    invoice_number=email.invoice_number,
                    success=False,
                    error=str(e),
                ))

        extractions = batch_extract(
            [source for _, source in prepared],
            max_workers=self.max_workers,
            timeout=self.timeout,
            cancel_event=cancel_event,
        )

        processed = 0
        for (email, _), extraction in zip(prepared, extractions):
            if cancel_event is not None and cancel_event.is_set():
                results.append(SyncItemResult(
                    email_id=email.id,
                    invoice_number=email.invoice_number,
                    success=False,
                    error="Cancelled",
                ))
                continue

            amount, needs_review = self._resolve_amount(email, extraction)
            if amount is None:
                results.append(SyncItemResult(
                    email_id=email.id,
                    invoice_number=email.invoice_number,
                    success=False,
                    error=extraction.error or "No amount found in PDF",
                ))
                continue

            entry = self._build_entry(email, amount, needs_review)
            try:
                write_ledger_entry(self.store, entry)
            except StoreError as e:
                logger.error(f"Error creating ledger entry for email {email.id}: {e}")
                results.append(SyncItemResult(
                    email_id=email.id,
                    invoice_number=email.invoice_number,
                    success=False,
                    error=str(e),
                ))
                continue

            processed += 1
            results.append(SyncItemResult(
                email_id=email.id,
                invoice_number=entry.invoice_number,
                success=True,
                amount=entry.amount,
                vendor=entry.vendor,
                description=entry.description,
                needs_review=needs_review,
            ))
            logger.info(f"Created ledger entry for email {email.id} ({entry.invoice_number})")

        logger.info(f"Ledger sync complete: {processed}/{len(pending)} emails processed")
        return SyncSummary(processed_count=processed, total_count=len(pending), results=results)
