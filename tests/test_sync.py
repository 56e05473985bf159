"""
Tests for syncing pending receipt emails into the ledger.

PDF fetching and decoding are patched so each test controls the receipt text.
"""

import random
import threading
from unittest.mock import patch

import pytest

from expense_ledger.config import OnExtractionFailure
from expense_ledger.errors import FetchError, StoreError
from expense_ledger.reconcile import upload_bank_statement
from expense_ledger.schemas import EmailRecord
from expense_ledger.store import LocalBlobStore, MemoryStore
from expense_ledger.sync import (
    SyncOrchestrator,
    attachment,
    category_for_vendor,
    pdf_filename,
    vendor_from_sender,
)


def add_email(store, email_id="msg-1", invoice_number="INV-001", **overrides):
    fields = {
        "id": email_id,
        "subject": "Your Shell receipt",
        "sender": "receipts@shell.com",
        "received_at": "2024-01-28T10:15:00Z",
        "has_attachment": True,
        "invoice_number": invoice_number,
        "pdf_url": f"https://mail.example.com/attachments/{invoice_number}.pdf",
    }
    fields.update(overrides)
    email = EmailRecord(**fields)
    store.insert_one("emails", email.model_dump())
    return email


def receipt_texts(texts):
    """Patch PDF download and decoding; text is looked up by URL."""
    def fake_fetch(url, timeout=None):
        if url not in texts:
            raise FetchError("Failed to fetch PDF: 404 Not Found", status_code=404)
        return url.encode()

    def fake_text(data):
        return texts[data.decode()]

    return (
        patch("expense_ledger.extractor.fetch_pdf", side_effect=fake_fetch),
        patch("expense_ledger.extractor.extract_text_from_bytes", side_effect=fake_text),
    )


@pytest.fixture
def store():
    return MemoryStore()


class TestFieldDerivation:
    """Tests for vendor, category and filename helpers."""

    @pytest.mark.parametrize("sender,vendor", [
        ("receipts@shell.com", "Shell"),
        ("Acme Billing <billing@acme.co.uk>", "Acme"),
        ("orders@amazon.com", "Amazon"),
        ("no-at-sign", "No-at-sign"),
        ("", "Unknown"),
    ])
    def test_vendor_from_sender(self, sender, vendor):
        assert vendor_from_sender(sender) == vendor

    def test_category_for_vendor(self):
        assert category_for_vendor("Shell") == "Transportation"
        assert category_for_vendor("Starbucks") == "Food & Beverage"
        assert category_for_vendor("Acme") == "Business Expense"

    def test_pdf_filename(self):
        email = EmailRecord(id="1", sender="a@b.com", received_at="2024-01-01",
                            pdf_url="https://x.com/files/INV-7.pdf?sig=abc")
        assert pdf_filename(email) == "INV-7.pdf"

        stored = EmailRecord(id="2", sender="a@b.com", received_at="2024-01-01",
                             pdf_path="receipts/INV-8.pdf")
        assert pdf_filename(stored) == "receipts/INV-8.pdf"

    def test_attachment_prefers_http_url(self):
        email = EmailRecord(id="1", sender="a@b.com", received_at="2024-01-01", invoice_number="INV-7",
                            pdf_url="https://x.com/INV-7.pdf", pdf_path="receipts/INV-7.pdf")
        document = attachment(email)
        assert document.url_or_path == "https://x.com/INV-7.pdf"
        assert document.invoice_number == "INV-7"

        stored = email.model_copy(update={"pdf_url": None})
        assert attachment(stored).url_or_path == "receipts/INV-7.pdf"


class TestPendingEmails:
    """Tests for pending email selection."""

    def test_excludes_ledgered_and_attachmentless(self, store):
        add_email(store, "msg-1", "INV-001", received_at="2024-01-01T00:00:00Z")
        add_email(store, "msg-2", "INV-002", received_at="2024-01-03T00:00:00Z")
        add_email(store, "msg-3", "INV-003", has_attachment=False)
        add_email(store, "msg-4", None)
        store.insert_one("ledger", {
            "invoice_number": "INV-001", "date": "2024-01-01", "amount": 1.0, "source": "email",
        })

        pending = SyncOrchestrator(store).pending_emails()

        assert [e.id for e in pending] == ["msg-2"]

    def test_newest_first(self, store):
        add_email(store, "old", "INV-1", received_at="2024-01-01T00:00:00Z")
        add_email(store, "new", "INV-2", received_at="2024-02-01T00:00:00Z")
        assert [e.id for e in SyncOrchestrator(store).pending_emails()] == ["new", "old"]


class TestSyncPending:
    """Tests for the sync run."""

    def test_creates_email_entry(self, store):
        add_email(store)
        url = "https://mail.example.com/attachments/INV-001.pdf"
        fetch, text = receipt_texts({url: "Shell\nTotal: $45.00"})

        with fetch, text:
            summary = SyncOrchestrator(store).sync_pending()

        assert summary.processed_count == 1
        assert summary.total_count == 1
        assert summary.failed_count == 0

        rows = store.find("ledger")
        assert len(rows) == 1
        entry = rows[0]
        assert entry["invoice_number"] == "INV-001"
        assert entry["amount"] == 45.0
        assert entry["vendor"] == "Shell"
        assert entry["source"] == "email"
        assert entry["category"] == "Transportation"
        assert entry["date"] == "2024-01-28"
        assert entry["description"] == "Your Shell receipt"
        assert entry["pdf_path"] == "INV-001.pdf"

    def test_then_bank_statement_combines(self, store):
        add_email(store)
        url = "https://mail.example.com/attachments/INV-001.pdf"
        fetch, text = receipt_texts({url: "Total: $45.00"})
        with fetch, text:
            SyncOrchestrator(store).sync_pending()

        summary = upload_bank_statement(store, "Invoice Number,Date,Amount\nINV-001, 2024-02-01, $45\n")

        assert summary.details.new_entries == []
        rows = store.find("ledger")
        assert len(rows) == 1
        assert rows[0]["source"] == "email, bank statement"

    def test_nothing_pending(self, store):
        summary = SyncOrchestrator(store).sync_pending()
        assert summary.processed_count == 0
        assert summary.total_count == 0
        assert summary.results == []

    def test_second_run_is_a_no_op(self, store):
        add_email(store)
        url = "https://mail.example.com/attachments/INV-001.pdf"
        fetch, text = receipt_texts({url: "Total: $45.00"})
        with fetch, text:
            orchestrator = SyncOrchestrator(store)
            orchestrator.sync_pending()
            summary = orchestrator.sync_pending()

        assert summary.total_count == 0
        assert len(store.find("ledger")) == 1

    def test_placeholder_amount(self, store):
        add_email(store)
        url = "https://mail.example.com/attachments/INV-001.pdf"
        fetch, text = receipt_texts({url: "Thank you for shopping"})

        with fetch, text:
            summary = SyncOrchestrator(
                store,
                on_failure=OnExtractionFailure.PLACEHOLDER,
                rng=random.Random(7),
            ).sync_pending()

        item = summary.results[0]
        assert item.success is True
        assert item.needs_review is True
        assert 75 <= item.amount <= 125
        assert store.find("ledger")[0]["amount"] == item.amount

    def test_skip_policy(self, store):
        add_email(store)
        url = "https://mail.example.com/attachments/INV-001.pdf"
        fetch, text = receipt_texts({url: "Thank you for shopping"})

        with fetch, text:
            summary = SyncOrchestrator(store, on_failure=OnExtractionFailure.SKIP).sync_pending()

        assert summary.processed_count == 0
        assert summary.failed_count == 1
        assert store.find("ledger") == []

    def test_flag_for_review_policy(self, store):
        add_email(store)
        fetch, text = receipt_texts({})

        with fetch, text:
            summary = SyncOrchestrator(store, on_failure="flag_for_review").sync_pending()

        assert summary.processed_count == 1
        assert summary.results[0].needs_review is True
        entry = store.find("ledger")[0]
        assert entry["amount"] == 0
        assert entry["category"] == "Needs Review"

    def test_duplicate_invoice_in_pending(self, store):
        add_email(store, "msg-new", "INV-001", received_at="2024-02-01T00:00:00Z")
        add_email(store, "msg-old", "INV-001", received_at="2024-01-01T00:00:00Z")
        url = "https://mail.example.com/attachments/INV-001.pdf"
        fetch, text = receipt_texts({url: "Total: $45.00"})

        with fetch, text:
            summary = SyncOrchestrator(store).sync_pending()

        assert summary.processed_count == 1
        failed = [r for r in summary.results if not r.success]
        assert [r.email_id for r in failed] == ["msg-old"]
        assert "Duplicate invoice number" in failed[0].error

    def test_blob_store_attachment(self, store, tmp_path):
        blobs = LocalBlobStore(tmp_path / "blobs", "http://localhost/files")
        blobs.upload("receipts/INV-002.pdf", b"%PDF-stored")
        add_email(store, "msg-2", "INV-002", pdf_url=None, pdf_path="receipts/INV-002.pdf")

        with patch("expense_ledger.extractor.extract_text_from_bytes", return_value="Total: $12.34") as text:
            summary = SyncOrchestrator(store, blobs).sync_pending()

        text.assert_called_once_with(b"%PDF-stored")
        assert summary.processed_count == 1
        assert store.find("ledger")[0]["amount"] == 12.34
        assert store.find("ledger")[0]["pdf_path"] == "receipts/INV-002.pdf"

    def test_one_failure_does_not_stop_the_run(self, store, tmp_path):
        blobs = LocalBlobStore(tmp_path / "blobs", "http://localhost/files")
        add_email(store, "msg-1", "INV-001", received_at="2024-01-02T00:00:00Z")
        add_email(store, "msg-2", "INV-002", pdf_url=None, pdf_path="receipts/missing.pdf")
        url = "https://mail.example.com/attachments/INV-001.pdf"
        fetch, text = receipt_texts({url: "Total: $45.00"})

        with fetch, text:
            summary = SyncOrchestrator(store, blobs).sync_pending()

        assert summary.processed_count == 1
        assert summary.total_count == 2
        failed = [r for r in summary.results if not r.success]
        assert [r.email_id for r in failed] == ["msg-2"]
        assert [r["invoice_number"] for r in store.find("ledger")] == ["INV-001"]

    def test_store_write_failure_is_recorded(self, store):
        add_email(store, "msg-1", "INV-001", received_at="2024-01-02T00:00:00Z")
        add_email(store, "msg-2", "INV-002", received_at="2024-01-01T00:00:00Z")
        fetch, text = receipt_texts({
            "https://mail.example.com/attachments/INV-001.pdf": "Total: $45.00",
            "https://mail.example.com/attachments/INV-002.pdf": "Total: $9.99",
        })
        original_insert = store.insert_one

        def flaky_insert(table, row):
            if table == "ledger" and row["invoice_number"] == "INV-001":
                raise StoreError("disk full")
            return original_insert(table, row)

        with fetch, text, patch.object(store, "insert_one", side_effect=flaky_insert):
            summary = SyncOrchestrator(store).sync_pending()

        assert summary.processed_count == 1
        assert summary.results[0].error == "disk full"
        assert [r["invoice_number"] for r in store.find("ledger")] == ["INV-002"]

    def test_cancelled_run_writes_nothing(self, store):
        add_email(store)
        cancel = threading.Event()
        cancel.set()

        with patch("expense_ledger.extractor.fetch_pdf") as fetch:
            summary = SyncOrchestrator(store).sync_pending(cancel_event=cancel)

        fetch.assert_not_called()
        assert summary.processed_count == 0
        assert summary.results[0].error == "Cancelled"
        assert store.find("ledger") == []
