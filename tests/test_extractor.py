"""
Tests for the PDF amount extractor.

These tests verify the amount heuristics on receipt text and the
conversion of fetch/parse failures into unsuccessful results.
"""

import pytest
import requests
from unittest.mock import patch, MagicMock

from expense_ledger.errors import FetchError, ParseError
from expense_ledger.extractor import (
    extract,
    extract_amount_from_text,
    extract_text_from_bytes,
    fetch_pdf,
    find_aggressive_amounts,
    find_dollar_amounts,
    parse_amount_text,
)


RECEIPT_TEXT = """
Shell Station #4411
Invoice: INV-001
Subtotal: $40.00
Tax: $3.50
Total: $43.50
"""


class TestFindDollarAmounts:
    """Tests for the primary "$" amount pattern."""

    def test_finds_all_dollar_figures(self):
        assert find_dollar_amounts(RECEIPT_TEXT) == [40.00, 3.50, 43.50]

    def test_thousands_separator(self):
        assert find_dollar_amounts("Total due: $1,234.56") == [1234.56]

    def test_space_after_symbol(self):
        assert find_dollar_amounts("Amount $ 99.99") == [99.99]

    def test_whole_dollars(self):
        assert find_dollar_amounts("Paid $45 in cash") == [45.0]

    def test_zero_discarded(self):
        assert find_dollar_amounts("Discount: $0.00\nTotal: $12.00") == [12.0]

    def test_no_dollar_sign(self):
        assert find_dollar_amounts("Amount Due 120.00") == []


class TestFindAggressiveAmounts:
    """Tests for the fallback amount strategy."""

    def test_keyword_adjacent_amount(self):
        assert find_aggressive_amounts("Amount Due 120.00") == [120.0]

    def test_keyword_outranks_bare_numbers(self):
        text = "Invoice 2024\nAmount Due 120.00\nPhone 5551234\nPage 1 of 2"
        assert find_aggressive_amounts(text) == [120.0]

    def test_currency_word_suffix(self):
        assert 250.0 in find_aggressive_amounts("You paid 250 USD")

    def test_bare_numbers_when_no_keywords(self):
        amounts = find_aggressive_amounts("Receipt 42.10\nPage 1")
        assert max(amounts) == 42.10

    def test_ceiling_excludes_large_numbers(self):
        amounts = find_aggressive_amounts("Ref 123456\nPaid 45.00", ceiling=10000)
        assert 123456.0 not in amounts
        assert max(amounts) == 45.0

    def test_nothing_found(self):
        assert find_aggressive_amounts("Thank you for your purchase") == []


class TestExtractAmountFromText:
    """Tests for choosing the total."""

    def test_largest_dollar_figure_wins(self):
        amount, strategy = extract_amount_from_text(RECEIPT_TEXT)
        assert amount == 43.50
        assert strategy == "primary"

    def test_fallback_strategy(self):
        amount, strategy = extract_amount_from_text("Amount Due 120.00")
        assert amount == 120.00
        assert strategy == "aggressive"

    def test_primary_suppresses_fallback(self):
        amount, strategy = extract_amount_from_text("Order 9000\nTotal: $45.00")
        assert amount == 45.00
        assert strategy == "primary"

    def test_no_amount(self):
        assert extract_amount_from_text("Thank you!") == (0.0, None)


class TestParseAmountText:
    """Tests for matched figure parsing."""

    def test_plain(self):
        assert parse_amount_text("43.50") == 43.5

    def test_commas(self):
        assert parse_amount_text("1,234.50") == 1234.5

    def test_invalid(self):
        assert parse_amount_text("1.2.3") is None


class TestFetchPdf:
    """Tests for PDF downloads."""

    def test_success(self):
        response = MagicMock(ok=True, status_code=200, content=b"%PDF-1.4")
        with patch("expense_ledger.extractor.requests.get", return_value=response) as get:
            assert fetch_pdf("https://example.com/a.pdf", timeout=5) == b"%PDF-1.4"
        get.assert_called_once_with("https://example.com/a.pdf", timeout=5)

    def test_http_error_status(self):
        response = MagicMock(ok=False, status_code=404, reason="Not Found")
        with patch("expense_ledger.extractor.requests.get", return_value=response):
            with pytest.raises(FetchError) as exc_info:
                fetch_pdf("https://example.com/missing.pdf")
        assert "404 Not Found" in str(exc_info.value)
        assert exc_info.value.status_code == 404

    def test_connection_error(self):
        with patch(
            "expense_ledger.extractor.requests.get",
            side_effect=requests.ConnectionError("refused"),
        ):
            with pytest.raises(FetchError):
                fetch_pdf("https://unreachable.invalid/a.pdf")

    def test_timeout(self):
        with patch("expense_ledger.extractor.requests.get", side_effect=requests.Timeout()):
            with pytest.raises(FetchError) as exc_info:
                fetch_pdf("https://slow.example.com/a.pdf", timeout=2)
        assert "Timed out" in str(exc_info.value)


class TestExtractTextFromBytes:
    """Tests for PDF decoding."""

    def test_not_a_pdf(self):
        with pytest.raises(ParseError):
            extract_text_from_bytes(b"this is not a pdf")


class TestExtract:
    """Tests for the main extraction entry point."""

    def test_bytes_with_total(self):
        with patch("expense_ledger.extractor.extract_text_from_bytes", return_value=RECEIPT_TEXT):
            result = extract(b"%PDF-fake")
        assert result.success is True
        assert result.amount == 43.50
        assert result.raw_text == RECEIPT_TEXT
        assert result.error is None

    def test_url_with_total(self):
        with patch("expense_ledger.extractor.fetch_pdf", return_value=b"%PDF-fake"), \
                patch("expense_ledger.extractor.extract_text_from_bytes", return_value="Total: $45.00"):
            result = extract("https://example.com/INV-001.pdf")
        assert result.success is True
        assert result.amount == 45.00
        assert result.source == "https://example.com/INV-001.pdf"

    def test_unparsable_pdf_is_reported_not_raised(self):
        result = extract(b"this is not a pdf")
        assert result.success is False
        assert result.amount == 0
        assert "Could not read PDF" in result.error

    def test_fetch_failure_is_reported_not_raised(self):
        with patch(
            "expense_ledger.extractor.fetch_pdf",
            side_effect=FetchError("Failed to fetch PDF: 500 Internal Server Error", status_code=500),
        ):
            result = extract("https://example.com/broken.pdf")
        assert result.success is False
        assert result.amount == 0
        assert "500" in result.error

    def test_empty_url(self):
        result = extract("")
        assert result.success is False
        assert result.error == "No PDF URL provided"

    def test_no_amount_found(self):
        with patch("expense_ledger.extractor.extract_text_from_bytes", return_value="Thanks!"):
            result = extract(b"%PDF-fake")
        assert result.success is False
        assert result.amount == 0
        assert result.error is None
        assert result.raw_text == "Thanks!"
