"""
PDF amount extraction for emailed receipts.

This module provides functionality to:
- Download a receipt PDF from a URL
- Extract raw text from PDF bytes using pdfplumber
- Pick the most likely monetary total from the text
- Report fetch and parse failures as normal, unsuccessful results
"""

import io
import re
from typing import Optional, Union

import pdfplumber
import requests

from .config import AGGRESSIVE_AMOUNT_CEILING, FETCH_TIMEOUT_SECONDS, logger
from .errors import FetchError, ParseError
from .schemas import ExtractionResult


# ============================================================================
# Amount Patterns
# ============================================================================

# "$1,234.56", "$ 43.50", "$45"
DOLLAR_PATTERN = re.compile(r"\$\s*(\d+(?:,\d{3})*(?:\.\d{2})?)")

# Checked in order; any hit here means bare numbers are never consulted
KEYWORD_PATTERNS: list[re.Pattern] = [
    re.compile(r"(\d+(?:,\d{3})*\.?\d*)\s*(?:dollars|USD)", re.IGNORECASE),
    re.compile(
        r"(?:total|amount|due|balance|payment)(?:\s*(?:due|is|of|:))?\s*\$?\s*(\d+(?:,\d{3})*\.?\d*)",
        re.IGNORECASE,
    ),
    re.compile(
        r"(?:invoice|charge|fee)\s+(?:total|amount|sum)(?:\s*(?:due|is|of|:))?\s*\$?\s*(\d+(?:,\d{3})*\.?\d*)",
        re.IGNORECASE,
    ),
]

BARE_NUMBER_PATTERN = re.compile(r"(\d+(?:,\d{3})*(?:\.\d+)?)")


# ============================================================================
# Fetching and Text Extraction
# ============================================================================

def fetch_pdf(url: str, timeout: float = FETCH_TIMEOUT_SECONDS) -> bytes:
    """
    Download PDF bytes from a URL.

    Args:
        url: HTTP(S) location of the PDF
        timeout: Seconds to wait for the server before giving up

    Returns:
        The response body

    Raises:
        FetchError: On connection failure, timeout or a non-success status
    """
    try:
        response = requests.get(url, timeout=timeout)
    except requests.Timeout as e:
        raise FetchError(f"Timed out fetching PDF after {timeout}s: {url}") from e
    except requests.RequestException as e:
        raise FetchError(f"Failed to fetch PDF: {e}") from e

    if not response.ok:
        raise FetchError(
            f"Failed to fetch PDF: {response.status_code} {response.reason}",
            status_code=response.status_code,
        )

    return response.content


def extract_text_from_bytes(pdf_bytes: bytes) -> str:
    """
    Extract all text content from PDF bytes.

    Args:
        pdf_bytes: Raw PDF file content

    Returns:
        Concatenated text from all pages

    Raises:
        ParseError: If the bytes cannot be opened as a PDF
    """
    text_parts = []

    try:
        with pdfplumber.open(io.BytesIO(pdf_bytes)) as pdf:
            for page in pdf.pages:
                page_text = page.extract_text()
                if page_text:
                    text_parts.append(page_text)
    except Exception as e:
        raise ParseError(f"Could not read PDF: {e}") from e

    return "\n".join(text_parts)


# ============================================================================
# Amount Heuristics
# ============================================================================

def parse_amount_text(value: str) -> Optional[float]:
    """Parse a matched figure such as "1,234.50"; None if unparsable."""
    try:
        return float(value.replace(",", ""))
    except ValueError:
        return None


def find_dollar_amounts(text: str) -> list[float]:
    """
    Find every positive dollar figure in the text.

    Only "$"-prefixed figures count; thousands separators and a
    two-decimal fraction are optional.
    """
    amounts = []
    for match in DOLLAR_PATTERN.finditer(text):
        amount = parse_amount_text(match.group(1))
        if amount is not None and amount > 0:
            amounts.append(amount)
    return amounts


def find_aggressive_amounts(text: str, ceiling: float = AGGRESSIVE_AMOUNT_CEILING) -> list[float]:
    """
    Broader amount search for receipts without "$" figures.

    Keyword-adjacent figures ("Total", "Amount Due", "120 USD") win; bare
    numbers are only used when no keyword figure exists. Every value must
    fall strictly between 0 and the ceiling, which filters out phone
    numbers, years and other ids.
    """
    def in_range(pattern: re.Pattern) -> list[float]:
        found = []
        for match in pattern.finditer(text):
            amount = parse_amount_text(match.group(1))
            if amount is not None and 0 < amount < ceiling:
                found.append(amount)
        return found

    keyword_amounts = []
    for pattern in KEYWORD_PATTERNS:
        keyword_amounts.extend(in_range(pattern))
    if keyword_amounts:
        return keyword_amounts

    return in_range(BARE_NUMBER_PATTERN)


def extract_amount_from_text(text: str) -> tuple[float, Optional[str]]:
    """
    Pick the most likely invoice total from receipt text.

    The largest dollar figure is taken as the total, since the "Total" line
    is normally larger than any subtotal or tax line.

    Returns:
        Tuple of (amount, strategy); (0.0, None) if nothing was found
    """
    amounts = find_dollar_amounts(text)
    if amounts:
        return max(amounts), "primary"

    amounts = find_aggressive_amounts(text)
    if amounts:
        logger.debug(f"Aggressive strategy found {len(amounts)} candidate amount(s)")
        return max(amounts), "aggressive"

    return 0.0, None


# ============================================================================
# Main Extraction Function
# ============================================================================

def extract(
    source: Union[str, bytes],
    timeout: float = FETCH_TIMEOUT_SECONDS,
    label: Optional[str] = None,
) -> ExtractionResult:
    """
    Extract text and the best-guess total from a PDF URL or PDF bytes.

    Fetch and parse failures are returned as unsuccessful results rather
    than raised.

    Args:
        source: A URL to download, or the raw PDF bytes
        timeout: Per-fetch timeout in seconds (URLs only)
        label: Name recorded on the result; defaults to the URL

    Returns:
        ExtractionResult with success=True iff a positive amount was found
    """
    if isinstance(source, str):
        label = label or source
        if not source.strip():
            return ExtractionResult.failure("No PDF URL provided", source=label)

    try:
        if isinstance(source, str):
            logger.info(f"Extracting PDF from {source}")
            pdf_bytes = fetch_pdf(source, timeout=timeout)
        else:
            pdf_bytes = source
        text = extract_text_from_bytes(pdf_bytes)
    except (FetchError, ParseError) as e:
        logger.warning(f"Extraction failed for {label or 'PDF bytes'}: {e}")
        return ExtractionResult.failure(str(e), source=label)

    amount, strategy = extract_amount_from_text(text)

    return ExtractionResult(
        raw_text=text,
        amount=amount,
        success=amount > 0,
        source=label,
        strategy=strategy,
    )
