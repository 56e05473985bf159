"""
Bank statement CSV ingestion.

Parses an uploaded CSV into validated BankStatementRow objects. Every cell is
read as text and validated here, so a bad row is reported with its 1-based
row number and the offending value.
"""

import io
import math
import re
from datetime import date, datetime
from typing import Optional

import pandas as pd

from .config import (
    MAX_STATEMENT_AMOUNT,
    MAX_YEARS_AHEAD,
    MIN_STATEMENT_AMOUNT,
    MIN_STATEMENT_YEAR,
    REQUIRED_CSV_COLUMNS,
    STATEMENT_DATE_FORMATS,
    logger,
)
from .errors import ParseError, ValidationError
from .schemas import BankStatementRow, IngestReport


AMOUNT_NOISE_PATTERN = re.compile(r"[\$€£¥,\s]")
PLAIN_DECIMAL_PATTERN = re.compile(r"^-?\d*\.?\d+$")


# ============================================================================
# Field Parsers
# ============================================================================

def parse_statement_date(value: str, today: Optional[date] = None) -> str:
    """
    Parse a statement date and normalize it to YYYY-MM-DD.

    Accepts YYYY-MM-DD, M/D/YYYY and M-D-YYYY. The year must fall between
    1900 and five years from now.

    Raises:
        ValueError: If the date is empty, unparsable or out of range
    """
    value = value.strip()
    if not value:
        raise ValueError("Date is required")

    parsed = None
    for fmt in STATEMENT_DATE_FORMATS:
        try:
            parsed = datetime.strptime(value, fmt).date()
            break
        except ValueError:
            continue

    if parsed is None:
        raise ValueError(
            f'Invalid date "{value}". Expected formats: YYYY-MM-DD, MM/DD/YYYY, or MM-DD-YYYY'
        )

    max_year = (today or date.today()).year + MAX_YEARS_AHEAD
    if not MIN_STATEMENT_YEAR <= parsed.year <= max_year:
        raise ValueError(
            f'Invalid date "{value}": year must be between {MIN_STATEMENT_YEAR} and {max_year}'
        )

    return parsed.isoformat()


def parse_amount(value: str) -> float:
    """
    Parse a statement amount such as "$1,234.50" or "-45".

    Currency symbols, commas and whitespace are stripped first. The result
    is rounded to 2 decimal places.

    Raises:
        ValueError: If the amount is empty, malformed or out of range
    """
    raw = value.strip()
    if not raw:
        raise ValueError("Amount is required")

    cleaned = AMOUNT_NOISE_PATTERN.sub("", raw)
    if not PLAIN_DECIMAL_PATTERN.match(cleaned):
        raise ValueError(f'Invalid amount "{raw}". Expected a number')

    amount = float(cleaned)
    if not math.isfinite(amount):
        raise ValueError(f'Invalid amount "{raw}". Amount must be a finite number')

    if not MIN_STATEMENT_AMOUNT <= amount <= MAX_STATEMENT_AMOUNT:
        raise ValueError(
            f'Invalid amount "{raw}". Amount must be between -$1,000,000 and $1,000,000'
        )

    return round(amount, 2)


# ============================================================================
# CSV Reading
# ============================================================================

def read_statement_frame(file_text: str) -> pd.DataFrame:
    """
    Read CSV text into a DataFrame of strings and check required columns.

    Raises:
        ParseError: If the text is empty or not valid CSV
        ValidationError: If any required column is missing
    """
    if not file_text or not file_text.strip():
        raise ParseError("CSV file is empty")

    try:
        frame = pd.read_csv(
            io.StringIO(file_text),
            dtype=str,
            keep_default_na=False,
            skip_blank_lines=True,
            skipinitialspace=True,
        )
    except pd.errors.EmptyDataError as e:
        raise ParseError("CSV file is empty") from e
    except pd.errors.ParserError as e:
        raise ParseError(f"CSV parsing error: {e}") from e

    missing = [col for col in REQUIRED_CSV_COLUMNS if col not in frame.columns]
    if missing:
        raise ValidationError(
            "Please ensure your CSV has these columns: "
            f"{', '.join(REQUIRED_CSV_COLUMNS)}. Missing: {', '.join(missing)}"
        )

    if frame.empty:
        raise ParseError("CSV file is empty")

    return frame


def parse_row(record: dict, row_number: int) -> BankStatementRow:
    """
    Validate one CSV record.

    Checks run in order: invoice number, date, amount.

    Raises:
        ValidationError: Carrying the 1-based row number and offending value
    """
    invoice_number = str(record.get("Invoice Number", "")).strip()
    date_str = str(record.get("Date", "")).strip()
    amount_str = str(record.get("Amount", "")).strip()

    if not invoice_number:
        raise ValidationError("Invoice Number is required", row=row_number, value=invoice_number)

    try:
        normalized_date = parse_statement_date(date_str)
    except ValueError as e:
        raise ValidationError(str(e), row=row_number, value=date_str) from e

    try:
        amount = parse_amount(amount_str)
    except ValueError as e:
        raise ValidationError(str(e), row=row_number, value=amount_str) from e

    return BankStatementRow(invoice_number=invoice_number, date=normalized_date, amount=amount)


# ============================================================================
# Main Ingest Functions
# ============================================================================

def ingest_report(file_text: str) -> IngestReport:
    """
    Lenient ingest: collect valid rows and per-row error messages.

    Header-level problems (empty file, missing columns) still raise.
    """
    frame = read_statement_frame(file_text)
    report = IngestReport()

    for index, record in enumerate(frame.to_dict(orient="records")):
        try:
            report.rows.append(parse_row(record, index + 1))
        except ValidationError as e:
            report.errors.append(str(e))

    logger.info(f"Ingested {len(report.rows)} bank statement row(s), {len(report.errors)} rejected")
    return report


def ingest(file_text: str, fail_fast: bool = True) -> list[BankStatementRow]:
    """
    Parse a bank statement CSV into validated rows.

    Args:
        file_text: CSV content with Invoice Number, Date and Amount columns
        fail_fast: Abort on the first invalid row (default). When False,
            invalid rows are logged and skipped.

    Returns:
        Validated rows tagged "bank statement", dates as YYYY-MM-DD

    Raises:
        ParseError: If the CSV is empty or malformed
        ValidationError: On missing columns, or the first bad row when fail_fast
    """
    if not fail_fast:
        report = ingest_report(file_text)
        for error in report.errors:
            logger.warning(f"Skipped bank statement row: {error}")
        return report.rows

    frame = read_statement_frame(file_text)
    rows = [
        parse_row(record, index + 1)
        for index, record in enumerate(frame.to_dict(orient="records"))
    ]

    logger.info(f"Ingested {len(rows)} bank statement row(s)")
    return rows
