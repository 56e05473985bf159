"""
Ledger reconciliation against bank statement rows.

This module is the single place that decides when a bank statement row and a
ledger entry describe the same transaction, and what happens to both:
- match_key / reconcile: pure matching over in-memory rows
- apply_reconciliation: persist a reconciliation to the row store
- upload_bank_statement: ingest a CSV and apply it in one step
- transaction_ledger: ledger rows joined with their bank evidence
"""

import math
from typing import Iterable, Union

from pydantic import BaseModel

from .config import (
    BANK_CATEGORY,
    LEDGER_TABLE,
    SOURCE_BANK,
    SOURCE_COMBINED,
    SOURCE_EMAIL,
    UNKNOWN_VENDOR,
    UPLOADED_TABLE,
    logger,
)
from .ingestor import ingest
from .schemas import (
    BankStatementRow,
    LedgerEntry,
    ReconcileResult,
    TransactionLedgerEntry,
    UploadedRecord,
    UploadSummary,
)
from .store import RowStore, write_ledger_entry


MatchKey = tuple[str, int]


def round_half_up(amount: float) -> int:
    """Round to the nearest whole unit, halves rounding up."""
    return math.floor(amount + 0.5)


def match_key(invoice_number: str, amount: float) -> MatchKey:
    """
    Composite key for "same transaction".

    Two rows match iff their invoice numbers are identical and their
    amounts agree after rounding to the nearest whole currency unit.
    """
    return invoice_number, round_half_up(amount)


def upgraded_source(current: str) -> str:
    """Source tag of a ledger entry once a bank row has matched it."""
    if current in (SOURCE_EMAIL, SOURCE_COMBINED):
        return SOURCE_COMBINED
    return current


def bank_entry(row: BankStatementRow) -> LedgerEntry:
    """Ledger entry for a bank row that matched nothing."""
    return LedgerEntry(
        invoice_number=row.invoice_number,
        date=row.date,
        amount=row.amount,
        description=f"Bank statement entry - {row.invoice_number}",
        category=BANK_CATEGORY,
        vendor=UNKNOWN_VENDOR,
        source=SOURCE_BANK,
    )


def reconcile(
    existing_ledger: Iterable[Union[LedgerEntry, dict]],
    bank_rows: Iterable[BankStatementRow],
) -> ReconcileResult:
    """
    Match bank statement rows against existing ledger entries.

    Matched entries keep their own date, amount, description and vendor;
    only the source tag is upgraded, and the bank row's amount and date are
    attached as bank_amount / bank_date. A row whose invoice number is in the
    ledger with a different amount is a conflict and leaves the entry alone.
    The remaining rows become new "bank statement" ledger entries.

    Args:
        existing_ledger: Current ledger entries (models or stored rows)
        bank_rows: Validated bank statement rows

    Returns:
        ReconcileResult with matched entries, conflicts, unmatched rows and new entries
    """
    lookup: dict[MatchKey, LedgerEntry] = {}
    ledger_invoices: set[str] = set()
    for item in existing_ledger:
        # Joined rows carry bank_amount / bank_date; keep only ledger fields
        entry = LedgerEntry.model_validate(item.model_dump() if isinstance(item, BaseModel) else item)
        lookup[match_key(entry.invoice_number, entry.amount)] = entry
        ledger_invoices.add(entry.invoice_number)

    result = ReconcileResult()
    new_entries: dict[str, LedgerEntry] = {}

    for row in bank_rows:
        entry = lookup.get(match_key(row.invoice_number, row.amount))
        if entry is not None:
            result.matched.append(TransactionLedgerEntry(
                **entry.model_dump(exclude={"source"}),
                source=upgraded_source(entry.source),
                bank_amount=row.amount,
                bank_date=row.date,
            ))
            continue

        if row.invoice_number in ledger_invoices:
            logger.warning(
                f"Bank statement amount {row.amount:.2f} for invoice {row.invoice_number} "
                f"does not match the ledger; left for review"
            )
            result.conflicts.append(row)
            continue

        result.unmatched.append(row)
        if row.invoice_number in new_entries:
            logger.warning(f"Bank statement repeats invoice {row.invoice_number}; keeping the last row")
        new_entries[row.invoice_number] = bank_entry(row)

    result.new_entries = list(new_entries.values())
    return result


def apply_reconciliation(store: RowStore, bank_rows: list[BankStatementRow]) -> UploadSummary:
    """
    Reconcile bank rows against the stored ledger and persist the outcome.

    Every bank row, matched or not, is upserted into the uploaded table so a
    repeated upload of the same statement is recognisable. Matched ledger
    entries get their source upgraded; unmatched rows are written as new
    ledger entries. Amount conflicts are recorded in uploaded only.

    Raises:
        StoreError: If any store operation fails; the upload is aborted
    """
    ledger = store.find(LEDGER_TABLE)
    result = reconcile(ledger, bank_rows)

    for row in bank_rows:
        record = UploadedRecord(invoice_number=row.invoice_number, date=row.date, amount=row.amount)
        store.upsert_by_key(UPLOADED_TABLE, "invoice_number", record.model_dump())

    current_sources = {r["invoice_number"]: r.get("source") for r in ledger}
    for entry in result.matched:
        if current_sources.get(entry.invoice_number) != entry.source:
            store.update_where(
                LEDGER_TABLE,
                {"invoice_number": entry.invoice_number},
                {"source": entry.source},
            )

    for entry in result.new_entries:
        write_ledger_entry(store, entry)

    message = (
        f"CSV processed successfully. {len(result.matched)} matched, "
        f"{len(result.new_entries)} new entries added."
    )
    if result.conflicts:
        message += f" {len(result.conflicts)} amount conflict(s) left for review."
    logger.info(message)

    return UploadSummary(
        matched=len(result.matched),
        unmatched=len(result.unmatched),
        conflicts=len(result.conflicts),
        message=message,
        details=result,
    )


def upload_bank_statement(store: RowStore, file_text: str, fail_fast: bool = True) -> UploadSummary:
    """
    Ingest a bank statement CSV and reconcile it into the ledger.

    Raises:
        ParseError: If the CSV is empty or malformed
        ValidationError: On missing columns or an invalid row
        StoreError: If persisting the reconciliation fails
    """
    rows = ingest(file_text, fail_fast=fail_fast)
    return apply_reconciliation(store, rows)


def transaction_ledger(store: RowStore) -> list[TransactionLedgerEntry]:
    """Ledger entries with their uploaded bank amount and date, newest first."""
    uploaded = {r["invoice_number"]: r for r in store.find(UPLOADED_TABLE)}

    entries = []
    for row in store.find(LEDGER_TABLE):
        bank = uploaded.get(row["invoice_number"])
        entries.append(TransactionLedgerEntry(
            **LedgerEntry.model_validate(row).model_dump(),
            bank_amount=bank["amount"] if bank else None,
            bank_date=bank["date"] if bank else None,
        ))

    entries.sort(key=lambda e: e.date, reverse=True)
    return entries
