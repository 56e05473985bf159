"""
Row store and blob store collaborators.

The pipeline only needs a handful of primitives from its storage:
- RowStore: find / insert_one / update_where / upsert_by_key over named tables
- BlobStore: download / upload / list / get_public_url by path

Two row stores are provided: MemoryStore for tests and one-off runs, and
SQLiteStore for a persistent local ledger. LocalBlobStore keeps receipt PDFs
on the filesystem.
"""

import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Optional, Protocol

from .config import EMAILS_TABLE, LEDGER_TABLE, UPLOADED_TABLE, logger
from .errors import DuplicateKeyError, StoreError
from .schemas import LedgerEntry


Row = dict[str, Any]

# Table -> primary key column
PRIMARY_KEYS: dict[str, str] = {
    LEDGER_TABLE: "invoice_number",
    UPLOADED_TABLE: "invoice_number",
    EMAILS_TABLE: "id",
}


class RowStore(Protocol):
    """Minimal persistent store used by the pipeline."""

    def find(self, table: str, filters: Optional[Row] = None) -> list[Row]: ...

    def insert_one(self, table: str, row: Row) -> Row: ...

    def update_where(self, table: str, filters: Row, patch: Row) -> int: ...

    def upsert_by_key(self, table: str, key: str, row: Row) -> Row: ...


class BlobStore(Protocol):
    """Minimal blob storage used for receipt PDFs."""

    def download(self, path: str) -> bytes: ...

    def upload(self, path: str, data: bytes, content_type: str = "application/pdf") -> str: ...

    def list(self, prefix: str = "") -> list[str]: ...

    def get_public_url(self, path: str) -> str: ...


def _primary_key(table: str) -> str:
    try:
        return PRIMARY_KEYS[table]
    except KeyError:
        raise StoreError(f"Unknown table: {table}") from None


def _matches(row: Row, filters: Optional[Row]) -> bool:
    return all(row.get(column) == value for column, value in (filters or {}).items())


# ============================================================================
# In-Memory Store
# ============================================================================

class MemoryStore:
    """
    Dict-backed RowStore.

    Each primitive holds a single lock, so concurrent writers for the same
    key are serialized.
    """

    def __init__(self) -> None:
        self._tables: dict[str, dict[str, Row]] = {table: {} for table in PRIMARY_KEYS}
        self._lock = threading.Lock()

    def _table(self, table: str) -> dict[str, Row]:
        _primary_key(table)
        return self._tables[table]

    def find(self, table: str, filters: Optional[Row] = None) -> list[Row]:
        with self._lock:
            return [dict(row) for row in self._table(table).values() if _matches(row, filters)]

    def insert_one(self, table: str, row: Row) -> Row:
        key = _primary_key(table)
        if not row.get(key):
            raise StoreError(f"Missing primary key '{key}' for table '{table}'")
        with self._lock:
            rows = self._table(table)
            if row[key] in rows:
                raise DuplicateKeyError(table, key, row[key])
            rows[row[key]] = dict(row)
            return dict(row)

    def update_where(self, table: str, filters: Row, patch: Row) -> int:
        with self._lock:
            count = 0
            for row in self._table(table).values():
                if _matches(row, filters):
                    row.update(patch)
                    count += 1
            return count

    def upsert_by_key(self, table: str, key: str, row: Row) -> Row:
        if key != _primary_key(table):
            raise StoreError(f"Table '{table}' cannot be upserted on '{key}'")
        if not row.get(key):
            raise StoreError(f"Missing primary key '{key}' for table '{table}'")
        with self._lock:
            rows = self._table(table)
            merged = {**rows.get(row[key], {}), **row}
            rows[row[key]] = merged
            return dict(merged)


# ============================================================================
# SQLite Store
# ============================================================================

class SQLiteStore:
    """
    SQLite-backed RowStore.

    Tables:
    - ledger: one row per invoice number
    - uploaded: bank statement rows already ingested
    - emails: source emails and their receipt locations
    """

    COLUMNS: dict[str, list[str]] = {
        LEDGER_TABLE: [
            "invoice_number", "date", "amount", "description",
            "category", "vendor", "source", "pdf_path",
        ],
        UPLOADED_TABLE: ["invoice_number", "date", "amount"],
        EMAILS_TABLE: [
            "id", "subject", "sender", "received_at", "has_attachment",
            "body", "invoice_number", "pdf_url", "pdf_path",
        ],
    }

    def __init__(self, db_path: Path | str):
        """
        Initialize the store, creating the database file and schema if needed.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection with row factory."""
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Context manager for database transactions."""
        conn = self._get_connection()
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StoreError(f"SQLite error: {e}") from e
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS ledger (
                    invoice_number TEXT PRIMARY KEY,
                    date TEXT NOT NULL,
                    amount REAL NOT NULL,
                    description TEXT,
                    category TEXT,
                    vendor TEXT,
                    source TEXT NOT NULL,
                    pdf_path TEXT
                )
            """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS uploaded (
                    invoice_number TEXT PRIMARY KEY,
                    date TEXT NOT NULL,
                    amount REAL NOT NULL
                )
            """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS emails (
                    id TEXT PRIMARY KEY,
                    subject TEXT,
                    sender TEXT NOT NULL,
                    received_at TEXT NOT NULL,
                    has_attachment INTEGER NOT NULL DEFAULT 0,
                    body TEXT,
                    invoice_number TEXT,
                    pdf_url TEXT,
                    pdf_path TEXT
                )
            """
            )

    def _columns(self, table: str, names) -> list[str]:
        _primary_key(table)
        allowed = self.COLUMNS[table]
        unknown = [name for name in names if name not in allowed]
        if unknown:
            raise StoreError(f"Unknown column(s) for '{table}': {', '.join(unknown)}")
        return list(names)

    def _where(self, table: str, filters: Optional[Row]) -> tuple[str, list[Any]]:
        if not filters:
            return "", []
        columns = self._columns(table, filters.keys())
        clause = " AND ".join(f"{column} = ?" for column in columns)
        return f" WHERE {clause}", [filters[column] for column in columns]

    def find(self, table: str, filters: Optional[Row] = None) -> list[Row]:
        _primary_key(table)
        where, params = self._where(table, filters)
        with self._transaction() as conn:
            cursor = conn.execute(f"SELECT * FROM {table}{where} ORDER BY rowid", params)
            return [dict(row) for row in cursor.fetchall()]

    def insert_one(self, table: str, row: Row) -> Row:
        key = _primary_key(table)
        columns = self._columns(table, row.keys())
        placeholders = ", ".join("?" for _ in columns)
        try:
            with self._transaction() as conn:
                conn.execute(
                    f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})",
                    [row[column] for column in columns],
                )
        except StoreError as e:
            cause = e.__cause__
            if isinstance(cause, sqlite3.IntegrityError) and "UNIQUE" in str(cause):
                raise DuplicateKeyError(table, key, row.get(key)) from cause
            raise
        return dict(row)

    def update_where(self, table: str, filters: Row, patch: Row) -> int:
        if not patch:
            return 0
        columns = self._columns(table, patch.keys())
        assignments = ", ".join(f"{column} = ?" for column in columns)
        where, params = self._where(table, filters)
        with self._transaction() as conn:
            cursor = conn.execute(
                f"UPDATE {table} SET {assignments}{where}",
                [patch[column] for column in columns] + params,
            )
            return cursor.rowcount

    def upsert_by_key(self, table: str, key: str, row: Row) -> Row:
        if key != _primary_key(table):
            raise StoreError(f"Table '{table}' cannot be upserted on '{key}'")
        columns = self._columns(table, row.keys())
        placeholders = ", ".join("?" for _ in columns)
        updates = ", ".join(f"{column} = excluded.{column}" for column in columns if column != key)
        conflict = f"DO UPDATE SET {updates}" if updates else "DO NOTHING"
        with self._transaction() as conn:
            conn.execute(
                f"""
                INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})
                ON CONFLICT({key}) {conflict}
                """,
                [row[column] for column in columns],
            )
            merged = conn.execute(
                f"SELECT * FROM {table} WHERE {key} = ?", [row[key]]
            ).fetchone()
        return dict(merged)


# ============================================================================
# Ledger Write Policy
# ============================================================================

def write_ledger_entry(store: RowStore, entry: LedgerEntry) -> Row:
    """
    Write a ledger entry keyed by invoice number.

    Inserts first; if the invoice number is already taken the existing row
    is replaced (last writer wins) and a warning is logged.
    """
    row = entry.to_row()
    try:
        return store.insert_one(LEDGER_TABLE, row)
    except DuplicateKeyError:
        logger.warning(
            f"Ledger already has invoice {entry.invoice_number}; "
            f"overwriting with {entry.source} entry (last writer wins)"
        )
        return store.upsert_by_key(LEDGER_TABLE, "invoice_number", row)


# ============================================================================
# Local Blob Store
# ============================================================================

class LocalBlobStore:
    """Filesystem BlobStore rooted at a directory."""

    def __init__(self, root: Path | str, public_base_url: str):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self.public_base_url = public_base_url.rstrip("/")

    def _resolve(self, path: str) -> Path:
        target = (self.root / path).resolve()
        if target != self.root and self.root not in target.parents:
            raise StoreError(f"Path escapes blob root: {path}")
        return target

    def download(self, path: str) -> bytes:
        try:
            return self._resolve(path).read_bytes()
        except OSError as e:
            raise StoreError(f"Failed to download '{path}': {e}") from e

    def upload(self, path: str, data: bytes, content_type: str = "application/pdf") -> str:
        target = self._resolve(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as e:
            raise StoreError(f"Failed to upload '{path}': {e}") from e
        logger.debug(f"Uploaded {len(data)} bytes ({content_type}) to {path}")
        return path

    def list(self, prefix: str = "") -> list[str]:
        base = self._resolve(prefix) if prefix else self.root
        if not base.is_dir():
            return []
        return sorted(p.name for p in base.iterdir() if p.is_file())

    def get_public_url(self, path: str) -> str:
        return f"{self.public_base_url}/{path.lstrip('/')}"
