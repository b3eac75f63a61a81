"""
SQLite-based state store implementation.

Tables:
- providers / participants: entity directory (soft-deletable)
- provider_emails: learned sender address → provider associations
- invoices / invoice_lines: extracted invoices and their support items
- claims / claim_lines: claims generated from approved invoices
- payments / aba_files: payment instructions and the bank files carrying them
- sequences: atomic per-scope counters (claim references, daily file numbers)
- audit_log: state changes, JSON payloads without personal data
"""

import json
import sqlite3
import threading
from collections.abc import Iterable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any


class InvoiceStatus(str, Enum):
    """Lifecycle of an invoice."""

    RECEIVED = "RECEIVED"
    PROCESSING = "PROCESSING"
    PENDING_REVIEW = "PENDING_REVIEW"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CLAIMED = "CLAIMED"
    PAID = "PAID"


class ClaimStatus(str, Enum):
    """Lifecycle of a claim."""

    PENDING = "PENDING"
    SUBMITTED = "SUBMITTED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    PARTIAL = "PARTIAL"
    PAID = "PAID"


class LodgementBatchStatus(str, Enum):
    """Lifecycle of a group of claims lodged together."""

    DRAFT = "DRAFT"
    SUBMITTED = "SUBMITTED"


class PaymentStatus(str, Enum):
    """Lifecycle of a payment instruction."""

    PENDING = "PENDING"
    IN_ABA_FILE = "IN_ABA_FILE"
    SUBMITTED_TO_BANK = "SUBMITTED_TO_BANK"
    CLEARED = "CLEARED"
    FAILED = "FAILED"
    REVERSED = "REVERSED"


def to_iso(moment: datetime) -> str:
    """Fixed-width UTC timestamp so stored values compare lexicographically."""
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def utc_now_iso() -> str:
    return to_iso(datetime.now(timezone.utc))


def _parse_date(value: str | None) -> date | None:
    return date.fromisoformat(value) if value else None


@dataclass
class ProviderRecord:
    """A provider in the directory."""

    id: int
    name: str
    abn: str
    email: str | None
    bank_bsb: str | None
    bank_account: str | None
    bank_account_name: str | None
    created_at: str
    deleted_at: str | None

    @property
    def has_bank_details(self) -> bool:
        return bool(self.bank_bsb and self.bank_account and self.bank_account_name)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "ProviderRecord":
        """Create from database row."""
        return cls(
            id=row["id"],
            name=row["name"],
            abn=row["abn"],
            email=row["email"],
            bank_bsb=row["bank_bsb"],
            bank_account=row["bank_account"],
            bank_account_name=row["bank_account_name"],
            created_at=row["created_at"],
            deleted_at=row["deleted_at"],
        )


@dataclass
class ParticipantRecord:
    """A participant (NDIS plan beneficiary)."""

    id: int
    ndis_number: str
    first_name: str
    last_name: str
    created_at: str
    deleted_at: str | None

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "ParticipantRecord":
        """Create from database row."""
        return cls(
            id=row["id"],
            ndis_number=row["ndis_number"],
            first_name=row["first_name"],
            last_name=row["last_name"],
            created_at=row["created_at"],
            deleted_at=row["deleted_at"],
        )


@dataclass
class ProviderEmailRecord:
    """Learned association between a sender address and a provider."""

    id: int
    provider_id: int
    email: str
    is_verified: bool
    created_at: str
    updated_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "ProviderEmailRecord":
        """Create from database row."""
        return cls(
            id=row["id"],
            provider_id=row["provider_id"],
            email=row["email"],
            is_verified=bool(row["is_verified"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass
class InvoiceRecord:
    """Record of an invoice."""

    id: int
    participant_id: int | None
    provider_id: int | None
    invoice_number: str | None
    invoice_date: date | None
    received_at: str
    subtotal_cents: int | None
    gst_cents: int | None
    total_cents: int | None
    status: InvoiceStatus
    source_email: str | None
    match_method: str | None
    match_confidence: float | None
    ai_confidence: float | None
    ai_raw_data: str | None
    rejection_reason: str | None
    created_at: str
    updated_at: str
    deleted_at: str | None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "InvoiceRecord":
        """Create from database row."""
        return cls(
            id=row["id"],
            participant_id=row["participant_id"],
            provider_id=row["provider_id"],
            invoice_number=row["invoice_number"],
            invoice_date=_parse_date(row["invoice_date"]),
            received_at=row["received_at"],
            subtotal_cents=row["subtotal_cents"],
            gst_cents=row["gst_cents"],
            total_cents=row["total_cents"],
            status=InvoiceStatus(row["status"]),
            source_email=row["source_email"],
            match_method=row["match_method"],
            match_confidence=row["match_confidence"],
            ai_confidence=row["ai_confidence"],
            ai_raw_data=row["ai_raw_data"],
            rejection_reason=row["rejection_reason"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            deleted_at=row["deleted_at"],
        )


@dataclass
class InvoiceLineRecord:
    """A support item line on an invoice."""

    id: int
    invoice_id: int
    support_item_code: str
    support_item_name: str
    category_code: str
    service_date: date
    quantity: Decimal
    unit_price_cents: int
    total_cents: int
    gst_cents: int

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "InvoiceLineRecord":
        """Create from database row."""
        return cls(
            id=row["id"],
            invoice_id=row["invoice_id"],
            support_item_code=row["support_item_code"],
            support_item_name=row["support_item_name"],
            category_code=row["category_code"],
            service_date=date.fromisoformat(row["service_date"]),
            quantity=Decimal(row["quantity"]),
            unit_price_cents=row["unit_price_cents"],
            total_cents=row["total_cents"],
            gst_cents=row["gst_cents"],
        )


@dataclass
class ClaimRecord:
    """Record of a claim."""

    id: int
    claim_reference: str
    invoice_id: int
    participant_id: int | None
    claimed_cents: int
    approved_cents: int
    status: ClaimStatus
    created_at: str
    updated_at: str
    batch_id: int | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "ClaimRecord":
        """Create from database row."""
        return cls(
            id=row["id"],
            claim_reference=row["claim_reference"],
            invoice_id=row["invoice_id"],
            participant_id=row["participant_id"],
            claimed_cents=row["claimed_cents"],
            approved_cents=row["approved_cents"],
            status=ClaimStatus(row["status"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            batch_id=row["batch_id"],
        )


@dataclass
class ClaimLineRecord:
    """A claim line copied from an invoice line."""

    id: int
    claim_id: int
    invoice_line_id: int
    source_invoice_id: int
    support_item_code: str
    support_item_name: str
    category_code: str
    service_date: date
    quantity: Decimal
    unit_price_cents: int
    total_cents: int
    gst_cents: int
    status: ClaimStatus = ClaimStatus.PENDING
    approved_cents: int = 0
    outcome_notes: str | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "ClaimLineRecord":
        """Create from database row."""
        return cls(
            id=row["id"],
            claim_id=row["claim_id"],
            invoice_line_id=row["invoice_line_id"],
            source_invoice_id=row["source_invoice_id"],
            support_item_code=row["support_item_code"],
            support_item_name=row["support_item_name"],
            category_code=row["category_code"],
            service_date=date.fromisoformat(row["service_date"]),
            quantity=Decimal(row["quantity"]),
            unit_price_cents=row["unit_price_cents"],
            total_cents=row["total_cents"],
            gst_cents=row["gst_cents"],
            status=ClaimStatus(row["status"]),
            approved_cents=row["approved_cents"],
            outcome_notes=row["outcome_notes"],
        )


@dataclass
class LodgementBatchRecord:
    """Claims grouped for lodgement with the agency in one submission."""

    id: int
    batch_number: str
    status: LodgementBatchStatus
    claim_count: int
    total_cents: int
    notes: str | None
    agency_batch_id: str | None
    created_by: str
    created_at: str
    submitted_by: str | None
    submitted_at: str | None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "LodgementBatchRecord":
        """Create from database row."""
        return cls(
            id=row["id"],
            batch_number=row["batch_number"],
            status=LodgementBatchStatus(row["status"]),
            claim_count=row["claim_count"],
            total_cents=row["total_cents"],
            notes=row["notes"],
            agency_batch_id=row["agency_batch_id"],
            created_by=row["created_by"],
            created_at=row["created_at"],
            submitted_by=row["submitted_by"],
            submitted_at=row["submitted_at"],
        )


@dataclass
class PaymentRecord:
    """Record of a payment instruction."""

    id: int
    claim_id: int
    aba_file_id: int | None
    amount_cents: int
    bsb: str
    account_number: str
    account_name: str
    reference: str | None
    status: PaymentStatus
    processed_at: str | None
    created_at: str
    updated_at: str
    # Joined from claims for the lodgement reference fallback
    claim_reference: str | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "PaymentRecord":
        """Create from database row."""
        keys = row.keys()
        return cls(
            id=row["id"],
            claim_id=row["claim_id"],
            aba_file_id=row["aba_file_id"],
            amount_cents=row["amount_cents"],
            bsb=row["bsb"],
            account_number=row["account_number"],
            account_name=row["account_name"],
            reference=row["reference"],
            status=PaymentStatus(row["status"]),
            processed_at=row["processed_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            claim_reference=row["claim_reference"] if "claim_reference" in keys else None,
        )


@dataclass
class AbaFileRecord:
    """Descriptor of a generated ABA file."""

    id: int
    filename: str
    storage_key: str
    total_cents: int
    payment_count: int
    bank_reference: str | None
    submitted_at: str | None
    cleared_at: str | None
    created_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "AbaFileRecord":
        """Create from database row."""
        return cls(
            id=row["id"],
            filename=row["filename"],
            storage_key=row["storage_key"],
            total_cents=row["total_cents"],
            payment_count=row["payment_count"],
            bank_reference=row["bank_reference"],
            submitted_at=row["submitted_at"],
            cleared_at=row["cleared_at"],
            created_at=row["created_at"],
        )


@dataclass
class AuditRecord:
    """An audit log entry."""

    id: int
    user_id: str
    action: str
    resource: str
    resource_id: str
    after: dict[str, Any]
    created_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "AuditRecord":
        """Create from database row."""
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            action=row["action"],
            resource=row["resource"],
            resource_id=row["resource_id"],
            after=json.loads(row["after_json"]) if row["after_json"] else {},
            created_at=row["created_at"],
        )


def _placeholders(values: Sequence[Any]) -> str:
    return ", ".join("?" for _ in values)


class StateStore:
    """
    SQLite-based state store for the pipeline.

    Every public method runs in its own transaction unless called inside
    ``atomic()``, in which case all calls on the same thread share one
    ``BEGIN IMMEDIATE`` transaction and commit or roll back together.
    """

    SCHEMA_VERSION = 1

    def __init__(self, db_path: Path | str):
        """
        Initialize state store.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._local = threading.local()
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection with row factory."""
        conn = sqlite3.connect(str(self.db_path), timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Context manager for database transactions."""
        active = getattr(self._local, "conn", None)
        if active is not None:
            yield active
            return

        conn = self._get_connection()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def atomic(self) -> Iterator[None]:
        """
        Run several store calls as one write transaction.

        BEGIN IMMEDIATE takes the database write lock up front, so
        read-then-write sequences inside the block cannot interleave with
        another writer. Nested calls join the outer transaction.
        """
        if getattr(self._local, "conn", None) is not None:
            yield
            return

        conn = self._get_connection()
        conn.execute("BEGIN IMMEDIATE")
        self._local.conn = conn
        try:
            yield
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            self._local.conn = None
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS providers (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    abn TEXT NOT NULL,
                    email TEXT,
                    bank_bsb TEXT,
                    bank_account TEXT,
                    bank_account_name TEXT,
                    created_at TEXT NOT NULL,
                    deleted_at TEXT
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS participants (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    ndis_number TEXT NOT NULL,
                    first_name TEXT NOT NULL,
                    last_name TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    deleted_at TEXT
                )
            """
            )

            # One address belongs to at most one provider
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS provider_emails (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    provider_id INTEGER NOT NULL,
                    email TEXT NOT NULL UNIQUE,
                    is_verified INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    FOREIGN KEY (provider_id) REFERENCES providers(id) ON DELETE CASCADE
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS invoices (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    participant_id INTEGER,
                    provider_id INTEGER,
                    invoice_number TEXT,
                    invoice_date TEXT,
                    received_at TEXT NOT NULL,
                    subtotal_cents INTEGER,
                    gst_cents INTEGER,
                    total_cents INTEGER,
                    status TEXT NOT NULL,
                    source_email TEXT,
                    match_method TEXT,
                    match_confidence REAL,
                    ai_confidence REAL,
                    ai_raw_data TEXT,  -- JSON
                    approved_by TEXT,
                    approved_at TEXT,
                    rejected_by TEXT,
                    rejected_at TEXT,
                    rejection_reason TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    deleted_at TEXT,
                    FOREIGN KEY (participant_id) REFERENCES participants(id),
                    FOREIGN KEY (provider_id) REFERENCES providers(id)
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS invoice_lines (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    invoice_id INTEGER NOT NULL,
                    support_item_code TEXT NOT NULL,
                    support_item_name TEXT NOT NULL,
                    category_code TEXT NOT NULL,
                    service_date TEXT NOT NULL,
                    quantity TEXT NOT NULL,  -- Decimal as text
                    unit_price_cents INTEGER NOT NULL,
                    total_cents INTEGER NOT NULL,
                    gst_cents INTEGER NOT NULL DEFAULT 0,
                    FOREIGN KEY (invoice_id) REFERENCES invoices(id)
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS claim_batches (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    batch_number TEXT NOT NULL UNIQUE,
                    status TEXT NOT NULL,
                    claim_count INTEGER NOT NULL,
                    total_cents INTEGER NOT NULL,
                    notes TEXT,
                    agency_batch_id TEXT,
                    created_by TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    submitted_by TEXT,
                    submitted_at TEXT
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS claims (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    claim_reference TEXT NOT NULL UNIQUE,
                    invoice_id INTEGER NOT NULL,
                    participant_id INTEGER,
                    claimed_cents INTEGER NOT NULL,
                    approved_cents INTEGER NOT NULL DEFAULT 0,
                    status TEXT NOT NULL,
                    batch_id INTEGER,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    FOREIGN KEY (invoice_id) REFERENCES invoices(id),
                    FOREIGN KEY (batch_id) REFERENCES claim_batches(id)
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS claim_lines (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    claim_id INTEGER NOT NULL,
                    invoice_line_id INTEGER NOT NULL,
                    source_invoice_id INTEGER NOT NULL,
                    support_item_code TEXT NOT NULL,
                    support_item_name TEXT NOT NULL,
                    category_code TEXT NOT NULL,
                    service_date TEXT NOT NULL,
                    quantity TEXT NOT NULL,
                    unit_price_cents INTEGER NOT NULL,
                    total_cents INTEGER NOT NULL,
                    gst_cents INTEGER NOT NULL DEFAULT 0,
                    status TEXT NOT NULL DEFAULT 'PENDING',
                    approved_cents INTEGER NOT NULL DEFAULT 0,
                    outcome_notes TEXT,
                    FOREIGN KEY (claim_id) REFERENCES claims(id),
                    FOREIGN KEY (invoice_line_id) REFERENCES invoice_lines(id),
                    FOREIGN KEY (source_invoice_id) REFERENCES invoices(id)
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS aba_files (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    filename TEXT NOT NULL UNIQUE,
                    storage_key TEXT NOT NULL,
                    total_cents INTEGER NOT NULL,
                    payment_count INTEGER NOT NULL,
                    bank_reference TEXT,
                    submitted_at TEXT,
                    cleared_at TEXT,
                    created_at TEXT NOT NULL
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS payments (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    claim_id INTEGER NOT NULL,
                    aba_file_id INTEGER,
                    amount_cents INTEGER NOT NULL,
                    bsb TEXT NOT NULL,
                    account_number TEXT NOT NULL,
                    account_name TEXT NOT NULL,
                    reference TEXT,
                    status TEXT NOT NULL,
                    processed_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    FOREIGN KEY (claim_id) REFERENCES claims(id),
                    FOREIGN KEY (aba_file_id) REFERENCES aba_files(id)
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS sequences (
                    scope TEXT PRIMARY KEY,
                    value INTEGER NOT NULL
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS audit_log (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    action TEXT NOT NULL,
                    resource TEXT NOT NULL,
                    resource_id TEXT NOT NULL,
                    after_json TEXT,  -- JSON, never personal data
                    created_at TEXT NOT NULL
                )
            """
            )

            # Create indexes
            conn.execute("CREATE INDEX IF NOT EXISTS idx_providers_abn ON providers(abn)")
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_participants_ndis ON participants(ndis_number)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_invoices_source_email ON invoices(source_email)"
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_invoices_status ON invoices(status)")
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_invoice_lines_invoice ON invoice_lines(invoice_id)"
            )
            # Databases created before claim outcomes and lodgement batches
            self._add_missing_columns(
                conn,
                "claim_lines",
                {
                    "status": "TEXT NOT NULL DEFAULT 'PENDING'",
                    "approved_cents": "INTEGER NOT NULL DEFAULT 0",
                    "outcome_notes": "TEXT",
                },
            )
            self._add_missing_columns(
                conn, "claims", {"batch_id": "INTEGER REFERENCES claim_batches(id)"}
            )

            conn.execute("CREATE INDEX IF NOT EXISTS idx_claim_lines_claim ON claim_lines(claim_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_claims_batch ON claims(batch_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_payments_status ON payments(status)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_payments_aba_file ON payments(aba_file_id)")

            conn.execute(
                "INSERT OR REPLACE INTO schema_version (version) VALUES (?)", (self.SCHEMA_VERSION,)
            )

    @staticmethod
    def _add_missing_columns(
        conn: sqlite3.Connection, table: str, columns: dict[str, str]
    ) -> None:
        existing = {row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}
        for name, definition in columns.items():
            if name not in existing:
                conn.execute(f"ALTER TABLE {table} ADD COLUMN {name} {definition}")

    # Sequence methods

    def next_value(self, scope: str, floor: int = 0) -> int:
        """
        Allocate the next value of a per-scope counter.

        The first allocation in a scope starts at ``floor + 1``; ``floor``
        is also respected later so a counter never hands out a value at or
        below existing data.
        """
        with self._transaction() as conn:
            row = conn.execute("SELECT value FROM sequences WHERE scope = ?", (scope,)).fetchone()
            current = row["value"] if row else 0
            value = max(current, floor) + 1
            conn.execute(
                """
                INSERT INTO sequences (scope, value) VALUES (?, ?)
                ON CONFLICT(scope) DO UPDATE SET value = excluded.value
            """,
                (scope, value),
            )
            return value

    # Directory methods

    def add_provider(
        self,
        name: str,
        abn: str,
        email: str | None = None,
        bank_bsb: str | None = None,
        bank_account: str | None = None,
        bank_account_name: str | None = None,
    ) -> int:
        """Add a provider. Returns the provider ID."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO providers
                (name, abn, email, bank_bsb, bank_account, bank_account_name, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
                (name, abn, email, bank_bsb, bank_account, bank_account_name, utc_now_iso()),
            )
            return cursor.lastrowid or 0

    def add_participant(self, ndis_number: str, first_name: str, last_name: str) -> int:
        """Add a participant. Returns the participant ID."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO participants (ndis_number, first_name, last_name, created_at)
                VALUES (?, ?, ?, ?)
            """,
                (ndis_number, first_name, last_name, utc_now_iso()),
            )
            return cursor.lastrowid or 0

    def soft_delete_provider(self, provider_id: int) -> bool:
        """Mark a provider deleted. Returns True if a row changed."""
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE providers SET deleted_at = ? WHERE id = ? AND deleted_at IS NULL",
                (utc_now_iso(), provider_id),
            )
            return cursor.rowcount > 0

    def soft_delete_participant(self, participant_id: int) -> bool:
        """Mark a participant deleted. Returns True if a row changed."""
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE participants SET deleted_at = ? WHERE id = ? AND deleted_at IS NULL",
                (utc_now_iso(), participant_id),
            )
            return cursor.rowcount > 0

    def get_provider(self, provider_id: int) -> ProviderRecord | None:
        """Get a live (not deleted) provider by ID."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM providers WHERE id = ? AND deleted_at IS NULL", (provider_id,)
            ).fetchone()
            return ProviderRecord.from_row(row) if row else None

    def get_participant(self, participant_id: int) -> ParticipantRecord | None:
        """Get a live (not deleted) participant by ID."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM participants WHERE id = ? AND deleted_at IS NULL",
                (participant_id,),
            ).fetchone()
            return ParticipantRecord.from_row(row) if row else None

    def find_provider_by_abn(self, abn_values: Sequence[str]) -> ProviderRecord | None:
        """Find a live provider whose stored ABN equals any of the given forms."""
        if not abn_values:
            return None
        with self._transaction() as conn:
            row = conn.execute(
                f"""
                SELECT * FROM providers
                WHERE deleted_at IS NULL AND abn IN ({_placeholders(abn_values)})
                ORDER BY id LIMIT 1
            """,
                tuple(abn_values),
            ).fetchone()
            return ProviderRecord.from_row(row) if row else None

    def find_participant_by_ndis_number(self, ndis_number: str) -> ParticipantRecord | None:
        """Find a live participant by exact NDIS number."""
        with self._transaction() as conn:
            row = conn.execute(
                """
                SELECT * FROM participants
                WHERE deleted_at IS NULL AND ndis_number = ?
                ORDER BY id LIMIT 1
            """,
                (ndis_number,),
            ).fetchone()
            return ParticipantRecord.from_row(row) if row else None

    # Provider email methods

    def get_provider_email(self, email: str) -> ProviderEmailRecord | None:
        """Get the association for an address (stored lower-cased)."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM provider_emails WHERE email = ?", (email.lower(),)
            ).fetchone()
            return ProviderEmailRecord.from_row(row) if row else None

    def add_provider_email(self, provider_id: int, email: str, verified: bool = False) -> int:
        """Create an association. Returns its ID."""
        now = utc_now_iso()
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO provider_emails (provider_id, email, is_verified, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
            """,
                (provider_id, email.lower(), int(verified), now, now),
            )
            return cursor.lastrowid or 0

    def set_provider_email_verified(self, association_id: int) -> bool:
        """Promote an association to verified. Returns True if it changed."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE provider_emails SET is_verified = 1, updated_at = ?
                WHERE id = ? AND is_verified = 0
            """,
                (utc_now_iso(), association_id),
            )
            return cursor.rowcount > 0

    def provider_ids_for_email_domain(self, domain: str) -> list[int]:
        """Distinct provider IDs owning at least one address at ``domain``."""
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT DISTINCT provider_id FROM provider_emails
                WHERE substr(email, instr(email, '@') + 1) = ?
                ORDER BY provider_id
            """,
                (domain.lower(),),
            ).fetchall()
            return [row["provider_id"] for row in rows]

    # Invoice methods

    def create_invoice(
        self,
        *,
        status: InvoiceStatus = InvoiceStatus.RECEIVED,
        received_at: datetime | None = None,
        invoice_number: str | None = None,
        invoice_date: date | None = None,
        subtotal_cents: int | None = None,
        gst_cents: int | None = None,
        total_cents: int | None = None,
        provider_id: int | None = None,
        participant_id: int | None = None,
        source_email: str | None = None,
        match_method: str | None = None,
        match_confidence: float | None = None,
        ai_confidence: float | None = None,
        ai_raw_data: dict[str, Any] | None = None,
        lines: Iterable[dict[str, Any]] = (),
    ) -> int:
        """Create an invoice with its lines. Returns the invoice ID."""
        now = utc_now_iso()
        received = to_iso(received_at) if received_at else now

        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO invoices
                (participant_id, provider_id, invoice_number, invoice_date, received_at,
                 subtotal_cents, gst_cents, total_cents, status, source_email,
                 match_method, match_confidence, ai_confidence, ai_raw_data,
                 created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    participant_id,
                    provider_id,
                    invoice_number,
                    invoice_date.isoformat() if invoice_date else None,
                    received,
                    subtotal_cents,
                    gst_cents,
                    total_cents,
                    status.value,
                    source_email,
                    match_method,
                    match_confidence,
                    ai_confidence,
                    json.dumps(ai_raw_data) if ai_raw_data is not None else None,
                    now,
                    now,
                ),
            )
            invoice_id = cursor.lastrowid or 0

            for line in lines:
                conn.execute(
                    """
                    INSERT INTO invoice_lines
                    (invoice_id, support_item_code, support_item_name, category_code,
                     service_date, quantity, unit_price_cents, total_cents, gst_cents)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                    (
                        invoice_id,
                        line["support_item_code"],
                        line["support_item_name"],
                        line["category_code"],
                        line["service_date"].isoformat(),
                        str(line.get("quantity", Decimal("1"))),
                        line["unit_price_cents"],
                        line["total_cents"],
                        line.get("gst_cents", 0),
                    ),
                )

            return invoice_id

    def get_invoice(self, invoice_id: int) -> InvoiceRecord | None:
        """Get a live (not deleted) invoice by ID."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM invoices WHERE id = ? AND deleted_at IS NULL", (invoice_id,)
            ).fetchone()
            return InvoiceRecord.from_row(row) if row else None

    def get_invoices(self, invoice_ids: Sequence[int]) -> list[InvoiceRecord]:
        """Get live invoices for the given IDs (missing IDs are skipped)."""
        if not invoice_ids:
            return []
        with self._transaction() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM invoices
                WHERE deleted_at IS NULL AND id IN ({_placeholders(invoice_ids)})
                ORDER BY id
            """,
                tuple(invoice_ids),
            ).fetchall()
            return [InvoiceRecord.from_row(row) for row in rows]

    def get_invoice_lines(self, invoice_id: int) -> list[InvoiceLineRecord]:
        """Get the lines of an invoice in insertion order."""
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM invoice_lines WHERE invoice_id = ? ORDER BY id", (invoice_id,)
            ).fetchall()
            return [InvoiceLineRecord.from_row(row) for row in rows]

    def soft_delete_invoice(self, invoice_id: int) -> bool:
        """Mark an invoice deleted. Returns True if a row changed."""
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE invoices SET deleted_at = ? WHERE id = ? AND deleted_at IS NULL",
                (utc_now_iso(), invoice_id),
            )
            return cursor.rowcount > 0

    def recent_matched_invoices(
        self, source_email: str, since: datetime
    ) -> list[InvoiceRecord]:
        """
        Invoices from ``source_email`` received since ``since`` that were
        previously matched by any method.
        """
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM invoices
                WHERE deleted_at IS NULL
                AND lower(source_email) = lower(?)
                AND match_method IS NOT NULL
                AND received_at >= ?
                ORDER BY received_at
            """,
                (source_email, to_iso(since)),
            ).fetchall()
            return [InvoiceRecord.from_row(row) for row in rows]

    def approve_invoice(
        self,
        invoice_id: int,
        provider_id: int,
        participant_id: int,
        approved_by: str,
        expected_statuses: Sequence[InvoiceStatus],
    ) -> bool:
        """
        Record the reviewer's decision and move the invoice to APPROVED.

        Only succeeds while the invoice is in one of ``expected_statuses``.
        """
        now = utc_now_iso()
        statuses = [s.value for s in expected_statuses]
        with self._transaction() as conn:
            cursor = conn.execute(
                f"""
                UPDATE invoices
                SET provider_id = ?, participant_id = ?, status = ?,
                    approved_by = ?, approved_at = ?, updated_at = ?
                WHERE id = ? AND deleted_at IS NULL AND status IN ({_placeholders(statuses)})
            """,
                (
                    provider_id,
                    participant_id,
                    InvoiceStatus.APPROVED.value,
                    approved_by,
                    now,
                    now,
                    invoice_id,
                    *statuses,
                ),
            )
            return cursor.rowcount > 0

    def reject_invoice(
        self,
        invoice_id: int,
        reason: str,
        rejected_by: str,
        expected_statuses: Sequence[InvoiceStatus],
    ) -> bool:
        """Move an invoice to REJECTED while it is in ``expected_statuses``."""
        now = utc_now_iso()
        statuses = [s.value for s in expected_statuses]
        with self._transaction() as conn:
            cursor = conn.execute(
                f"""
                UPDATE invoices
                SET status = ?, rejection_reason = ?, rejected_by = ?, rejected_at = ?,
                    updated_at = ?
                WHERE id = ? AND deleted_at IS NULL AND status IN ({_placeholders(statuses)})
            """,
                (InvoiceStatus.REJECTED.value, reason, rejected_by, now, now, invoice_id, *statuses),
            )
            return cursor.rowcount > 0

    def update_invoice_status(
        self,
        invoice_ids: Sequence[int],
        status: InvoiceStatus,
        expected: InvoiceStatus | None = None,
    ) -> int:
        """
        Set the status of several invoices. Returns the number updated.

        With ``expected``, only invoices currently in that status change.
        """
        if not invoice_ids:
            return 0
        query = f"UPDATE invoices SET status = ?, updated_at = ? WHERE id IN ({_placeholders(invoice_ids)})"
        params: list[Any] = [status.value, utc_now_iso(), *invoice_ids]
        if expected is not None:
            query += " AND status = ?"
            params.append(expected.value)
        with self._transaction() as conn:
            return conn.execute(query, params).rowcount

    # Claim methods

    def max_claim_sequence(self, reference_prefix: str) -> int:
        """Highest NNNN among existing references starting with the prefix."""
        with self._transaction() as conn:
            row = conn.execute(
                """
                SELECT claim_reference FROM claims
                WHERE substr(claim_reference, 1, ?) = ?
                ORDER BY claim_reference DESC LIMIT 1
            """,
                (len(reference_prefix), reference_prefix),
            ).fetchone()
            if not row:
                return 0
            return int(row["claim_reference"][len(reference_prefix) :])

    def create_claim(
        self,
        claim_reference: str,
        invoice_id: int,
        participant_id: int | None,
        claimed_cents: int,
        lines: Sequence[InvoiceLineRecord],
    ) -> int:
        """Create a claim and copy the given invoice lines onto it."""
        now = utc_now_iso()
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO claims
                (claim_reference, invoice_id, participant_id, claimed_cents, status,
                 created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    claim_reference,
                    invoice_id,
                    participant_id,
                    claimed_cents,
                    ClaimStatus.PENDING.value,
                    now,
                    now,
                ),
            )
            claim_id = cursor.lastrowid or 0

            for line in lines:
                conn.execute(
                    """
                    INSERT INTO claim_lines
                    (claim_id, invoice_line_id, source_invoice_id, support_item_code,
                     support_item_name, category_code, service_date, quantity,
                     unit_price_cents, total_cents, gst_cents)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                    (
                        claim_id,
                        line.id,
                        line.invoice_id,
                        line.support_item_code,
                        line.support_item_name,
                        line.category_code,
                        line.service_date.isoformat(),
                        str(line.quantity),
                        line.unit_price_cents,
                        line.total_cents,
                        line.gst_cents,
                    ),
                )

            return claim_id

    def get_claim(self, claim_id: int) -> ClaimRecord | None:
        """Get a claim by ID."""
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM claims WHERE id = ?", (claim_id,)).fetchone()
            return ClaimRecord.from_row(row) if row else None

    def get_claim_by_reference(self, claim_reference: str) -> ClaimRecord | None:
        """Get a claim by its reference."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM claims WHERE claim_reference = ?", (claim_reference,)
            ).fetchone()
            return ClaimRecord.from_row(row) if row else None

    def get_claims(self, claim_ids: Sequence[int]) -> list[ClaimRecord]:
        """Get claims for the given IDs."""
        if not claim_ids:
            return []
        with self._transaction() as conn:
            rows = conn.execute(
                f"SELECT * FROM claims WHERE id IN ({_placeholders(claim_ids)}) ORDER BY id",
                tuple(claim_ids),
            ).fetchall()
            return [ClaimRecord.from_row(row) for row in rows]

    def get_claim_lines(self, claim_id: int) -> list[ClaimLineRecord]:
        """Get the lines of a claim in insertion order."""
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM claim_lines WHERE claim_id = ? ORDER BY id", (claim_id,)
            ).fetchall()
            return [ClaimLineRecord.from_row(row) for row in rows]

    def record_claim_outcome(
        self,
        claim_id: int,
        status: ClaimStatus,
        approved_cents: int,
        expected: ClaimStatus = ClaimStatus.SUBMITTED,
    ) -> bool:
        """Store the assessed outcome of a claim still in ``expected``."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE claims SET status = ?, approved_cents = ?, updated_at = ?
                WHERE id = ? AND status = ?
            """,
                (status.value, approved_cents, utc_now_iso(), claim_id, expected.value),
            )
            return cursor.rowcount > 0

    def update_claim_status(
        self,
        claim_ids: Sequence[int],
        status: ClaimStatus,
        expected: ClaimStatus | None = None,
    ) -> int:
        """
        Set the status of several claims. Returns the number updated.

        With ``expected``, only claims currently in that status change.
        """
        if not claim_ids:
            return 0
        query = f"UPDATE claims SET status = ?, updated_at = ? WHERE id IN ({_placeholders(claim_ids)})"
        params: list[Any] = [status.value, utc_now_iso(), *claim_ids]
        if expected is not None:
            query += " AND status = ?"
            params.append(expected.value)
        with self._transaction() as conn:
            return conn.execute(query, params).rowcount

    def record_claim_line_outcome(
        self,
        claim_id: int,
        line_id: int,
        status: ClaimStatus,
        approved_cents: int,
        notes: str | None = None,
    ) -> bool:
        """Store the assessed outcome of one line. False if the line is not on the claim."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE claim_lines SET status = ?, approved_cents = ?, outcome_notes = ?
                WHERE id = ? AND claim_id = ?
            """,
                (status.value, approved_cents, notes, line_id, claim_id),
            )
            return cursor.rowcount > 0

    # Lodgement batch methods

    def max_batch_sequence(self, number_prefix: str) -> int:
        """Highest NNNN among existing batch numbers starting with the prefix."""
        with self._transaction() as conn:
            row = conn.execute(
                """
                SELECT batch_number FROM claim_batches
                WHERE substr(batch_number, 1, ?) = ?
                ORDER BY batch_number DESC LIMIT 1
            """,
                (len(number_prefix), number_prefix),
            ).fetchone()
            if not row:
                return 0
            return int(row["batch_number"][len(number_prefix) :])

    def create_lodgement_batch(
        self,
        batch_number: str,
        claim_count: int,
        total_cents: int,
        created_by: str,
        notes: str | None = None,
    ) -> int:
        """Insert a DRAFT batch. Claims are attached with ``assign_claims_to_batch``."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO claim_batches
                (batch_number, status, claim_count, total_cents, notes, created_by, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    batch_number,
                    LodgementBatchStatus.DRAFT.value,
                    claim_count,
                    total_cents,
                    notes,
                    created_by,
                    utc_now_iso(),
                ),
            )
            return cursor.lastrowid or 0

    def get_lodgement_batch(self, batch_id: int) -> LodgementBatchRecord | None:
        """Get a lodgement batch by ID."""
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM claim_batches WHERE id = ?", (batch_id,)).fetchone()
            return LodgementBatchRecord.from_row(row) if row else None

    def assign_claims_to_batch(self, claim_ids: Sequence[int], batch_id: int) -> int:
        """
        Attach PENDING claims that are not in any batch yet.

        Returns the number attached; claims in another status or batch are
        left alone.
        """
        if not claim_ids:
            return 0
        with self._transaction() as conn:
            return conn.execute(
                f"""
                UPDATE claims SET batch_id = ?, updated_at = ?
                WHERE id IN ({_placeholders(claim_ids)})
                  AND status = ? AND batch_id IS NULL
            """,
                (batch_id, utc_now_iso(), *claim_ids, ClaimStatus.PENDING.value),
            ).rowcount

    def get_batch_claims(
        self, batch_id: int, status: ClaimStatus | None = None
    ) -> list[ClaimRecord]:
        """Claims attached to a batch, optionally only those in ``status``."""
        query = "SELECT * FROM claims WHERE batch_id = ?"
        params: list[Any] = [batch_id]
        if status is not None:
            query += " AND status = ?"
            params.append(status.value)
        with self._transaction() as conn:
            rows = conn.execute(query + " ORDER BY id", params).fetchall()
            return [ClaimRecord.from_row(row) for row in rows]

    def mark_lodgement_batch_submitted(
        self,
        batch_id: int,
        submitted_by: str,
        agency_batch_id: str | None = None,
        notes: str | None = None,
    ) -> bool:
        """DRAFT -> SUBMITTED. False if the batch is not a draft."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE claim_batches
                SET status = ?, submitted_by = ?, submitted_at = ?, agency_batch_id = ?,
                    notes = COALESCE(?, notes)
                WHERE id = ? AND status = ?
            """,
                (
                    LodgementBatchStatus.SUBMITTED.value,
                    submitted_by,
                    utc_now_iso(),
                    agency_batch_id,
                    notes,
                    batch_id,
                    LodgementBatchStatus.DRAFT.value,
                ),
            )
            return cursor.rowcount > 0

    # Payment methods

    def create_payment(
        self,
        claim_id: int,
        amount_cents: int,
        bsb: str,
        account_number: str,
        account_name: str,
        reference: str | None = None,
    ) -> int:
        """Create a PENDING payment. Returns the payment ID."""
        now = utc_now_iso()
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO payments
                (claim_id, amount_cents, bsb, account_number, account_name, reference,
                 status, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    claim_id,
                    amount_cents,
                    bsb,
                    account_number,
                    account_name,
                    reference,
                    PaymentStatus.PENDING.value,
                    now,
                    now,
                ),
            )
            return cursor.lastrowid or 0

    def get_payment(self, payment_id: int) -> PaymentRecord | None:
        """Get a payment by ID."""
        with self._transaction() as conn:
            row = conn.execute(
                """
                SELECT p.*, c.claim_reference FROM payments p
                JOIN claims c ON c.id = p.claim_id
                WHERE p.id = ?
            """,
                (payment_id,),
            ).fetchone()
            return PaymentRecord.from_row(row) if row else None

    def get_payments(
        self, payment_ids: Sequence[int], status: PaymentStatus | None = None
    ) -> list[PaymentRecord]:
        """Get payments (with their claim reference), optionally by status."""
        if not payment_ids:
            return []
        query = f"""
            SELECT p.*, c.claim_reference FROM payments p
            JOIN claims c ON c.id = p.claim_id
            WHERE p.id IN ({_placeholders(payment_ids)})
        """
        params: list[Any] = list(payment_ids)
        if status is not None:
            query += " AND p.status = ?"
            params.append(status.value)
        query += " ORDER BY p.id"
        with self._transaction() as conn:
            rows = conn.execute(query, params).fetchall()
            return [PaymentRecord.from_row(row) for row in rows]

    def get_payments_for_file(self, aba_file_id: int) -> list[PaymentRecord]:
        """Get the payments included in an ABA file."""
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT p.*, c.claim_reference FROM payments p
                JOIN claims c ON c.id = p.claim_id
                WHERE p.aba_file_id = ?
                ORDER BY p.id
            """,
                (aba_file_id,),
            ).fetchall()
            return [PaymentRecord.from_row(row) for row in rows]

    def payment_exists_for_claim(self, claim_id: int) -> bool:
        """Check if any payment exists for a claim."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT 1 FROM payments WHERE claim_id = ? LIMIT 1", (claim_id,)
            ).fetchone()
            return row is not None

    def include_payments_in_file(self, payment_ids: Sequence[int], aba_file_id: int) -> int:
        """
        Move PENDING payments into an ABA file.

        Conditional on the payment still being PENDING; returns the number
        of payments that actually moved.
        """
        if not payment_ids:
            return 0
        with self._transaction() as conn:
            cursor = conn.execute(
                f"""
                UPDATE payments SET status = ?, aba_file_id = ?, updated_at = ?
                WHERE id IN ({_placeholders(payment_ids)}) AND status = ?
            """,
                (
                    PaymentStatus.IN_ABA_FILE.value,
                    aba_file_id,
                    utc_now_iso(),
                    *payment_ids,
                    PaymentStatus.PENDING.value,
                ),
            )
            return cursor.rowcount

    def update_file_payments_status(
        self, aba_file_id: int, status: PaymentStatus, expected: PaymentStatus
    ) -> int:
        """Move every payment of a file from ``expected`` to ``status``."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE payments SET status = ?, updated_at = ?
                WHERE aba_file_id = ? AND status = ?
            """,
                (status.value, utc_now_iso(), aba_file_id, expected.value),
            )
            return cursor.rowcount

    def mark_payments_cleared(self, payment_ids: Sequence[int], processed_at: datetime) -> int:
        """Mark payments CLEARED. Returns the number updated."""
        if not payment_ids:
            return 0
        now = utc_now_iso()
        with self._transaction() as conn:
            cursor = conn.execute(
                f"""
                UPDATE payments SET status = ?, processed_at = ?, updated_at = ?
                WHERE id IN ({_placeholders(payment_ids)})
            """,
                (PaymentStatus.CLEARED.value, to_iso(processed_at), now, *payment_ids),
            )
            return cursor.rowcount

    def count_payments_by_status(self) -> dict[str, int]:
        """Payment counts keyed by status."""
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT status, COUNT(*) AS n FROM payments GROUP BY status"
            ).fetchall()
            return {row["status"]: row["n"] for row in rows}

    # ABA file methods

    def create_aba_file(
        self,
        filename: str,
        storage_key: str,
        total_cents: int,
        payment_count: int,
        created_at: datetime | None = None,
    ) -> int:
        """Persist an ABA file descriptor. Returns its ID."""
        created = to_iso(created_at) if created_at else utc_now_iso()
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO aba_files (filename, storage_key, total_cents, payment_count, created_at)
                VALUES (?, ?, ?, ?, ?)
            """,
                (filename, storage_key, total_cents, payment_count, created),
            )
            return cursor.lastrowid or 0

    def get_aba_file(self, aba_file_id: int) -> AbaFileRecord | None:
        """Get an ABA file descriptor by ID."""
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM aba_files WHERE id = ?", (aba_file_id,)).fetchone()
            return AbaFileRecord.from_row(row) if row else None

    def count_aba_files_with_prefix(self, filename_prefix: str) -> int:
        """Number of ABA files whose filename starts with the prefix."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM aba_files WHERE substr(filename, 1, ?) = ?",
                (len(filename_prefix), filename_prefix),
            ).fetchone()
            return row["n"]

    def list_aba_files(self, limit: int = 50) -> list[AbaFileRecord]:
        """Most recent ABA files first."""
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM aba_files ORDER BY created_at DESC, id DESC LIMIT ?", (limit,)
            ).fetchall()
            return [AbaFileRecord.from_row(row) for row in rows]

    def mark_aba_file_submitted(
        self, aba_file_id: int, bank_reference: str, submitted_at: datetime
    ) -> bool:
        """Record the bank reference and submission time."""
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE aba_files SET bank_reference = ?, submitted_at = ? WHERE id = ?",
                (bank_reference, to_iso(submitted_at), aba_file_id),
            )
            return cursor.rowcount > 0

    def mark_aba_files_cleared(self, aba_file_ids: Sequence[int], cleared_at: datetime) -> int:
        """
        Set cleared_at on files whose payments have all cleared.

        Returns the number of files updated.
        """
        if not aba_file_ids:
            return 0
        with self._transaction() as conn:
            cursor = conn.execute(
                f"""
                UPDATE aba_files SET cleared_at = ?
                WHERE id IN ({_placeholders(aba_file_ids)})
                AND cleared_at IS NULL
                AND NOT EXISTS (
                    SELECT 1 FROM payments
                    WHERE payments.aba_file_id = aba_files.id AND payments.status != ?
                )
            """,
                (to_iso(cleared_at), *aba_file_ids, PaymentStatus.CLEARED.value),
            )
            return cursor.rowcount

    # Audit methods

    def record_audit(
        self,
        user_id: str,
        action: str,
        resource: str,
        resource_id: str | int,
        after: dict[str, Any] | None = None,
    ) -> int:
        """Append an audit entry. ``after`` must not contain personal data."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO audit_log (user_id, action, resource, resource_id, after_json, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """,
                (
                    user_id,
                    action,
                    resource,
                    str(resource_id),
                    json.dumps(after or {}, default=str),
                    utc_now_iso(),
                ),
            )
            return cursor.lastrowid or 0

    def get_audit_log(self, action: str | None = None) -> list[AuditRecord]:
        """Audit entries in insertion order, optionally filtered by action."""
        with self._transaction() as conn:
            if action:
                rows = conn.execute(
                    "SELECT * FROM audit_log WHERE action = ? ORDER BY id", (action,)
                ).fetchall()
            else:
                rows = conn.execute("SELECT * FROM audit_log ORDER BY id").fetchall()
            return [AuditRecord.from_row(row) for row in rows]

    # Statistics

    def get_stats(self) -> dict[str, Any]:
        """Pipeline statistics for the status command."""
        with self._transaction() as conn:
            invoices = conn.execute(
                """
                SELECT status, COUNT(*) AS n FROM invoices
                WHERE deleted_at IS NULL GROUP BY status
            """
            ).fetchall()
            claims = conn.execute(
                "SELECT status, COUNT(*) AS n FROM claims GROUP BY status"
            ).fetchall()
            aba_files = conn.execute("SELECT COUNT(*) AS n FROM aba_files").fetchone()

        return {
            "invoices": {row["status"]: row["n"] for row in invoices},
            "claims": {row["status"]: row["n"] for row in claims},
            "payments": self.count_payments_by_status(),
            "aba_files": aba_files["n"],
        }
