"""
State Store (SQLite-based).

Lightweight persistent DB for tracking:
- Provider and participant directory, learned provider emails
- Invoices and their support item lines
- Claims generated from approved invoices, and the batches they are lodged in
- Payments and the ABA files that carry them

Claim references and daily ABA sequence numbers are allocated from atomic
per-scope counters.
"""

from .sqlite_store import (
    AbaFileRecord,
    AuditRecord,
    ClaimLineRecord,
    ClaimRecord,
    ClaimStatus,
    InvoiceLineRecord,
    InvoiceRecord,
    InvoiceStatus,
    LodgementBatchRecord,
    LodgementBatchStatus,
    ParticipantRecord,
    PaymentRecord,
    PaymentStatus,
    ProviderEmailRecord,
    ProviderRecord,
    StateStore,
)

__all__ = [
    "StateStore",
    "AbaFileRecord",
    "AuditRecord",
    "ClaimLineRecord",
    "ClaimRecord",
    "ClaimStatus",
    "InvoiceLineRecord",
    "InvoiceRecord",
    "InvoiceStatus",
    "LodgementBatchRecord",
    "LodgementBatchStatus",
    "ParticipantRecord",
    "PaymentRecord",
    "PaymentStatus",
    "ProviderEmailRecord",
    "ProviderRecord",
]
