"""Claim generation from approved invoices, and claim status transitions."""

from .batcher import (
    ClaimBatchEntry,
    ClaimBatcher,
    ClaimBatchError,
    ClaimBatchResult,
    InvoiceNotApprovedError,
    InvoiceNotFoundError,
    SequenceAllocator,
    generate_claim_batch,
)
from .lifecycle import (
    ClaimLineOutcome,
    ClaimStateError,
    create_lodgement_batch,
    record_claim_outcome,
    submit_claims,
    submit_lodgement_batch,
)

__all__ = [
    "ClaimBatchEntry",
    "ClaimBatcher",
    "ClaimBatchError",
    "ClaimBatchResult",
    "ClaimLineOutcome",
    "ClaimStateError",
    "InvoiceNotApprovedError",
    "InvoiceNotFoundError",
    "SequenceAllocator",
    "create_lodgement_batch",
    "generate_claim_batch",
    "record_claim_outcome",
    "submit_claims",
    "submit_lodgement_batch",
]
