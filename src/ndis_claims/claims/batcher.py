"""
Claim batch generation.

Turns approved invoices into claims:
- validates the whole batch up front (all invoices exist and are APPROVED)
- allocates a CLM-YYYYMMDD-NNNN reference per claim from a day-scoped counter
- copies invoice lines onto the claim
- moves each invoice to CLAIMED so it cannot be claimed twice

The batch commits as one storage transaction. Any failure (validation,
reference overflow, storage error) leaves nothing behind.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from datetime import date
from typing import TYPE_CHECKING, Any, Protocol

from ..errors import ConcurrentModificationError, NdisClaimsError
from ..schemas.references import claim_reference_scope, format_claim_reference
from ..state_store.sqlite_store import InvoiceStatus

if TYPE_CHECKING:
    from ..state_store import InvoiceLineRecord, InvoiceRecord

logger = logging.getLogger(__name__)

AUDIT_ACTION_BATCH_GENERATED = "claim.batch-generated"


class ClaimBatchError(NdisClaimsError):
    """Raised when a claim batch cannot be generated."""

    pass


class InvoiceNotFoundError(ClaimBatchError):
    """An invoice id in the batch does not exist (or is deleted)."""

    def __init__(self, invoice_id: int):
        self.invoice_id = invoice_id
        super().__init__(f"Invoice {invoice_id} not found")


class InvoiceNotApprovedError(ClaimBatchError):
    """An invoice in the batch is not in APPROVED status."""

    def __init__(self, invoice_id: int, status: InvoiceStatus):
        self.invoice_id = invoice_id
        self.status = status
        super().__init__(
            f"Invoice {invoice_id} is not approved (status: {status.value})"
        )


class SequenceAllocator(Protocol):
    """Atomic counter keyed by scope."""

    def next_value(self, scope: str, floor: int = 0) -> int: ...


class ClaimStore(Protocol):
    """Storage operations used by the batcher."""

    def atomic(self) -> AbstractContextManager[None]: ...

    def get_invoices(self, invoice_ids: Sequence[int]) -> list[InvoiceRecord]: ...

    def get_invoice_lines(self, invoice_id: int) -> list[InvoiceLineRecord]: ...

    def max_claim_sequence(self, reference_prefix: str) -> int: ...

    def create_claim(
        self,
        claim_reference: str,
        invoice_id: int,
        participant_id: int | None,
        claimed_cents: int,
        lines: Sequence[InvoiceLineRecord],
    ) -> int: ...

    def update_invoice_status(
        self,
        invoice_ids: Sequence[int],
        status: InvoiceStatus,
        expected: InvoiceStatus | None = None,
    ) -> int: ...

    def record_audit(
        self,
        user_id: str,
        action: str,
        resource: str,
        resource_id: str | int,
        after: dict[str, Any] | None = None,
    ) -> int: ...


@dataclass
class ClaimBatchEntry:
    """One claim created by a batch."""

    claim_id: int
    claim_reference: str
    invoice_id: int
    participant_id: int | None
    total_cents: int
    line_count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "claim_id": self.claim_id,
            "claim_reference": self.claim_reference,
            "invoice_id": self.invoice_id,
            "participant_id": self.participant_id,
            "total_cents": self.total_cents,
            "line_count": self.line_count,
        }


@dataclass
class ClaimBatchResult:
    """Result of generating a claim batch."""

    claims: list[ClaimBatchEntry] = field(default_factory=list)
    invoices_processed: int = 0

    @property
    def total_cents(self) -> int:
        return sum(entry.total_cents for entry in self.claims)


class ClaimBatcher:
    """Generate claims from approved invoices."""

    def __init__(
        self,
        store: ClaimStore,
        allocator: SequenceAllocator | None = None,
        today: Callable[[], date] | None = None,
    ):
        """
        Initialize the batcher.

        Args:
            store: Invoice/claim storage (usually the StateStore)
            allocator: Reference counter; defaults to the store's own counter
            today: Returns the date used in references
        """
        self.store = store
        self.allocator: SequenceAllocator = allocator or store  # type: ignore[assignment]
        self._today = today or date.today

    def generate_claim_batch(
        self, invoice_ids: Sequence[int], user_id: str
    ) -> ClaimBatchResult:
        """
        Create one claim per invoice.

        Raises:
            InvoiceNotFoundError: an id does not resolve to a live invoice
            InvoiceNotApprovedError: an invoice is not APPROVED
        """
        if not invoice_ids:
            return ClaimBatchResult()

        # Duplicate ids would claim the same invoice twice
        unique_ids = list(dict.fromkeys(invoice_ids))
        result = ClaimBatchResult(invoices_processed=len(unique_ids))

        with self.store.atomic():
            invoices = self._validate(unique_ids)

            day = self._today()
            scope = claim_reference_scope(day)
            for invoice in invoices:
                result.claims.append(self._claim_invoice(invoice, day, scope, user_id))

        logger.info(
            "Generated %d claim(s) totalling %d cents",
            len(result.claims),
            result.total_cents,
        )
        return result

    def _validate(self, invoice_ids: list[int]) -> list[InvoiceRecord]:
        """Resolve every invoice before anything is written."""
        found = {invoice.id: invoice for invoice in self.store.get_invoices(invoice_ids)}
        invoices = []
        for invoice_id in invoice_ids:
            invoice = found.get(invoice_id)
            if invoice is None:
                raise InvoiceNotFoundError(invoice_id)
            if invoice.status != InvoiceStatus.APPROVED:
                raise InvoiceNotApprovedError(invoice_id, invoice.status)
            invoices.append(invoice)
        return invoices

    def _claim_invoice(
        self, invoice: InvoiceRecord, day: date, scope: str, user_id: str
    ) -> ClaimBatchEntry:
        lines = self.store.get_invoice_lines(invoice.id)
        if lines:
            claimed_cents = sum(line.total_cents for line in lines)
        else:
            claimed_cents = invoice.total_cents or 0

        # Seed the counter from existing references so it never reuses one
        sequence = self.allocator.next_value(
            scope, floor=self.store.max_claim_sequence(scope)
        )
        reference = format_claim_reference(day, sequence)

        claim_id = self.store.create_claim(
            claim_reference=reference,
            invoice_id=invoice.id,
            participant_id=invoice.participant_id,
            claimed_cents=claimed_cents,
            lines=lines,
        )

        moved = self.store.update_invoice_status(
            [invoice.id], InvoiceStatus.CLAIMED, expected=InvoiceStatus.APPROVED
        )
        if moved != 1:
            raise ConcurrentModificationError(
                f"Invoice {invoice.id} changed status while being claimed"
            )

        self.store.record_audit(
            user_id=user_id,
            action=AUDIT_ACTION_BATCH_GENERATED,
            resource="claim",
            resource_id=claim_id,
            after={
                "claimReference": reference,
                "invoiceId": invoice.id,
                "claimedCents": claimed_cents,
                "lineCount": len(lines),
            },
        )

        logger.debug("Claim %s created for invoice %d", reference, invoice.id)
        return ClaimBatchEntry(
            claim_id=claim_id,
            claim_reference=reference,
            invoice_id=invoice.id,
            participant_id=invoice.participant_id,
            total_cents=claimed_cents,
            line_count=len(lines),
        )


def generate_claim_batch(
    store: ClaimStore,
    invoice_ids: Sequence[int],
    user_id: str,
    today: date | None = None,
) -> ClaimBatchResult:
    """Convenience wrapper around ClaimBatcher."""
    batcher = ClaimBatcher(store, today=(lambda: today) if today else None)
    return batcher.generate_claim_batch(invoice_ids, user_id)
