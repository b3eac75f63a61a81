"""
Claim status transitions after generation.

PENDING -> SUBMITTED (lodged with the agency)
SUBMITTED -> APPROVED | PARTIAL | REJECTED (assessed outcome)

PAID is set by payment reconciliation, not here.

Claims can be lodged one by one or grouped into a lodgement batch
(BATCH-YYYY-NNNN). Submitting a DRAFT batch submits its PENDING claims in
the same transaction.
"""

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date

from ..errors import NdisClaimsError, RecordNotFoundError
from ..schemas.references import batch_number_scope, format_batch_number
from ..state_store import (
    ClaimRecord,
    ClaimStatus,
    LodgementBatchRecord,
    LodgementBatchStatus,
    StateStore,
)

logger = logging.getLogger(__name__)

OUTCOME_STATUSES = (ClaimStatus.APPROVED, ClaimStatus.PARTIAL, ClaimStatus.REJECTED)


class ClaimStateError(NdisClaimsError):
    """Raised when a claim is not in the status a transition requires."""

    pass


@dataclass
class ClaimLineOutcome:
    """Assessed outcome of a single claim line."""

    claim_line_id: int
    status: ClaimStatus
    approved_cents: int
    notes: str | None = None


def _check_outcome(status: ClaimStatus, approved_cents: int) -> int:
    """Validate an outcome status and amount. Returns the amount to store."""
    if status not in OUTCOME_STATUSES:
        raise ClaimStateError(f"{status.value} is not a claim outcome")
    if approved_cents < 0:
        raise ClaimStateError("approved_cents must not be negative")
    return 0 if status == ClaimStatus.REJECTED else approved_cents


def submit_claims(store: StateStore, claim_ids: Sequence[int], user_id: str) -> int:
    """Mark PENDING claims as SUBMITTED. Returns the number moved."""
    with store.atomic():
        moved = store.update_claim_status(
            claim_ids, ClaimStatus.SUBMITTED, expected=ClaimStatus.PENDING
        )
        if moved != len(set(claim_ids)):
            raise ClaimStateError("Only pending claims can be submitted")
        for claim_id in claim_ids:
            store.record_audit(user_id, "claim.submitted", "claim", claim_id)

    logger.info("Submitted %d claim(s)", moved)
    return moved


def record_claim_outcome(
    store: StateStore,
    claim_id: int,
    outcome: ClaimStatus,
    approved_cents: int,
    user_id: str,
    line_outcomes: Sequence[ClaimLineOutcome] = (),
) -> ClaimRecord:
    """
    Record the assessed outcome of a submitted claim.

    The claim-level ``approved_cents`` is stored as given; line outcomes
    are recorded alongside it and are not summed into it.

    Raises:
        ClaimStateError: unknown claim, non-outcome status, the claim is
            not SUBMITTED, or a line outcome names a line of another claim
    """
    approved_cents = _check_outcome(outcome, approved_cents)
    checked_lines = [
        (line, _check_outcome(line.status, line.approved_cents)) for line in line_outcomes
    ]

    with store.atomic():
        claim = store.get_claim(claim_id)
        if claim is None:
            raise ClaimStateError(f"Claim {claim_id} not found")
        if not store.record_claim_outcome(claim_id, outcome, approved_cents):
            raise ClaimStateError(
                f"Only submitted claims can have outcomes recorded (status: {claim.status.value})"
            )
        for line, line_cents in checked_lines:
            if not store.record_claim_line_outcome(
                claim_id, line.claim_line_id, line.status, line_cents, line.notes
            ):
                raise ClaimStateError(
                    f"Claim line {line.claim_line_id} does not belong to claim {claim_id}"
                )
        store.record_audit(
            user_id,
            "claim.outcome",
            "claim",
            claim_id,
            {"status": outcome.value, "approvedCents": approved_cents},
        )
        updated = store.get_claim(claim_id)
        if updated is None:
            raise RecordNotFoundError(f"Claim {claim_id} missing after outcome update")

    logger.info("Claim %d outcome %s (%d cents)", claim_id, outcome.value, approved_cents)
    return updated


# Lodgement batches


def create_lodgement_batch(
    store: StateStore,
    claim_ids: Sequence[int],
    user_id: str,
    notes: str | None = None,
    today: date | None = None,
) -> LodgementBatchRecord:
    """
    Group PENDING claims into a new DRAFT batch.

    Raises:
        ClaimStateError: no claims, an unknown claim, or a claim that is not
            PENDING or already sits in another batch
    """
    claim_ids = list(dict.fromkeys(claim_ids))
    if not claim_ids:
        raise ClaimStateError("At least one claim is required")
    day = today or date.today()

    with store.atomic():
        claims = store.get_claims(claim_ids)
        if len(claims) != len(claim_ids):
            raise ClaimStateError("One or more claims not found")
        not_pending = [c.claim_reference for c in claims if c.status != ClaimStatus.PENDING]
        if not_pending:
            raise ClaimStateError(
                f"All claims must be PENDING to add to a batch: {', '.join(not_pending)}"
            )

        scope = batch_number_scope(day)
        sequence = store.next_value(scope, floor=store.max_batch_sequence(scope))
        try:
            batch_number = format_batch_number(day, sequence)
        except ValueError as e:
            raise ClaimStateError(str(e)) from e

        total_cents = sum(c.claimed_cents for c in claims)
        batch_id = store.create_lodgement_batch(
            batch_number, len(claims), total_cents, user_id, notes
        )
        if store.assign_claims_to_batch(claim_ids, batch_id) != len(claim_ids):
            raise ClaimStateError("One or more claims already belong to a batch")

        store.record_audit(
            user_id,
            "batch.created",
            "batch",
            batch_id,
            {"batchNumber": batch_number, "claimCount": len(claims), "totalCents": total_cents},
        )
        batch = store.get_lodgement_batch(batch_id)
        if batch is None:
            raise RecordNotFoundError(f"Batch {batch_id} missing after insert")

    logger.info("Created %s with %d claim(s)", batch_number, len(claims))
    return batch


def submit_lodgement_batch(
    store: StateStore,
    batch_id: int,
    user_id: str,
    agency_batch_id: str | None = None,
    notes: str | None = None,
) -> LodgementBatchRecord:
    """
    Submit a DRAFT batch: its PENDING claims become SUBMITTED.

    Claims of the batch already lodged on their own are left as they are.

    Raises:
        ClaimStateError: unknown batch, or the batch is not a DRAFT
    """
    with store.atomic():
        batch = store.get_lodgement_batch(batch_id)
        if batch is None:
            raise ClaimStateError(f"Batch {batch_id} not found")
        if batch.status != LodgementBatchStatus.DRAFT:
            raise ClaimStateError(
                f"Only draft batches can be submitted (status: {batch.status.value})"
            )

        pending = [c.id for c in store.get_batch_claims(batch_id, status=ClaimStatus.PENDING)]
        if pending:
            submit_claims(store, pending, user_id)

        if not store.mark_lodgement_batch_submitted(batch_id, user_id, agency_batch_id, notes):
            raise ClaimStateError(f"Batch {batch_id} is no longer a draft")
        store.record_audit(
            user_id,
            "batch.submitted",
            "batch",
            batch_id,
            {"status": LodgementBatchStatus.SUBMITTED.value, "claimCount": batch.claim_count},
        )
        updated = store.get_lodgement_batch(batch_id)
        if updated is None:
            raise RecordNotFoundError(f"Batch {batch_id} missing after submission")

    logger.info("Submitted %s (%d claim(s) lodged)", updated.batch_number, len(pending))
    return updated
