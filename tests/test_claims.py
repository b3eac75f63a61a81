"""Tests for claim batch generation and claim status transitions."""

from datetime import date
from unittest.mock import MagicMock

import pytest

from ndis_claims.claims import (
    ClaimBatcher,
    ClaimLineOutcome,
    ClaimStateError,
    InvoiceNotApprovedError,
    InvoiceNotFoundError,
    create_lodgement_batch,
    generate_claim_batch,
    record_claim_outcome,
    submit_claims,
    submit_lodgement_batch,
)
from ndis_claims.errors import RecordNotFoundError
from ndis_claims.schemas.references import (
    format_batch_number,
    format_claim_reference,
    parse_claim_sequence,
)
from ndis_claims.state_store import ClaimStatus, InvoiceStatus, LodgementBatchStatus

DAY = date(2026, 2, 15)


@pytest.fixture
def batcher(store):
    return ClaimBatcher(store, today=lambda: DAY)


class TestClaimReferences:
    """Tests for reference formatting and allocation."""

    def test_format(self):
        assert format_claim_reference(DAY, 1) == "CLM-20260215-0001"
        assert format_claim_reference(DAY, 9999) == "CLM-20260215-9999"

    @pytest.mark.parametrize("sequence", [0, 10000])
    def test_format_out_of_range(self, sequence):
        with pytest.raises(ValueError):
            format_claim_reference(DAY, sequence)

    def test_parse_sequence(self):
        assert parse_claim_sequence("CLM-20260215-0042") == 42
        assert parse_claim_sequence("CLM-2026-0042") is None

    def test_sequential_within_batch(self, batcher, make_invoice):
        ids = [make_invoice(), make_invoice()]

        result = batcher.generate_claim_batch(ids, "tester")

        assert [c.claim_reference for c in result.claims] == [
            "CLM-20260215-0001",
            "CLM-20260215-0002",
        ]

    def test_continues_across_batches(self, batcher, make_invoice):
        batcher.generate_claim_batch([make_invoice()], "tester")
        result = batcher.generate_claim_batch([make_invoice()], "tester")

        assert result.claims[0].claim_reference == "CLM-20260215-0002"

    def test_new_day_restarts(self, store, make_invoice):
        ClaimBatcher(store, today=lambda: DAY).generate_claim_batch([make_invoice()], "tester")

        result = ClaimBatcher(store, today=lambda: date(2026, 2, 16)).generate_claim_batch(
            [make_invoice()], "tester"
        )

        assert result.claims[0].claim_reference == "CLM-20260216-0001"

    def test_existing_references_respected(self, store, batcher, make_invoice):
        """References created outside the counter are never reissued."""
        legacy_invoice = make_invoice(status=InvoiceStatus.CLAIMED)
        store.create_claim("CLM-20260215-0007", legacy_invoice, None, 100, [])

        result = batcher.generate_claim_batch([make_invoice()], "tester")

        assert result.claims[0].claim_reference == "CLM-20260215-0008"

    def test_sequence_overflow_fails_batch(self, store, batcher, make_invoice):
        legacy_invoice = make_invoice(status=InvoiceStatus.CLAIMED)
        store.create_claim("CLM-20260215-9999", legacy_invoice, None, 100, [])
        invoice_id = make_invoice()

        with pytest.raises(ValueError):
            batcher.generate_claim_batch([invoice_id], "tester")

        assert store.get_invoice(invoice_id).status == InvoiceStatus.APPROVED


class TestClaimContents:
    """Tests for claim totals and copied lines."""

    def test_total_is_sum_of_lines(self, store, batcher, make_invoice):
        invoice_id = make_invoice(total_cents=1)

        entry = batcher.generate_claim_batch([invoice_id], "tester").claims[0]

        assert entry.total_cents == 38798 + 20268
        assert store.get_claim(entry.claim_id).claimed_cents == 59066

    def test_total_falls_back_to_invoice_total(self, batcher, make_invoice):
        invoice_id = make_invoice(lines=[], total_cents=12345)

        entry = batcher.generate_claim_batch([invoice_id], "tester").claims[0]

        assert entry.total_cents == 12345
        assert entry.line_count == 0

    def test_lines_copied_with_back_references(self, store, batcher, make_invoice):
        invoice_id = make_invoice()
        invoice_lines = store.get_invoice_lines(invoice_id)

        entry = batcher.generate_claim_batch([invoice_id], "tester").claims[0]
        claim_lines = store.get_claim_lines(entry.claim_id)

        assert len(claim_lines) == 2
        for invoice_line, claim_line in zip(invoice_lines, claim_lines):
            assert claim_line.invoice_line_id == invoice_line.id
            assert claim_line.source_invoice_id == invoice_id
            assert claim_line.support_item_code == invoice_line.support_item_code
            assert claim_line.quantity == invoice_line.quantity
            assert claim_line.total_cents == invoice_line.total_cents

    def test_claim_starts_pending(self, store, batcher, make_invoice, directory):
        entry = batcher.generate_claim_batch([make_invoice()], "tester").claims[0]
        claim = store.get_claim(entry.claim_id)

        assert claim.status == ClaimStatus.PENDING
        assert claim.participant_id == directory["participant_id"]
        assert claim.approved_cents == 0

    def test_batch_totals(self, batcher, make_invoice):
        result = batcher.generate_claim_batch(
            [make_invoice(lines=[], total_cents=100), make_invoice(lines=[], total_cents=250)],
            "tester",
        )

        assert result.invoices_processed == 2
        assert result.total_cents == 350
        assert result.claims[0].to_dict()["total_cents"] == 100


class TestInvoiceStatus:
    """Tests for the APPROVED -> CLAIMED transition."""

    def test_invoices_become_claimed(self, store, batcher, make_invoice):
        ids = [make_invoice(), make_invoice()]

        batcher.generate_claim_batch(ids, "tester")

        assert {store.get_invoice(i).status for i in ids} == {InvoiceStatus.CLAIMED}

    def test_invoice_cannot_be_claimed_twice(self, batcher, make_invoice):
        invoice_id = make_invoice()
        batcher.generate_claim_batch([invoice_id], "tester")

        with pytest.raises(InvoiceNotApprovedError) as exc_info:
            batcher.generate_claim_batch([invoice_id], "tester")

        assert exc_info.value.status == InvoiceStatus.CLAIMED
        assert "is not approved (status: CLAIMED)" in str(exc_info.value)

    def test_duplicate_ids_claim_once(self, batcher, make_invoice):
        invoice_id = make_invoice()

        result = batcher.generate_claim_batch([invoice_id, invoice_id], "tester")

        assert len(result.claims) == 1

    def test_empty_batch(self, batcher):
        result = batcher.generate_claim_batch([], "tester")

        assert result.claims == []
        assert result.invoices_processed == 0
        assert result.total_cents == 0


class TestBatchValidation:
    """A failing batch leaves nothing behind."""

    def test_missing_invoice(self, store, batcher, make_invoice):
        good = make_invoice()

        with pytest.raises(InvoiceNotFoundError) as exc_info:
            batcher.generate_claim_batch([good, 9999], "tester")

        assert exc_info.value.invoice_id == 9999
        assert store.get_invoice(good).status == InvoiceStatus.APPROVED
        assert store.get_claim_by_reference("CLM-20260215-0001") is None

    def test_unapproved_invoice(self, store, batcher, make_invoice):
        good = make_invoice()
        pending = make_invoice(status=InvoiceStatus.PENDING_REVIEW)

        with pytest.raises(InvoiceNotApprovedError):
            batcher.generate_claim_batch([good, pending], "tester")

        assert store.get_invoice(good).status == InvoiceStatus.APPROVED
        assert store.get_audit_log("claim.batch-generated") == []

    def test_deleted_invoice_not_found(self, store, batcher, make_invoice):
        invoice_id = make_invoice()
        store.soft_delete_invoice(invoice_id)

        with pytest.raises(InvoiceNotFoundError):
            batcher.generate_claim_batch([invoice_id], "tester")

    def test_mid_batch_failure_rolls_back(self, store, make_invoice):
        """A failure after the first claim was written undoes that claim too."""
        allocator = MagicMock()
        allocator.next_value.side_effect = [1, RuntimeError("counter unavailable")]
        batcher = ClaimBatcher(store, allocator=allocator, today=lambda: DAY)
        ids = [make_invoice(), make_invoice()]

        with pytest.raises(RuntimeError):
            batcher.generate_claim_batch(ids, "tester")

        assert store.get_claim_by_reference("CLM-20260215-0001") is None
        assert {store.get_invoice(i).status for i in ids} == {InvoiceStatus.APPROVED}
        assert store.get_audit_log() == []

    def test_allocator_receives_scope_and_floor(self, store, make_invoice):
        allocator = MagicMock()
        allocator.next_value.return_value = 5
        batcher = ClaimBatcher(store, allocator=allocator, today=lambda: DAY)

        result = batcher.generate_claim_batch([make_invoice()], "tester")

        allocator.next_value.assert_called_once_with("CLM-20260215-", floor=0)
        assert result.claims[0].claim_reference == "CLM-20260215-0005"


class TestAudit:
    """Tests for audit entries."""

    def test_one_entry_per_claim(self, store, batcher, make_invoice):
        invoice_id = make_invoice()

        entry = batcher.generate_claim_batch([invoice_id], "reviewer-1").claims[0]
        audit = store.get_audit_log("claim.batch-generated")

        assert len(audit) == 1
        assert audit[0].user_id == "reviewer-1"
        assert audit[0].resource == "claim"
        assert audit[0].resource_id == str(entry.claim_id)
        assert audit[0].after == {
            "claimReference": "CLM-20260215-0001",
            "invoiceId": invoice_id,
            "claimedCents": 59066,
            "lineCount": 2,
        }

    def test_convenience_wrapper(self, store, make_invoice):
        result = generate_claim_batch(store, [make_invoice()], "tester", today=DAY)
        assert result.claims[0].claim_reference == "CLM-20260215-0001"


class TestClaimLifecycle:
    """Tests for submission and assessed outcomes."""

    @pytest.fixture
    def claim_id(self, batcher, make_invoice):
        return batcher.generate_claim_batch([make_invoice()], "tester").claims[0].claim_id

    def test_submit(self, store, claim_id):
        assert submit_claims(store, [claim_id], "tester") == 1
        assert store.get_claim(claim_id).status == ClaimStatus.SUBMITTED

    def test_submit_twice_fails(self, store, claim_id):
        submit_claims(store, [claim_id], "tester")

        with pytest.raises(ClaimStateError):
            submit_claims(store, [claim_id], "tester")

    def test_partial_submit_rolls_back(self, store, batcher, make_invoice, claim_id):
        other = batcher.generate_claim_batch([make_invoice()], "tester").claims[0].claim_id
        submit_claims(store, [claim_id], "tester")

        with pytest.raises(ClaimStateError):
            submit_claims(store, [claim_id, other], "tester")

        assert store.get_claim(other).status == ClaimStatus.PENDING

    def test_record_approved(self, store, claim_id):
        submit_claims(store, [claim_id], "tester")

        claim = record_claim_outcome(store, claim_id, ClaimStatus.APPROVED, 59066, "tester")

        assert claim.status == ClaimStatus.APPROVED
        assert claim.approved_cents == 59066
        assert store.get_audit_log("claim.outcome")[0].after == {
            "status": "APPROVED",
            "approvedCents": 59066,
        }

    def test_rejected_zeroes_amount(self, store, claim_id):
        submit_claims(store, [claim_id], "tester")

        claim = record_claim_outcome(store, claim_id, ClaimStatus.REJECTED, 500, "tester")

        assert claim.approved_cents == 0

    def test_outcome_requires_submission(self, store, claim_id):
        with pytest.raises(ClaimStateError, match="status: PENDING"):
            record_claim_outcome(store, claim_id, ClaimStatus.APPROVED, 100, "tester")

    def test_outcome_must_be_assessment(self, store, claim_id):
        with pytest.raises(ClaimStateError):
            record_claim_outcome(store, claim_id, ClaimStatus.PAID, 100, "tester")

    def test_unknown_claim(self, store):
        with pytest.raises(ClaimStateError, match="not found"):
            record_claim_outcome(store, 404, ClaimStatus.APPROVED, 100, "tester")

    def test_missing_claim_after_update_rolls_back(self, store, claim_id, monkeypatch):
        submit_claims(store, [claim_id], "tester")
        real_get_claim = store.get_claim
        reads = []

        def get_claim_once(requested_id):
            reads.append(requested_id)
            return real_get_claim(requested_id) if len(reads) == 1 else None

        monkeypatch.setattr(store, "get_claim", get_claim_once)

        with pytest.raises(RecordNotFoundError):
            record_claim_outcome(store, claim_id, ClaimStatus.APPROVED, 100, "tester")

        monkeypatch.undo()
        assert store.get_claim(claim_id).status == ClaimStatus.SUBMITTED
        assert store.get_audit_log("claim.outcome") == []


class TestLineOutcomes:
    """Per-line assessment recorded with the claim outcome."""

    @pytest.fixture
    def claim_id(self, store, batcher, make_invoice):
        claim_id = batcher.generate_claim_batch([make_invoice()], "tester").claims[0].claim_id
        submit_claims(store, [claim_id], "tester")
        return claim_id

    def test_lines_start_pending(self, store, claim_id):
        lines = store.get_claim_lines(claim_id)

        assert [line.status for line in lines] == [ClaimStatus.PENDING, ClaimStatus.PENDING]
        assert [line.approved_cents for line in lines] == [0, 0]
        assert [line.outcome_notes for line in lines] == [None, None]

    def test_partial_with_line_outcomes(self, store, claim_id):
        first, second = store.get_claim_lines(claim_id)

        claim = record_claim_outcome(
            store,
            claim_id,
            ClaimStatus.PARTIAL,
            38798,
            "tester",
            line_outcomes=[
                ClaimLineOutcome(first.id, ClaimStatus.APPROVED, 38798),
                ClaimLineOutcome(second.id, ClaimStatus.REJECTED, 500, "Outside plan dates"),
            ],
        )

        assert claim.status == ClaimStatus.PARTIAL
        assert claim.approved_cents == 38798
        first, second = store.get_claim_lines(claim_id)
        assert (first.status, first.approved_cents) == (ClaimStatus.APPROVED, 38798)
        assert (second.status, second.approved_cents) == (ClaimStatus.REJECTED, 0)
        assert second.outcome_notes == "Outside plan dates"

    def test_unlisted_lines_unchanged(self, store, claim_id):
        first, _ = store.get_claim_lines(claim_id)

        record_claim_outcome(
            store,
            claim_id,
            ClaimStatus.APPROVED,
            59066,
            "tester",
            line_outcomes=[ClaimLineOutcome(first.id, ClaimStatus.APPROVED, 38798)],
        )

        assert store.get_claim_lines(claim_id)[1].status == ClaimStatus.PENDING

    def test_line_of_another_claim_rolls_back(self, store, batcher, make_invoice, claim_id):
        other = batcher.generate_claim_batch([make_invoice()], "tester").claims[0].claim_id
        foreign_line = store.get_claim_lines(other)[0]

        with pytest.raises(ClaimStateError, match="does not belong"):
            record_claim_outcome(
                store,
                claim_id,
                ClaimStatus.APPROVED,
                59066,
                "tester",
                line_outcomes=[ClaimLineOutcome(foreign_line.id, ClaimStatus.APPROVED, 100)],
            )

        assert store.get_claim(claim_id).status == ClaimStatus.SUBMITTED
        assert store.get_claim_lines(other)[0].status == ClaimStatus.PENDING

    @pytest.mark.parametrize(
        "line_outcome",
        [
            ClaimLineOutcome(1, ClaimStatus.PAID, 100),
            ClaimLineOutcome(1, ClaimStatus.APPROVED, -1),
        ],
    )
    def test_invalid_line_outcome(self, store, claim_id, line_outcome):
        with pytest.raises(ClaimStateError):
            record_claim_outcome(
                store, claim_id, ClaimStatus.APPROVED, 100, "tester", line_outcomes=[line_outcome]
            )

        assert store.get_claim(claim_id).status == ClaimStatus.SUBMITTED


class TestLodgementBatches:
    """Claims grouped and lodged together."""

    @pytest.fixture
    def claim_ids(self, batcher, make_invoice):
        result = batcher.generate_claim_batch([make_invoice(), make_invoice()], "tester")
        return [entry.claim_id for entry in result.claims]

    def test_batch_number_format(self):
        assert format_batch_number(DAY, 1) == "BATCH-2026-0001"
        with pytest.raises(ValueError):
            format_batch_number(DAY, 10000)

    def test_create(self, store, claim_ids):
        batch = create_lodgement_batch(store, claim_ids, "tester", notes="February", today=DAY)

        assert batch.batch_number == "BATCH-2026-0001"
        assert batch.status == LodgementBatchStatus.DRAFT
        assert batch.claim_count == 2
        assert batch.total_cents == 2 * 59066
        assert batch.notes == "February"
        assert batch.created_by == "tester"
        assert [c.batch_id for c in store.get_claims(claim_ids)] == [batch.id, batch.id]
        assert {c.status for c in store.get_claims(claim_ids)} == {ClaimStatus.PENDING}
        assert store.get_audit_log("batch.created")[0].after == {
            "batchNumber": "BATCH-2026-0001",
            "claimCount": 2,
            "totalCents": 2 * 59066,
        }

    def test_numbers_increase_within_year(self, store, claim_ids):
        first = create_lodgement_batch(store, claim_ids[:1], "tester", today=DAY)
        second = create_lodgement_batch(store, claim_ids[1:], "tester", today=date(2026, 12, 31))

        assert first.batch_number == "BATCH-2026-0001"
        assert second.batch_number == "BATCH-2026-0002"

    def test_numbers_restart_each_year(self, store, claim_ids):
        create_lodgement_batch(store, claim_ids[:1], "tester", today=DAY)
        batch = create_lodgement_batch(store, claim_ids[1:], "tester", today=date(2027, 1, 2))

        assert batch.batch_number == "BATCH-2027-0001"

    def test_claim_in_one_batch_only(self, store, claim_ids):
        create_lodgement_batch(store, claim_ids[:1], "tester", today=DAY)

        with pytest.raises(ClaimStateError, match="already belong"):
            create_lodgement_batch(store, claim_ids, "tester", today=DAY)

        assert store.get_claim(claim_ids[1]).batch_id is None
        assert len(store.get_audit_log("batch.created")) == 1

    def test_claims_must_be_pending(self, store, claim_ids):
        submit_claims(store, claim_ids[:1], "tester")

        with pytest.raises(ClaimStateError, match="PENDING"):
            create_lodgement_batch(store, claim_ids, "tester", today=DAY)

    def test_unknown_claim(self, store, claim_ids):
        with pytest.raises(ClaimStateError, match="not found"):
            create_lodgement_batch(store, [*claim_ids, 404], "tester", today=DAY)

    def test_empty(self, store):
        with pytest.raises(ClaimStateError):
            create_lodgement_batch(store, [], "tester", today=DAY)

    def test_submit_lodges_pending_claims(self, store, claim_ids):
        batch = create_lodgement_batch(store, claim_ids, "tester", today=DAY)

        submitted = submit_lodgement_batch(store, batch.id, "lodger", agency_batch_id="PRODA-77")

        assert submitted.status == LodgementBatchStatus.SUBMITTED
        assert submitted.agency_batch_id == "PRODA-77"
        assert submitted.submitted_by == "lodger"
        assert submitted.submitted_at is not None
        assert {c.status for c in store.get_claims(claim_ids)} == {ClaimStatus.SUBMITTED}
        assert len(store.get_audit_log("claim.submitted")) == 2
        assert store.get_audit_log("batch.submitted")[0].after == {
            "status": "SUBMITTED",
            "claimCount": 2,
        }

    def test_submit_skips_claims_already_lodged(self, store, claim_ids):
        batch = create_lodgement_batch(store, claim_ids, "tester", today=DAY)
        submit_claims(store, claim_ids[:1], "tester")

        submit_lodgement_batch(store, batch.id, "tester")

        assert {c.status for c in store.get_claims(claim_ids)} == {ClaimStatus.SUBMITTED}
        assert len(store.get_audit_log("claim.submitted")) == 2

    def test_submit_twice_fails(self, store, claim_ids):
        batch = create_lodgement_batch(store, claim_ids, "tester", today=DAY)
        submit_lodgement_batch(store, batch.id, "tester")

        with pytest.raises(ClaimStateError, match="status: SUBMITTED"):
            submit_lodgement_batch(store, batch.id, "tester")

    def test_submit_unknown_batch(self, store):
        with pytest.raises(ClaimStateError, match="not found"):
            submit_lodgement_batch(store, 404, "tester")

    def test_outcome_after_batch_submission(self, store, claim_ids):
        batch = create_lodgement_batch(store, claim_ids, "tester", today=DAY)
        submit_lodgement_batch(store, batch.id, "tester")

        claim = record_claim_outcome(store, claim_ids[0], ClaimStatus.APPROVED, 59066, "tester")

        assert claim.status == ClaimStatus.APPROVED
        assert claim.batch_id == batch.id
