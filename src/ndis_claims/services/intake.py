"""
Invoice intake and review.

ingest:  OCR blocks -> extraction -> auto-match -> invoice in PENDING_REVIEW
confirm: reviewer fixes provider/participant -> APPROVED, feeds the email
         learning loop
reject:  reviewer rejects -> REJECTED
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime

from ..config import Config
from ..errors import NdisClaimsError
from ..extractors import ExtractedInvoiceData, InvoiceTextExtractor, OcrBlock
from ..matching import AutoMatcher, EmailLearningOutcome, MatchMethod, MatchResult
from ..matching import record_provider_email_match
from ..state_store import InvoiceStatus, StateStore

logger = logging.getLogger(__name__)

REVIEWABLE_STATUSES = (InvoiceStatus.RECEIVED, InvoiceStatus.PENDING_REVIEW)


class InvoiceReviewError(NdisClaimsError):
    """Raised when a review decision cannot be applied."""

    pass


@dataclass
class IngestResult:
    """Outcome of ingesting one invoice document."""

    invoice_id: int
    extracted: ExtractedInvoiceData
    match: MatchResult


class InvoiceIntakeService:
    """Turn recognised invoice documents into reviewable invoices."""

    def __init__(
        self,
        store: StateStore,
        config: Config | None = None,
        extractor: InvoiceTextExtractor | None = None,
        matcher: AutoMatcher | None = None,
    ):
        self.store = store
        self.config = config or Config()
        self.extractor = extractor or InvoiceTextExtractor(
            max_quantity=self.config.extraction.max_quantity
        )
        self.matcher = matcher or AutoMatcher(store, self.config.matching)

    def ingest(
        self,
        blocks: Iterable[OcrBlock],
        source_email: str | None = None,
        received_at: datetime | None = None,
    ) -> IngestResult:
        """Extract, auto-match and persist an invoice awaiting review."""
        extracted = self.extractor.extract(blocks)
        match = self.matcher.match(extracted, source_email)

        invoice_id = self.store.create_invoice(
            status=InvoiceStatus.PENDING_REVIEW,
            received_at=received_at,
            invoice_number=extracted.invoice_number,
            invoice_date=extracted.invoice_date,
            subtotal_cents=extracted.subtotal_cents,
            gst_cents=extracted.gst_cents,
            total_cents=extracted.total_cents,
            provider_id=match.provider_id,
            participant_id=match.participant_id,
            source_email=source_email.strip().lower() if source_email else None,
            # Only resolved invoices count towards historical matching
            match_method=match.match_method.value if match.match_method != MatchMethod.NONE else None,
            match_confidence=match.match_confidence,
            ai_confidence=extracted.confidence,
            ai_raw_data=extracted.to_dict(),
            lines=[
                {
                    "support_item_code": item.support_item_code,
                    "support_item_name": item.support_item_name,
                    "category_code": item.category_code,
                    "service_date": item.service_date,
                    "quantity": item.quantity,
                    "unit_price_cents": item.unit_price_cents,
                    "total_cents": item.total_cents,
                    "gst_cents": item.gst_cents,
                }
                for item in extracted.line_items
            ],
        )

        logger.info(
            "Ingested invoice %d: %d line(s), match=%s (%.2f)",
            invoice_id,
            len(extracted.line_items),
            match.match_method.value,
            match.match_confidence,
        )
        return IngestResult(invoice_id=invoice_id, extracted=extracted, match=match)

    def confirm_invoice(
        self,
        invoice_id: int,
        provider_id: int,
        participant_id: int,
        user_id: str,
    ) -> EmailLearningOutcome | None:
        """
        Apply the reviewer's provider/participant decision and approve.

        Returns the learning-loop outcome when the invoice has a sender
        address, else None.

        Raises:
            InvoiceReviewError: unknown invoice/provider/participant or the
                invoice is no longer awaiting review
        """
        with self.store.atomic():
            invoice = self.store.get_invoice(invoice_id)
            if invoice is None:
                raise InvoiceReviewError(f"Invoice {invoice_id} not found")
            if self.store.get_provider(provider_id) is None:
                raise InvoiceReviewError(f"Provider {provider_id} not found")
            if self.store.get_participant(participant_id) is None:
                raise InvoiceReviewError(f"Participant {participant_id} not found")

            approved = self.store.approve_invoice(
                invoice_id,
                provider_id=provider_id,
                participant_id=participant_id,
                approved_by=user_id,
                expected_statuses=REVIEWABLE_STATUSES,
            )
            if not approved:
                raise InvoiceReviewError(
                    f"Invoice {invoice_id} cannot be approved (status: {invoice.status.value})"
                )

            outcome = None
            if invoice.source_email:
                outcome = record_provider_email_match(self.store, provider_id, invoice.source_email)

            self.store.record_audit(
                user_id,
                "invoice.approved",
                "invoice",
                invoice_id,
                {"providerId": provider_id, "participantId": participant_id},
            )

        logger.info("Invoice %d approved for provider %d", invoice_id, provider_id)
        return outcome

    def reject_invoice(self, invoice_id: int, reason: str, user_id: str) -> None:
        """Reject an invoice awaiting review."""
        if not reason.strip():
            raise InvoiceReviewError("A rejection reason is required")

        with self.store.atomic():
            invoice = self.store.get_invoice(invoice_id)
            if invoice is None:
                raise InvoiceReviewError(f"Invoice {invoice_id} not found")
            if not self.store.reject_invoice(
                invoice_id, reason, user_id, expected_statuses=REVIEWABLE_STATUSES
            ):
                raise InvoiceReviewError(
                    f"Invoice {invoice_id} cannot be rejected (status: {invoice.status.value})"
                )
            self.store.record_audit(user_id, "invoice.rejected", "invoice", invoice_id)

        logger.info("Invoice %d rejected", invoice_id)
