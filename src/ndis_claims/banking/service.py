"""
Payment lifecycle and ABA file generation.

PENDING -> IN_ABA_FILE -> SUBMITTED_TO_BANK -> CLEARED

Generating a file only picks up payments that are still PENDING, and moves
them to IN_ABA_FILE with a conditional update in the same transaction as
the file descriptor insert, so two concurrent generations can never
include the same payment twice.
"""

import logging
import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime

from ..config import BankingConfig
from ..errors import ConcurrentModificationError, NdisClaimsError, RecordNotFoundError
from ..state_store import (
    AbaFileRecord,
    ClaimStatus,
    InvoiceStatus,
    PaymentRecord,
    PaymentStatus,
    StateStore,
)
from .aba import (
    MAX_REEL_SEQUENCE,
    AbaPayment,
    Originator,
    aba_filename,
    format_aba_date,
    normalize_bsb,
    render_aba_file,
)

logger = logging.getLogger(__name__)

BSB_RE = re.compile(r"^\d{3}-?\d{3}$")
PAYABLE_CLAIM_STATUSES = (ClaimStatus.APPROVED, ClaimStatus.PARTIAL)
RECONCILABLE_STATUSES = (PaymentStatus.IN_ABA_FILE, PaymentStatus.SUBMITTED_TO_BANK)


class PaymentValidationError(NdisClaimsError):
    """Raised when a payment instruction is invalid."""

    pass


class NoPendingPaymentsError(NdisClaimsError):
    """Raised when none of the given payments is PENDING."""

    pass


class AbaFileNotFoundError(NdisClaimsError):
    """Raised when an ABA file id does not exist."""

    pass


class AbaSequenceExhaustedError(NdisClaimsError):
    """Raised when the day already has as many files as the reel field can number."""

    pass


@dataclass
class GeneratedAbaFile:
    """A generated ABA file: content plus its persisted descriptor."""

    aba_file: AbaFileRecord
    content: str
    filename: str
    payment_ids: list[int] = field(default_factory=list)


@dataclass
class ReconciliationResult:
    """What a reconciliation run changed."""

    payments_cleared: int = 0
    claim_ids: list[int] = field(default_factory=list)
    invoice_ids: list[int] = field(default_factory=list)
    aba_files_cleared: int = 0


def originator_from_config(config: BankingConfig) -> Originator:
    """Build the encoder's originator block from configuration."""
    return Originator(
        bank_code=config.bank_code,
        user_name=config.user_name,
        user_id=config.user_id,
        description=config.description,
        trace_bsb=config.trace_bsb,
        trace_account=config.trace_account,
        remitter=config.remitter,
    )


class PaymentFileService:
    """Create payments, bundle them into ABA files and track them to clearance."""

    def __init__(
        self,
        store: StateStore,
        config: BankingConfig | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        """
        Initialize the service.

        Args:
            store: State store
            config: Banking settings (originator, filename)
            clock: Returns the local "now" used for file dates and timestamps
        """
        self.store = store
        self.config = config or BankingConfig()
        self.originator = originator_from_config(self.config)
        self._clock = clock or datetime.now

    # Payment creation

    def create_payment(
        self,
        claim_id: int,
        amount_cents: int,
        bsb: str,
        account_number: str,
        account_name: str,
        reference: str | None,
        user_id: str,
    ) -> PaymentRecord:
        """
        Create a PENDING payment for an approved claim.

        Raises:
            PaymentValidationError: invalid field or claim not payable
        """
        errors = self._validate_payment(amount_cents, bsb, account_number, account_name, reference)
        if errors:
            raise PaymentValidationError("; ".join(errors))

        with self.store.atomic():
            claim = self.store.get_claim(claim_id)
            if claim is None:
                raise PaymentValidationError(f"Claim {claim_id} not found")
            if claim.status not in PAYABLE_CLAIM_STATUSES:
                raise PaymentValidationError(
                    f"Claim {claim_id} must be approved before creating a payment "
                    f"(status: {claim.status.value})"
                )

            payment_id = self.store.create_payment(
                claim_id=claim_id,
                amount_cents=amount_cents,
                bsb=normalize_bsb(bsb),
                account_number=account_number,
                account_name=account_name,
                reference=reference,
            )
            self.store.record_audit(
                user_id,
                "payment.created",
                "payment",
                payment_id,
                {"claimId": claim_id, "amountCents": amount_cents},
            )
            payment = self.store.get_payment(payment_id)
            if payment is None:
                raise RecordNotFoundError(f"Payment {payment_id} missing after insert")

        logger.info("Payment %d created for claim %d (%d cents)", payment_id, claim_id, amount_cents)
        return payment

    @staticmethod
    def _validate_payment(
        amount_cents: int,
        bsb: str,
        account_number: str,
        account_name: str,
        reference: str | None,
    ) -> list[str]:
        errors = []
        if amount_cents < 1:
            errors.append("amount_cents must be at least 1")
        if not BSB_RE.match(bsb):
            errors.append("BSB must be 6 digits (e.g. 062-000)")
        if not 5 <= len(account_number) <= 9:
            errors.append("account_number must be 5-9 characters")
        if not 1 <= len(account_name) <= 32:
            errors.append("account_name must be 1-32 characters")
        if reference is not None and len(reference) > 18:
            errors.append("reference must be at most 18 characters")
        return errors

    def create_payments_from_claims(self, claim_ids: Sequence[int], user_id: str) -> list[int]:
        """
        Create one payment per payable claim, paying its provider's account.

        Claims that are not approved, whose provider has no bank details, that
        have nothing approved, or that already have a payment are skipped.
        Returns the new payment ids.
        """
        created: list[int] = []

        with self.store.atomic():
            for claim in self.store.get_claims(list(dict.fromkeys(claim_ids))):
                if claim.status not in PAYABLE_CLAIM_STATUSES:
                    continue
                if claim.approved_cents < 1:
                    logger.warning("Claim %d has no approved amount, skipped", claim.id)
                    continue

                invoice = self.store.get_invoice(claim.invoice_id)
                provider = (
                    self.store.get_provider(invoice.provider_id)
                    if invoice and invoice.provider_id
                    else None
                )
                if provider is None or not provider.has_bank_details:
                    logger.info("Claim %d skipped: provider has no bank details", claim.id)
                    continue

                if self.store.payment_exists_for_claim(claim.id):
                    continue

                created.append(
                    self.store.create_payment(
                        claim_id=claim.id,
                        amount_cents=claim.approved_cents,
                        bsb=normalize_bsb(provider.bank_bsb or ""),
                        account_number=provider.bank_account or "",
                        account_name=(provider.bank_account_name or "")[:32],
                        reference=claim.claim_reference,
                    )
                )

            if created:
                self.store.record_audit(
                    user_id,
                    "payment.bulk-created",
                    "payment",
                    created[0],
                    {"count": len(created), "claimIds": list(claim_ids)},
                )

        logger.info("Created %d payment(s) from %d claim(s)", len(created), len(claim_ids))
        return created

    # ABA file generation

    def generate_aba_file(
        self,
        payment_ids: Sequence[int],
        user_id: str,
        now: datetime | None = None,
    ) -> GeneratedAbaFile:
        """
        Generate an ABA file from the PENDING payments among ``payment_ids``.

        Raises:
            NoPendingPaymentsError: none of the ids is a PENDING payment
            AbaSequenceExhaustedError: the day already has 99 files
        """
        now = now or self._clock()
        day = now.date()

        with self.store.atomic():
            payments = self.store.get_payments(
                list(dict.fromkeys(payment_ids)), status=PaymentStatus.PENDING
            )
            if not payments:
                raise NoPendingPaymentsError("No pending payments found for the given IDs")

            # Daily sequence: files already named for today + 1
            name_scope = f"{self.config.filename_prefix}-{format_aba_date(day)}-"
            sequence = self.store.next_value(
                name_scope, floor=self.store.count_aba_files_with_prefix(name_scope)
            )
            if sequence > MAX_REEL_SEQUENCE:
                raise AbaSequenceExhaustedError(
                    f"Daily ABA file limit of {MAX_REEL_SEQUENCE} reached for {day:%d/%m/%Y}"
                )
            filename = aba_filename(
                self.config.filename_prefix, day, sequence, self.config.file_extension
            )

            content = render_aba_file(
                [self._to_aba_payment(payment) for payment in payments],
                self.originator,
                sequence,
                day,
            )
            total_cents = sum(payment.amount_cents for payment in payments)
            storage_key = f"aba-files/{day:%Y}/{day:%m}/{filename}"

            aba_file_id = self.store.create_aba_file(
                filename=filename,
                storage_key=storage_key,
                total_cents=total_cents,
                payment_count=len(payments),
                created_at=now,
            )

            included = [payment.id for payment in payments]
            moved = self.store.include_payments_in_file(included, aba_file_id)
            if moved != len(included):
                raise ConcurrentModificationError(
                    f"{len(included) - moved} payment(s) left PENDING during file generation"
                )

            self.store.record_audit(
                user_id,
                "aba.generated",
                "aba_file",
                aba_file_id,
                {"filename": filename, "paymentCount": len(payments), "totalCents": total_cents},
            )
            aba_file = self.store.get_aba_file(aba_file_id)
            if aba_file is None:
                raise RecordNotFoundError(f"ABA file {aba_file_id} missing after insert")

        logger.info(
            "Generated %s with %d payment(s), %d cents", filename, len(payments), total_cents
        )
        return GeneratedAbaFile(
            aba_file=aba_file, content=content, filename=filename, payment_ids=included
        )

    @staticmethod
    def _to_aba_payment(payment: PaymentRecord) -> AbaPayment:
        return AbaPayment(
            amount_cents=payment.amount_cents,
            bsb=payment.bsb,
            account_number=payment.account_number,
            account_name=payment.account_name,
            reference=payment.reference or payment.claim_reference or "",
        )

    # Submission and reconciliation

    def mark_submitted(
        self,
        aba_file_id: int,
        bank_reference: str,
        user_id: str,
        now: datetime | None = None,
    ) -> AbaFileRecord:
        """
        Record that a file was uploaded to the bank.

        Its IN_ABA_FILE payments move to SUBMITTED_TO_BANK.
        """
        submitted_at = now or self._clock()
        with self.store.atomic():
            if self.store.get_aba_file(aba_file_id) is None:
                raise AbaFileNotFoundError(f"ABA file {aba_file_id} not found")

            self.store.mark_aba_file_submitted(aba_file_id, bank_reference, submitted_at)
            moved = self.store.update_file_payments_status(
                aba_file_id, PaymentStatus.SUBMITTED_TO_BANK, expected=PaymentStatus.IN_ABA_FILE
            )
            self.store.record_audit(
                user_id, "aba.submitted", "aba_file", aba_file_id, {"bankReference": bank_reference}
            )
            aba_file = self.store.get_aba_file(aba_file_id)
            if aba_file is None:
                raise AbaFileNotFoundError(f"ABA file {aba_file_id} not found")

        logger.info("ABA file %d submitted, %d payment(s) with bank", aba_file_id, moved)
        return aba_file

    def reconcile_payments(
        self,
        payment_ids: Sequence[int],
        user_id: str,
        now: datetime | None = None,
    ) -> ReconciliationResult:
        """
        Mark payments CLEARED and cascade PAID to their claims and invoices.

        Only payments that went out in a file (IN_ABA_FILE or
        SUBMITTED_TO_BANK) are cleared; others are ignored.
        """
        processed_at = now or self._clock()
        result = ReconciliationResult()

        with self.store.atomic():
            payments = [
                payment
                for payment in self.store.get_payments(list(dict.fromkeys(payment_ids)))
                if payment.status in RECONCILABLE_STATUSES
            ]
            if not payments:
                logger.info("No payments to reconcile")
                return result

            cleared_ids = [payment.id for payment in payments]
            result.payments_cleared = self.store.mark_payments_cleared(cleared_ids, processed_at)

            result.claim_ids = sorted({payment.claim_id for payment in payments})
            self.store.update_claim_status(result.claim_ids, ClaimStatus.PAID)

            claims = self.store.get_claims(result.claim_ids)
            result.invoice_ids = sorted({claim.invoice_id for claim in claims})
            self.store.update_invoice_status(result.invoice_ids, InvoiceStatus.PAID)

            file_ids = sorted({p.aba_file_id for p in payments if p.aba_file_id is not None})
            result.aba_files_cleared = self.store.mark_aba_files_cleared(file_ids, processed_at)

            self.store.record_audit(
                user_id,
                "payment.reconciled",
                "payment",
                cleared_ids[0],
                {"paymentIds": cleared_ids, "claimIds": result.claim_ids},
            )

        logger.info(
            "Reconciled %d payment(s): %d claim(s), %d invoice(s) paid",
            result.payments_cleared,
            len(result.claim_ids),
            len(result.invoice_ids),
        )
        return result
