"""Auto-matching of extracted invoices to providers and participants.

Matching is tiered. Each tier is a small function that either resolves an
entity (returning a TierOutcome) or passes; tiers are tried in a fixed
order and the first hit wins:

    Provider:    ABN_EXACT (1.0) -> EMAIL_EXACT (1.0) -> EMAIL_DOMAIN (0.7)
                 -> HISTORICAL (0.8)
    Participant: NDIS_NUMBER (1.0) -> HISTORICAL (0.8)

Provider and participant are matched independently. Matching never raises
for bad input data; unresolved sides are None with method NONE.

Confirmed matches feed back into the provider email table through
``record_provider_email_match`` (the learning loop).
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Callable, Iterator, Sequence
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING, Optional, Protocol

from ..config import MatchingConfig
from ..schemas.ndis import format_abn

if TYPE_CHECKING:
    from ..extractors.base import ExtractedInvoiceData
    from ..state_store import (
        InvoiceRecord,
        ParticipantRecord,
        ProviderEmailRecord,
        ProviderRecord,
    )

logger = logging.getLogger(__name__)


class MatchMethod(str, Enum):
    """How an entity was resolved."""

    ABN_EXACT = "ABN_EXACT"
    EMAIL_EXACT = "EMAIL_EXACT"
    EMAIL_DOMAIN = "EMAIL_DOMAIN"
    HISTORICAL = "HISTORICAL"
    NDIS_NUMBER = "NDIS_NUMBER"
    NONE = "NONE"


class EmailLearningOutcome(str, Enum):
    """Effect of recording a confirmed provider/email pairing."""

    CREATED = "CREATED"  # new unverified association
    VERIFIED = "VERIFIED"  # second confirmation promoted it
    UNCHANGED = "UNCHANGED"  # already verified
    CONFLICT = "CONFLICT"  # address belongs to another provider


class MatchDirectory(Protocol):
    """Read-only lookups the matcher needs from the entity store."""

    def find_provider_by_abn(self, abn_values: Sequence[str]) -> ProviderRecord | None: ...

    def find_participant_by_ndis_number(self, ndis_number: str) -> ParticipantRecord | None: ...

    def get_provider(self, provider_id: int) -> ProviderRecord | None: ...

    def get_participant(self, participant_id: int) -> ParticipantRecord | None: ...

    def get_provider_email(self, email: str) -> ProviderEmailRecord | None: ...

    def provider_ids_for_email_domain(self, domain: str) -> list[int]: ...

    def recent_matched_invoices(self, source_email: str, since: datetime) -> list[InvoiceRecord]: ...


class EmailAssociationStore(Protocol):
    """Read/write access to the provider email table."""

    def atomic(self) -> AbstractContextManager[None]: ...

    def get_provider_email(self, email: str) -> ProviderEmailRecord | None: ...

    def add_provider_email(self, provider_id: int, email: str, verified: bool = False) -> int: ...

    def set_provider_email_verified(self, association_id: int) -> bool: ...


@dataclass
class TierOutcome:
    """A tier's verdict for one side of the match."""

    entity_id: int
    method: MatchMethod
    confidence: float
    detail: str


@dataclass
class MatchResult:
    """Result of auto-matching one invoice."""

    provider_id: int | None = None
    participant_id: int | None = None
    match_confidence: float = 0.0
    match_method: MatchMethod = MatchMethod.NONE
    provider_match_detail: str = "No provider match found"
    participant_match_detail: str = "No participant match found"
    provider_method: MatchMethod = MatchMethod.NONE
    participant_method: MatchMethod = MatchMethod.NONE

    @property
    def is_matched(self) -> bool:
        """True if at least one side resolved."""
        return self.provider_id is not None or self.participant_id is not None

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "provider_id": self.provider_id,
            "participant_id": self.participant_id,
            "match_confidence": self.match_confidence,
            "match_method": self.match_method.value,
            "provider_match_detail": self.provider_match_detail,
            "participant_match_detail": self.participant_match_detail,
        }


@dataclass
class MatchContext:
    """Inputs shared by all tiers for one match call."""

    extracted: ExtractedInvoiceData
    source_email: str | None
    now: datetime
    _history: list[InvoiceRecord] | None = field(default=None, repr=False)

    @property
    def email_domain(self) -> str | None:
        if not self.source_email or "@" not in self.source_email:
            return None
        domain = self.source_email.rsplit("@", 1)[1].strip().lower()
        return domain or None


Tier = Callable[[MatchContext], Optional[TierOutcome]]


def _top_candidate(ids: Iterator[int | None]) -> tuple[int, int] | None:
    """Most frequent non-null id and its count (first seen wins ties)."""
    counts = Counter(entity_id for entity_id in ids if entity_id is not None)
    if not counts:
        return None
    return counts.most_common(1)[0]


class AutoMatcher:
    """Resolve provider and participant ids for extracted invoice data.

    Only read queries are issued against the directory, so independent
    invoices can be matched concurrently.
    """

    def __init__(
        self,
        directory: MatchDirectory,
        config: MatchingConfig | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the matcher.

        Args:
            directory: Entity lookups (usually the StateStore).
            config: Matching thresholds; defaults when omitted.
            clock: Returns "now" for the historical window.
        """
        self.directory = directory
        self.config = config or MatchingConfig()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self.provider_tiers: list[Tier] = [
            self._provider_by_abn,
            self._provider_by_email,
            self._provider_by_domain,
            self._provider_by_history,
        ]
        self.participant_tiers: list[Tier] = [
            self._participant_by_ndis_number,
            self._participant_by_history,
        ]

    def match(
        self, extracted: ExtractedInvoiceData, source_email: str | None = None
    ) -> MatchResult:
        """Match an invoice. Never raises for missing or malformed fields."""
        context = MatchContext(
            extracted=extracted,
            source_email=source_email.strip() if source_email else None,
            now=self._clock(),
        )

        provider = self._run_tiers(self.provider_tiers, context)
        participant = self._run_tiers(self.participant_tiers, context)

        result = MatchResult()
        if provider:
            result.provider_id = provider.entity_id
            result.provider_method = provider.method
            result.provider_match_detail = provider.detail
        if participant:
            result.participant_id = participant.entity_id
            result.participant_method = participant.method
            result.participant_match_detail = participant.detail

        # Overall confidence follows the provider match, else the participant
        primary = provider or participant
        if primary:
            result.match_method = primary.method
            result.match_confidence = primary.confidence

        logger.info(
            "Auto-match: provider=%s (%s) participant=%s (%s) confidence=%.2f",
            result.provider_id,
            result.provider_method.value,
            result.participant_id,
            result.participant_method.value,
            result.match_confidence,
        )
        return result

    @staticmethod
    def _run_tiers(tiers: list[Tier], context: MatchContext) -> TierOutcome | None:
        for tier in tiers:
            outcome = tier(context)
            if outcome is not None:
                return outcome
        return None

    # Provider tiers

    def _provider_by_abn(self, context: MatchContext) -> TierOutcome | None:
        abn = context.extracted.provider_abn
        if not abn:
            return None
        # Legacy records store the grouped form ("12 345 678 901")
        candidates = [abn]
        spaced = format_abn(abn)
        if spaced != abn:
            candidates.append(spaced)

        provider = self.directory.find_provider_by_abn(candidates)
        if provider is None:
            return None
        return TierOutcome(
            entity_id=provider.id,
            method=MatchMethod.ABN_EXACT,
            confidence=1.0,
            detail=f"Matched by ABN {abn} → {provider.name}",
        )

    def _provider_by_email(self, context: MatchContext) -> TierOutcome | None:
        if not context.source_email:
            return None
        association = self.directory.get_provider_email(context.source_email.lower())
        if association is None:
            return None
        provider = self.directory.get_provider(association.provider_id)
        if provider is None:
            return None
        return TierOutcome(
            entity_id=provider.id,
            method=MatchMethod.EMAIL_EXACT,
            confidence=1.0,
            detail=f"Matched by email {context.source_email} → {provider.name}",
        )

    def _provider_by_domain(self, context: MatchContext) -> TierOutcome | None:
        domain = context.email_domain
        if not domain:
            return None
        provider_ids = self.directory.provider_ids_for_email_domain(domain)
        # Shared domains (gmail.com, two providers of one group) stay ambiguous
        if len(provider_ids) != 1:
            return None
        provider = self.directory.get_provider(provider_ids[0])
        if provider is None:
            return None
        return TierOutcome(
            entity_id=provider.id,
            method=MatchMethod.EMAIL_DOMAIN,
            confidence=self.config.domain_confidence,
            detail=f"Matched by email domain @{domain} → {provider.name}",
        )

    def _provider_by_history(self, context: MatchContext) -> TierOutcome | None:
        top = _top_candidate(inv.provider_id for inv in self._history(context))
        if top is None or top[1] < self.config.historical_min_count:
            return None
        provider = self.directory.get_provider(top[0])
        if provider is None:
            return None
        return TierOutcome(
            entity_id=provider.id,
            method=MatchMethod.HISTORICAL,
            confidence=self.config.historical_confidence,
            detail=f"Historical match ({top[1]} invoices from {context.source_email}) → {provider.name}",
        )

    # Participant tiers

    def _participant_by_ndis_number(self, context: MatchContext) -> TierOutcome | None:
        ndis_number = context.extracted.participant_ndis_number
        if not ndis_number:
            return None
        participant = self.directory.find_participant_by_ndis_number(ndis_number)
        if participant is None:
            return None
        return TierOutcome(
            entity_id=participant.id,
            method=MatchMethod.NDIS_NUMBER,
            confidence=1.0,
            detail=f"Matched by NDIS number {ndis_number} → {participant.display_name}",
        )

    def _participant_by_history(self, context: MatchContext) -> TierOutcome | None:
        top = _top_candidate(inv.participant_id for inv in self._history(context))
        if top is None or top[1] < self.config.historical_min_count:
            return None
        participant = self.directory.get_participant(top[0])
        if participant is None:
            return None
        return TierOutcome(
            entity_id=participant.id,
            method=MatchMethod.HISTORICAL,
            confidence=self.config.historical_confidence,
            detail=(
                f"Historical match ({top[1]} invoices from {context.source_email})"
                f" → {participant.display_name}"
            ),
        )

    def _history(self, context: MatchContext) -> list[InvoiceRecord]:
        """Previously matched invoices from the same sender, loaded once per match."""
        if not context.source_email:
            return []
        if context._history is None:
            since = context.now - timedelta(days=self.config.historical_lookback_days)
            context._history = self.directory.recent_matched_invoices(context.source_email, since)
        return context._history


def record_provider_email_match(
    store: EmailAssociationStore, provider_id: int, email: str
) -> EmailLearningOutcome:
    """Record that a reviewer confirmed ``email`` belongs to ``provider_id``.

    First confirmation creates an unverified association, the second
    verifies it, later ones change nothing. An address already owned by a
    different provider is left alone and reported as CONFLICT.
    """
    email_lower = email.strip().lower()
    with store.atomic():
        existing = store.get_provider_email(email_lower)
        if existing is None:
            store.add_provider_email(provider_id, email_lower)
            outcome = EmailLearningOutcome.CREATED
        elif existing.provider_id != provider_id:
            outcome = EmailLearningOutcome.CONFLICT
        elif not existing.is_verified:
            store.set_provider_email_verified(existing.id)
            outcome = EmailLearningOutcome.VERIFIED
        else:
            outcome = EmailLearningOutcome.UNCHANGED

    if outcome is EmailLearningOutcome.CONFLICT:
        logger.warning(
            "Email association for provider %s conflicts with provider %s; left unchanged",
            provider_id,
            existing.provider_id,
        )
    else:
        logger.debug("Provider %s email learning: %s", provider_id, outcome.value)
    return outcome
