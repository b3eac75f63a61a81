"""Tests for the tiered auto-matcher and the email learning loop."""

from datetime import datetime, timedelta, timezone

import pytest

from ndis_claims.extractors import ExtractedInvoiceData, blocks_from_lines
from ndis_claims.matching import (
    AutoMatcher,
    EmailLearningOutcome,
    MatchMethod,
    record_provider_email_match,
)
from ndis_claims.services import InvoiceIntakeService
from ndis_claims.state_store import InvoiceStatus

from conftest import PARTICIPANT_NDIS, PROVIDER_ABN

NOW = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def matcher(store, directory):
    return AutoMatcher(store, clock=lambda: NOW)


def add_history(store, sender, provider_id, participant_id, count, days_ago=10):
    """Previously matched invoices from ``sender``."""
    for _ in range(count):
        store.create_invoice(
            status=InvoiceStatus.APPROVED,
            received_at=NOW - timedelta(days=days_ago),
            provider_id=provider_id,
            participant_id=participant_id,
            source_email=sender,
            match_method="ABN_EXACT",
        )


class TestTier1:
    """Deterministic matches."""

    def test_provider_by_abn(self, matcher, directory):
        result = matcher.match(ExtractedInvoiceData(provider_abn=PROVIDER_ABN))

        assert result.provider_id == directory["provider_id"]
        assert result.match_method == MatchMethod.ABN_EXACT
        assert result.match_confidence == 1.0
        assert "51824753556" in result.provider_match_detail

    def test_provider_by_spaced_abn(self, store, matcher):
        """Records stored in the grouped form still match."""
        legacy_id = store.add_provider(name="Legacy Care", abn="53 004 085 617")

        result = matcher.match(ExtractedInvoiceData(provider_abn="53004085617"))

        assert result.provider_id == legacy_id

    def test_participant_by_ndis_number(self, matcher, directory):
        result = matcher.match(ExtractedInvoiceData(participant_ndis_number=PARTICIPANT_NDIS))

        assert result.participant_id == directory["participant_id"]
        assert result.provider_id is None
        # Only the participant resolved: it drives the overall result
        assert result.match_method == MatchMethod.NDIS_NUMBER
        assert result.match_confidence == 1.0
        assert "Jane Citizen" in result.participant_match_detail

    def test_provider_by_exact_email(self, store, matcher, directory):
        store.add_provider_email(directory["provider_id"], "accounts@sunrise.com.au")

        result = matcher.match(ExtractedInvoiceData(), "Accounts@Sunrise.com.au")

        assert result.provider_id == directory["provider_id"]
        assert result.match_method == MatchMethod.EMAIL_EXACT
        assert result.match_confidence == 1.0

    def test_both_sides(self, matcher, directory):
        result = matcher.match(
            ExtractedInvoiceData(provider_abn=PROVIDER_ABN, participant_ndis_number=PARTICIPANT_NDIS)
        )

        assert result.provider_id == directory["provider_id"]
        assert result.participant_id == directory["participant_id"]
        assert result.match_method == MatchMethod.ABN_EXACT

    def test_deleted_provider_not_matched(self, store, matcher, directory):
        store.soft_delete_provider(directory["provider_id"])

        result = matcher.match(ExtractedInvoiceData(provider_abn=PROVIDER_ABN))

        assert result.provider_id is None
        assert result.match_method == MatchMethod.NONE

    def test_deleted_participant_not_matched(self, store, matcher, directory):
        store.soft_delete_participant(directory["participant_id"])

        result = matcher.match(ExtractedInvoiceData(participant_ndis_number=PARTICIPANT_NDIS))

        assert result.participant_id is None


class TestTierPriority:
    """Higher tiers always win."""

    def test_abn_beats_domain(self, store, matcher, directory):
        """Input satisfying tier 1 and tier 2 resolves via tier 1 at 1.0."""
        store.add_provider_email(directory["other_provider_id"], "office@harbour.com.au")

        result = matcher.match(
            ExtractedInvoiceData(provider_abn=PROVIDER_ABN), "billing@harbour.com.au"
        )

        assert result.provider_id == directory["provider_id"]
        assert result.match_method == MatchMethod.ABN_EXACT
        assert result.match_confidence == 1.0

    def test_exact_email_beats_history(self, store, matcher, directory):
        sender = "admin@harbour.com.au"
        store.add_provider_email(directory["other_provider_id"], sender)
        add_history(store, sender, directory["provider_id"], None, count=5)

        result = matcher.match(ExtractedInvoiceData(), sender)

        assert result.provider_id == directory["other_provider_id"]
        assert result.match_method == MatchMethod.EMAIL_EXACT

    def test_tier_order_is_explicit(self, matcher):
        names = [tier.__name__ for tier in matcher.provider_tiers]
        assert names == [
            "_provider_by_abn",
            "_provider_by_email",
            "_provider_by_domain",
            "_provider_by_history",
        ]


class TestDomainMatch:
    """Tier 2 email-domain matches."""

    def test_unique_domain(self, store, matcher, directory):
        store.add_provider_email(directory["provider_id"], "accounts@sunrise.com.au")

        result = matcher.match(ExtractedInvoiceData(), "billing@sunrise.com.au")

        assert result.provider_id == directory["provider_id"]
        assert result.match_method == MatchMethod.EMAIL_DOMAIN
        assert result.match_confidence == 0.7
        assert "@sunrise.com.au" in result.provider_match_detail

    def test_ambiguous_domain_is_unmatched(self, store, matcher, directory):
        store.add_provider_email(directory["provider_id"], "sunrise.care@gmail.com")
        store.add_provider_email(directory["other_provider_id"], "harbour.therapy@gmail.com")

        result = matcher.match(ExtractedInvoiceData(), "someone@gmail.com")

        assert result.provider_id is None
        assert result.match_method == MatchMethod.NONE
        assert result.match_confidence == 0.0

    def test_same_provider_twice_is_not_ambiguous(self, store, matcher, directory):
        store.add_provider_email(directory["provider_id"], "a@sunrise.com.au")
        store.add_provider_email(directory["provider_id"], "b@sunrise.com.au")

        result = matcher.match(ExtractedInvoiceData(), "c@sunrise.com.au")

        assert result.match_method == MatchMethod.EMAIL_DOMAIN

    def test_malformed_sender(self, matcher):
        result = matcher.match(ExtractedInvoiceData(), "not-an-email")
        assert result.match_method == MatchMethod.NONE


class TestHistoricalMatch:
    """Tier 2b history from the same sender."""

    SENDER = "bookkeeper@example.org"

    def test_three_occurrences_match(self, store, matcher, directory):
        add_history(store, self.SENDER, directory["provider_id"], directory["participant_id"], 3)

        result = matcher.match(ExtractedInvoiceData(), self.SENDER)

        assert result.provider_id == directory["provider_id"]
        assert result.participant_id == directory["participant_id"]
        assert result.match_method == MatchMethod.HISTORICAL
        assert result.match_confidence == 0.8
        assert "3 invoices" in result.provider_match_detail

    def test_below_threshold(self, store, matcher, directory):
        add_history(store, self.SENDER, directory["provider_id"], directory["participant_id"], 2)

        result = matcher.match(ExtractedInvoiceData(), self.SENDER)

        assert result.provider_id is None
        assert result.participant_id is None

    def test_outside_window_ignored(self, store, matcher, directory):
        add_history(store, self.SENDER, directory["provider_id"], None, 3, days_ago=91)

        result = matcher.match(ExtractedInvoiceData(), self.SENDER)

        assert result.provider_id is None

    def test_unmatched_history_ignored(self, store, matcher, directory):
        for _ in range(3):
            store.create_invoice(
                received_at=NOW - timedelta(days=1),
                provider_id=directory["provider_id"],
                source_email=self.SENDER,
            )

        result = matcher.match(ExtractedInvoiceData(), self.SENDER)

        assert result.provider_id is None

    def test_sender_compared_case_insensitively(self, store, matcher, directory):
        add_history(store, self.SENDER.upper(), directory["provider_id"], None, 3)

        result = matcher.match(ExtractedInvoiceData(), self.SENDER)

        assert result.provider_id == directory["provider_id"]

    def test_participant_resolved_independently(self, store, matcher, directory):
        """Provider via ABN, participant via history."""
        add_history(store, self.SENDER, None, directory["other_participant_id"], 4)

        result = matcher.match(ExtractedInvoiceData(provider_abn=PROVIDER_ABN), self.SENDER)

        assert result.provider_id == directory["provider_id"]
        assert result.participant_id == directory["other_participant_id"]
        assert result.match_method == MatchMethod.ABN_EXACT
        assert result.match_confidence == 1.0

    def test_configurable_threshold(self, store, directory):
        from ndis_claims.config import MatchingConfig

        add_history(store, self.SENDER, directory["provider_id"], None, 2)
        matcher = AutoMatcher(store, MatchingConfig(historical_min_count=2), clock=lambda: NOW)

        assert matcher.match(ExtractedInvoiceData(), self.SENDER).provider_id == directory[
            "provider_id"
        ]


class TestNoMatch:
    """Tier 3."""

    def test_nothing_to_match(self, matcher):
        result = matcher.match(ExtractedInvoiceData())

        assert result.provider_id is None
        assert result.participant_id is None
        assert result.match_method == MatchMethod.NONE
        assert result.match_confidence == 0.0
        assert result.provider_match_detail == "No provider match found"
        assert result.participant_match_detail == "No participant match found"

    def test_unknown_identifiers(self, matcher):
        result = matcher.match(
            ExtractedInvoiceData(provider_abn="99999999999", participant_ndis_number="999999999"),
            "nobody@nowhere.test",
        )
        assert not result.is_matched
        assert 0.0 <= result.match_confidence <= 1.0

    def test_to_dict(self, matcher):
        assert matcher.match(ExtractedInvoiceData()).to_dict()["match_method"] == "NONE"


class TestLearningLoop:
    """Confirmed matches teach the provider email table."""

    def test_create_verify_then_noop(self, store, directory):
        provider_id = directory["provider_id"]

        first = record_provider_email_match(store, provider_id, "New@Provider.com.au")
        association = store.get_provider_email("new@provider.com.au")
        assert first == EmailLearningOutcome.CREATED
        assert association.email == "new@provider.com.au"
        assert association.is_verified is False

        second = record_provider_email_match(store, provider_id, "new@provider.com.au")
        assert second == EmailLearningOutcome.VERIFIED
        assert store.get_provider_email("new@provider.com.au").is_verified is True

        third = record_provider_email_match(store, provider_id, "new@provider.com.au")
        assert third == EmailLearningOutcome.UNCHANGED

    def test_conflicting_provider(self, store, directory):
        record_provider_email_match(store, directory["provider_id"], "shared@agency.com.au")

        outcome = record_provider_email_match(
            store, directory["other_provider_id"], "shared@agency.com.au"
        )

        assert outcome == EmailLearningOutcome.CONFLICT
        association = store.get_provider_email("shared@agency.com.au")
        assert association.provider_id == directory["provider_id"]
        assert association.is_verified is False

    def test_two_confirmed_invoices_verify_sender(self, store, directory):
        """Two invoices from an unassociated sender, both confirmed to the same provider."""
        service = InvoiceIntakeService(store)
        sender = "invoices@fresh-provider.com.au"
        lines = ["Invoice No: 1001", "Total: $120.00"]

        first = service.ingest(blocks_from_lines(lines), source_email=sender)
        assert first.match.provider_id is None

        outcome = service.confirm_invoice(
            first.invoice_id, directory["provider_id"], directory["participant_id"], "reviewer"
        )
        assert outcome == EmailLearningOutcome.CREATED
        assert store.get_provider_email(sender).is_verified is False

        second = service.ingest(blocks_from_lines(lines), source_email=sender)
        # The unverified association already resolves the sender
        assert second.match.match_method == MatchMethod.EMAIL_EXACT

        outcome = service.confirm_invoice(
            second.invoice_id, directory["provider_id"], directory["participant_id"], "reviewer"
        )
        assert outcome == EmailLearningOutcome.VERIFIED
        assert store.get_provider_email(sender).is_verified is True
