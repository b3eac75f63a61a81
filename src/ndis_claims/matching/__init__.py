"""Tiered auto-matching of invoices to providers and participants."""

from ndis_claims.matching.engine import (
    AutoMatcher,
    EmailLearningOutcome,
    MatchMethod,
    MatchResult,
    TierOutcome,
    record_provider_email_match,
)

__all__ = [
    "AutoMatcher",
    "EmailLearningOutcome",
    "MatchMethod",
    "MatchResult",
    "TierOutcome",
    "record_provider_email_match",
]
