"""Workflow services built on the extractor, matcher and state store."""

from ndis_claims.services.intake import IngestResult, InvoiceIntakeService, InvoiceReviewError

__all__ = ["IngestResult", "InvoiceIntakeService", "InvoiceReviewError"]
