"""
SSOT helpers shared by every stage of the pipeline.

Money, NDIS identifiers and claim references are defined exactly once here.
"""

from .money import cents_to_decimal, format_aud, format_cents, parse_to_cents
from .ndis import (
    SUPPORT_CATEGORIES,
    SupportCategory,
    format_abn,
    format_ndis_number,
    get_support_category,
    is_valid_abn,
    is_valid_ndis_number,
    normalize_abn,
    normalize_ndis_number,
)
from .references import (
    CLAIM_REFERENCE_RE,
    batch_number_scope,
    claim_reference_scope,
    format_batch_number,
    format_claim_reference,
    parse_claim_sequence,
)

__all__ = [
    # Money
    "parse_to_cents",
    "format_cents",
    "format_aud",
    "cents_to_decimal",
    # NDIS identifiers
    "SUPPORT_CATEGORIES",
    "SupportCategory",
    "get_support_category",
    "normalize_abn",
    "format_abn",
    "is_valid_abn",
    "normalize_ndis_number",
    "format_ndis_number",
    "is_valid_ndis_number",
    # Claim references and batch numbers
    "CLAIM_REFERENCE_RE",
    "claim_reference_scope",
    "format_claim_reference",
    "parse_claim_sequence",
    "batch_number_scope",
    "format_batch_number",
]
