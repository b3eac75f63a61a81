"""
Claim reference and lodgement batch number formats (SSOT).

Claim reference: CLM-YYYYMMDD-NNNN
- YYYYMMDD: the day the claim was generated
- NNNN: 4-digit sequence, restarting at 0001 each day

Batch number: BATCH-YYYY-NNNN, restarting at 0001 each year
"""

import re
from datetime import date

CLAIM_REFERENCE_PREFIX = "CLM"
CLAIM_SEQUENCE_WIDTH = 4
CLAIM_REFERENCE_RE = re.compile(r"^CLM-\d{8}-\d{4}$")


def claim_reference_scope(day: date) -> str:
    """Prefix shared by every reference issued on ``day``: "CLM-20260215-"."""
    return f"{CLAIM_REFERENCE_PREFIX}-{day:%Y%m%d}-"


def format_claim_reference(day: date, sequence: int) -> str:
    """Build a reference such as "CLM-20260215-0001"."""
    if sequence < 1 or sequence >= 10**CLAIM_SEQUENCE_WIDTH:
        raise ValueError(f"claim sequence out of range: {sequence}")
    return f"{claim_reference_scope(day)}{sequence:0{CLAIM_SEQUENCE_WIDTH}d}"


def parse_claim_sequence(reference: str) -> int | None:
    """Return the NNNN part of a well-formed reference, else None."""
    if not CLAIM_REFERENCE_RE.match(reference):
        return None
    return int(reference.rsplit("-", 1)[1])


BATCH_NUMBER_PREFIX = "BATCH"
BATCH_SEQUENCE_WIDTH = 4


def batch_number_scope(day: date) -> str:
    """Prefix shared by every batch number issued in ``day``'s year: "BATCH-2026-"."""
    return f"{BATCH_NUMBER_PREFIX}-{day:%Y}-"


def format_batch_number(day: date, sequence: int) -> str:
    """Build a batch number such as "BATCH-2026-0001"."""
    if sequence < 1 or sequence >= 10**BATCH_SEQUENCE_WIDTH:
        raise ValueError(f"batch sequence out of range: {sequence}")
    return f"{batch_number_scope(day)}{sequence:0{BATCH_SEQUENCE_WIDTH}d}"
