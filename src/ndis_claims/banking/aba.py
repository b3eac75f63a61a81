"""
ABA (Cemtex) direct-entry file encoder.

Pure functions, no storage access. A file is:

    0  descriptive record (header), one
    1  detail record, one per credit
    7  file total record (footer), one

Every record is exactly 120 characters. Records are joined with CRLF and
the file ends with a trailing CRLF.

Padding rules:
- text fields: left-justified, space-padded on the right, truncated on the right
- numeric fields: right-justified, zero-padded on the left, truncated on the
  left (the least significant digits are kept)
"""

import re
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date

RECORD_LENGTH = 120
LINE_ENDING = "\r\n"

TRANSACTION_CODE_CREDIT = "50"
FOOTER_BSB = "999-999"
# The reel sequence field is two digits wide
MAX_REEL_SEQUENCE = 99

_NON_DIGITS = re.compile(r"\D")


@dataclass(frozen=True)
class Originator:
    """The paying organisation, as printed in header and detail records."""

    bank_code: str = "CBA"
    user_name: str = "Lotus Plan Management"
    user_id: str = "301500"
    description: str = "Claims Payment"
    trace_bsb: str = "062-000"
    trace_account: str = "000000000"
    remitter: str = "Lotus PM"


@dataclass(frozen=True)
class AbaPayment:
    """One credit to encode as a detail record."""

    amount_cents: int
    bsb: str
    account_number: str
    account_name: str
    reference: str


def pad_text(value: str, width: int) -> str:
    """Left-justify and space-pad; truncate on the right."""
    return value[:width].ljust(width, " ")


def pad_numeric(value: int | str, width: int) -> str:
    """Right-justify and zero-pad; truncate on the left."""
    digits = str(value)
    return digits[-width:].rjust(width, "0")


def normalize_bsb(bsb: str) -> str:
    """Strip separators from a BSB: "062-000" -> "062000"."""
    return _NON_DIGITS.sub("", bsb)


def format_bsb(bsb: str) -> str:
    """Canonical NNN-NNN form of a BSB."""
    digits = pad_numeric(normalize_bsb(bsb), 6)
    return f"{digits[:3]}-{digits[3:]}"


def format_aba_date(day: date) -> str:
    """DDMMYY."""
    return day.strftime("%d%m%y")


def build_header(originator: Originator, sequence: int, processing_date: date) -> str:
    """
    Record type 0 (descriptive record).

    Raises:
        ValueError: sequence outside 1..99, which the reel field cannot hold
    """
    if not 1 <= sequence <= MAX_REEL_SEQUENCE:
        raise ValueError(f"reel sequence out of range: {sequence}")
    return "".join(
        [
            "0",
            " " * 17,
            pad_numeric(sequence, 2),  # reel sequence
            pad_text(originator.bank_code, 3),
            " " * 7,
            pad_text(originator.user_name, 26),
            pad_text(originator.user_id, 6),
            pad_text(originator.description, 12),
            format_aba_date(processing_date),
            " " * 40,
        ]
    )


def build_detail(originator: Originator, payment: AbaPayment) -> str:
    """Record type 1 (credit detail record)."""
    return "".join(
        [
            "1",
            format_bsb(payment.bsb),
            pad_text(payment.account_number, 9),
            " ",  # indicator
            TRANSACTION_CODE_CREDIT,
            pad_numeric(payment.amount_cents, 10),
            pad_text(payment.account_name, 32),
            pad_text(payment.reference, 18),
            format_bsb(originator.trace_bsb),
            pad_text(originator.trace_account, 9),
            pad_text(originator.remitter, 16),
            pad_numeric(0, 8),  # withholding tax
        ]
    )


def build_footer(record_count: int, total_cents: int) -> str:
    """Record type 7 (file total record). Credits only, so debit total is zero."""
    return "".join(
        [
            "7",
            FOOTER_BSB,
            " " * 12,
            pad_numeric(total_cents, 10),  # net total
            pad_numeric(total_cents, 10),  # credit total
            pad_numeric(0, 10),  # debit total
            " " * 24,
            pad_numeric(record_count, 6),
            " " * 40,
        ]
    )


def render_aba_file(
    payments: Sequence[AbaPayment],
    originator: Originator,
    sequence: int,
    processing_date: date,
) -> str:
    """Render a complete file. Raises ValueError for an empty payment list."""
    if not payments:
        raise ValueError("an ABA file needs at least one payment")

    records = [build_header(originator, sequence, processing_date)]
    records.extend(build_detail(originator, payment) for payment in payments)
    records.append(
        build_footer(len(payments), sum(payment.amount_cents for payment in payments))
    )
    return LINE_ENDING.join(records) + LINE_ENDING


def aba_filename(prefix: str, day: date, sequence: int, extension: str = "aba") -> str:
    """<PREFIX>-DDMMYY-NNN.<ext>"""
    return f"{prefix}-{format_aba_date(day)}-{pad_numeric(sequence, 3)}.{extension}"
