"""
Money helpers (SSOT).

ALL monetary values in this package are integer cents. Conversion from text
goes through Decimal so that no float ever touches an amount.
"""

import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

CENT = Decimal("0.01")

# Characters that may decorate a currency string but carry no value
_CURRENCY_NOISE_RE = re.compile(r"[$,\s]")


def parse_to_cents(value: str) -> int | None:
    """
    Parse a currency string ("$1,234.56", "1234.5", "12") to integer cents.

    Returns None for anything that is not a non-negative finite number.
    """
    cleaned = _CURRENCY_NOISE_RE.sub("", value or "")
    if not cleaned:
        return None
    try:
        amount = Decimal(cleaned)
    except InvalidOperation:
        return None
    if not amount.is_finite() or amount < 0:
        return None
    return int(amount.quantize(CENT, rounding=ROUND_HALF_UP) * 100)


def cents_to_decimal(cents: int) -> Decimal:
    """Convert integer cents to a two-place Decimal (12345 -> 123.45)."""
    return (Decimal(cents) / 100).quantize(CENT)


def format_cents(cents: int) -> str:
    """Render cents as a plain two-decimal string: 38798 -> "387.98"."""
    return f"{cents_to_decimal(cents):.2f}"


def format_aud(cents: int) -> str:
    """Render cents for display: 123456 -> "$1,234.56"."""
    amount = cents_to_decimal(cents)
    sign = "-" if amount < 0 else ""
    return f"{sign}${abs(amount):,.2f}"
