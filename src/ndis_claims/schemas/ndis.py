"""
NDIS domain identifiers.

- ABN: 11-digit Australian Business Number (mod-89 checksum)
- NDIS number: 9-digit participant number
- Support categories: the 15 PACE categories, keyed by the first two digits
  of a support item code
"""

import re
from dataclasses import dataclass

_WHITESPACE_RE = re.compile(r"\s")

ABN_WEIGHTS = (10, 1, 3, 5, 7, 9, 11, 13, 15, 17, 19)


@dataclass(frozen=True)
class SupportCategory:
    """A PACE support category."""

    code: str
    name: str
    short_name: str


SUPPORT_CATEGORIES: tuple[SupportCategory, ...] = (
    SupportCategory("01", "Daily Activities", "Daily Activities"),
    SupportCategory("02", "Transport", "Transport"),
    SupportCategory("03", "Consumables", "Consumables"),
    SupportCategory(
        "04",
        "Assistance with Social, Economic and Community Participation",
        "Social & Community",
    ),
    SupportCategory("05", "Assistive Technology", "Assistive Technology"),
    SupportCategory("06", "Home Modifications", "Home Mods"),
    SupportCategory("07", "Support Coordination", "Support Coordination"),
    SupportCategory("08", "Improved Living Arrangements", "Living Arrangements"),
    SupportCategory(
        "09", "Increased Social and Community Participation", "Community Participation"
    ),
    SupportCategory("10", "Finding and Keeping a Job", "Employment"),
    SupportCategory("11", "Improved Health and Wellbeing", "Health & Wellbeing"),
    SupportCategory("12", "Improved Learning", "Learning"),
    SupportCategory("13", "Improved Life Choices", "Life Choices"),
    SupportCategory("14", "Improved Daily Living", "Daily Living"),
    SupportCategory("15", "Improved Relationships", "Relationships"),
)

_CATEGORIES_BY_CODE = {c.code: c for c in SUPPORT_CATEGORIES}


def get_support_category(code: str) -> SupportCategory | None:
    """Look up a support category by its 2-digit code."""
    return _CATEGORIES_BY_CODE.get(code)


def strip_spaces(value: str) -> str:
    """Remove all whitespace from an identifier."""
    return _WHITESPACE_RE.sub("", value)


def normalize_abn(raw: str) -> str:
    """Strip the grouping spaces from an ABN ("11 111 111 111" -> "11111111111")."""
    return strip_spaces(raw)


def format_abn(abn: str) -> str:
    """Group an ABN for display: "12345678901" -> "12 345 678 901"."""
    clean = strip_spaces(abn)
    if len(clean) != 11:
        return abn
    return f"{clean[0:2]} {clean[2:5]} {clean[5:8]} {clean[8:]}"


def is_valid_abn(abn: str) -> bool:
    """Validate an ABN using the official weighted mod-89 checksum."""
    clean = strip_spaces(abn)
    if not re.fullmatch(r"\d{11}", clean):
        return False
    digits = [int(ch) for ch in clean]
    digits[0] -= 1
    total = sum(d * w for d, w in zip(digits, ABN_WEIGHTS))
    return total % 89 == 0


def normalize_ndis_number(raw: str) -> str:
    """Strip the grouping spaces from an NDIS number."""
    return strip_spaces(raw)


def is_valid_ndis_number(ndis_number: str) -> bool:
    """NDIS participant numbers are 9 digits."""
    return bool(re.fullmatch(r"\d{9}", strip_spaces(ndis_number)))


def format_ndis_number(ndis_number: str) -> str:
    """Group an NDIS number for display: "430111222" -> "430 111 222"."""
    clean = strip_spaces(ndis_number)
    if len(clean) != 9:
        return ndis_number
    return f"{clean[0:3]} {clean[3:6]} {clean[6:]}"
