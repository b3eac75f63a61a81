"""
NDIS invoice heuristics extractor.

Extracts invoice fields from OCR LINE blocks using pattern matching tuned
for Australian NDIS provider invoices.

Supported formats:
- Dates: d/m/Y, d-m-Y, d.m.Y, d Month Y, Y-m-d (day first, AU convention)
- Amounts: $1,234.56, 1234.56 (converted to integer cents)
- Identifiers: ABN (11 digits), NDIS participant number (9 digits)
- Support item codes: 15_042_0128_1_3 or 15-042-0128-1-3

Never raises. A field that cannot be found is None; partial data is always
better than no data because a human completes the rest during review.
"""

import logging
import re
from collections.abc import Callable, Iterable
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Optional

from ..schemas.money import parse_to_cents
from ..schemas.ndis import normalize_abn, normalize_ndis_number
from .base import ExtractedInvoiceData, ExtractedLineItem, OcrBlock

logger = logging.getLogger(__name__)

# Horizontal whitespace only
_HS = r"[^\S\n]*"

# Month name → number (first three letters)
MONTHS = {
    "jan": 1,
    "feb": 2,
    "mar": 3,
    "apr": 4,
    "may": 5,
    "jun": 6,
    "jul": 7,
    "aug": 8,
    "sep": 9,
    "oct": 10,
    "nov": 11,
    "dec": 12,
}

# Date patterns, tried in this order
DMY_DATE_RE = re.compile(r"\b(\d{1,2})[/\-.](\d{1,2})[/\-.](\d{4})\b")
NAMED_MONTH_DATE_RE = re.compile(
    r"\b(\d{1,2})(?:st|nd|rd|th)?\s+"
    r"(jan|feb|mar|apr|may|jun|jul|aug|sep|oct|nov|dec)[a-z]*\.?,?\s+(\d{4})\b",
    re.IGNORECASE,
)
ISO_DATE_RE = re.compile(r"\b(\d{4})-(\d{2})-(\d{2})\b")

DATE_LABEL_RE = re.compile(
    r"(?:invoice\s+date|date\s+of\s+(?:invoice|tax\s+invoice)|tax\s+invoice\s+date|date)"
    rf"{_HS}:?{_HS}",
    re.IGNORECASE,
)

INVOICE_NUMBER_RE = re.compile(
    rf"(?:invoice{_HS}(?:#|no\.?|num(?:ber)?){_HS}:?{_HS}|inv[-#]{_HS})"
    r"([A-Z0-9][-A-Z0-9/]{1,30})",
    re.IGNORECASE,
)

_AMOUNT = r"\$?" + _HS + r"([\d,]+(?:\.\d{1,2})?)"

# OCR often splits "Total Due" and "$110.00" into separate LINE blocks.
# A value on the next line only counts when it is unmistakably currency,
# so a support item code below a bare label is never read as an amount.
_AMOUNT_GAP = rf"{_HS}:?{_HS}(?:\n{_HS}(?=\$|\d[\d,]*\.\d{{2}}(?![\w.])))?"
_ABN_GAP = rf"{_HS}:?{_HS}\n?{_HS}"

TOTAL_RE = re.compile(
    r"\b(?:total(?:\s+(?:due|payable|amount|inc\.?\s*gst|gst))?|amount\s+(?:due|payable))"
    rf"{_AMOUNT_GAP}{_AMOUNT}",
    re.IGNORECASE,
)
# "Total inc GST" is the grand total; "Total GST" is the tax itself
GST_RE = re.compile(
    r"(?<!inc\s)(?<!inc\.\s)(?<!incl\s)"
    r"\bgst(?:\s+(?:amount|charged|component|inclusive|included))?"
    rf"{_AMOUNT_GAP}{_AMOUNT}",
    re.IGNORECASE,
)
SUBTOTAL_RE = re.compile(
    r"\bsub[\s-]?total(?:\s+(?:ex\.?\s*gst|before\s+gst|ex\s+tax))?"
    rf"{_AMOUNT_GAP}{_AMOUNT}",
    re.IGNORECASE,
)

ABN_RE = re.compile(
    rf"\b(?:abn|australian\s+business\s+number){_ABN_GAP}"
    rf"(\d{{2}}{_HS}\d{{3}}{_HS}\d{{3}}{_HS}\d{{3}})\b",
    re.IGNORECASE,
)
NDIS_NUMBER_RE = re.compile(
    r"\b(?:ndis\s*(?:participant\s*)?(?:number|num|no\.?|#)"
    r"|participant\s*(?:ndis\s*)?(?:number|num|no\.?|#))"
    rf"{_HS}:?{_HS}(\d{{3}}{_HS}\d{{3}}{_HS}\d{{3}})\b",
    re.IGNORECASE,
)

# NDIS support item code: 15_042_0128_1_3 (underscores or hyphens)
SUPPORT_ITEM_CODE_RE = re.compile(
    r"(?<![\d_-])(\d{2}[_-]\d{3}[_-]\d{4}[_-]\d[_-]\d)(?![\d_-])"
)

# Currency-looking token on a line item: "$193.99", "$65", "193.99"
LINE_AMOUNT_RE = re.compile(
    r"\$" + _HS + r"(\d[\d,]*(?:\.\d{1,2})?)|(?<![\w.,/$-])(\d[\d,]*\.\d{2})(?![\d.])"
)

QUANTITY_RE = re.compile(
    r"\b(\d+(?:\.\d+)?)\s*(?:hrs?|hours?|ea|each|units?|x)\b",
    re.IGNORECASE,
)

SUPPORT_ITEM_NAME_RE = re.compile(r"^([A-Za-z][A-Za-z\s/\-&,.]{2,80})")

DEFAULT_MAX_QUANTITY = Decimal("10000")


def _safe_date(year: int, month: int, day: int) -> Optional[date]:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def parse_au_date(text: str) -> Optional[date]:
    """
    Parse the first date found in ``text`` using AU conventions.

    Tries day/month/year (``/``, ``-`` or ``.``), then day month-name year,
    then ISO year-month-day. Returns None if nothing parses.
    """
    if not text:
        return None

    for match in DMY_DATE_RE.finditer(text):
        parsed = _safe_date(int(match.group(3)), int(match.group(2)), int(match.group(1)))
        if parsed:
            return parsed

    for match in NAMED_MONTH_DATE_RE.finditer(text):
        month = MONTHS.get(match.group(2).lower()[:3])
        if month:
            parsed = _safe_date(int(match.group(3)), month, int(match.group(1)))
            if parsed:
                return parsed

    for match in ISO_DATE_RE.finditer(text):
        parsed = _safe_date(int(match.group(1)), int(match.group(2)), int(match.group(3)))
        if parsed:
            return parsed

    return None


def extract_line_amounts(text: str) -> list[int]:
    """Collect all positive currency-looking amounts on a line, in cents."""
    amounts: list[int] = []
    for match in LINE_AMOUNT_RE.finditer(text):
        cents = parse_to_cents(match.group(1) or match.group(2))
        if cents is not None and cents > 0:
            amounts.append(cents)
    return amounts


def average_confidence(blocks: Iterable[OcrBlock]) -> float:
    """Mean OCR confidence scaled to 0.0-1.0 and rounded to 2 places."""
    values = [
        min(max(block.confidence, 0.0), 100.0) / 100
        for block in blocks
        if block.confidence is not None
    ]
    if not values:
        return 0.0
    return round(sum(values) / len(values), 2)


class InvoiceTextExtractor:
    """
    Extract NDIS invoice data from OCR LINE blocks.

    Only LINE blocks are used: they carry complete text lines with good
    confidence scores. WORD, PAGE and TABLE blocks are ignored.
    """

    def __init__(
        self,
        max_quantity: Decimal = DEFAULT_MAX_QUANTITY,
        today: Optional[Callable[[], date]] = None,
    ):
        self.max_quantity = Decimal(max_quantity)
        self._today = today or date.today

    @property
    def name(self) -> str:
        return "textract_lines"

    def extract(self, blocks: Iterable[OcrBlock]) -> ExtractedInvoiceData:
        """Extract invoice fields. Unknown fields are None."""
        line_blocks = [block for block in blocks if block.is_line]
        lines = [block.text for block in line_blocks if block.text]
        full_text = "\n".join(lines)

        result = ExtractedInvoiceData(confidence=average_confidence(line_blocks))
        if not lines:
            return result

        result.invoice_number = self._extract_invoice_number(full_text)
        result.invoice_date = self._extract_invoice_date(lines, full_text)

        result.total_cents = self._extract_total(full_text)
        result.gst_cents = self._first_amount(GST_RE, full_text)
        result.subtotal_cents = self._first_amount(SUBTOTAL_RE, full_text)
        # Derive subtotal = total - GST when not stated
        if (
            result.subtotal_cents is None
            and result.total_cents is not None
            and result.gst_cents is not None
        ):
            result.subtotal_cents = result.total_cents - result.gst_cents

        result.provider_abn = self._extract_abn(full_text)
        result.participant_ndis_number = self._extract_ndis_number(full_text)
        result.line_items = self._extract_line_items(lines)

        logger.debug(
            "Extracted invoice: %d line item(s), total=%s, confidence=%.2f",
            len(result.line_items),
            result.total_cents,
            result.confidence,
        )
        return result

    def _extract_invoice_number(self, full_text: str) -> Optional[str]:
        match = INVOICE_NUMBER_RE.search(full_text)
        if match:
            return match.group(1).strip()
        return None

    def _extract_invoice_date(self, lines: list[str], full_text: str) -> Optional[date]:
        """Prefer a labelled date line; fall back to any date in the document."""
        for line in lines:
            if DATE_LABEL_RE.search(line):
                without_label = DATE_LABEL_RE.sub("", line, count=1)
                parsed = parse_au_date(without_label) or parse_au_date(line)
                if parsed:
                    return parsed
        return parse_au_date(full_text)

    def _extract_total(self, full_text: str) -> Optional[int]:
        """The grand total is the last labelled total in the document."""
        matches = list(TOTAL_RE.finditer(full_text))
        if not matches:
            return None
        return parse_to_cents(matches[-1].group(1))

    @staticmethod
    def _first_amount(pattern: re.Pattern, full_text: str) -> Optional[int]:
        match = pattern.search(full_text)
        if match:
            return parse_to_cents(match.group(1))
        return None

    def _extract_abn(self, full_text: str) -> Optional[str]:
        match = ABN_RE.search(full_text)
        if match:
            return normalize_abn(match.group(1))
        return None

    def _extract_ndis_number(self, full_text: str) -> Optional[str]:
        match = NDIS_NUMBER_RE.search(full_text)
        if match:
            return normalize_ndis_number(match.group(1))
        return None

    def _extract_line_items(self, lines: list[str]) -> list[ExtractedLineItem]:
        items: list[ExtractedLineItem] = []
        for line in lines:
            item = self._parse_line_item(line)
            if item:
                items.append(item)
        return items

    def _parse_line_item(self, line: str) -> Optional[ExtractedLineItem]:
        code_match = SUPPORT_ITEM_CODE_RE.search(line)
        if not code_match:
            return None

        code = code_match.group(1)
        before_code = line[: code_match.start()].strip()
        rest = (line[: code_match.start()] + " " + line[code_match.end() :]).strip()

        # Quantity text is removed before collecting prices ("2.00 hr" is not a price)
        quantity = Decimal("1")
        priced_text = rest
        qty_match = QUANTITY_RE.search(rest)
        if qty_match:
            quantity = self._parse_quantity(qty_match.group(1))
            priced_text = rest[: qty_match.start()] + " " + rest[qty_match.end() :]

        amounts = extract_line_amounts(priced_text)
        if not amounts:
            # A code without prices is a heading or note, not a line item
            return None
        if len(amounts) >= 2:
            unit_price, line_total = amounts[-2], amounts[-1]
        else:
            unit_price = line_total = amounts[0]

        name = code
        for candidate in (before_code, line[code_match.end() :].strip()):
            name_match = SUPPORT_ITEM_NAME_RE.match(candidate)
            if name_match:
                name = name_match.group(1).strip()
                break

        return ExtractedLineItem(
            support_item_code=code,
            support_item_name=name,
            category_code=code[:2],
            service_date=parse_au_date(rest) or self._today(),
            quantity=quantity,
            unit_price_cents=unit_price,
            total_cents=line_total,
            # Line-level GST rarely appears on NDIS invoices; handled at invoice level
            gst_cents=0,
        )

    def _parse_quantity(self, raw: str) -> Decimal:
        try:
            quantity = Decimal(raw)
        except InvalidOperation:
            return Decimal("1")
        if Decimal("0") < quantity < self.max_quantity:
            return quantity
        return Decimal("1")


def extract_invoice_data(
    blocks: Iterable[OcrBlock],
    today: Optional[date] = None,
) -> ExtractedInvoiceData:
    """Convenience wrapper: extract with default settings."""
    extractor = InvoiceTextExtractor(today=(lambda: today) if today else None)
    return extractor.extract(blocks)
