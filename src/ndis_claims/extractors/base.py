"""
Extraction input and output types.
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Optional

LINE_BLOCK = "LINE"


@dataclass
class OcrBlock:
    """One recognition unit from the OCR service."""

    block_type: str
    text: Optional[str] = None
    # Recognition confidence as reported by the OCR service (0-100)
    confidence: Optional[float] = None

    @property
    def is_line(self) -> bool:
        return self.block_type == LINE_BLOCK and bool(self.text)


@dataclass
class ExtractedLineItem:
    """A support item line found on the invoice."""

    support_item_code: str
    support_item_name: str
    category_code: str
    service_date: date
    unit_price_cents: int
    total_cents: int
    quantity: Decimal = Decimal("1")
    gst_cents: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "support_item_code": self.support_item_code,
            "support_item_name": self.support_item_name,
            "category_code": self.category_code,
            "service_date": self.service_date.isoformat(),
            "quantity": str(self.quantity),
            "unit_price_cents": self.unit_price_cents,
            "total_cents": self.total_cents,
            "gst_cents": self.gst_cents,
        }


@dataclass
class ExtractedInvoiceData:
    """
    Structured invoice fields extracted from OCR lines.

    Every field is independently optional; None means "not found" and is
    completed by a human during review.
    """

    invoice_number: Optional[str] = None
    invoice_date: Optional[date] = None

    # Amounts in cents
    subtotal_cents: Optional[int] = None
    gst_cents: Optional[int] = None
    total_cents: Optional[int] = None

    # Normalized identifiers (digits only)
    provider_abn: Optional[str] = None
    participant_ndis_number: Optional[str] = None

    line_items: list[ExtractedLineItem] = field(default_factory=list)

    # Mean OCR confidence, 0.0 - 1.0
    confidence: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        return {
            "invoice_number": self.invoice_number,
            "invoice_date": self.invoice_date.isoformat() if self.invoice_date else None,
            "subtotal_cents": self.subtotal_cents,
            "gst_cents": self.gst_cents,
            "total_cents": self.total_cents,
            "provider_abn": self.provider_abn,
            "participant_ndis_number": self.participant_ndis_number,
            "line_items": [item.to_dict() for item in self.line_items],
            "confidence": self.confidence,
        }
