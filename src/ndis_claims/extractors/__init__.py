"""
Invoice data extractors.

Provides:
- InvoiceTextExtractor: NDIS invoice heuristics over OCR LINE blocks
- Textract adapters turning GetDocumentTextDetection output into OcrBlocks
- Result types (ExtractedInvoiceData, ExtractedLineItem)
"""

from .base import ExtractedInvoiceData, ExtractedLineItem, OcrBlock
from .invoice_extractor import InvoiceTextExtractor, extract_invoice_data, parse_au_date
from .textract import blocks_from_lines, blocks_from_textract, load_textract_file

__all__ = [
    "InvoiceTextExtractor",
    "extract_invoice_data",
    "parse_au_date",
    "ExtractedInvoiceData",
    "ExtractedLineItem",
    "OcrBlock",
    "blocks_from_textract",
    "blocks_from_lines",
    "load_textract_file",
]
