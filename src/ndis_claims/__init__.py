"""
NDIS invoice → claim → ABA payment pipeline.

Turns OCR text lines from provider invoices into structured invoice data,
resolves the provider and participant with a tiered auto-matcher, batches
approved invoices into claims, and encodes provider payments into the
fixed-width ABA (Cemtex) bank file format.
"""

__version__ = "0.1.0"
