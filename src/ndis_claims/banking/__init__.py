"""Payments and ABA (Cemtex) bank file generation."""

from .aba import (
    AbaPayment,
    Originator,
    aba_filename,
    build_detail,
    build_footer,
    build_header,
    format_aba_date,
    format_bsb,
    normalize_bsb,
    pad_numeric,
    pad_text,
    render_aba_file,
)
from .service import (
    AbaFileNotFoundError,
    AbaSequenceExhaustedError,
    GeneratedAbaFile,
    NoPendingPaymentsError,
    PaymentFileService,
    PaymentValidationError,
    ReconciliationResult,
)

__all__ = [
    "AbaFileNotFoundError",
    "AbaPayment",
    "AbaSequenceExhaustedError",
    "GeneratedAbaFile",
    "NoPendingPaymentsError",
    "Originator",
    "PaymentFileService",
    "PaymentValidationError",
    "ReconciliationResult",
    "aba_filename",
    "build_detail",
    "build_footer",
    "build_header",
    "format_aba_date",
    "format_bsb",
    "normalize_bsb",
    "pad_numeric",
    "pad_text",
    "render_aba_file",
]
