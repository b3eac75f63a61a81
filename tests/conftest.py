"""Test fixtures and utilities."""

from datetime import date
from decimal import Decimal
from pathlib import Path

import pytest

from ndis_claims.claims import ClaimBatcher, record_claim_outcome, submit_claims
from ndis_claims.extractors import OcrBlock, blocks_from_lines
from ndis_claims.state_store import ClaimStatus, InvoiceStatus, StateStore

# Recognised lines of a typical provider invoice
SAMPLE_INVOICE_LINES = [
    "TAX INVOICE",
    "Sunrise Support Services Pty Ltd",
    "ABN: 51 824 753 556",
    "Invoice No: INV-2026-0042",
    "Invoice Date: 15/02/2026",
    "Participant: Jane Citizen",
    "NDIS Number: 430 111 222",
    "15_042_0128_1_3 Support Coordination 2.0 hr $193.99 $387.98",
    "01_011_0107_1_1 Assistance With Self-Care 03/02/2026 3 hours $67.56 $202.68",
    "Subtotal: $590.66",
    "GST: $0.00",
    "Total Due: $590.66",
]

SAMPLE_LINE_ITEMS = [
    {
        "support_item_code": "15_042_0128_1_3",
        "support_item_name": "Support Coordination",
        "category_code": "15",
        "service_date": date(2026, 2, 2),
        "quantity": Decimal("2.0"),
        "unit_price_cents": 19399,
        "total_cents": 38798,
    },
    {
        "support_item_code": "01_011_0107_1_1",
        "support_item_name": "Assistance With Self-Care",
        "category_code": "01",
        "service_date": date(2026, 2, 3),
        "quantity": Decimal("3"),
        "unit_price_cents": 6756,
        "total_cents": 20268,
    },
]

PROVIDER_ABN = "51824753556"
PARTICIPANT_NDIS = "430111222"


@pytest.fixture
def sample_invoice_blocks() -> list[OcrBlock]:
    """LINE blocks of the sample invoice plus blocks the extractor must ignore."""
    blocks = [OcrBlock(block_type="PAGE", confidence=100.0)]
    blocks.extend(blocks_from_lines(SAMPLE_INVOICE_LINES, confidence=99.0))
    blocks.append(OcrBlock(block_type="WORD", text="INVOICE", confidence=10.0))
    return blocks


@pytest.fixture
def sample_textract_response() -> dict:
    """Sample Textract GetDocumentTextDetection page."""
    blocks = [{"BlockType": "PAGE", "Id": "p1"}]
    for i, text in enumerate(SAMPLE_INVOICE_LINES):
        blocks.append({"BlockType": "LINE", "Id": f"l{i}", "Text": text, "Confidence": 99.0})
        blocks.append(
            {"BlockType": "WORD", "Id": f"w{i}", "Text": text.split()[0], "Confidence": 50.0}
        )
    return {"DocumentMetadata": {"Pages": 1}, "Blocks": blocks}


@pytest.fixture
def temp_db(tmp_path) -> Path:
    """Temporary database path."""
    return tmp_path / "test_state.db"


@pytest.fixture
def store(temp_db) -> StateStore:
    """Fresh state store."""
    return StateStore(temp_db)


@pytest.fixture
def directory(store) -> dict:
    """Seed providers and participants. Returns their ids."""
    provider_id = store.add_provider(
        name="Sunrise Support Services",
        abn=PROVIDER_ABN,
        email="accounts@sunrise.com.au",
        bank_bsb="062-000",
        bank_account="12345678",
        bank_account_name="Sunrise Support Services",
    )
    other_provider_id = store.add_provider(name="Harbour Therapy", abn="53004085616")
    participant_id = store.add_participant(PARTICIPANT_NDIS, "Jane", "Citizen")
    other_participant_id = store.add_participant("430999888", "Sam", "Example")
    return {
        "provider_id": provider_id,
        "other_provider_id": other_provider_id,
        "participant_id": participant_id,
        "other_participant_id": other_participant_id,
    }


@pytest.fixture
def make_invoice(store, directory):
    """Factory for invoices in a given status."""

    def _make(
        status: InvoiceStatus = InvoiceStatus.APPROVED,
        lines: list[dict] | None = None,
        total_cents: int = 59066,
        provider_id: int | None = -1,
        participant_id: int | None = -1,
        **kwargs,
    ) -> int:
        return store.create_invoice(
            status=status,
            invoice_number="INV-2026-0042",
            invoice_date=date(2026, 2, 15),
            total_cents=total_cents,
            provider_id=directory["provider_id"] if provider_id == -1 else provider_id,
            participant_id=directory["participant_id"] if participant_id == -1 else participant_id,
            lines=SAMPLE_LINE_ITEMS if lines is None else lines,
            **kwargs,
        )

    return _make


@pytest.fixture
def make_approved_claims(store, make_invoice):
    """Factory: approved invoices -> claims with an APPROVED outcome."""

    def _make(approved_cents: list[int], provider_id: int | None = -1) -> list[int]:
        invoice_ids = [make_invoice(provider_id=provider_id) for _ in approved_cents]
        result = ClaimBatcher(store, today=lambda: date(2026, 2, 20)).generate_claim_batch(
            invoice_ids, "tester"
        )
        claim_ids = [entry.claim_id for entry in result.claims]
        submit_claims(store, claim_ids, "tester")
        for claim_id, cents in zip(claim_ids, approved_cents):
            record_claim_outcome(store, claim_id, ClaimStatus.APPROVED, cents, "tester")
        return claim_ids

    return _make
