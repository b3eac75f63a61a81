"""
Adapter for AWS Textract text-detection output.

Textract returns GetDocumentTextDetection results as one JSON document per
result page, each carrying a ``Blocks`` list. Only the fields the extractor
needs are kept.
"""

import json
import logging
from pathlib import Path
from typing import Any

from .base import OcrBlock

logger = logging.getLogger(__name__)


def blocks_from_textract(response: dict[str, Any] | list[dict[str, Any]]) -> list[OcrBlock]:
    """
    Convert one Textract response page (or a list of pages) to OcrBlocks.

    Block order is preserved across pages.
    """
    pages = response if isinstance(response, list) else [response]
    blocks: list[OcrBlock] = []
    for page in pages:
        for raw in page.get("Blocks", []) or []:
            blocks.append(
                OcrBlock(
                    block_type=raw.get("BlockType", ""),
                    text=raw.get("Text"),
                    confidence=raw.get("Confidence"),
                )
            )
    logger.debug("Loaded %d Textract blocks from %d page(s)", len(blocks), len(pages))
    return blocks


def load_textract_file(path: Path) -> list[OcrBlock]:
    """Read a Textract JSON export from disk."""
    with open(path, encoding="utf-8") as f:
        return blocks_from_textract(json.load(f))


def blocks_from_lines(lines: list[str], confidence: float | None = 99.0) -> list[OcrBlock]:
    """Wrap plain text lines as LINE blocks (useful for pre-split text)."""
    return [OcrBlock(block_type="LINE", text=line, confidence=confidence) for line in lines]
