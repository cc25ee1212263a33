"""
Unit Tests — PdfTextExtractor
══════════════════════════════
  • Blank page           → empty text, page_count preserved
  • Empty / garbage bytes → ExtractionError
  • Encrypted PDF        → ExtractionError unless the user password is empty
"""

from __future__ import annotations

from io import BytesIO

import pytest
from pypdf import PdfWriter

from pdfqa.core.errors import ExtractionError
from pdfqa.processing.extractor import PdfTextExtractor

pytestmark = [pytest.mark.unit, pytest.mark.indexing]


def _pdf(pages: int = 1, user_password: str | None = None) -> bytes:
    writer = PdfWriter()
    for _ in range(pages):
        writer.add_blank_page(width=612, height=792)
    if user_password is not None:
        writer.encrypt(user_password=user_password, owner_password="owner-secret")
    buffer = BytesIO()
    writer.write(buffer)
    return buffer.getvalue()


class TestExtractor:

    async def test_blank_pages_have_no_text(self):
        result = await PdfTextExtractor().extract(_pdf(pages=3))
        assert result.text == ""
        assert result.page_count == 3
        assert result.total_chars == 0

    async def test_empty_bytes(self):
        with pytest.raises(ExtractionError, match="file is empty"):
            await PdfTextExtractor().extract(b"")

    async def test_garbage_bytes(self):
        with pytest.raises(ExtractionError) as exc_info:
            await PdfTextExtractor().extract(b"definitely not a pdf at all")
        assert exc_info.value.code == "EXTRACTION_FAILED"

    async def test_owner_password_only_opens(self):
        result = await PdfTextExtractor().extract(_pdf(pages=2, user_password=""))
        assert result.page_count == 2

    async def test_user_password_protected(self):
        with pytest.raises(ExtractionError, match="encrypted"):
            await PdfTextExtractor().extract(_pdf(user_password="s3cret"))
