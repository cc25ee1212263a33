"""
PDF Text Extraction
═══════════════════

The only place that parses PDF bytes. The indexing pipeline sees just an
ExtractionResult (text + page count) or an ExtractionError.

  pdf bytes ──► pypdf.PdfReader (worker thread) ──► per-page text
                                                     │
                                   pages joined with "\\n\\n"
                                                     ▼
                                             ExtractionResult

Failure modes surfaced as ExtractionError (whole-document failure):
  - bytes are not a parseable PDF
  - the PDF is encrypted and cannot be opened with an empty password
  - a page raises while its text layer is decoded (any exception type)

An image-only PDF is NOT an extraction failure: it yields empty text and the
pipeline decides what "no extractable text" means.
"""

from __future__ import annotations

import asyncio
import io
import logging
import time
from dataclasses import dataclass

from pypdf import PdfReader

from pdfqa.core.errors import ExtractionError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Result dataclass
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ExtractionResult:
    """
    text        : all pages concatenated with a blank line between them
    page_count  : number of pages in the document
    elapsed_ms  : extraction wall time (ms)
    """
    text:       str
    page_count: int
    elapsed_ms: float = 0.0

    @property
    def total_chars(self) -> int:
        return len(self.text)


# ---------------------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------------------

class PdfTextExtractor:
    """
    Stateless pypdf wrapper. Parsing is CPU-bound, so it runs in a worker
    thread to keep the event loop responsive.

    Usage:
        result = await PdfTextExtractor().extract(pdf_bytes)
    """

    async def extract(self, file_bytes: bytes) -> ExtractionResult:
        if not file_bytes:
            raise ExtractionError("PDF extraction failed: file is empty")

        t0 = time.monotonic()
        text, page_count = await asyncio.to_thread(self._extract_sync, file_bytes)
        elapsed_ms = (time.monotonic() - t0) * 1000

        logger.info(
            "Extraction | strategy=pypdf pages=%d total_chars=%d elapsed_ms=%.0f",
            page_count, len(text), elapsed_ms,
        )
        return ExtractionResult(text=text, page_count=page_count, elapsed_ms=elapsed_ms)

    @staticmethod
    def _extract_sync(data: bytes) -> tuple[str, int]:
        try:
            reader = PdfReader(io.BytesIO(data))
            if reader.is_encrypted:
                # Owner-password-only PDFs open with an empty user password
                if not reader.decrypt(""):
                    raise ExtractionError("PDF extraction failed: document is encrypted")
            pages = [page.extract_text() or "" for page in reader.pages]
        except ExtractionError:
            raise
        except Exception as exc:
            # pypdf raises IndexError, AttributeError and friends on malformed streams
            raise ExtractionError(
                f"PDF extraction failed: {type(exc).__name__}: {exc}"
            ) from exc

        text = "\n\n".join(p.strip() for p in pages if p.strip())
        return text, len(pages)
