"""
Text Chunker  —  Bounded, Overlapping Segments for Embedding
══════════════════════════════════════════════════════════════

Splitting strategy
──────────────────
  RecursiveCharacterTextSplitter tries separators from coarsest to finest:

    "\\n\\n"  paragraph  →  "\\n"  line  →  ". "  sentence  →  " "  word  →  ""

  so a chunk only breaks mid-sentence when a single sentence is longer than
  chunk_size. Consecutive chunks share up to chunk_overlap characters, which
  keeps a statement that straddles a boundary retrievable from either side.

Ordering and identity
─────────────────────
  Chunks are numbered 0..n-1 in reading order. The index is what the query
  engine cites, so it must be reproducible: the same text and the same
  ChunkingConfig always yield the same chunks in the same order.

  vector_id = uuid5(document uuid, chunk index)
  Re-running a chunk upserts over its previous vector instead of adding a
  duplicate.

Configuration comes in as a ChunkingConfig; nothing here reads Settings.
"""

from __future__ import annotations

import logging
import re
import unicodedata
from dataclasses import dataclass
from uuid import UUID, uuid5

from langchain_text_splitters import RecursiveCharacterTextSplitter

from pdfqa.core.config import ChunkingConfig
from pdfqa.core.errors import ValidationError

logger = logging.getLogger(__name__)

# Separators in priority order: paragraph, line, sentence, word, character
_SEPARATORS = ["\n\n", "\n", ". ", " ", ""]


# ---------------------------------------------------------------------------
# Result dataclass
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ChunkResult:
    """
    A single chunk ready for embedding and vector storage.

    Fields map directly to the vector payload schema.
    """
    document_id: UUID   # public uuid of the parent document
    chunk_index: int    # 0-based ordering within the document
    text:        str    # the actual chunk content
    char_count:  int    # len(text)
    vector_id:   str    # deterministic id in the vector index


def chunk_vector_id(document_id: UUID, chunk_index: int) -> str:
    """Deterministic vector id for one chunk of one document."""
    return str(uuid5(document_id, str(chunk_index)))


# ---------------------------------------------------------------------------
# Chunker
# ---------------------------------------------------------------------------

class TextChunker:
    """
    Splits extracted document text into bounded, overlapping chunks.

    Usage:
        chunker = TextChunker(ChunkingConfig(chunk_size=1000, chunk_overlap=200))
        chunks  = chunker.chunk(document.uuid, text)
    """

    def __init__(self, config: ChunkingConfig | None = None) -> None:
        config = config or ChunkingConfig()
        if config.chunk_size <= 0:
            raise ValidationError("chunk_size must be > 0.", field="chunk_size")
        if config.chunk_overlap < 0 or config.chunk_overlap >= config.chunk_size:
            raise ValidationError(
                "chunk_overlap must be >= 0 and smaller than chunk_size.",
                field="chunk_overlap",
            )
        self.config = config
        self._splitter = RecursiveCharacterTextSplitter(
            chunk_size=config.chunk_size,
            chunk_overlap=config.chunk_overlap,
            separators=_SEPARATORS,
            length_function=len,
        )

    def split(self, text: str) -> list[str]:
        """Normalised, non-empty pieces in reading order."""
        normalized = _normalize_text(text or "")
        if not normalized:
            return []
        return [piece.strip() for piece in self._splitter.split_text(normalized) if piece.strip()]

    def chunk(self, document_id: UUID, text: str) -> list[ChunkResult]:
        pieces = self.split(text)
        chunks = [
            ChunkResult(
                document_id=document_id,
                chunk_index=index,
                text=piece,
                char_count=len(piece),
                vector_id=chunk_vector_id(document_id, index),
            )
            for index, piece in enumerate(pieces)
        ]
        logger.info(
            "Chunker | doc=%s chunks=%d size=%d overlap=%d",
            document_id, len(chunks), self.config.chunk_size, self.config.chunk_overlap,
        )
        return chunks


# ---------------------------------------------------------------------------
# Text normalisation
# ---------------------------------------------------------------------------

def _normalize_text(text: str) -> str:
    """
    Normalize Unicode, strip invisible characters, collapse excess whitespace.
    Preserves paragraph breaks (double newlines).
    """
    text = unicodedata.normalize("NFC", text)
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    # Non-breaking spaces, zero-width chars, BOM
    text = re.sub(r"[ ​‌‍﻿]", " ", text)
    text = re.sub(r"[ \t]+", " ", text)
    lines = [line.strip() for line in text.split("\n")]
    text = "\n".join(lines)
    # Collapse 3+ newlines to a paragraph break
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()
