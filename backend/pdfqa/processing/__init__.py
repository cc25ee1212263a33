"""
Document Processing Package
════════════════════════════

The stages the indexing pipeline drives for one document:

  Text Extraction → Chunking → Embedding

Modules
───────
  extractor.py  pypdf text extraction (whole-document failure → ExtractionError)
  chunking.py   Recursive character chunker with configurable size/overlap
  embeddings.py Embedding provider interface + OpenAI implementation

Design principles
─────────────────
  • Every component is stateless and dependency-injected.
  • Configuration arrives as explicit dataclasses, never from ambient settings.
  • Every step emits structured log lines.
"""

from pdfqa.processing.chunking import ChunkResult, TextChunker, chunk_vector_id
from pdfqa.processing.embeddings import EmbeddingProvider, OpenAIEmbeddingProvider
from pdfqa.processing.extractor import ExtractionResult, PdfTextExtractor

__all__ = [
    "ChunkResult",
    "TextChunker",
    "chunk_vector_id",
    "EmbeddingProvider",
    "OpenAIEmbeddingProvider",
    "ExtractionResult",
    "PdfTextExtractor",
]
