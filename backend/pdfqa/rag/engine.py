"""
Retrieval-Augmented Query Engine

Answers a question about ONE document:

  ┌──────────────────────────────────────────────────────────────────┐
  │ 1. validate question (non-empty, ≤ max_question_chars)           │
  │ 2. load document, access gate (≥ read)          → 403            │
  │ 3. readiness: nothing indexed yet               → 409            │
  │    embedded with another model                  → 409            │
  │ 4. embed question (same provider as ingestion)                   │
  │ 5. search document's collection, filtered to the document,       │
  │    over-fetch top_k × candidate_multiplier                       │
  │    order by (score desc, chunk_index asc), keep top_k            │
  │    zero hits                                     → 404 no content│
  │ 6. context = "[chunk N]" blocks in that order, ≤ max_context_chars│
  │ 7. LLM generate(question, context)               → 503 on failure│
  └──────────────────────────────────────────────────────────────────┘

Citations are the chunk indices that actually made it into the context.
Queries are read-only: no registry writes, no locks.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from uuid import UUID

from pdfqa.auth.access import AccessResolver
from pdfqa.core.config import QueryConfig
from pdfqa.core.errors import (
    AnswerGenerationError,
    ConflictError,
    DocumentNotReadyError,
    NoRelevantContentError,
    UpstreamError,
    ValidationError,
)
from pdfqa.core.retry import call_with_retry
from pdfqa.llm.gateway import LLMClient
from pdfqa.models.documents import Document
from pdfqa.processing.embeddings import EmbeddingProvider
from pdfqa.schemas.documents import AccessLevel, IndexingStatus
from pdfqa.services.registry import DocumentRegistry
from pdfqa.vectorstore.base import PAYLOAD_DOCUMENT_ID, SearchHit, VectorIndex

logger = logging.getLogger(__name__)

_BLOCK_SEPARATOR = "\n\n---\n\n"


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RetrievedChunk:
    chunk_index: int
    score:       float
    text:        str
    vector_id:   str


@dataclass(frozen=True)
class QueryAnswer:
    """
    answer_text   : generated answer
    citations     : chunk indices placed in the context, in context order
    partial_index : True when the document is not fully indexed
    chunks        : the retrieved chunks that were cited
    """
    answer_text:   str
    citations:     list[int]
    partial_index: bool
    chunks:        list[RetrievedChunk] = field(default_factory=list)
    model_used:    str = ""
    latency_ms:    float = 0.0


# ---------------------------------------------------------------------------
# Pure helpers: ranking and context assembly
# ---------------------------------------------------------------------------

def rank_hits(hits: list[SearchHit], top_k: int) -> list[RetrievedChunk]:
    """
    Best `top_k` chunks by similarity; equal scores go to the lower chunk
    index. A chunk index appearing twice keeps its best-scoring hit.
    """
    ordered = sorted(hits, key=lambda h: (-h.score, h.chunk_index))
    seen: set[int] = set()
    ranked: list[RetrievedChunk] = []
    for hit in ordered:
        if hit.chunk_index in seen:
            continue
        seen.add(hit.chunk_index)
        ranked.append(RetrievedChunk(hit.chunk_index, hit.score, hit.text, hit.id))
        if len(ranked) == top_k:
            break
    return ranked


def build_context(chunks: list[RetrievedChunk], max_chars: int) -> tuple[str, list[RetrievedChunk]]:
    """
    Concatenate "[chunk N]" blocks in the given order until the next block
    would exceed `max_chars`. The first block is truncated rather than
    dropped so a non-empty retrieval never yields an empty context.
    """
    blocks: list[str] = []
    used:   list[RetrievedChunk] = []
    length = 0

    for chunk in chunks:
        block = f"[chunk {chunk.chunk_index}]\n{chunk.text}"
        extra = len(block) + (len(_BLOCK_SEPARATOR) if blocks else 0)
        if length + extra > max_chars:
            if not blocks:
                blocks.append(block[:max_chars])
                used.append(chunk)
            break
        blocks.append(block)
        used.append(chunk)
        length += extra

    return _BLOCK_SEPARATOR.join(blocks), used


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class QueryEngine:
    """
    Usage:
        engine = QueryEngine(registry, embedder, vector_index, llm,
                             config=QueryConfig.from_settings(settings))
        result = await engine.answer(user_id, document_uuid, "What is the refund window?")
    """

    def __init__(
        self,
        registry:     DocumentRegistry,
        embedder:     EmbeddingProvider,
        vector_index: VectorIndex,
        llm:          LLMClient,
        *,
        config:       QueryConfig | None = None,
    ) -> None:
        self._registry = registry
        self._embedder = embedder
        self._index    = vector_index
        self._llm      = llm
        self._config   = config or QueryConfig()

    async def answer(self, user_id: str, document_uuid: UUID, question: str) -> QueryAnswer:
        t0 = time.monotonic()
        question = self._validate_question(question)

        document = await self._registry.get(document_uuid)
        AccessResolver.require(document, user_id, AccessLevel.READ)
        partial = self._check_ready(document)

        chunks = await self.retrieve(document, question)
        if not chunks:
            raise NoRelevantContentError(
                f"No relevant content found in document '{document_uuid}'.",
            )

        context, used = build_context(chunks, self._config.max_context_chars)
        answer_text = await self._generate(question, context)

        result = QueryAnswer(
            answer_text=answer_text,
            citations=[c.chunk_index for c in used],
            partial_index=partial,
            chunks=used,
            model_used=getattr(self._llm, "model_id", ""),
            latency_ms=(time.monotonic() - t0) * 1000,
        )
        logger.info(
            "Query | doc=%s user=%s retrieved=%d cited=%s partial=%s latency_ms=%.0f",
            document_uuid, user_id, len(chunks), result.citations, partial, result.latency_ms,
        )
        return result

    async def retrieve(self, document: Document, question: str) -> list[RetrievedChunk]:
        """Embed the question and return the document's top-k chunks, best first."""
        config = self._config
        vector = await call_with_retry(
            lambda: self._embedder.embed(question),
            policy=config.retry,
            timeout=config.embed_timeout,
            operation="embed question",
        )
        candidates = max(config.top_k, config.top_k * config.candidate_multiplier)
        hits = await call_with_retry(
            lambda: self._index.search(
                document.vector_collection,
                vector,
                candidates,
                filter={PAYLOAD_DOCUMENT_ID: str(document.uuid)},
            ),
            policy=config.retry,
            timeout=config.search_timeout,
            operation="vector search",
        )
        return rank_hits(hits, config.top_k)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _validate_question(self, question: str | None) -> str:
        cleaned = (question or "").strip()
        if not cleaned:
            raise ValidationError("question is required.", field="question")
        if len(cleaned) > self._config.max_question_chars:
            raise ValidationError(
                f"question must be at most {self._config.max_question_chars} characters.",
                field="question",
            )
        return cleaned

    def _check_ready(self, document: Document) -> bool:
        """Return the partial-index flag, or raise if there is nothing to search."""
        status = document.status
        if status is not IndexingStatus.COMPLETED and document.successful_chunks == 0:
            raise DocumentNotReadyError(
                f"Document '{document.uuid}' has no indexed content yet (status: {status.value}).",
                details={"indexing_status": status.value},
            )
        if document.embedding_model and document.embedding_model != self._embedder.model_id:
            raise ConflictError(
                f"Document '{document.uuid}' was indexed with '{document.embedding_model}' "
                f"but queries use '{self._embedder.model_id}'; re-index required.",
                details={
                    "indexed_with": document.embedding_model,
                    "query_model":  self._embedder.model_id,
                },
            )
        return status is not IndexingStatus.COMPLETED

    async def _generate(self, question: str, context: str) -> str:
        config = self._config
        try:
            return await call_with_retry(
                lambda: self._llm.generate(question, context),
                policy=config.retry,
                timeout=config.llm_timeout,
                operation="answer generation",
            )
        except UpstreamError as exc:
            logger.error("Query | answer generation failed: %s", exc.message)
            raise AnswerGenerationError(
                "The language model could not generate an answer. Please try again later.",
                details={"cause": exc.code},
            ) from exc
