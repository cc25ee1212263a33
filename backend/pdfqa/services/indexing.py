"""
Indexing Pipeline
═════════════════

Drives one document from `pending` to a terminal state:

  claim (pending → processing, atomic)
    │
    ├─ extract text ──────────── ExtractionError → failed, total_chunks = 0
    │
    ├─ purge vectors an earlier run left for this document
    │
    ├─ chunk ─────────────────── no chunks → failed ("no extractable text")
    │
    ├─ set total_chunks / page_count
    │
    ├─ worker pool (asyncio.Semaphore, N = config.concurrency)
    │     per chunk:  embed ─► upsert       each wrapped by call_with_retry
    │                 └─► absolute progress write (attempted, succeeded)
    │
    └─ exactly one terminal write
          every chunk succeeded  → completed
          otherwise              → failed (successful_chunks keeps partial progress)

A partial failure is a terminal state, not an exception: index_document()
returns an IndexingReport with status=failed and the vectors that did make
it stay queryable. Only a lost claim or a whole-document failure raises;
every error raised after the claim first marks the run failed.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable
from uuid import UUID

from pdfqa.core.config import IndexingConfig
from pdfqa.core.errors import ClaimLostError, ExtractionError, UpstreamError
from pdfqa.core.retry import call_with_retry
from pdfqa.models.documents import Document
from pdfqa.processing.chunking import ChunkResult, TextChunker
from pdfqa.processing.embeddings import EmbeddingProvider
from pdfqa.processing.extractor import PdfTextExtractor
from pdfqa.schemas.documents import IndexingStatus
from pdfqa.services.registry import DocumentRegistry
from pdfqa.vectorstore.base import PAYLOAD_DOCUMENT_ID, VectorIndex, build_payload

logger = logging.getLogger(__name__)

NO_TEXT_MESSAGE = "no extractable text"


# ---------------------------------------------------------------------------
# Result dataclass
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class IndexingReport:
    """Outcome of one pipeline run."""
    document_uuid:     UUID
    run_id:            UUID
    status:            IndexingStatus
    total_chunks:      int
    successful_chunks: int
    failed_chunks:     list[int]
    error_message:     str | None = None
    elapsed_ms:        float = 0.0


@dataclass
class _ChunkOutcome:
    chunk_index: int
    ok:          bool
    error:       str | None = None


class _Progress:
    """In-process tally; each chunk index is counted at most once."""

    def __init__(self) -> None:
        self._lock      = asyncio.Lock()
        self._seen:     set[int] = set()
        self.attempted  = 0
        self.succeeded  = 0

    async def record(self, chunk_index: int, ok: bool) -> tuple[int, int]:
        async with self._lock:
            if chunk_index not in self._seen:
                self._seen.add(chunk_index)
                self.attempted += 1
                if ok:
                    self.succeeded += 1
            return self.attempted, self.succeeded


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

class IndexingPipeline:
    """
    Usage:
        pipeline = IndexingPipeline(registry, embedder, vector_index,
                                    config=IndexingConfig.from_settings(settings))
        report = await pipeline.index_document(document.uuid, pdf_bytes)
    """

    def __init__(
        self,
        registry:     DocumentRegistry,
        embedder:     EmbeddingProvider,
        vector_index: VectorIndex,
        *,
        config:       IndexingConfig | None = None,
        extractor:    PdfTextExtractor | None = None,
        chunker:      TextChunker | None = None,
    ) -> None:
        self._registry  = registry
        self._embedder  = embedder
        self._index     = vector_index
        self._config    = config or IndexingConfig()
        self._extractor = extractor or PdfTextExtractor()
        self._chunker   = chunker or TextChunker(self._config.chunking)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def index_document(self, document_uuid: UUID, file_bytes: bytes) -> IndexingReport:
        """
        Claim, extract, chunk, embed and index one PDF.

        Raises:
            ClaimLostError:  the document was not pending (nothing written).
            ExtractionError: the PDF could not be read (document marked failed).
        """
        document, run_id = await self._claim(document_uuid)
        t0 = time.monotonic()

        async def _extract_then_run() -> IndexingReport:
            extraction = await self._extractor.extract(file_bytes)
            return await self._run(document, run_id, extraction.text, extraction.page_count, t0)

        return await self._guarded(document, run_id, _extract_then_run)

    async def index_text(
        self,
        document_uuid: UUID,
        text:          str,
        page_count:    int | None = None,
    ) -> IndexingReport:
        """Same flow as index_document() for text that is already extracted."""
        document, run_id = await self._claim(document_uuid)
        t0 = time.monotonic()
        return await self._guarded(document, run_id, lambda: self._run(document, run_id, text, page_count, t0))

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def _claim(self, document_uuid: UUID) -> tuple[Document, UUID]:
        document = await self._registry.get(document_uuid)
        try:
            run_id = await self._registry.claim_for_indexing(
                document_uuid, embedding_model=self._embedder.model_id,
            )
        except ClaimLostError:
            logger.info("Indexing | claim lost doc=%s", document_uuid)
            raise
        return document, run_id

    async def _guarded(
        self,
        document: Document,
        run_id:   UUID,
        work:     Callable[[], Awaitable[IndexingReport]],
    ) -> IndexingReport:
        """Run `work` for a claimed document; any error still leaves the run failed."""
        try:
            return await work()
        except ClaimLostError:
            raise
        except ExtractionError as exc:
            logger.warning("Indexing | extraction failed doc=%s run=%s error=%s", document.uuid, run_id, exc.message)
            await self._fail_quietly(document.uuid, run_id, exc.message)
            raise
        except Exception as exc:
            logger.error(
                "Indexing | aborted doc=%s run=%s error=%s", document.uuid, run_id, exc, exc_info=True,
            )
            await self._fail_quietly(
                document.uuid, run_id, f"indexing aborted: {type(exc).__name__}: {exc}",
            )
            raise

    async def _fail_quietly(self, document_uuid: UUID, run_id: UUID, message: str) -> None:
        # A lost claim means another run owns the row now; leave it alone
        try:
            await self._registry.mark_failed(document_uuid, run_id, message)
        except ClaimLostError:
            logger.info("Indexing | failure not recorded, claim lost doc=%s run=%s", document_uuid, run_id)

    async def _purge_previous(self, document: Document) -> None:
        """Delete every vector an earlier run left for this document."""
        removed = await call_with_retry(
            lambda: self._index.delete_where(
                document.vector_collection, {PAYLOAD_DOCUMENT_ID: str(document.uuid)},
            ),
            policy=self._config.retry,
            timeout=self._config.upsert_timeout,
            operation="purge previous vectors",
        )
        if removed:
            logger.info(
                "Indexing | purged previous vectors doc=%s collection=%s count=%d",
                document.uuid, document.vector_collection, removed,
            )

    async def _run(
        self,
        document:   Document,
        run_id:     UUID,
        text:       str,
        page_count: int | None,
        t0:         float,
    ) -> IndexingReport:
        await self._purge_previous(document)
        chunks = self._chunker.chunk(document.uuid, text)

        if not chunks:
            if page_count is not None:
                await self._registry.set_total_chunks(document.uuid, run_id, 0, page_count=page_count)
            await self._registry.mark_failed(document.uuid, run_id, NO_TEXT_MESSAGE)
            return self._report(document.uuid, run_id, IndexingStatus.FAILED, 0, 0, [], NO_TEXT_MESSAGE, t0)

        await self._registry.set_total_chunks(document.uuid, run_id, len(chunks), page_count=page_count)

        semaphore = asyncio.Semaphore(max(1, self._config.concurrency))
        progress  = _Progress()

        async def _worker(chunk: ChunkResult) -> _ChunkOutcome:
            async with semaphore:
                outcome = await self._index_chunk(document, chunk)
            attempted, succeeded = await progress.record(chunk.chunk_index, outcome.ok)
            await self._registry.update_indexing_progress(
                document.uuid,
                chunks_attempted=attempted,
                chunks_succeeded=succeeded,
                run_id=run_id,
            )
            return outcome

        outcomes = await asyncio.gather(*(_worker(chunk) for chunk in chunks))

        # Terminal counts; a no-op when the last worker write already landed
        await self._registry.update_indexing_progress(
            document.uuid,
            chunks_attempted=progress.attempted,
            chunks_succeeded=progress.succeeded,
            run_id=run_id,
        )

        failed = sorted(o.chunk_index for o in outcomes if not o.ok)
        if not failed:
            await self._registry.mark_completed(document.uuid, run_id)
            return self._report(
                document.uuid, run_id, IndexingStatus.COMPLETED,
                len(chunks), progress.succeeded, [], None, t0,
            )

        first = next(o for o in sorted(outcomes, key=lambda o: o.chunk_index) if not o.ok)
        message = (
            f"{len(failed)} of {len(chunks)} chunks failed to index; "
            f"first failure at chunk {first.chunk_index}: {first.error}"
        )
        await self._registry.mark_failed(document.uuid, run_id, message)
        return self._report(
            document.uuid, run_id, IndexingStatus.FAILED,
            len(chunks), progress.succeeded, failed, message, t0,
        )

    async def _index_chunk(self, document: Document, chunk: ChunkResult) -> _ChunkOutcome:
        """Embed + upsert one chunk. Upstream failures become a failed outcome."""
        config = self._config
        try:
            vector = await call_with_retry(
                lambda: self._embedder.embed(chunk.text),
                policy=config.retry,
                timeout=config.embed_timeout,
                operation=f"embed chunk {chunk.chunk_index}",
            )
            payload = build_payload(
                document_id=str(document.uuid),
                chunk_index=chunk.chunk_index,
                chunk_text=chunk.text,
                document_collection=document.vector_collection,
            )
            await call_with_retry(
                lambda: self._index.upsert(document.vector_collection, chunk.vector_id, vector, payload),
                policy=config.retry,
                timeout=config.upsert_timeout,
                operation=f"upsert chunk {chunk.chunk_index}",
            )
        except UpstreamError as exc:
            logger.warning(
                "Indexing | chunk failed doc=%s chunk=%d code=%s error=%s",
                document.uuid, chunk.chunk_index, exc.code, exc.message,
            )
            return _ChunkOutcome(chunk.chunk_index, ok=False, error=exc.message)

        return _ChunkOutcome(chunk.chunk_index, ok=True)

    @staticmethod
    def _report(
        document_uuid: UUID,
        run_id:        UUID,
        status:        IndexingStatus,
        total:         int,
        succeeded:     int,
        failed:        list[int],
        error_message: str | None,
        t0:            float,
    ) -> IndexingReport:
        report = IndexingReport(
            document_uuid=document_uuid,
            run_id=run_id,
            status=status,
            total_chunks=total,
            successful_chunks=succeeded,
            failed_chunks=failed,
            error_message=error_message,
            elapsed_ms=(time.monotonic() - t0) * 1000,
        )
        logger.info(
            "Indexing | doc=%s run=%s status=%s chunks=%d/%d elapsed_ms=%.0f",
            document_uuid, run_id, status.value, succeeded, total, report.elapsed_ms,
        )
        return report
