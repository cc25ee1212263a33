"""
Celery Tasks — Document Indexing

Task: index_document
  1. Load the document row (state is re-read from the DB, never trusted
     from the message)
  2. Load the PDF bytes from the FileStore
  3. Run the IndexingPipeline: claim → extract → chunk → embed → upsert
  4. The pipeline writes the terminal state (completed / failed)

  Duplicate deliveries are harmless: the claim is a compare-and-set on
  `pending`, so the second delivery gets ClaimLostError and is skipped.

Task: requeue_stale_documents
  Beat task — re-publishes documents stuck in 'pending' for > 5 minutes.
  Covers broker failures during upload and re-index requests.
  It also fails 'processing' runs whose heartbeat is older than the hard
  task time limit: their worker was killed and nothing else would ever
  move them, so the owner could not even re-trigger indexing.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, AsyncIterator
from uuid import UUID

from celery import Task

from pdfqa.core.config import get_settings
from pdfqa.core.errors import ClaimLostError, DocumentNotFoundError, ExtractionError
from pdfqa.db.session import build_engine, build_session_factory
from pdfqa.services.factory import Components, build_components
from pdfqa.workers.celery_app import (
    INDEX_QUEUE,
    STALE_PENDING_SECONDS,
    STALE_PROCESSING_SECONDS,
    celery_app,
)

logger = logging.getLogger(__name__)

MISSING_FILE_MESSAGE = "source file missing from storage"


# ---------------------------------------------------------------------------
# Async task helper
# Run async coroutines inside Celery's synchronous task context.
# ---------------------------------------------------------------------------

def run_async(coro):
    """Execute an async coroutine from a synchronous Celery task."""
    try:
        loop = asyncio.get_event_loop()
        if loop.is_running():
            import concurrent.futures
            with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
                future = pool.submit(asyncio.run, coro)
                return future.result()
        return loop.run_until_complete(coro)
    except RuntimeError:
        return asyncio.run(coro)


@asynccontextmanager
async def _worker_components() -> AsyncIterator[Components]:
    """
    Components bound to a fresh engine for one task invocation.
    asyncpg connections belong to the loop that opened them and every task
    runs on its own loop.
    """
    settings = get_settings()
    engine = build_engine(settings.database_url, echo=settings.db_echo_sql, pool_size=2, max_overflow=2)
    try:
        yield build_components(settings, build_session_factory(engine))
    finally:
        await engine.dispose()


# ---------------------------------------------------------------------------
# Indexing task
# ---------------------------------------------------------------------------

@celery_app.task(
    name="pdfqa.workers.tasks.index_document",
    bind=True,
    acks_late=True,
    reject_on_worker_lost=True,
)
def index_document(self: Task, *, document_id: str) -> dict[str, Any]:
    """Index one document; the result is informational only."""
    return run_async(_index_document_async(UUID(document_id)))


async def _index_document_async(document_uuid: UUID) -> dict[str, Any]:
    async with _worker_components() as components:
        return await run_indexing(components, document_uuid)


async def run_indexing(components: Components, document_uuid: UUID) -> dict[str, Any]:
    """Load bytes and run the pipeline. Split out of the task for testing."""
    registry = components.registry

    try:
        document = await registry.get(document_uuid)
    except DocumentNotFoundError:
        logger.error("Document not found | doc=%s", document_uuid)
        return {"status": "not_found"}

    try:
        if not document.storage_key:
            raise FileNotFoundError(f"Document {document_uuid} has no storage key")
        data = await components.file_store.get(document.storage_key)
    except FileNotFoundError:
        logger.error("Source file missing | doc=%s key=%s", document_uuid, document.storage_key)
        try:
            run_id = await registry.claim_for_indexing(document_uuid)
        except ClaimLostError:
            return {"status": "skipped"}
        await registry.mark_failed(document_uuid, run_id, MISSING_FILE_MESSAGE)
        return {"status": "failed", "error": MISSING_FILE_MESSAGE}

    pipeline = components.indexing_pipeline()
    try:
        report = await pipeline.index_document(document_uuid, data)
    except ClaimLostError as exc:
        logger.info("Skipping, not pending | doc=%s detail=%s", document_uuid, exc.details)
        return {"status": "skipped"}
    except ExtractionError as exc:
        return {"status": "failed", "error": exc.message}

    return {
        "status":            report.status.value,
        "total_chunks":      report.total_chunks,
        "successful_chunks": report.successful_chunks,
        "failed_chunks":     report.failed_chunks,
        "elapsed_ms":        round(report.elapsed_ms, 1),
    }


# ---------------------------------------------------------------------------
# Re-queue scanner (beat)
# ---------------------------------------------------------------------------

@celery_app.task(name="pdfqa.workers.tasks.requeue_stale_documents")
def requeue_stale_documents() -> dict[str, int]:
    """
    Find documents stuck in 'pending' for > 5 minutes and re-queue them.
    Handles broker unavailability during the original request, and fails
    runs abandoned by a dead worker.
    """
    return run_async(_requeue_stale_documents_async())


async def _requeue_stale_documents_async() -> dict[str, int]:
    async with _worker_components() as components:
        abandoned = await _fail_abandoned_runs(components)
        stale = await components.registry.list_stale_pending(timedelta(seconds=STALE_PENDING_SECONDS))

    for document in stale:
        index_document.apply_async(
            kwargs={"document_id": str(document.uuid)},
            queue=INDEX_QUEUE,
            countdown=5,
        )
        logger.info("Re-queued stale document | doc=%s", document.uuid)

    return {"requeued": len(stale), "abandoned": abandoned}


async def _fail_abandoned_runs(components: Components) -> int:
    registry = components.registry
    lease = timedelta(seconds=STALE_PROCESSING_SECONDS)
    released = 0
    for document in await registry.list_stale_processing(lease):
        try:
            await registry.fail_abandoned_run(document.uuid, document.indexing_run_id, older_than=lease)
        except ClaimLostError:
            # The run wrote progress or finished after the listing
            continue
        released += 1
        logger.warning("Abandoned run failed | doc=%s run=%s", document.uuid, document.indexing_run_id)
    return released
