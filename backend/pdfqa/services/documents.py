"""
Document Service

The operations exposed to the API layer, each taking the authenticated
user id and enforcing the access gate for that operation:

  create_document         any authenticated user (becomes owner)
  get_document            ≥ read
  list_visible_documents  owned | public | shared
  trigger_indexing        ≥ write
  get_indexing_status     ≥ read
  share / unshare         owner
  set_public              owner
  query_document          ≥ read (gate applied by the query engine)

Upload flow:
  1. Validate size and detect the type from magic bytes (never the client's
     Content-Type header)
  2. Store bytes in the FileStore under a server-generated key
  3. Insert the document (status=pending) + audit row
  4. Publish the indexing task; a publish failure is non-fatal because the
     re-queue beat task picks up stale pending documents
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Iterable
from uuid import UUID

from pdfqa.auth.access import AccessResolver
from pdfqa.core.errors import ConflictError, ValidationError
from pdfqa.models.documents import Document
from pdfqa.rag.engine import QueryAnswer, QueryEngine
from pdfqa.schemas.documents import (
    MAX_FILE_SIZE_BYTES,
    PDF_MIME_TYPE,
    AccessLevel,
    GrantPermission,
    IndexingStatus,
    VisibilityScope,
)
from pdfqa.services.registry import DocumentRegistry
from pdfqa.storage.files import FileStore

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# File type validation helpers
# ---------------------------------------------------------------------------

# Magic byte signature, checked against the first bytes of the upload
_PDF_MAGIC = b"%PDF-"


def _detect_mime_type(file_head: bytes) -> str:
    """Detect the MIME type from magic bytes; only PDF is recognised."""
    # Some producers emit a BOM or whitespace before the header
    if _PDF_MAGIC in file_head[:1024]:
        return PDF_MIME_TYPE
    return "application/octet-stream"


def _sanitize_filename(filename: str) -> str:
    """Strip path components and control characters; keep the basename."""
    basename = filename.replace("\\", "/").rsplit("/", 1)[-1]
    safe = re.sub(r"[\x00-\x1f<>:\"|?*]", "_", basename).strip()
    return safe[:255]


def _display_name(filename: str) -> str:
    """Default display name: the filename without its .pdf extension."""
    stem = filename[:-4] if filename.lower().endswith(".pdf") else filename
    return stem.strip() or filename


# ---------------------------------------------------------------------------
# Task publisher: thin abstraction over Celery apply_async()
# Injected into DocumentService so it can be mocked in tests.
# ---------------------------------------------------------------------------

class TaskPublisher:
    """
    Sends the indexing task to the Celery broker.
    Import is deferred so the broker connection is not required at module load time.
    """

    async def publish_indexing_task(self, document_uuid: UUID) -> None:
        """Dispatch index_document on the documents.index queue without blocking the loop."""
        from pdfqa.workers.tasks import index_document

        loop = asyncio.get_running_loop()
        await loop.run_in_executor(
            None,
            lambda: index_document.apply_async(
                kwargs={"document_id": str(document_uuid)},
                queue="documents.index",
                countdown=1,
            ),
        )
        logger.info("Indexing task published | doc=%s", document_uuid)


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class DocumentService:
    """
    Stateless service object; one per process.
    All dependencies are injected (testable, no hidden globals).
    """

    def __init__(
        self,
        registry:     DocumentRegistry,
        access:       AccessResolver,
        engine:       QueryEngine,
        file_store:   FileStore,
        publisher:    TaskPublisher,
    ) -> None:
        self._registry   = registry
        self._access     = access
        self._engine     = engine
        self._files      = file_store
        self._publisher  = publisher

    # ------------------------------------------------------------------
    # Create / read
    # ------------------------------------------------------------------

    async def create_document(
        self,
        user_id:     str,
        *,
        filename:    str,
        data:        bytes,
        name:        str | None = None,
        description: str | None = None,
        tags:        Iterable[str] | None = None,
        is_public:   bool = False,
        auto_index:  bool = True,
    ) -> Document:
        if not data:
            raise ValidationError("No file was provided or the file is empty.", field="file")
        if len(data) > MAX_FILE_SIZE_BYTES:
            raise ValidationError(
                f"File exceeds the {MAX_FILE_SIZE_BYTES // (1024 * 1024)} MB limit.", field="file",
            )
        if _detect_mime_type(data[:1024]) != PDF_MIME_TYPE:
            raise ValidationError("Only PDF files are accepted.", field="file")

        original_name = _sanitize_filename(filename or "")
        if not original_name:
            raise ValidationError("original filename is required.", field="file")

        storage_key = self._files.new_key()
        await self._files.put(storage_key, data, content_type=PDF_MIME_TYPE)

        document = await self._registry.create(
            owner_id=user_id,
            name=name if name is not None else _display_name(original_name),
            original_name=original_name,
            size=len(data),
            mime_type=PDF_MIME_TYPE,
            description=description,
            tags=tags,
            is_public=is_public,
            storage_key=storage_key,
        )

        if auto_index:
            await self._publish(document.uuid)
        return document

    async def get_document(self, user_id: str, document_uuid: UUID) -> tuple[Document, AccessLevel]:
        document = await self._registry.get(document_uuid)
        level = self._access.require(document, user_id, AccessLevel.READ)
        return document, level

    async def list_visible_documents(
        self,
        user_id: str,
        *,
        scope:   VisibilityScope = VisibilityScope.ALL,
        limit:   int = 100,
        offset:  int = 0,
    ) -> list[tuple[Document, AccessLevel]]:
        documents = await self._registry.list_visible(user_id, scope=scope, limit=limit, offset=offset)
        return [(doc, self._access.resolve(doc, user_id)) for doc in documents]

    # ------------------------------------------------------------------
    # Indexing
    # ------------------------------------------------------------------

    async def trigger_indexing(self, user_id: str, document_uuid: UUID) -> tuple[Document, bool, bool]:
        """
        Queue an indexing run. Returns (document, reindex, queued).

        pending              → publish
        completed | failed   → back to pending, publish (the run purges old vectors)
        processing           → Conflict
        """
        document = await self._registry.get(document_uuid)
        self._access.require(document, user_id, AccessLevel.WRITE)

        status = document.status
        if status is IndexingStatus.PROCESSING:
            raise ConflictError(
                f"Document '{document_uuid}' is already being indexed.",
                details={"indexing_status": status.value},
            )

        reindex = status in (IndexingStatus.COMPLETED, IndexingStatus.FAILED)
        if reindex:
            document = await self._registry.request_reindex(document_uuid, user_id=user_id)

        queued = await self._publish(document_uuid)
        return document, reindex, queued

    async def get_indexing_status(self, user_id: str, document_uuid: UUID) -> Document:
        document = await self._registry.get(document_uuid)
        self._access.require(document, user_id, AccessLevel.READ)
        return document

    # ------------------------------------------------------------------
    # Sharing / visibility (owner only)
    # ------------------------------------------------------------------

    async def share(
        self,
        user_id:        str,
        document_uuid:  UUID,
        target_user_id: str,
        permission:     GrantPermission | str,
    ) -> Document:
        document = await self._registry.get(document_uuid)
        self._access.require(document, user_id, AccessLevel.OWNER)
        return await self._access.share(document, target_user_id, permission, acting_user_id=user_id)

    async def unshare(self, user_id: str, document_uuid: UUID, target_user_id: str) -> Document:
        document = await self._registry.get(document_uuid)
        self._access.require(document, user_id, AccessLevel.OWNER)
        return await self._access.unshare(document, target_user_id, acting_user_id=user_id)

    async def set_public(self, user_id: str, document_uuid: UUID, is_public: bool) -> Document:
        document = await self._registry.get(document_uuid)
        self._access.require(document, user_id, AccessLevel.OWNER)
        return await self._access.set_public(document, is_public, acting_user_id=user_id)

    # ------------------------------------------------------------------
    # Query
    # ------------------------------------------------------------------

    async def query_document(self, user_id: str, document_uuid: UUID, question: str) -> QueryAnswer:
        return await self._engine.answer(user_id, document_uuid, question)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _publish(self, document_uuid: UUID) -> bool:
        try:
            await self._publisher.publish_indexing_task(document_uuid)
            return True
        except Exception as exc:
            # Non-fatal: the document is stored and pending; the re-queue
            # beat task publishes it again.
            logger.error("Failed to publish indexing task | doc=%s error=%s", document_uuid, exc)
            return False
