"""
Document Registry

The authoritative record of each document's identity, ownership, sharing
grants and indexing state.

Write paths and how they stay correct under concurrency:

  create                     plain INSERT (status=pending, chunks 0/0)
  claim_for_indexing         UPDATE ... WHERE indexing_status='pending'
                             rowcount == 1 → this run owns the document
  set_total_chunks           UPDATE ... WHERE indexing_run_id=:run
  update_indexing_progress   absolute counts, monotonic:
                             SET n = CASE WHEN n < :new THEN :new ELSE n END
  mark_completed/failed      one UPDATE carrying every column of the
                             transition (see indexing_state.transition_values)
  request_reindex            completed|failed → pending, counters reset
  fail_abandoned_run         processing → failed, only for the given run and
                             only while its heartbeat is older than the lease
  update_access              ORM read-modify-write guarded by version_id_col

Every write records an AuditLog row in the same transaction.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable
from uuid import UUID, uuid4

from sqlalchemy import and_, case, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from pdfqa.core.errors import (
    ClaimLostError,
    ConflictError,
    DocumentNotFoundError,
    StaleDocumentError,
    ValidationError,
)
from pdfqa.models.documents import DEFAULT_VECTOR_COLLECTION, AuditLog, Document, DocumentGrant
from pdfqa.schemas.documents import (
    MAX_DESCRIPTION_LENGTH,
    MAX_NAME_LENGTH,
    MAX_TAG_LENGTH,
    PDF_MIME_TYPE,
    IndexingStatus,
    VisibilityScope,
)
from pdfqa.services.indexing_state import ensure_transition, sources_for, transition_values

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Input validation
# ---------------------------------------------------------------------------

def _validate_name(value: str | None, field: str) -> str:
    cleaned = (value or "").strip()
    if not cleaned:
        raise ValidationError(f"{field} is required.", field=field)
    if len(cleaned) > MAX_NAME_LENGTH:
        raise ValidationError(
            f"{field} must be at most {MAX_NAME_LENGTH} characters.", field=field
        )
    return cleaned


def _validate_description(value: str | None) -> str | None:
    if value is None:
        return None
    cleaned = value.strip()
    if len(cleaned) > MAX_DESCRIPTION_LENGTH:
        raise ValidationError(
            f"description must be at most {MAX_DESCRIPTION_LENGTH} characters.",
            field="description",
        )
    return cleaned or None


def _validate_tags(tags: Iterable[str] | None) -> list[str]:
    cleaned: list[str] = []
    for tag in tags or ():
        tag = (tag or "").strip()
        if not tag:
            continue
        if len(tag) > MAX_TAG_LENGTH:
            raise ValidationError(
                f"tag '{tag[:20]}…' exceeds {MAX_TAG_LENGTH} characters.", field="tags"
            )
        if tag not in cleaned:
            cleaned.append(tag)
    return cleaned


def _validate_non_negative(value: int, field: str) -> int:
    if value is None or value < 0:
        raise ValidationError(f"{field} must be >= 0.", field=field)
    return value


# ---------------------------------------------------------------------------
# Audit log helper
# ---------------------------------------------------------------------------

def _write_audit_log(
    session: AsyncSession,
    *,
    action:        str,
    document_uuid: UUID | None,
    user_id:       str | None = None,
    payload:       dict | None = None,
    success:       bool = True,
) -> None:
    """Queue an audit row; it commits (or rolls back) with the outer transaction."""
    session.add(
        AuditLog(
            document_uuid=document_uuid,
            user_id=user_id,
            action=action,
            payload=payload or {},
            success=success,
        )
    )


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class DocumentRegistry:
    """
    One short-lived session per operation; returned Documents are detached
    snapshots (grants eagerly loaded) that callers may read freely.
    """

    def __init__(
        self,
        session_factory:    async_sessionmaker[AsyncSession],
        *,
        default_collection: str = DEFAULT_VECTOR_COLLECTION,
    ) -> None:
        self._session_factory    = session_factory
        self._default_collection = default_collection

    # ------------------------------------------------------------------
    # Create / read
    # ------------------------------------------------------------------

    async def create(
        self,
        *,
        owner_id:          str,
        name:              str,
        size:              int,
        mime_type:         str = PDF_MIME_TYPE,
        original_name:     str | None = None,
        description:       str | None = None,
        tags:              Iterable[str] | None = None,
        page_count:        int = 0,
        is_public:         bool = False,
        storage_key:       str | None = None,
        vector_collection: str | None = None,
    ) -> Document:
        """Insert a new document in `pending` with chunk counters at 0/0."""
        if not owner_id:
            raise ValidationError("owner_id is required.", field="owner_id")
        name = _validate_name(name, "name")
        original_name = _validate_name(original_name or name, "original_name")
        if mime_type != PDF_MIME_TYPE:
            raise ValidationError(
                f"Unsupported MIME type '{mime_type}'. Only {PDF_MIME_TYPE} is accepted.",
                field="mime_type",
            )

        document = Document(
            uuid=uuid4(),
            name=name,
            original_name=original_name,
            size=_validate_non_negative(size, "size"),
            mime_type=mime_type,
            page_count=_validate_non_negative(page_count, "page_count"),
            description=_validate_description(description),
            tags=_validate_tags(tags),
            owner_id=owner_id,
            is_public=is_public,
            storage_key=storage_key,
            vector_collection=vector_collection or self._default_collection,
            is_indexed=False,
            indexing_status=IndexingStatus.PENDING.value,
            total_chunks=0,
            successful_chunks=0,
            attempted_chunks=0,
            grants={},
        )

        async with self._session_factory() as session:
            async with session.begin():
                session.add(document)
                _write_audit_log(
                    session,
                    action="document.created",
                    document_uuid=document.uuid,
                    user_id=owner_id,
                    payload={"name": name, "size": document.size, "is_public": is_public},
                )

        logger.info(
            "Registry | created doc=%s owner=%s name=%r size=%d",
            document.uuid, owner_id, name, document.size,
        )
        return document

    async def get(self, document_uuid: UUID) -> Document:
        async with self._session_factory() as session:
            return await self._load(session, document_uuid)

    async def list_visible(
        self,
        user_id: str,
        *,
        scope:   VisibilityScope = VisibilityScope.ALL,
        limit:   int = 100,
        offset:  int = 0,
    ) -> list[Document]:
        """
        Documents the caller may see: owned, public, or explicitly shared.
        Public visibility and grants are independent sources; a public
        document the caller also holds a grant on appears once.
        """
        shared_ids = select(DocumentGrant.document_id).where(DocumentGrant.user_id == user_id)

        owned  = Document.owner_id == user_id
        public = Document.is_public.is_(True)
        shared = Document.id.in_(shared_ids)

        clause = {
            VisibilityScope.ALL:    or_(owned, public, shared),
            VisibilityScope.OWNED:  owned,
            VisibilityScope.SHARED: shared,
            VisibilityScope.PUBLIC: public,
        }[VisibilityScope(scope)]

        stmt = (
            select(Document)
            .where(clause)
            .order_by(Document.created_at.desc(), Document.id.desc())
            .offset(offset)
            .limit(limit)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def list_stale_pending(self, older_than: timedelta, limit: int = 50) -> list[Document]:
        """Pending documents nobody claimed — used by the re-queue beat task."""
        cutoff = _utcnow() - older_than
        stmt = (
            select(Document)
            .where(
                Document.indexing_status == IndexingStatus.PENDING.value,
                Document.updated_at < cutoff,
            )
            .order_by(Document.updated_at)
            .limit(limit)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def list_stale_processing(self, older_than: timedelta, limit: int = 50) -> list[Document]:
        """Processing documents whose run stopped writing, oldest heartbeat first."""
        stmt = (
            select(Document)
            .where(
                Document.indexing_status == IndexingStatus.PROCESSING.value,
                self._lease_expired(_utcnow() - older_than),
            )
            .order_by(Document.updated_at)
            .limit(limit)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Indexing state machine
    # ------------------------------------------------------------------

    async def claim_for_indexing(
        self,
        document_uuid:   UUID,
        *,
        embedding_model: str | None = None,
    ) -> UUID:
        """
        Atomic compare-and-set pending → processing.

        Returns the run id that owns the document until it reaches a
        terminal state. The loser of a race gets ClaimLostError and nothing
        is written.
        """
        run_id = uuid4()
        values = transition_values(IndexingStatus.PROCESSING, now=_utcnow())
        values.update(indexing_run_id=run_id, embedding_model=embedding_model)

        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(Document)
                    .where(
                        Document.uuid == document_uuid,
                        Document.indexing_status.in_(sources_for(IndexingStatus.PROCESSING)),
                    )
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    current = await session.scalar(
                        select(Document.indexing_status).where(Document.uuid == document_uuid)
                    )
                    if current is None:
                        raise DocumentNotFoundError(f"Document '{document_uuid}' was not found.")
                    raise ClaimLostError(
                        f"Document '{document_uuid}' is '{current}'; only pending documents can be claimed.",
                        details={"indexing_status": current},
                    )
                _write_audit_log(
                    session,
                    action="document.indexing_claimed",
                    document_uuid=document_uuid,
                    payload={"run_id": str(run_id), "embedding_model": embedding_model},
                )

        logger.info("Registry | claimed doc=%s run=%s", document_uuid, run_id)
        return run_id

    async def set_total_chunks(
        self,
        document_uuid: UUID,
        run_id:        UUID,
        total_chunks:  int,
        *,
        page_count:    int | None = None,
    ) -> None:
        values: dict[str, Any] = {
            "total_chunks":          _validate_non_negative(total_chunks, "total_chunks"),
            "indexing_heartbeat_at": _utcnow(),
        }
        if page_count is not None:
            values["page_count"] = _validate_non_negative(page_count, "page_count")

        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    self._owned_by_run(document_uuid, run_id)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise ClaimLostError(
                        f"Run {run_id} no longer owns document '{document_uuid}'."
                    )

    async def update_indexing_progress(
        self,
        document_uuid:    UUID,
        *,
        chunks_attempted: int,
        chunks_succeeded: int,
        run_id:           UUID | None = None,
    ) -> bool:
        """
        Record absolute progress counts for the current run.

        Counts only ever move forward, so retried or reordered writes are
        harmless; a write that would exceed total_chunks is ignored.
        Returns True when the row changed.
        """
        if chunks_succeeded < 0 or chunks_attempted < chunks_succeeded:
            raise ValidationError(
                "Progress requires 0 <= chunks_succeeded <= chunks_attempted.",
                field="chunks_succeeded",
            )

        stmt = update(Document).where(
            Document.uuid == document_uuid,
            Document.indexing_status == IndexingStatus.PROCESSING.value,
            Document.total_chunks >= chunks_succeeded,
            or_(
                Document.attempted_chunks < chunks_attempted,
                Document.successful_chunks < chunks_succeeded,
            ),
        )
        if run_id is not None:
            stmt = stmt.where(Document.indexing_run_id == run_id)

        stmt = stmt.values(
            attempted_chunks=case(
                (Document.attempted_chunks < chunks_attempted, chunks_attempted),
                else_=Document.attempted_chunks,
            ),
            successful_chunks=case(
                (Document.successful_chunks < chunks_succeeded, chunks_succeeded),
                else_=Document.successful_chunks,
            ),
            indexing_heartbeat_at=_utcnow(),
        ).execution_options(synchronize_session=False)

        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(stmt)

        changed = result.rowcount == 1
        logger.debug(
            "Registry | progress doc=%s attempted=%d succeeded=%d changed=%s",
            document_uuid, chunks_attempted, chunks_succeeded, changed,
        )
        return changed

    async def mark_completed(self, document_uuid: UUID, run_id: UUID) -> Document:
        """processing → completed; only valid once every chunk succeeded."""
        values = transition_values(IndexingStatus.COMPLETED, now=_utcnow())

        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    self._owned_by_run(document_uuid, run_id)
                    .where(Document.successful_chunks == Document.total_chunks)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise ConflictError(
                        f"Document '{document_uuid}' cannot complete: run {run_id} lost "
                        "ownership or not every chunk succeeded."
                    )
                _write_audit_log(
                    session,
                    action="document.indexing_completed",
                    document_uuid=document_uuid,
                    payload={"run_id": str(run_id)},
                )
                document = await self._load(session, document_uuid)

        logger.info(
            "Registry | completed doc=%s run=%s chunks=%d",
            document_uuid, run_id, document.total_chunks,
        )
        return document

    async def mark_failed(self, document_uuid: UUID, run_id: UUID, error_message: str) -> Document:
        """processing → failed; partial successful_chunks is preserved."""
        values = transition_values(IndexingStatus.FAILED, now=_utcnow(), error_message=error_message)

        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    self._owned_by_run(document_uuid, run_id)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise ClaimLostError(
                        f"Run {run_id} no longer owns document '{document_uuid}'."
                    )
                _write_audit_log(
                    session,
                    action="document.indexing_failed",
                    document_uuid=document_uuid,
                    payload={"run_id": str(run_id), "error": values["error_message"]},
                    success=False,
                )
                document = await self._load(session, document_uuid)

        logger.warning(
            "Registry | failed doc=%s run=%s chunks=%d/%d error=%s",
            document_uuid, run_id, document.successful_chunks,
            document.total_chunks, document.error_message,
        )
        return document

    async def request_reindex(self, document_uuid: UUID, *, user_id: str | None = None) -> Document:
        """
        completed | failed → pending. Clears error_message and resets the
        counters so the next run starts from scratch; indexed_at is kept.
        """
        async with self._session_factory() as session:
            async with session.begin():
                current = await self._load(session, document_uuid)
                ensure_transition(current.indexing_status, IndexingStatus.PENDING)

                result = await session.execute(
                    update(Document)
                    .where(
                        Document.uuid == document_uuid,
                        Document.indexing_status.in_(sources_for(IndexingStatus.PENDING)),
                    )
                    .values(**transition_values(IndexingStatus.PENDING, now=_utcnow()))
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise StaleDocumentError(
                        f"Document '{document_uuid}' changed state during the re-index request."
                    )
                _write_audit_log(
                    session,
                    action="document.reindex_requested",
                    document_uuid=document_uuid,
                    user_id=user_id,
                    payload={"previous_status": current.indexing_status},
                )
                session.expunge(current)
                document = await self._load(session, document_uuid)

        logger.info("Registry | reindex requested doc=%s by=%s", document_uuid, user_id)
        return document

    async def fail_abandoned_run(self, document_uuid: UUID, run_id: UUID, *, older_than: timedelta) -> Document:
        """
        processing → failed for a run whose worker died.

        The UPDATE is scoped to `run_id` and re-checks the lease, so a run
        that wrote progress since it was listed keeps its claim and the
        caller gets ClaimLostError.
        """
        cutoff = _utcnow() - older_than
        async with self._session_factory() as session:
            async with session.begin():
                heartbeat = await session.scalar(
                    select(Document.indexing_heartbeat_at).where(Document.uuid == document_uuid)
                )
                message = (
                    "indexing run abandoned: no progress since "
                    f"{heartbeat.isoformat() if heartbeat else 'the claim'}"
                )
                result = await session.execute(
                    self._owned_by_run(document_uuid, run_id)
                    .where(self._lease_expired(cutoff))
                    .values(**transition_values(IndexingStatus.FAILED, now=_utcnow(), error_message=message))
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise ClaimLostError(
                        f"Run {run_id} of document '{document_uuid}' is no longer abandoned."
                    )
                _write_audit_log(
                    session,
                    action="document.indexing_abandoned",
                    document_uuid=document_uuid,
                    payload={"run_id": str(run_id), "error": message},
                    success=False,
                )
                document = await self._load(session, document_uuid)

        logger.warning("Registry | abandoned run failed doc=%s run=%s", document_uuid, run_id)
        return document

    # ------------------------------------------------------------------
    # Sharing / visibility (optimistic concurrency)
    # ------------------------------------------------------------------

    async def update_access(
        self,
        document_uuid:    UUID,
        mutate:           Callable[[Document], None],
        *,
        expected_version: int | None,
        action:           str,
        user_id:          str | None = None,
        payload:          dict | None = None,
    ) -> Document:
        """
        Load the document, apply `mutate` to it and flush, failing with
        StaleDocumentError if someone else saved it since `expected_version`.
        """
        async with self._session_factory() as session:
            async with session.begin():
                document = await self._load(session, document_uuid)
                if expected_version is not None and document.version != expected_version:
                    raise StaleDocumentError(
                        f"Document '{document_uuid}' was modified concurrently; reload and retry.",
                        details={"expected_version": expected_version, "actual_version": document.version},
                    )
                mutate(document)
                document.updated_at = _utcnow()
                try:
                    await session.flush()
                except StaleDataError as exc:
                    raise StaleDocumentError(
                        f"Document '{document_uuid}' was modified concurrently; reload and retry."
                    ) from exc
                _write_audit_log(
                    session,
                    action=action,
                    document_uuid=document_uuid,
                    user_id=user_id,
                    payload=payload,
                )

        logger.info(
            "Registry | %s doc=%s by=%s version=%d", action, document_uuid, user_id, document.version,
        )
        return document

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @staticmethod
    async def _load(session: AsyncSession, document_uuid: UUID) -> Document:
        result = await session.execute(select(Document).where(Document.uuid == document_uuid))
        document = result.scalars().first()
        if document is None:
            raise DocumentNotFoundError(f"Document '{document_uuid}' was not found.")
        return document

    @staticmethod
    def _lease_expired(cutoff: datetime):
        # Rows written before the heartbeat column existed fall back to updated_at
        return or_(
            Document.indexing_heartbeat_at < cutoff,
            and_(Document.indexing_heartbeat_at.is_(None), Document.updated_at < cutoff),
        )

    @staticmethod
    def _owned_by_run(document_uuid: UUID, run_id: UUID):
        return update(Document).where(
            Document.uuid == document_uuid,
            Document.indexing_run_id == run_id,
            Document.indexing_status == IndexingStatus.PROCESSING.value,
        )
