"""
SQLAlchemy ORM Models — Documents, Sharing Grants & Audit Logs

Using SQLAlchemy 2.x typed declarative mapping for full async support.
Column types are portable (Uuid, JSON, DateTime) so the same models run on
PostgreSQL (asyncpg) in production and SQLite (aiosqlite) in tests.

Concurrency notes:
  - documents.version is the mapper's version_id_col. Every ORM flush of a
    Document issues UPDATE ... WHERE version = :expected and bumps it, so
    two concurrent read-modify-write cycles on the grant list cannot both
    win (the loser gets StaleDataError).
  - Indexing progress is NOT written through the ORM unit of work; the
    registry issues conditional UPDATE statements instead (see
    services/registry.py).
  - indexing_heartbeat_at is the run's lease: the claim and every progress
    write refresh it, and the beat task fails runs whose lease expired.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, attribute_keyed_dict, mapped_column, relationship

from pdfqa.schemas.documents import (
    MAX_NAME_LENGTH,
    PDF_MIME_TYPE,
    GrantPermission,
    IndexingStatus,
)

DEFAULT_VECTOR_COLLECTION = "RAG_TEXT_EMBEDDING"

# SQLite only autoincrements INTEGER PRIMARY KEY
_BIGINT_PK = BigInteger().with_variant(Integer, "sqlite")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Declarative base: shared across all models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Document model: documents
# ---------------------------------------------------------------------------

class Document(Base):
    """
    Tracks a single uploaded PDF from upload → chunking → vector indexing.

    State machine (indexing_status column):
        pending    — stored, waiting for a pipeline run to claim it
        processing — claimed by exactly one run (indexing_run_id)
        completed  — every chunk embedded and indexed; is_indexed = true
        failed     — unrecoverable or partial failure (see error_message);
                     successful_chunks keeps the partial progress

    `id` is the storage key; `uuid` is the public identity and never changes.
    """

    __tablename__ = "documents"
    __table_args__ = (
        CheckConstraint(
            "indexing_status IN ('pending', 'processing', 'completed', 'failed')",
            name="documents_indexing_status_check",
        ),
        CheckConstraint(
            "successful_chunks >= 0 AND successful_chunks <= total_chunks",
            name="documents_chunk_bounds_check",
        ),
        CheckConstraint("attempted_chunks >= 0", name="documents_attempted_chunks_check"),
        CheckConstraint(
            "indexing_status <> 'completed' OR is_indexed",
            name="documents_completed_is_indexed_check",
        ),
        CheckConstraint("size >= 0",       name="documents_size_check"),
        CheckConstraint("page_count >= 0", name="documents_page_count_check"),
        Index("idx_documents_owner_id",  "owner_id"),
        Index("idx_documents_status",    "indexing_status"),
        Index("idx_documents_is_public", "is_public"),
    )

    # Storage primary key
    id: Mapped[int] = mapped_column(_BIGINT_PK, primary_key=True, autoincrement=True)

    # Public identity
    uuid: Mapped[UUID] = mapped_column(
        Uuid,
        nullable=False,
        unique=True,
        default=uuid4,
    )

    # Descriptive attributes
    name:          Mapped[str] = mapped_column(String(MAX_NAME_LENGTH), nullable=False)
    original_name: Mapped[str] = mapped_column(String(MAX_NAME_LENGTH), nullable=False)
    size:          Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    mime_type:     Mapped[str] = mapped_column(String(100), nullable=False, default=PDF_MIME_TYPE)
    page_count:    Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    description:   Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    tags:          Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    # Ownership / visibility: owner_id is the auth provider's `sub`
    owner_id:  Mapped[str]  = mapped_column(String(255), nullable=False)
    is_public: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Where the raw PDF bytes live (S3 key or local path, see storage/files.py)
    storage_key: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Vector-store binding
    vector_collection: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        default=DEFAULT_VECTOR_COLLECTION,
    )
    embedding_model: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
        comment="Embedding model id stamped when a run claims the document",
    )

    # Indexing state machine
    is_indexed:      Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    indexing_status: Mapped[str]  = mapped_column(
        String(20),
        nullable=False,
        default=IndexingStatus.PENDING.value,
    )
    indexed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="Set once, on the first transition into completed; never cleared",
    )
    error_message: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Populated only when indexing_status='failed'",
    )
    indexing_run_id: Mapped[Optional[UUID]] = mapped_column(Uuid, nullable=True)
    indexing_heartbeat_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="Last write by the owning run; a stale value marks the run abandoned",
    )

    # Chunk accounting: absolute counts written by the pipeline
    total_chunks:      Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    successful_chunks: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    attempted_chunks:  Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Optimistic concurrency
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )

    # Sharing grants keyed by user_id: at most one grant per user
    grants: Mapped[dict[str, "DocumentGrant"]] = relationship(
        back_populates="document",
        collection_class=attribute_keyed_dict("user_id"),
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="DocumentGrant.id",
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def size_mb(self) -> float:
        return round((self.size or 0) / (1024 * 1024), 2)

    @property
    def status(self) -> IndexingStatus:
        return IndexingStatus(self.indexing_status)

    def __repr__(self) -> str:
        return (
            f"<Document uuid={self.uuid} owner={self.owner_id} "
            f"status={self.indexing_status} chunks={self.successful_chunks}/{self.total_chunks}>"
        )


# ---------------------------------------------------------------------------
# DocumentGrant model: document_grants
# ---------------------------------------------------------------------------

class DocumentGrant(Base):
    """One non-owner user's access to a document (read | write)."""

    __tablename__ = "document_grants"
    __table_args__ = (
        CheckConstraint(
            "permission IN ('read', 'write')",
            name="document_grants_permission_check",
        ),
        UniqueConstraint("document_id", "user_id", name="uq_document_grants_document_user"),
        Index("idx_document_grants_user_id", "user_id"),
    )

    id: Mapped[int] = mapped_column(_BIGINT_PK, primary_key=True, autoincrement=True)
    document_id: Mapped[int] = mapped_column(
        _BIGINT_PK,
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id:    Mapped[str] = mapped_column(String(255), nullable=False)
    permission: Mapped[str] = mapped_column(
        String(10),
        nullable=False,
        default=GrantPermission.READ.value,
    )
    shared_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
    )

    document: Mapped[Document] = relationship(back_populates="grants")

    def __repr__(self) -> str:
        return f"<DocumentGrant user={self.user_id} permission={self.permission}>"


# ---------------------------------------------------------------------------
# AuditLog model: audit_logs
# ---------------------------------------------------------------------------

class AuditLog(Base):
    """
    Append-only audit trail of document lifecycle events.

    Written by the registry in the same transaction as the change it records:
    document.created, document.indexing_claimed, document.indexing_completed,
    document.indexing_failed, document.reindex_requested, document.shared,
    document.unshared, document.visibility_changed.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("idx_audit_logs_document_uuid", "document_uuid"),
        Index("idx_audit_logs_user_id",       "user_id"),
        Index("idx_audit_logs_created_at",    "created_at"),
    )

    id: Mapped[int] = mapped_column(_BIGINT_PK, primary_key=True, autoincrement=True)

    document_uuid: Mapped[Optional[UUID]] = mapped_column(Uuid, nullable=True)
    user_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        comment="NULL for system actions (pipeline runs)",
    )

    action:  Mapped[str]  = mapped_column(Text, nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
    )

    def __repr__(self) -> str:
        return (
            f"<AuditLog id={self.id} doc={self.document_uuid} "
            f"action={self.action!r} success={self.success}>"
        )
