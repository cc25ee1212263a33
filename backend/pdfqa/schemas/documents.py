"""
Document lifecycle — enums, bounds and Pydantic request/response schemas.

Covers:
  - The indexing state machine values stored in documents.indexing_status
  - Grant permissions and resolved access levels
  - Request bodies for sharing, visibility and query endpoints
  - Response bodies for documents, indexing status and answers
  - The uniform error envelope returned on every 4xx/5xx

Design decisions:
  - document_id is always server-generated (UUID4); never client-supplied.
  - owner_id is taken from the verified JWT `sub`, never from the request body.
  - All timestamps are ISO-8601 strings in responses.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Declared bounds: enforced by the registry, echoed in OpenAPI
# ---------------------------------------------------------------------------

PDF_MIME_TYPE: str = "application/pdf"

MAX_NAME_LENGTH:        int = 255
MAX_DESCRIPTION_LENGTH: int = 500
MAX_TAG_LENGTH:         int = 50
MAX_QUESTION_LENGTH:    int = 2000

# 50 MB hard ceiling: enforced in the upload route before storing
MAX_FILE_SIZE_BYTES: int = 50 * 1024 * 1024


# ---------------------------------------------------------------------------
# Indexing state machine
# ---------------------------------------------------------------------------

class IndexingStatus(str, Enum):
    """
    Maps to documents.indexing_status.
    Transitions: pending → processing → completed | failed
                 completed | failed → pending   (explicit re-index only)
    """
    PENDING    = "pending"      # uploaded, waiting for a pipeline run
    PROCESSING = "processing"   # claimed by exactly one pipeline run
    COMPLETED  = "completed"    # every chunk embedded and indexed
    FAILED     = "failed"       # unrecoverable error or partial failure


# ---------------------------------------------------------------------------
# Sharing / access
# ---------------------------------------------------------------------------

class GrantPermission(str, Enum):
    READ  = "read"
    WRITE = "write"


class AccessLevel(str, Enum):
    """Effective permission of one user on one document."""
    NONE  = "none"
    READ  = "read"
    WRITE = "write"
    OWNER = "owner"


class VisibilityScope(str, Enum):
    """Filter for list-visible. ALL is the union of the other three."""
    ALL    = "all"
    OWNED  = "owned"
    SHARED = "shared"
    PUBLIC = "public"


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------

class ShareRequest(BaseModel):
    permission: GrantPermission = GrantPermission.READ


class VisibilityRequest(BaseModel):
    is_public: bool


class QueryRequest(BaseModel):
    question: str = Field(..., min_length=1, max_length=MAX_QUESTION_LENGTH)


# ---------------------------------------------------------------------------
# Response bodies
# ---------------------------------------------------------------------------

class GrantResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id:    str
    permission: GrantPermission
    shared_at:  datetime


class DocumentResponse(BaseModel):
    """Full document view returned by create/get/list."""
    document_id:       UUID
    name:              str
    original_name:     str
    size:              int
    size_mb:           float
    mime_type:         str
    page_count:        int
    description:       str | None = None
    tags:              list[str]  = Field(default_factory=list)
    owner_id:          str
    is_public:         bool
    access_level:      AccessLevel
    indexing_status:   IndexingStatus
    is_indexed:        bool
    indexed_at:        datetime | None = None
    total_chunks:      int
    successful_chunks: int
    error_message:     str | None = None
    vector_collection: str
    shared_with:       list[GrantResponse] = Field(default_factory=list)
    created_at:        datetime
    updated_at:        datetime


class DocumentListResponse(BaseModel):
    documents: list[DocumentResponse]
    count:     int


class IndexingStatusResponse(BaseModel):
    """Polled by clients to track async indexing progress."""
    document_id:       UUID
    indexing_status:   IndexingStatus
    is_indexed:        bool
    total_chunks:      int  = Field(0, description="Chunks produced by the chunker")
    successful_chunks: int  = Field(0, description="Chunks embedded and indexed so far")
    attempted_chunks:  int  = Field(0, description="Chunks attempted in the current run")
    progress_percent:  float = Field(0.0, ge=0.0, le=100.0)
    indexed_at:        datetime | None = None
    error_message:     str | None = None
    updated_at:        datetime


class IndexingTriggerResponse(BaseModel):
    document_id:     UUID
    indexing_status: IndexingStatus
    reindex:         bool = False
    queued:          bool = True


class CitationResponse(BaseModel):
    chunk_index: int
    score:       float
    excerpt:     str


class QueryResponse(BaseModel):
    document_id:   UUID
    question:      str
    answer:        str
    citations:     list[int]
    sources:       list[CitationResponse] = Field(default_factory=list)
    partial_index: bool = Field(
        False,
        description="True when the answer is based on a partially indexed document",
    )
    model_used:    str | None = None
    latency_ms:    float | None = None


# ---------------------------------------------------------------------------
# Structured error bodies
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    """Single structured error — may appear in a list."""
    field:   str | None = Field(None, description="Request field that caused the error, if applicable")
    message: str
    code:    str         = Field(..., description="Machine-readable error code for client handling")


class ErrorResponse(BaseModel):
    """
    Uniform error envelope for all 4xx/5xx responses.
    Clients should check `error_code` for programmatic handling.
    """
    error_code:    str              = Field(..., description="Stable machine-readable code")
    message:       str              = Field(..., description="Human-readable summary")
    details:       list[ErrorDetail] = Field(default_factory=list)
    request_id:    str | None       = Field(None, description="Trace ID for log correlation")
    extra:         dict[str, Any]   = Field(default_factory=dict)
