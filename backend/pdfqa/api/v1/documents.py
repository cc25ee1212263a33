"""
Documents API Router

  POST   /api/v1/documents                         upload a PDF (owner = caller)
  GET    /api/v1/documents                         list visible documents
  GET    /api/v1/documents/{id}                    document detail          (≥ read)
  POST   /api/v1/documents/{id}/index              trigger / re-trigger     (≥ write)
  GET    /api/v1/documents/{id}/status             indexing progress        (≥ read)
  PUT    /api/v1/documents/{id}/shares/{user_id}   grant or update access   (owner)
  DELETE /api/v1/documents/{id}/shares/{user_id}   revoke access            (owner)
  PATCH  /api/v1/documents/{id}/visibility         public flag              (owner)

Request lifecycle:
  ┌─────────────────────────────────────────────────────────┐
  │ 1. JWT verification → user id = sub (never from body)   │
  │ 2. DocumentService call; it runs the access gate        │
  │ 3. PdfQAError → ErrorResponse envelope (see pdfqa.main) │
  └─────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, File, Form, Request, Response, UploadFile, status
from fastapi.responses import JSONResponse

from pdfqa.auth.dependencies import CurrentUser, Documents
from pdfqa.models.documents import Document
from pdfqa.schemas.documents import (
    MAX_FILE_SIZE_BYTES,
    AccessLevel,
    DocumentListResponse,
    DocumentResponse,
    ErrorResponse,
    GrantResponse,
    IndexingStatus,
    IndexingStatusResponse,
    IndexingTriggerResponse,
    ShareRequest,
    VisibilityRequest,
    VisibilityScope,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/documents",
    tags=["Documents"],
)

_ERRORS = {
    400: {"model": ErrorResponse, "description": "Invalid input"},
    401: {"model": ErrorResponse, "description": "Missing or invalid JWT"},
    403: {"model": ErrorResponse, "description": "Insufficient access to the document"},
    404: {"model": ErrorResponse, "description": "Unknown document or grant"},
    409: {"model": ErrorResponse, "description": "Document state conflict"},
}


# ---------------------------------------------------------------------------
# Response builders
# ---------------------------------------------------------------------------

def document_response(document: Document, access_level: AccessLevel) -> DocumentResponse:
    # Only the owner sees who else has access
    grants = list(document.grants.values()) if access_level is AccessLevel.OWNER else []
    return DocumentResponse(
        document_id=document.uuid,
        name=document.name,
        original_name=document.original_name,
        size=document.size,
        size_mb=document.size_mb,
        mime_type=document.mime_type,
        page_count=document.page_count,
        description=document.description,
        tags=list(document.tags or []),
        owner_id=document.owner_id,
        is_public=document.is_public,
        access_level=access_level,
        indexing_status=IndexingStatus(document.indexing_status),
        is_indexed=document.is_indexed,
        indexed_at=document.indexed_at,
        total_chunks=document.total_chunks,
        successful_chunks=document.successful_chunks,
        error_message=document.error_message,
        vector_collection=document.vector_collection,
        shared_with=[GrantResponse.model_validate(g) for g in grants],
        created_at=document.created_at,
        updated_at=document.updated_at,
    )


def status_response(document: Document) -> IndexingStatusResponse:
    percent = 0.0
    if document.total_chunks:
        percent = round(100.0 * document.successful_chunks / document.total_chunks, 1)
    return IndexingStatusResponse(
        document_id=document.uuid,
        indexing_status=IndexingStatus(document.indexing_status),
        is_indexed=document.is_indexed,
        total_chunks=document.total_chunks,
        successful_chunks=document.successful_chunks,
        attempted_chunks=document.attempted_chunks,
        progress_percent=percent,
        indexed_at=document.indexed_at,
        error_message=document.error_message,
        updated_at=document.updated_at,
    )


def _parse_tags(raw: str | None) -> list[str]:
    """Tags arrive as one comma-separated form field."""
    return [t for t in (raw or "").split(",") if t.strip()]


# ---------------------------------------------------------------------------
# POST /documents
# ---------------------------------------------------------------------------

@router.post(
    "",
    response_model=DocumentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Upload a PDF document",
    description=(
        "Accepts a PDF up to 50 MB. Returns 201 immediately with status 'pending'; "
        "indexing is asynchronous. Poll GET /documents/{id}/status for progress."
    ),
    responses={**_ERRORS, 413: {"model": ErrorResponse, "description": "File exceeds 50 MB limit"}},
)
async def upload_document(
    request:     Request,
    user:        CurrentUser,
    service:     Documents,
    file:        UploadFile     = File(..., description="PDF file (max 50 MB)"),
    name:        Optional[str]  = Form(None, max_length=255, description="Display name; defaults to the filename"),
    description: Optional[str]  = Form(None, max_length=500),
    tags:        Optional[str]  = Form(None, description="Comma-separated tags"),
    is_public:   bool           = Form(False),
):
    # Guard: reject oversized requests before reading the body
    content_length = request.headers.get("content-length")
    if content_length and content_length.isdigit() and int(content_length) > MAX_FILE_SIZE_BYTES + 4096:
        return JSONResponse(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            content=ErrorResponse(
                error_code="FILE_TOO_LARGE",
                message=f"File exceeds the {MAX_FILE_SIZE_BYTES // (1024 * 1024)} MB limit.",
            ).model_dump(mode="json"),
        )

    data = await file.read()
    document = await service.create_document(
        user.user_id,
        filename=file.filename or "",
        data=data,
        name=name,
        description=description,
        tags=_parse_tags(tags),
        is_public=is_public,
    )
    logger.info("Upload accepted | doc=%s user=%s size=%d", document.uuid, user.user_id, document.size)

    body = document_response(document, AccessLevel.OWNER)
    return JSONResponse(
        status_code=status.HTTP_201_CREATED,
        content=body.model_dump(mode="json"),
        headers={
            "X-Document-ID": str(document.uuid),
            "Location":      f"/api/v1/documents/{document.uuid}/status",
        },
    )


# ---------------------------------------------------------------------------
# GET /documents
# ---------------------------------------------------------------------------

@router.get(
    "",
    response_model=DocumentListResponse,
    summary="List documents visible to the caller",
    responses={401: _ERRORS[401]},
)
async def list_documents(
    user:    CurrentUser,
    service: Documents,
    scope:   VisibilityScope = VisibilityScope.ALL,
    page:    int = 1,
    limit:   int = 20,
) -> DocumentListResponse:
    """Owned, public and shared-with-me documents, newest first."""
    limit  = max(1, min(limit, 100))
    offset = (max(page, 1) - 1) * limit
    rows = await service.list_visible_documents(user.user_id, scope=scope, limit=limit, offset=offset)
    documents = [document_response(doc, level) for doc, level in rows]
    return DocumentListResponse(documents=documents, count=len(documents))


# ---------------------------------------------------------------------------
# GET /documents/{document_id}
# ---------------------------------------------------------------------------

@router.get(
    "/{document_id}",
    response_model=DocumentResponse,
    summary="Get one document",
    responses=_ERRORS,
)
async def get_document(document_id: UUID, user: CurrentUser, service: Documents) -> DocumentResponse:
    document, level = await service.get_document(user.user_id, document_id)
    return document_response(document, level)


# ---------------------------------------------------------------------------
# Indexing
# ---------------------------------------------------------------------------

@router.post(
    "/{document_id}/index",
    response_model=IndexingTriggerResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Queue indexing (re-index when completed or failed)",
    responses=_ERRORS,
)
async def trigger_indexing(document_id: UUID, user: CurrentUser, service: Documents) -> IndexingTriggerResponse:
    document, reindex, queued = await service.trigger_indexing(user.user_id, document_id)
    return IndexingTriggerResponse(
        document_id=document.uuid,
        indexing_status=IndexingStatus(document.indexing_status),
        reindex=reindex,
        queued=queued,
    )


@router.get(
    "/{document_id}/status",
    response_model=IndexingStatusResponse,
    summary="Poll indexing progress",
    responses=_ERRORS,
)
async def get_indexing_status(document_id: UUID, user: CurrentUser, service: Documents) -> IndexingStatusResponse:
    document = await service.get_indexing_status(user.user_id, document_id)
    return status_response(document)


# ---------------------------------------------------------------------------
# Sharing / visibility (owner only)
# ---------------------------------------------------------------------------

@router.put(
    "/{document_id}/shares/{target_user_id}",
    response_model=DocumentResponse,
    summary="Share with a user or update their permission",
    responses=_ERRORS,
)
async def share_document(
    document_id:    UUID,
    target_user_id: str,
    body:           ShareRequest,
    user:           CurrentUser,
    service:        Documents,
) -> DocumentResponse:
    document = await service.share(user.user_id, document_id, target_user_id, body.permission)
    return document_response(document, AccessLevel.OWNER)


@router.delete(
    "/{document_id}/shares/{target_user_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Revoke a user's access",
    responses=_ERRORS,
)
async def unshare_document(
    document_id:    UUID,
    target_user_id: str,
    user:           CurrentUser,
    service:        Documents,
) -> Response:
    await service.unshare(user.user_id, document_id, target_user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.patch(
    "/{document_id}/visibility",
    response_model=DocumentResponse,
    summary="Make a document public or private",
    responses=_ERRORS,
)
async def set_visibility(
    document_id: UUID,
    body:        VisibilityRequest,
    user:        CurrentUser,
    service:     Documents,
) -> DocumentResponse:
    document = await service.set_public(user.user_id, document_id, body.is_public)
    return document_response(document, AccessLevel.OWNER)
