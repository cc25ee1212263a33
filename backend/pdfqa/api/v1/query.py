"""
Query API — RAG Q&A over one document

POST /api/v1/documents/{document_id}/query

  - Requires a valid JWT; the caller needs at least read access
  - Answers only from the document's indexed chunks
  - `citations` lists the chunk indices given to the LLM as context
  - `partial_index` is true when the document is not fully indexed

Error mapping (besides the shared 401/403/404):
  404 NO_RELEVANT_CONTENT   retrieval found nothing
  409 DOCUMENT_NOT_READY    no chunk indexed yet
  503 LLM_UNAVAILABLE       the model failed after retries
"""

from __future__ import annotations

import logging
from uuid import UUID

from fastapi import APIRouter

from pdfqa.auth.dependencies import CurrentUser, Documents
from pdfqa.schemas.documents import CitationResponse, ErrorResponse, QueryRequest, QueryResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/documents", tags=["Query"])

_EXCERPT_CHARS = 300


@router.post(
    "/{document_id}/query",
    response_model=QueryResponse,
    summary="Ask a question about a document",
    responses={
        400: {"model": ErrorResponse},
        401: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    },
)
async def query_document(
    document_id: UUID,
    body:        QueryRequest,
    user:        CurrentUser,
    service:     Documents,
) -> QueryResponse:
    result = await service.query_document(user.user_id, document_id, body.question)

    return QueryResponse(
        document_id=document_id,
        question=body.question,
        answer=result.answer_text,
        citations=result.citations,
        sources=[
            CitationResponse(
                chunk_index=chunk.chunk_index,
                score=round(chunk.score, 4),
                excerpt=chunk.text[:_EXCERPT_CHARS],
            )
            for chunk in result.chunks
        ],
        partial_index=result.partial_index,
        model_used=result.model_used or None,
        latency_ms=round(result.latency_ms, 1),
    )
