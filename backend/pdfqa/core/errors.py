"""
Error taxonomy for the document lifecycle and query pipeline.

Every failure the core raises is a PdfQAError subclass carrying a stable
machine-readable `code` and the HTTP status the API layer maps it to:

  ValidationError        400  bad input shape / bounds — never retried
  AuthenticationError    401  missing, invalid or expired bearer token
  NotFoundError          404  unknown document or grant
  ForbiddenError         403  access resolver denied the operation
  ConflictError          409  document not ready, claim lost, stale version
  UpstreamError          502  embedding / vector index / LLM / extraction
    RetryableUpstreamError     timeouts, rate limits, connection errors
    PermanentUpstreamError     everything else

Business code raises these; only pdfqa.main knows about HTTP.
"""

from __future__ import annotations

import asyncio
from typing import Any


class PdfQAError(Exception):
    """Base class for all domain errors."""

    code:        str = "INTERNAL_ERROR"
    http_status: int = 500

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


# ---------------------------------------------------------------------------
# Caller errors
# ---------------------------------------------------------------------------

class ValidationError(PdfQAError):
    code        = "VALIDATION_ERROR"
    http_status = 400

    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message, details={"field": field} if field else None)
        self.field = field


class AuthenticationError(PdfQAError):
    code        = "UNAUTHORIZED"
    http_status = 401


class NotFoundError(PdfQAError):
    code        = "NOT_FOUND"
    http_status = 404


class DocumentNotFoundError(NotFoundError):
    code = "DOCUMENT_NOT_FOUND"


class GrantNotFoundError(NotFoundError):
    code = "GRANT_NOT_FOUND"


class NoRelevantContentError(NotFoundError):
    """Retrieval returned zero chunks. Not an LLM failure."""
    code = "NO_RELEVANT_CONTENT"


class ForbiddenError(PdfQAError):
    code        = "FORBIDDEN"
    http_status = 403


# ---------------------------------------------------------------------------
# State conflicts
# ---------------------------------------------------------------------------

class ConflictError(PdfQAError):
    code        = "CONFLICT"
    http_status = 409


class DocumentNotReadyError(ConflictError):
    code = "DOCUMENT_NOT_READY"


class ClaimLostError(ConflictError):
    """Another run already moved the document out of `pending`."""
    code = "INDEXING_CLAIM_LOST"


class StaleDocumentError(ConflictError):
    """Optimistic concurrency check failed — the document changed underneath us."""
    code = "STALE_DOCUMENT"


class InvalidTransitionError(ConflictError):
    code = "INVALID_STATE_TRANSITION"


# ---------------------------------------------------------------------------
# Upstream (external collaborator) failures
# ---------------------------------------------------------------------------

class UpstreamError(PdfQAError):
    code        = "UPSTREAM_FAILURE"
    http_status = 502

    retryable: bool = False


class RetryableUpstreamError(UpstreamError):
    code      = "UPSTREAM_RETRYABLE"
    retryable = True


class PermanentUpstreamError(UpstreamError):
    code = "UPSTREAM_PERMANENT"


class ExtractionError(PermanentUpstreamError):
    code        = "EXTRACTION_FAILED"
    http_status = 422


class AuthProviderUnavailableError(UpstreamError):
    """The issuer JWKS endpoint could not be reached."""
    code        = "AUTH_PROVIDER_UNAVAILABLE"
    http_status = 503


class AnswerGenerationError(UpstreamError):
    """The LLM could not produce an answer (after retries)."""
    code        = "LLM_UNAVAILABLE"
    http_status = 503


# ---------------------------------------------------------------------------
# Classification of third-party exceptions
# ---------------------------------------------------------------------------

_RETRYABLE_EXCEPTION_TYPES = (
    # openai
    "RateLimitError",
    "ServiceUnavailableError",
    "APITimeoutError",
    "APIConnectionError",
    "InternalServerError",
    # httpx / generic
    "ConnectTimeout",
    "ReadTimeout",
    "ConnectError",
    "RemoteProtocolError",
    # weaviate
    "WeaviateTimeoutError",
    "WeaviateConnectionError",
    "UnexpectedStatusCodeError",
    # botocore
    "EndpointConnectionError",
    "ReadTimeoutError",
)


def _is_retryable(exc: BaseException) -> bool:
    """True if the exception class name suggests a transient provider error."""
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return True
    name = type(exc).__name__
    return any(name.endswith(r) for r in _RETRYABLE_EXCEPTION_TYPES)


def classify_upstream_error(exc: BaseException, operation: str) -> UpstreamError:
    """
    Wrap an arbitrary exception raised by an external collaborator into the
    Retryable / Permanent split. Already-classified errors pass through.
    """
    if isinstance(exc, UpstreamError):
        return exc
    message = f"{operation} failed: {type(exc).__name__}: {exc}"
    if _is_retryable(exc):
        return RetryableUpstreamError(message)
    return PermanentUpstreamError(message)
