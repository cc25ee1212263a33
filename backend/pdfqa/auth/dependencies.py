"""
Composed FastAPI Dependencies

Route handlers import from here — never from auth/token or
services/factory directly.

  CurrentUser      verified JWT payload (user id = sub)
  Documents        the process-wide DocumentService built in the lifespan
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, Request

from pdfqa.auth.token import TokenPayload, get_current_user
from pdfqa.services.documents import DocumentService


def get_document_service(request: Request) -> DocumentService:
    """The DocumentService stored on app.state by the lifespan handler."""
    return request.app.state.document_service


# ---------------------------------------------------------------------------
# Type aliases for cleaner route signatures
# ---------------------------------------------------------------------------

CurrentUser = Annotated[TokenPayload,    Depends(get_current_user)]
Documents   = Annotated[DocumentService, Depends(get_document_service)]
