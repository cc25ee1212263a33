"""
FastAPI Application — Entry Point

PDF document Q&A API

  - Routes are versioned under /api/v1/
  - Bearer JWT (any RS256 OIDC issuer) identifies the caller; the token
    `sub` is the user id
  - Per-document authorization (owner / write / read) lives in DocumentService
  - Indexing runs in Celery workers; the API only records state and publishes
  - Every error leaves as one ErrorResponse envelope carrying the request id

Middleware (outermost first): request id + access log, CORS, gzip.
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from pdfqa.api.v1.documents import router as documents_router
from pdfqa.api.v1.query import router as query_router
from pdfqa.core.config import get_settings
from pdfqa.core.errors import PdfQAError
from pdfqa.db.session import check_db_health, create_tables, get_engine, get_session_factory
from pdfqa.schemas.documents import ErrorDetail, ErrorResponse
from pdfqa.services.factory import build_components

logger = logging.getLogger(__name__)

settings = get_settings()

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

API_PREFIX = "/api/v1"


# ---------------------------------------------------------------------------
# Startup / shutdown
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Check the database, build the component graph, dispose the pool on exit."""
    engine = get_engine()
    logger.info(
        "Startup | env=%s vector_store=%s storage=%s",
        settings.app_env, settings.vector_store_backend, settings.storage_backend,
    )

    if settings.database_url.startswith("sqlite") or settings.app_env == "development":
        await create_tables(engine)

    db_health = await check_db_health(engine)
    if db_health["status"] != "ok":
        logger.critical("Startup | database unreachable detail=%s", db_health)
        raise RuntimeError(f"Database unavailable: {db_health}")

    components = build_components(settings, get_session_factory())
    app.state.document_service = components.document_service()
    logger.info(
        "Startup | ready issuer=%s embedding_model=%s",
        settings.auth_issuer, components.embedder.model_id,
    )

    try:
        yield
    finally:
        logger.info("Shutdown | disposing database engine")
        await engine.dispose()


# ---------------------------------------------------------------------------
# Error envelope
# ---------------------------------------------------------------------------

def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or request.headers.get("X-Request-ID") or str(uuid.uuid4())


def error_response(
    request:     Request,
    http_status: int,
    code:        str,
    message:     str,
    details:     list[ErrorDetail] | None = None,
    extra:       dict | None = None,
) -> JSONResponse:
    request_id = _request_id(request)
    body = ErrorResponse(
        error_code=code,
        message=message,
        details=details or [],
        request_id=request_id,
        extra=extra or {},
    )
    return JSONResponse(
        status_code=http_status,
        content=body.model_dump(mode="json"),
        headers={"X-Request-ID": request_id},
    )


async def handle_domain_error(request: Request, exc: PdfQAError) -> JSONResponse:
    """PdfQAError subclasses carry their own code and HTTP status."""
    level = logging.ERROR if exc.http_status >= 500 else logging.INFO
    logger.log(level, "Request failed | path=%s code=%s message=%s", request.url.path, exc.code, exc.message)

    extra = dict(exc.details)
    field = extra.pop("field", None)
    details = [ErrorDetail(field=field, message=exc.message, code=exc.code)] if field else []
    return error_response(request, exc.http_status, exc.code, exc.message, details, extra)


async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [
        ErrorDetail(
            field=".".join(str(part) for part in err["loc"]),
            message=err["msg"],
            code="VALIDATION_ERROR",
        )
        for err in exc.errors()
    ]
    return error_response(
        request, status.HTTP_422_UNPROCESSABLE_ENTITY, "VALIDATION_ERROR", "Request validation failed.", details,
    )


async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled exception | path=%s request_id=%s", request.url.path, _request_id(request))
    return error_response(
        request, status.HTTP_500_INTERNAL_SERVER_ERROR, "INTERNAL_ERROR", "An unexpected error occurred.",
    )


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app() -> FastAPI:
    docs_enabled = not settings.is_production
    app = FastAPI(
        title="PDF Q&A API",
        description=(
            "Upload PDFs, index them into a vector store and ask questions answered "
            "from the document with chunk citations. Documents can be shared per user "
            "or made public."
        ),
        version="1.0.0",
        docs_url="/api/docs" if docs_enabled else None,
        redoc_url="/api/redoc" if docs_enabled else None,
        openapi_url="/api/openapi.json" if docs_enabled else None,
        lifespan=lifespan,
    )

    # Last added runs outermost
    app.add_middleware(GZipMiddleware, minimum_size=1024)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.app_env == "development" else [],
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "PATCH"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
        expose_headers=["X-Request-ID", "X-Document-ID", "Location"],
    )

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        request.state.request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        started = time.perf_counter()
        response = await call_next(request)
        response.headers["X-Request-ID"] = request.state.request_id
        logger.info(
            "HTTP | %s %s status=%d latency_ms=%.1f",
            request.method, request.url.path, response.status_code, (time.perf_counter() - started) * 1000,
        )
        return response

    app.add_exception_handler(PdfQAError, handle_domain_error)
    app.add_exception_handler(RequestValidationError, handle_validation_error)
    app.add_exception_handler(Exception, handle_unexpected_error)

    app.include_router(documents_router, prefix=API_PREFIX)
    app.include_router(query_router, prefix=API_PREFIX)

    # Probes (no auth)
    @app.get("/health", tags=["Operations"], summary="Liveness probe")
    async def health() -> dict:
        return {"status": "ok", "service": "pdfqa-api"}

    @app.get("/ready", tags=["Operations"], summary="Readiness probe (database reachable)")
    async def readiness() -> JSONResponse:
        db_status = await check_db_health()
        ready = db_status["status"] == "ok"
        return JSONResponse(
            status_code=status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "ready" if ready else "not_ready", "database": db_status},
        )

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "pdfqa.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.app_env == "development",
        log_level="debug" if settings.debug else "info",
    )
