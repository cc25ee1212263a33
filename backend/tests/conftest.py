"""
Root conftest.py — Shared fixtures for ALL tests (unit + integration)

Fixture hierarchy:
  session-scoped  : rsa_private_key, rsa_private_key_pem, test_jwks
  function-scoped : db_engine, registry, embedder, vector_index, llm,
                    document_factory, document_service, async_client

Environment strategy:
  - Every test gets its own SQLite file (aiosqlite); no PostgreSQL needed.
  - The vector index is the in-memory backend; the file store is local.
  - Embeddings and the LLM are deterministic fakes — no network calls.
  - JWT tokens are built with a test RSA key — no live auth provider needed.
  - Celery is never touched: the TaskPublisher is a MagicMock.

How to run:
  pytest                              # all tests
  pytest -m unit                      # unit tests only
  pytest -m integration               # API tests through the ASGI app
  pytest backend/tests/unit/test_access.py
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import os
import time
from typing import AsyncGenerator, Callable
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi import Request
from httpx import AsyncClient

# ─────────────────────────────────────────────────────────────────────────────
# Patch settings BEFORE any app imports so modules read test config
# ─────────────────────────────────────────────────────────────────────────────

os.environ.setdefault("DATABASE_URL",          "sqlite+aiosqlite:///./pdfqa-test.db")
os.environ.setdefault("STORAGE_BACKEND",       "local")
os.environ.setdefault("VECTOR_STORE_BACKEND",  "memory")
os.environ.setdefault("OPENAI_API_KEY",        "sk-test-key")
os.environ.setdefault("CELERY_BROKER_URL",     "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")
os.environ.setdefault("APP_ENV",               "development")
os.environ.setdefault("UPSTREAM_BACKOFF_BASE", "0")
os.environ.setdefault("UPSTREAM_BACKOFF_MAX",  "0")

os.environ.setdefault("AUTH_ISSUER",   "https://test.auth.example.com/")
os.environ.setdefault("AUTH_AUDIENCE", "test-api-audience")

from pdfqa.core.config import ChunkingConfig, IndexingConfig, QueryConfig, RetryPolicy, get_settings  # noqa: E402
from pdfqa.db.session import build_engine, build_session_factory, create_tables  # noqa: E402
from pdfqa.llm.gateway import LLMClient  # noqa: E402
from pdfqa.processing.embeddings import EmbeddingProvider  # noqa: E402
from pdfqa.services.registry import DocumentRegistry  # noqa: E402
from pdfqa.vectorstore.memory_store import InMemoryVectorIndex  # noqa: E402

TEST_KID      = "test-key-id-2024"
TEST_ISSUER   = "https://test.auth.example.com/"
TEST_AUDIENCE = "test-api-audience"

TEST_COLLECTION = "TestChunks"

# Retry budget with zero backoff so failure paths run instantly
FAST_RETRY = RetryPolicy(attempts=3, backoff_base=0.0, backoff_max=0.0)


# ─────────────────────────────────────────────────────────────────────────────
# Deterministic fakes for the external collaborators
# ─────────────────────────────────────────────────────────────────────────────

class FakeEmbedder(EmbeddingProvider):
    """
    Bag-of-words hashing embedder: texts sharing words get similar vectors.
    `fail_when(text)` returning an exception makes embed() raise it.
    """

    def __init__(self, model_id: str = "fake-embed@256", dims: int = 256, delay: float = 0.0) -> None:
        self._model_id   = model_id
        self._dims       = dims
        self.delay       = delay
        self.fail_when: Callable[[str], Exception | None] = lambda text: None
        self.calls:        list[str] = []
        self.in_flight     = 0
        self.max_in_flight = 0

    @property
    def model_id(self) -> str:
        return self._model_id

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            error = self.fail_when(text)
            if error is not None:
                raise error
            vector = [0.0] * self._dims
            for word in text.lower().split():
                digest = hashlib.sha1(word.strip(".,?!").encode()).digest()
                vector[digest[0] % self._dims] += 1.0
            vector[-1] += 0.01
            return vector
        finally:
            self.in_flight -= 1


class FakeLLM(LLMClient):
    """Echoes the first context block; records every call."""

    model_id = "fake-llm"

    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []
        self.error: Exception | None = None

    async def generate(self, question: str, context: str) -> str:
        self.calls.append((question, context))
        if self.error is not None:
            raise self.error
        return f"Answer to '{question}' from {context.count('[chunk ')} chunk(s)."


# ─────────────────────────────────────────────────────────────────────────────
# Database + registry
# ─────────────────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def db_engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'pdfqa.db'}")
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return build_session_factory(db_engine)


@pytest.fixture
def registry(session_factory) -> DocumentRegistry:
    return DocumentRegistry(session_factory, default_collection=TEST_COLLECTION)


# ─────────────────────────────────────────────────────────────────────────────
# Collaborators
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def vector_index() -> InMemoryVectorIndex:
    return InMemoryVectorIndex()


@pytest.fixture
def llm() -> FakeLLM:
    return FakeLLM()


@pytest.fixture
def indexing_config() -> IndexingConfig:
    return IndexingConfig(
        chunking=ChunkingConfig(chunk_size=50, chunk_overlap=0),
        concurrency=2,
        retry=FAST_RETRY,
        embed_timeout=5.0,
        upsert_timeout=5.0,
    )


@pytest.fixture
def query_config() -> QueryConfig:
    return QueryConfig(top_k=3, retry=FAST_RETRY, embed_timeout=5.0, search_timeout=5.0, llm_timeout=5.0)


@pytest.fixture
def three_paragraphs() -> str:
    """Three paragraphs that each become one chunk at chunk_size=50."""
    return (
        "Alpha section covers the refund policy.\n\n"
        "Beta section describes shipping times.\n\n"
        "Gamma section explains warranty terms."
    )


# ─────────────────────────────────────────────────────────────────────────────
# Document factory: drives the registry through the state machine
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def document_factory(registry, embedder):
    """
    Factory fixture: create a document and optionally move it to a state.

    Usage:
        doc = await document_factory()                         # pending
        doc = await document_factory(status="completed", total=3)
        doc = await document_factory(status="failed", total=3, succeeded=2)
    """

    async def _create(
        owner_id:  str = "alice",
        name:      str = "Handbook",
        is_public: bool = False,
        status:    str = "pending",
        total:     int = 3,
        succeeded: int | None = None,
    ):
        document = await registry.create(owner_id=owner_id, name=name, size=1024, is_public=is_public)
        if status == "pending":
            return document

        run_id = await registry.claim_for_indexing(document.uuid, embedding_model=embedder.model_id)
        if status == "processing":
            return await registry.get(document.uuid)

        await registry.set_total_chunks(document.uuid, run_id, total, page_count=1)
        done = total if succeeded is None else succeeded
        await registry.update_indexing_progress(
            document.uuid, chunks_attempted=total, chunks_succeeded=done, run_id=run_id,
        )
        if status == "completed":
            return await registry.mark_completed(document.uuid, run_id)
        return await registry.mark_failed(document.uuid, run_id, f"{total - done} of {total} chunks failed")

    return _create


# ─────────────────────────────────────────────────────────────────────────────
# RSA key pair for signing test JWTs (generated once per session)
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture(scope="session")
def rsa_private_key():
    """Generate a 2048-bit RSA private key for test JWT signing."""
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def rsa_private_key_pem(rsa_private_key) -> bytes:
    """PEM-encoded private key bytes (used by jose.jwt.encode)."""
    return rsa_private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )


@pytest.fixture(scope="session")
def test_jwks(rsa_private_key) -> dict:
    """The JWKS document a real /.well-known/jwks.json would return."""
    pub_numbers = rsa_private_key.public_key().public_numbers()

    def _b64url(n: int) -> str:
        byte_length = (n.bit_length() + 7) // 8
        return base64.urlsafe_b64encode(n.to_bytes(byte_length, "big")).rstrip(b"=").decode()

    return {
        "keys": [
            {
                "kty": "RSA",
                "use": "sig",
                "alg": "RS256",
                "kid": TEST_KID,
                "n":   _b64url(pub_numbers.n),
                "e":   _b64url(pub_numbers.e),
            }
        ]
    }


@pytest.fixture
def make_token(rsa_private_key_pem):
    """
    Factory fixture: returns a function that builds signed test JWTs.

    Usage:
        token = make_token()
        token = make_token(sub="bob", expired=True)
    """
    from jose import jwt as jose_jwt

    def _build(
        sub:      str | None = "alice",
        expired:  bool = False,
        audience: str  = TEST_AUDIENCE,
        issuer:   str  = TEST_ISSUER,
        kid:      str  = TEST_KID,
    ) -> str:
        now = int(time.time())
        claims: dict = {
            "email": f"{sub}@example.com",
            "iss":   issuer,
            "aud":   audience,
            "exp":   now - 60 if expired else now + 3600,
            "iat":   now,
        }
        if sub is not None:
            claims["sub"] = sub
        return jose_jwt.encode(claims, rsa_private_key_pem, algorithm="RS256", headers={"kid": kid})

    return _build


@pytest.fixture
def jwks_test_config(test_jwks, monkeypatch):
    """Serve test_jwks from the JWKS fetcher; returns the fetch mock."""
    from pdfqa.auth import token as token_module

    fetch = AsyncMock(return_value=test_jwks)
    monkeypatch.setattr(token_module, "_fetch_jwks", fetch)
    token_module._JWKS_CACHE.clear()
    return fetch


# ─────────────────────────────────────────────────────────────────────────────
# Sample file bytes
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def sample_pdf_bytes() -> bytes:
    """Minimal valid one-page PDF with no text layer."""
    from io import BytesIO

    from pypdf import PdfWriter

    writer = PdfWriter()
    writer.add_blank_page(width=612, height=792)
    buffer = BytesIO()
    writer.write(buffer)
    return buffer.getvalue()


@pytest.fixture
def exe_bytes() -> bytes:
    """Windows PE executable — rejected by the magic-byte check."""
    return b"MZ\x90\x00" + b"\x00" * 100


# ─────────────────────────────────────────────────────────────────────────────
# Mock task publisher
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def mock_publisher():
    """Mocked TaskPublisher — records calls without touching Celery/broker."""
    from pdfqa.services.documents import TaskPublisher

    publisher = MagicMock(spec=TaskPublisher)
    publisher.publish_indexing_task = AsyncMock(return_value=None)
    return publisher


# ─────────────────────────────────────────────────────────────────────────────
# Service + FastAPI test client
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def components(registry, embedder, vector_index, tmp_path):
    from pdfqa.services.factory import Components
    from pdfqa.storage.files import LocalFileStore

    return Components(
        registry=registry,
        embedder=embedder,
        vector_index=vector_index,
        file_store=LocalFileStore(tmp_path / "files"),
        settings=get_settings(),
    )


@pytest.fixture
def document_service(components, llm, mock_publisher):
    return components.document_service(llm=llm, publisher=mock_publisher)


@pytest.fixture
def app_with_overrides(document_service):
    """
    FastAPI app with external dependencies overridden:
      - get_current_user     → TokenPayload for the X-Test-User header
                               (default "alice"; no JWT verification)
      - get_document_service → the SQLite-backed service above
    """
    from pdfqa.auth.dependencies import get_document_service
    from pdfqa.auth.token import TokenPayload, get_current_user
    from pdfqa.main import app

    def _fake_user(request: Request) -> TokenPayload:
        return TokenPayload(
            sub=request.headers.get("X-Test-User", "alice"),
            exp=int(time.time()) + 3600,
            iss=TEST_ISSUER,
        )

    app.dependency_overrides[get_current_user]     = _fake_user
    app.dependency_overrides[get_document_service] = lambda: document_service

    yield app

    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def async_client(app_with_overrides) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP test client using the overridden app (lifespan not run)."""
    from httpx import ASGITransport

    transport = ASGITransport(app=app_with_overrides)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
