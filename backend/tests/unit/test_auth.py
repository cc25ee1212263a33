"""
Unit Tests — JWT verification
══════════════════════════════
Tests for:
  • _get_signing_key  — kid lookup, forced refetch on unknown kid, provider down
  • verify_token      — valid, expired, wrong audience/issuer, missing sub, tampered
  • get_current_user  — bearer credentials → TokenPayload, missing header

Tokens are signed with the session RSA key from conftest.py and the JWKS
fetcher is patched, so nothing leaves the process.
"""

from __future__ import annotations

from unittest.mock import AsyncMock

import httpx
import pytest
from fastapi.security import HTTPAuthorizationCredentials

from pdfqa.auth import token as token_module
from pdfqa.auth.token import get_current_user, verify_token
from pdfqa.core.errors import AuthenticationError, AuthProviderUnavailableError

pytestmark = [pytest.mark.unit, pytest.mark.auth]


# ─────────────────────────────────────────────────────────────────────────────
# Signing key lookup
# ─────────────────────────────────────────────────────────────────────────────

class TestSigningKey:

    async def test_known_kid_resolves(self, jwks_test_config, make_token):
        key = await token_module._get_signing_key(make_token())

        assert key is not None
        jwks_test_config.assert_awaited_once()

    async def test_unknown_kid_refetches_once(self, jwks_test_config, make_token):
        with pytest.raises(AuthenticationError) as exc_info:
            await token_module._get_signing_key(make_token(kid="rotated-away"))

        assert exc_info.value.details == {"kid": "rotated-away"}
        assert jwks_test_config.await_count == 2

    async def test_malformed_token(self, jwks_test_config):
        with pytest.raises(AuthenticationError):
            await token_module._get_signing_key("not.a.jwt")

    async def test_provider_down(self, monkeypatch, make_token):
        monkeypatch.setattr(
            token_module, "_fetch_jwks", AsyncMock(side_effect=httpx.ConnectError("refused")),
        )

        with pytest.raises(AuthProviderUnavailableError) as exc_info:
            await token_module._get_signing_key(make_token())

        assert exc_info.value.http_status == 503


# ─────────────────────────────────────────────────────────────────────────────
# Token verification
# ─────────────────────────────────────────────────────────────────────────────

class TestVerifyToken:

    async def test_valid_token(self, jwks_test_config, make_token):
        payload = await verify_token(make_token(sub="alice"))

        assert payload.user_id == "alice"
        assert payload.email == "alice@example.com"
        assert payload.iss == "https://test.auth.example.com/"

    async def test_expired(self, jwks_test_config, make_token):
        with pytest.raises(AuthenticationError, match="expired"):
            await verify_token(make_token(expired=True))

    @pytest.mark.parametrize(
        "overrides",
        [{"audience": "someone-else"}, {"issuer": "https://evil.example.com/"}, {"sub": None}],
        ids=["audience", "issuer", "no-sub"],
    )
    async def test_rejected_claims(self, jwks_test_config, make_token, overrides):
        with pytest.raises(AuthenticationError) as exc_info:
            await verify_token(make_token(**overrides))

        assert exc_info.value.http_status == 401
        assert exc_info.value.code == "UNAUTHORIZED"

    async def test_tampered_signature(self, jwks_test_config, make_token):
        header, body, signature = make_token().split(".")
        forged = signature[:-4] + ("AAAA" if signature[-4:] != "AAAA" else "BBBB")

        with pytest.raises(AuthenticationError):
            await verify_token(".".join([header, body, forged]))


# ─────────────────────────────────────────────────────────────────────────────
# FastAPI dependency
# ─────────────────────────────────────────────────────────────────────────────

class TestCurrentUser:

    async def test_returns_payload(self, jwks_test_config, make_token):
        credentials = HTTPAuthorizationCredentials(scheme="Bearer", credentials=make_token(sub="bob"))

        payload = await get_current_user(credentials)

        assert payload.sub == "bob"

    async def test_missing_header(self):
        with pytest.raises(AuthenticationError, match="Missing bearer token"):
            await get_current_user(None)

    async def test_api_returns_401_envelope(self, document_service, jwks_test_config):
        from httpx import ASGITransport, AsyncClient

        from pdfqa.auth.dependencies import get_document_service
        from pdfqa.main import app

        app.dependency_overrides[get_document_service] = lambda: document_service
        try:
            async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
                response = await client.get("/api/v1/documents")
        finally:
            app.dependency_overrides.clear()

        assert response.status_code == 401
        assert response.json()["error_code"] == "UNAUTHORIZED"
