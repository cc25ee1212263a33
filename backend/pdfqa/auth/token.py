"""
Bearer token verification (RS256, any OIDC issuer)

    Issuer:   AUTH_ISSUER
    JWKS URI: <issuer>/.well-known/jwks.json
    Claims:   sub (the user id), email, exp, iss, aud

Keys are cached per issuer for an hour. A token whose `kid` is not in the
cached set triggers one forced refetch, which covers key rotation.

Authentication only. Per-document authorization lives in auth/access.py.
"""

from __future__ import annotations

import logging
import time
from typing import Annotated, Any

import httpx
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import ExpiredSignatureError, JWTError, jwk, jwt
from pydantic import BaseModel

from pdfqa.core.config import get_settings
from pdfqa.core.errors import AuthenticationError, AuthProviderUnavailableError

logger = logging.getLogger(__name__)

# auto_error=False so a missing header goes through AuthenticationError too
bearer_scheme = HTTPBearer(auto_error=False)

_JWKS_CACHE: dict[str, tuple[dict, float]] = {}   # issuer → (jwks, fetched_at)
_JWKS_TTL   = 3600


class TokenPayload(BaseModel):
    """Verified claims handed to route handlers."""
    sub:   str
    email: str = ""
    exp:   int
    iss:   str

    @property
    def user_id(self) -> str:
        return self.sub


# ---------------------------------------------------------------------------
# JWKS
# ---------------------------------------------------------------------------

async def _fetch_jwks(issuer: str) -> dict:
    fetched = _JWKS_CACHE.get(issuer)
    if fetched and time.monotonic() - fetched[1] < _JWKS_TTL:
        return fetched[0]

    async with httpx.AsyncClient(timeout=10.0) as client:
        response = await client.get(f"{issuer.rstrip('/')}/.well-known/jwks.json")
        response.raise_for_status()
        jwks = response.json()

    _JWKS_CACHE[issuer] = (jwks, time.monotonic())
    logger.debug("Auth | JWKS loaded issuer=%s keys=%d", issuer, len(jwks.get("keys", [])))
    return jwks


def _find_key(jwks: dict, kid: str | None) -> dict | None:
    return next((key for key in jwks.get("keys", []) if key.get("kid") == kid), None)


async def _get_signing_key(token: str) -> Any:
    try:
        kid = jwt.get_unverified_header(token).get("kid")
    except JWTError as exc:
        raise AuthenticationError("Malformed token header.") from exc

    issuer = get_settings().auth_issuer
    for force_refresh in (False, True):
        if force_refresh:
            _JWKS_CACHE.pop(issuer, None)
        try:
            jwks = await _fetch_jwks(issuer)
        except httpx.HTTPError as exc:
            logger.error("Auth | JWKS fetch failed issuer=%s error=%s", issuer, exc)
            raise AuthProviderUnavailableError("Authentication provider unavailable.") from exc

        key_data = _find_key(jwks, kid)
        if key_data is not None:
            return jwk.construct(key_data, algorithm="RS256")

    raise AuthenticationError("Token signed with an unknown key.", details={"kid": kid})


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------

async def verify_token(token: str) -> TokenPayload:
    """Check signature, expiry, issuer and audience; `sub` is required."""
    settings = get_settings()
    key = await _get_signing_key(token)

    try:
        claims = jwt.decode(
            token,
            key,
            algorithms=["RS256"],
            audience=settings.auth_audience,
            issuer=settings.auth_issuer,
        )
    except ExpiredSignatureError as exc:
        raise AuthenticationError("Token has expired.") from exc
    except JWTError as exc:
        raise AuthenticationError(f"Invalid token: {exc}") from exc

    if not claims.get("sub"):
        raise AuthenticationError("Token has no subject.")

    return TokenPayload(
        sub=claims["sub"],
        email=claims.get("email", ""),
        exp=int(claims.get("exp", 0)),
        iss=claims.get("iss", settings.auth_issuer),
    )


async def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)],
) -> TokenPayload:
    """FastAPI dependency: the caller behind the Authorization header."""
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise AuthenticationError("Missing bearer token.")
    return await verify_token(credentials.credentials)
