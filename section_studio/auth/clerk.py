from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional

import httpx
from fastapi import HTTPException, status
from jose import jwk, jwt
from jose.exceptions import JWSError, JWTError
from jose.utils import base64url_decode

from section_studio.config import settings


logger = logging.getLogger("auth.clerk")


class _JWKSCache:
    def __init__(self, ttl_seconds: int = 300) -> None:
        self.jwks: Optional[Dict[str, Any]] = None
        self.cached_at: float = 0.0
        self.ttl_seconds = ttl_seconds

    def get(self) -> Optional[Dict[str, Any]]:
        if self.jwks and (time.time() - self.cached_at) < self.ttl_seconds:
            return self.jwks
        return None

    def set(self, jwks: Dict[str, Any]) -> None:
        self.jwks = jwks
        self.cached_at = time.time()

    def clear(self) -> None:
        self.jwks = None
        self.cached_at = 0.0


_cache = _JWKSCache()


def _fetch_jwks() -> Dict[str, Any]:
    cached = _cache.get()
    if cached:
        return cached
    if not settings.CLERK_JWKS_URL:
        logger.error("auth.jwks_not_configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Token verification is not configured",
        )
    try:
        resp = httpx.get(settings.CLERK_JWKS_URL, timeout=10)
        resp.raise_for_status()
        data = resp.json()
    except httpx.HTTPError as exc:
        logger.exception("auth.jwks_fetch_failed", extra={"jwks_url": settings.CLERK_JWKS_URL})
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Unable to fetch Clerk JWKS",
        ) from exc
    _cache.set(data)
    return data


def _find_key(jwks: Dict[str, Any], kid: str) -> Optional[Dict[str, Any]]:
    for key in jwks.get("keys", []):
        if key.get("kid") == kid:
            return key
    return None


def _get_public_key(token: str) -> Dict[str, Any]:
    try:
        headers = jwt.get_unverified_header(token)
    except JWTError as exc:
        logger.warning("auth.invalid_token_header", exc_info=exc)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token") from exc
    kid = headers.get("kid")
    if not kid:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing kid in token")

    key = _find_key(_fetch_jwks(), kid)
    if key is None:
        # Keys rotate; refetch once before giving up.
        _cache.clear()
        key = _find_key(_fetch_jwks(), kid)
    if key is None:
        logger.warning("auth.signing_key_not_found", extra={"kid": kid})
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Signing key not found")
    return key


def _audience_allowed(aud: Any) -> bool:
    # Clerk session tokens usually carry azp instead of aud; only a present aud is checked.
    if not aud or not settings.CLERK_AUDIENCE:
        return True
    values = [aud] if isinstance(aud, str) else list(aud)
    return bool(set(values) & set(settings.CLERK_AUDIENCE))


def verify_clerk_token(token: str) -> Dict[str, Any]:
    try:
        public_key = _get_public_key(token)
        key = jwk.construct(public_key)

        message, encoded_sig = token.rsplit(".", 1)
        decoded_sig = base64url_decode(encoded_sig.encode())
        if not key.verify(message.encode(), decoded_sig):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token signature")

        claims = jwt.decode(
            token,
            key=key.to_pem().decode(),
            algorithms=[public_key.get("alg", "RS256")],
            issuer=settings.CLERK_JWT_ISSUER or None,
            options={"verify_aud": False},
        )
    except (JWTError, JWSError, ValueError) as exc:
        logger.warning("auth.token_verification_failed", exc_info=exc)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token") from exc

    if not _audience_allowed(claims.get("aud")):
        logger.warning("auth.audience_rejected", extra={"aud": claims.get("aud")})
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token audience")

    logger.debug("auth.token_verified", extra={"kid": public_key.get("kid"), "sub": claims.get("sub")})
    return claims
