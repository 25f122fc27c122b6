"""Caller identity and signed download links.

Identity is owned by Clerk: requests carry a Clerk-issued RS256 JWT whose
``sub`` claim becomes ``Receipt.owner_id``.  Tokens are verified against
the key set published at ``CLERK_JWKS_URL``; audience and issuer are
checked when ``CLERK_JWT_AUDIENCE`` / ``CLERK_JWT_ISSUER`` are set.

Download links for the filesystem storage backend are signed here with
HMAC-SHA256 over ``"<file_id>:<expiry>"`` using ``SECRET_KEY``.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import time
from typing import Any, Dict, Optional

import requests
from fastapi import HTTPException, Request, status
from jose import jwt

from receiptflow.core.config import settings


class JWKSCache:
    """Lazily fetched Clerk key set, refreshed once when a ``kid`` is unknown."""

    def __init__(self, url: Optional[str] = None) -> None:
        self._url = url
        self._keys: Optional[Dict[str, Dict[str, Any]]] = None

    def _fetch(self) -> Dict[str, Dict[str, Any]]:
        url = self._url or settings.CLERK_JWKS_URL
        if not url:
            raise HTTPException(status_code=500, detail="CLERK_JWKS_URL is not configured")
        try:
            resp = requests.get(url, timeout=5)
            resp.raise_for_status()
            payload = resp.json()
        except Exception as exc:
            raise HTTPException(status_code=500, detail=f"Failed to fetch JWKS: {exc}") from exc
        keys = payload.get("keys") if isinstance(payload, dict) else None
        if not isinstance(keys, list):
            raise HTTPException(status_code=500, detail="Invalid JWKS payload from Clerk")
        return {k["kid"]: k for k in keys if isinstance(k, dict) and k.get("kid")}

    def key_for(self, kid: str) -> Optional[Dict[str, Any]]:
        if self._keys is None or kid not in self._keys:
            # first use, or the signing key was rotated
            self._keys = self._fetch()
        return self._keys.get(kid)


jwks_cache = JWKSCache()


def decode_clerk_jwt(token: str) -> Dict[str, Any]:
    """Verify a Clerk JWT and return its claims; raises 401 when invalid."""
    try:
        kid = jwt.get_unverified_header(token).get("kid")
    except Exception as exc:
        raise HTTPException(status_code=401, detail=f"Invalid token header: {exc}") from exc
    if not kid:
        raise HTTPException(status_code=401, detail="Invalid Clerk token: missing kid header")
    key = jwks_cache.key_for(kid)
    if key is None:
        raise HTTPException(status_code=401, detail="Unknown signing key (kid) for Clerk token")

    options = {"verify_aud": bool(settings.CLERK_JWT_AUDIENCE)}
    try:
        return jwt.decode(
            token,
            key,
            algorithms=["RS256"],
            audience=settings.CLERK_JWT_AUDIENCE,
            issuer=settings.CLERK_JWT_ISSUER,
            options=options,
        )
    except Exception as exc:
        raise HTTPException(status_code=401, detail=f"Invalid Clerk token: {exc}") from exc


async def get_current_user_id(request: Request) -> str:
    """Resolve the authenticated user's id from the ``Authorization`` header."""
    if settings.DEV_AUTH_BYPASS:
        return settings.DEV_USER_ID
    scheme, _, token = (request.headers.get("Authorization") or "").partition(" ")
    if scheme != "Bearer" or not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing Clerk JWT")
    user_id = decode_clerk_jwt(token).get("sub")
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid Clerk token: no sub claim")
    return str(user_id)


def sign_download_token(file_id: str, exp_ts: int, secret: str | None = None) -> str:
    msg = f"{file_id}:{exp_ts}".encode()
    key = (secret or settings.SECRET_KEY).encode()
    digest = hmac.new(key, msg, hashlib.sha256).digest()
    return base64.urlsafe_b64encode(digest).decode().rstrip("=")


def verify_download_token(file_id: str, exp_ts: int, sig: str, now: float | None = None) -> bool:
    if exp_ts < int(now if now is not None else time.time()):
        return False
    return hmac.compare_digest(sign_download_token(file_id, exp_ts), sig)
