from __future__ import annotations
from typing import Any, Dict
from fastapi import Header, HTTPException, Request, status
import logging
import time
import httpx
import jwt

from .core.config import get_settings
from .services.step_credit import StepCreditCore

settings = get_settings()
logger = logging.getLogger(__name__)

STAFF_ROLES = {"admin", "service"}

_JWKS: Dict[str, Any] | None = None
_JWKS_TS: float = 0.0
_JWKS_TTL: int = 3600

async def fetch_jwks() -> Dict[str, Any]:
    global _JWKS, _JWKS_TS
    now = time.time()
    if _JWKS is None or (now - _JWKS_TS) > _JWKS_TTL:
        async with httpx.AsyncClient() as client:
            r = await client.get(settings.auth_jwks_url, timeout=5.0)
            r.raise_for_status()
            _JWKS = r.json()
            _JWKS_TS = now
    return _JWKS

async def get_signing_key(kid: str | None):
    from jwt.algorithms import RSAAlgorithm
    jwks = await fetch_jwks()
    keys = jwks.get("keys", [])
    key = next((k for k in keys if kid and k.get("kid") == kid), keys[0] if keys else None)
    if key is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="No signing keys")
    return RSAAlgorithm.from_jwk(key)

async def get_claims(authorization: str | None = Header(default=None)) -> Dict[str, Any]:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing token")
    token = authorization.split(" ", 1)[1].strip()
    try:
        kid = jwt.get_unverified_header(token).get("kid")
    except jwt.PyJWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    try:
        key = await get_signing_key(kid)
    except httpx.HTTPError as exc:
        logger.warning("jwks fetch failed: %s", exc)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Auth keys unavailable")
    try:
        payload = jwt.decode(
            token, key=key, algorithms=["RS256"], issuer=settings.token_issuer,
            options={"verify_aud": False},
        )
    except jwt.PyJWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    if "sub" not in payload or "role" not in payload:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token payload")
    return payload

def require_staff(claims: Dict[str, Any]) -> None:
    if claims.get("role") not in STAFF_ROLES:
        raise HTTPException(status_code=403, detail="Admin/Service role required")

def get_core(request: Request) -> StepCreditCore:
    return request.app.state.core
