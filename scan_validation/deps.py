from __future__ import annotations
from typing import Any, Dict, AsyncGenerator
from fastapi import Depends, Header, HTTPException, status
import time
import httpx
import jwt
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .db import async_session_maker, get_session
from .core.clock import SystemClock
from .core.config import get_settings
from .core.ratelimit import RateLimiter, TokenBucketLimiter
from .core.redis import RedisTokenBucketLimiter
from .services.engine import ValidationEngine

settings = get_settings()

_JWKS: Dict[str, Any] | None = None
_JWKS_TS: float = 0.0
_JWKS_TTL: int = 3600

INTERNAL_ROLES = {"service", "admin"}

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

async def get_signing_key():
    from jwt.algorithms import RSAAlgorithm
    jwks = await fetch_jwks()
    key = jwks["keys"][0]
    return RSAAlgorithm.from_jwk(key)

async def get_claims(authorization: str | None = Header(default=None)) -> Dict[str, Any]:
    # open when no JWKS is configured (local runs and tests)
    if not settings.auth_jwks_url:
        return {"sub": None, "role": "service"}
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing token")
    token = authorization.split(" ", 1)[1].strip()
    try:
        key = await get_signing_key()
    except httpx.HTTPError:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Key set unavailable")
    try:
        payload = jwt.decode(token, key=key, algorithms=["RS256"], options={"verify_aud": False})
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    if "sub" not in payload or "role" not in payload:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token payload")
    return payload

async def require_internal_caller(claims: dict = Depends(get_claims)) -> Dict[str, Any]:
    if claims.get("role") not in INTERNAL_ROLES:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Internal caller role required")
    return claims

async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async for s in get_session():
        yield s

def get_session_maker() -> async_sessionmaker[AsyncSession]:
    return async_session_maker

_clock = SystemClock()

def get_clock():
    return _clock

_limiter: RateLimiter | None = None

def get_limiter() -> RateLimiter:
    global _limiter
    if _limiter is None:
        if settings.rate_limit_backend == "redis":
            _limiter = RedisTokenBucketLimiter(
                capacity=settings.rate_limit_capacity,
                refill_per_sec=settings.rate_limit_refill_per_sec,
                idle_ttl_sec=settings.rate_limit_idle_ttl_sec,
            )
        else:
            _limiter = TokenBucketLimiter(
                capacity=settings.rate_limit_capacity,
                refill_per_sec=settings.rate_limit_refill_per_sec,
                idle_ttl_sec=settings.rate_limit_idle_ttl_sec,
            )
    return _limiter

def get_validation_engine(
    session_maker: async_sessionmaker[AsyncSession] = Depends(get_session_maker),
    limiter: RateLimiter = Depends(get_limiter),
    clock=Depends(get_clock),
) -> ValidationEngine:
    return ValidationEngine(session_maker, limiter=limiter, clock=clock, settings=settings)
