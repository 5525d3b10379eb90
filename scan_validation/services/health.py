from __future__ import annotations
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.ratelimit import RateLimiter
from .store import ScanStore

logger = logging.getLogger(__name__)

async def check_health(
    component: str, session_maker: async_sessionmaker[AsyncSession], limiter: RateLimiter | None = None
) -> tuple[bool, dict[str, Any]]:
    report: dict[str, Any] = {"component": component}
    try:
        async with session_maker() as session:
            db_ok = await ScanStore(session).ping()
    except (SQLAlchemyError, OSError) as exc:
        logger.warning("health check %s: database unreachable: %s", component, exc)
        db_ok = False
    report["database"] = "ok" if db_ok else "unavailable"
    if limiter is not None:
        report["rate_limiter"] = limiter.stats()
    report["status"] = "healthy" if db_ok else "unhealthy"
    return db_ok, report
