from __future__ import annotations
import time
import uuid
from datetime import datetime
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..codes import ResultCode
from ..deps import get_clock, get_db, get_session_maker, require_internal_caller
from ..responses import fail, ok
from ..services.health import check_health
from ..services.queries import get_event_scan_stats, probe_event
from ..services.store import ScanFilters

router = APIRouter(prefix="/internal/events", tags=["events"])

@router.get("/health")
async def events_health(session_maker: async_sessionmaker[AsyncSession] = Depends(get_session_maker)):
    healthy, report = await check_health("events", session_maker)
    if healthy:
        return ok(report)
    return fail(ResultCode.INTERNAL_ERROR, "Service unhealthy", data=report, status_code=503)

# Event-level scannability probe; ticket rules are not applied
@router.get("/{event_id}/validate")
async def validate_event(
    event_id: uuid.UUID,
    claims: dict = Depends(require_internal_caller),
    db: AsyncSession = Depends(get_db),
    clock=Depends(get_clock),
):
    started = time.perf_counter()
    probe = await probe_event(db, event_id, clock.now())
    if probe is None:
        return fail(ResultCode.EVENT_NOT_FOUND, started=started)
    return ok(probe, started=started)

@router.get("/{event_id}/scan-stats")
async def event_scan_stats(
    event_id: uuid.UUID,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    claims: dict = Depends(require_internal_caller),
    db: AsyncSession = Depends(get_db),
):
    started = time.perf_counter()
    stats = await get_event_scan_stats(db, event_id, ScanFilters(start_date=start_date, end_date=end_date))
    if stats is None:
        return fail(ResultCode.EVENT_NOT_FOUND, started=started)
    return ok(stats, started=started)
