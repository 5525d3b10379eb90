from __future__ import annotations
import time
import uuid
from datetime import datetime
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..codes import ResultCode
from ..core.ratelimit import RateLimiter
from ..deps import get_clock, get_db, get_limiter, get_session_maker, require_internal_caller
from ..models import ScanDecision
from ..responses import fail, ok
from ..schemas import ScanLogOut, TicketStatusOut, TicketStatusPatch
from ..services.health import check_health
from ..services.queries import get_scan_history, get_ticket_status
from ..services.store import ScanFilters
from ..services.tickets import TransitionError, change_ticket_status

router = APIRouter(prefix="/internal/tickets", tags=["tickets"])

@router.get("/health")
async def tickets_health(
    session_maker: async_sessionmaker[AsyncSession] = Depends(get_session_maker),
    limiter: RateLimiter = Depends(get_limiter),
):
    healthy, report = await check_health("tickets", session_maker, limiter)
    if healthy:
        return ok(report)
    return fail(ResultCode.INTERNAL_ERROR, "Service unhealthy", data=report, status_code=503)

@router.get("/{ticket_id}/status")
async def ticket_status(
    ticket_id: uuid.UUID,
    claims: dict = Depends(require_internal_caller),
    db: AsyncSession = Depends(get_db),
):
    started = time.perf_counter()
    view = await get_ticket_status(db, ticket_id)
    if view is None:
        return fail(ResultCode.TICKET_NOT_FOUND, started=started)
    t = view.ticket
    out = TicketStatusOut(
        ticket_id=t.id,
        event_id=view.event_id,
        ticket_code=t.ticket_code,
        status=t.status.value,
        max_scans=t.max_scans,
        validated_at=t.validated_at,
        updated_at=t.updated_at,
        admitted_count=view.admitted_count,
        last_admitted_at=view.last_admitted_at,
        remaining_scans=view.remaining_scans,
        can_be_scanned=view.can_be_scanned,
    )
    return ok(out.model_dump(), started=started)

@router.get("/{ticket_id}/scan-history")
async def ticket_scan_history(
    ticket_id: uuid.UUID,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    location: str | None = None,
    decision: ScanDecision | None = None,
    claims: dict = Depends(require_internal_caller),
    db: AsyncSession = Depends(get_db),
):
    started = time.perf_counter()
    filters = ScanFilters(start_date=start_date, end_date=end_date, location=location, decision=decision)
    page = await get_scan_history(db, ticket_id, limit=limit, offset=offset, filters=filters)
    if page is None:
        return fail(ResultCode.TICKET_NOT_FOUND, started=started)
    return ok(
        {
            "ticket_id": page.ticket_id,
            "scans": [
                ScanLogOut(
                    id=s.id, ticket_id=s.ticket_id, event_id=s.event_id, operator_id=s.operator_id,
                    device_id=s.device_id, location=s.location, checkpoint_id=s.checkpoint_id,
                    scanned_at=s.scanned_at, decision=ScanDecision(s.decision).value, rejection_code=s.rejection_code,
                ).model_dump()
                for s in page.scans
            ],
            "pagination": {"total": page.total, "limit": page.limit, "offset": page.offset, "has_more": page.has_more},
            "statistics": page.statistics,
        },
        started=started,
    )

@router.patch("/{ticket_id}/status")
async def patch_ticket_status(
    ticket_id: uuid.UUID,
    payload: TicketStatusPatch,
    claims: dict = Depends(require_internal_caller),
    session_maker: async_sessionmaker[AsyncSession] = Depends(get_session_maker),
    clock=Depends(get_clock),
):
    started = time.perf_counter()
    try:
        res = await change_ticket_status(session_maker, ticket_id, payload.status, clock.now(), reason=payload.reason)
    except TransitionError as exc:
        return fail(exc.code, exc.detail, started=started)
    return ok(
        {
            "ticket_id": res.ticket_id,
            "previous_status": res.previous.value,
            "status": res.status.value,
            "updated_at": res.updated_at,
        },
        started=started,
    )
