"""
Read-only projections over tickets and the scan log. Nothing here locks or writes.
"""
from __future__ import annotations
import uuid
from collections import Counter
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from ..codes import ResultCode, message_for
from ..core.clock import as_utc
from ..models import Event, EventStatus, ScanDecision, ScanLog, Ticket, TicketStatus
from .policy import check_event
from .store import ScanFilters, ScanStore

@dataclass(frozen=True)
class TicketStatusView:
    ticket: Ticket
    event_id: uuid.UUID
    admitted_count: int
    last_admitted_at: datetime | None
    remaining_scans: int
    can_be_scanned: bool

async def get_ticket_status(session: AsyncSession, ticket_id: uuid.UUID) -> TicketStatusView | None:
    store = ScanStore(session)
    row = await store.load_ticket(ticket_id)
    if row is None:
        return None
    admitted = await store.count_admitted_for_ticket(ticket_id)
    remaining = max(0, row.ticket.max_scans - admitted)
    return TicketStatusView(
        ticket=row.ticket,
        event_id=row.event_id,
        admitted_count=admitted,
        last_admitted_at=await store.last_admitted_at(ticket_id),
        remaining_scans=remaining,
        can_be_scanned=row.ticket.status == TicketStatus.ACTIVE and remaining > 0,
    )

async def history_statistics(
    store: ScanStore, *, ticket_id: uuid.UUID | None = None, filters: ScanFilters | None = None
) -> dict[str, Any]:
    totals = await store.scan_totals(ticket_id=ticket_id, filters=filters)
    by_day: Counter[str] = Counter()
    by_hour: Counter[int] = Counter()
    for year, month, day, hour, n in await store.count_scans_by_hour(ticket_id=ticket_id, filters=filters):
        by_day[f"{year:04d}-{month:02d}-{day:02d}"] += n
        by_hour[hour] += n
    # ties resolve to the earliest hour
    peak_hour = min(by_hour, key=lambda h: (-by_hour[h], h)) if by_hour else None
    return {
        "total_scans": totals["total"],
        "admitted": totals["admitted"],
        "rejected": totals["total"] - totals["admitted"],
        "by_location": await store.count_scans_by(ScanLog.location, ticket_id=ticket_id, filters=filters),
        "by_day": dict(sorted(by_day.items())),
        "peak_hour": peak_hour,
        "first_scan": totals["first"],
        "last_scan": totals["last"],
    }

@dataclass(frozen=True)
class ScanHistoryPage:
    ticket_id: uuid.UUID
    scans: list[ScanLog]
    total: int
    limit: int
    offset: int
    statistics: dict[str, Any]

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.scans) < self.total

async def get_scan_history(
    session: AsyncSession,
    ticket_id: uuid.UUID,
    *,
    limit: int = 50,
    offset: int = 0,
    filters: ScanFilters | None = None,
) -> ScanHistoryPage | None:
    """Newest first. Statistics cover the whole filtered history, not just the page."""
    store = ScanStore(session)
    if await store.load_ticket(ticket_id) is None:
        return None
    page = await store.list_scan_history(ticket_id, limit, offset, filters, newest_first=True)
    total = await store.count_scan_history(ticket_id, filters)
    return ScanHistoryPage(
        ticket_id=ticket_id,
        scans=page,
        total=total,
        limit=limit,
        offset=offset,
        statistics=await history_statistics(store, ticket_id=ticket_id, filters=filters),
    )

async def get_event_scan_stats(
    session: AsyncSession, event_id: uuid.UUID, filters: ScanFilters | None = None
) -> dict[str, Any] | None:
    store = ScanStore(session)
    event = await store.load_event(event_id)
    if event is None:
        return None
    totals = await store.scan_totals(event_id=event_id, filters=filters)
    rejected_only = replace(filters or ScanFilters(), decision=ScanDecision.REJECTED)
    # remaining capacity is always against the full log, never the filter window
    seated = await store.count_admitted_tickets(event_id)
    return {
        "event_id": event_id,
        "total_scans": totals["total"],
        "admitted": totals["admitted"],
        "rejected": totals["total"] - totals["admitted"],
        "unique_admitted_tickets": totals["admitted_tickets"],
        "max_attendees": event.max_attendees,
        "remaining_capacity": _remaining(event, seated),
        "by_location": await store.count_scans_by(ScanLog.location, event_id=event_id, filters=filters),
        "by_checkpoint": await store.count_scans_by(ScanLog.checkpoint_id, event_id=event_id, filters=filters),
        "by_rejection_code": await store.count_scans_by(
            ScanLog.rejection_code, event_id=event_id, filters=rejected_only
        ),
    }

def _remaining(event: Event, seated: int) -> int | None:
    if event.max_attendees is None:
        return None
    return max(0, event.max_attendees - seated)

async def probe_event(session: AsyncSession, event_id: uuid.UUID, now: datetime) -> dict[str, Any] | None:
    """Event-level rules only: can anything be admitted to this event right now?"""
    store = ScanStore(session)
    event = await store.load_event(event_id)
    if event is None:
        return None
    now = as_utc(now)
    seated = await store.count_admitted_tickets(event_id)
    remaining = _remaining(event, seated)
    rejected = check_event(event, now)
    code = rejected.code if rejected else None
    reason = rejected.reason if rejected else None
    if code is None and remaining == 0:
        code, reason = ResultCode.EVENT_FULL, message_for(ResultCode.EVENT_FULL)
    return {
        "event_id": event.id,
        "title": event.title,
        "status": EventStatus(event.status).value,
        "can_scan": code is None,
        "code": code.value if code else None,
        "reason": reason,
        "starts_at": as_utc(event.starts_at),
        "ends_at": as_utc(event.ends_at),
        "time_until_start_ms": max(0, int((as_utc(event.starts_at) - now).total_seconds() * 1000)),
        "time_until_end_ms": max(0, int((as_utc(event.ends_at) - now).total_seconds() * 1000)),
        "max_attendees": event.max_attendees,
        "admitted_tickets": seated,
        "remaining_capacity": remaining,
    }
