"""
Admission rules. Everything here is pure: no I/O, no clock reads, no exceptions on the
decision path. Inputs are read by attribute so ORM rows and plain objects both work.

Rules run in a fixed order and the first one that fails decides the outcome.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Union

from ..codes import ResultCode, message_for
from ..core.clock import as_utc
from ..core.qr import QRDecodeFailure, QRPayload
from ..models import EventStatus, TicketStatus

DEFAULT_MIN_INTERVAL = timedelta(seconds=30)

@dataclass(frozen=True)
class ScanContext:
    device_id: str
    location: str
    timestamp: datetime | None = None
    operator_id: str | None = None
    checkpoint_id: str | None = None

@dataclass(frozen=True)
class ScanHistory:
    admitted_count: int = 0
    last_admitted_at: datetime | None = None

@dataclass(frozen=True)
class Admit:
    restrictions: list[str] = field(default_factory=list)

@dataclass(frozen=True)
class Reject:
    code: ResultCode
    reason: str

Decision = Union[Admit, Reject]

_TICKET_STATUS_CODES = {
    TicketStatus.USED: ResultCode.TICKET_USED,
    TicketStatus.CANCELLED: ResultCode.TICKET_CANCELLED,
    TicketStatus.EXPIRED: ResultCode.TICKET_EXPIRED,
    TicketStatus.VOID: ResultCode.TICKET_VOID,
}

def _reject(code: ResultCode, reason: str | None = None) -> Reject:
    return Reject(code=code, reason=reason or message_for(code))

def _status(value: Any, enum_cls):
    try:
        return enum_cls(value)
    except ValueError:
        return None

def minute_of_day(now: datetime) -> int:
    return now.hour * 60 + now.minute

def check_event(event: Any, now: datetime) -> Reject | None:
    """Rules 1-5: lifecycle, start/end bounds and the daily time window."""
    status = _status(event.status, EventStatus)
    if status == EventStatus.CANCELLED:
        return _reject(ResultCode.EVENT_CANCELLED)
    if status != EventStatus.ACTIVE:
        return _reject(ResultCode.EVENT_NOT_ACTIVE)
    if now < as_utc(event.starts_at):
        return _reject(ResultCode.EVENT_NOT_STARTED)
    if now > as_utc(event.ends_at):
        return _reject(ResultCode.EVENT_ENDED)
    start_min = getattr(event, "window_start_minute", None)
    end_min = getattr(event, "window_end_minute", None)
    if start_min is not None or end_min is not None:
        current = minute_of_day(now)
        if start_min is not None and current < start_min:
            return _reject(ResultCode.TIME_RESTRICTION)
        if end_min is not None and current > end_min:
            return _reject(ResultCode.TIME_RESTRICTION)
    return None

def evaluate(
    ticket: Any,
    event: Any,
    ctx: ScanContext,
    now: datetime,
    history: ScanHistory,
    *,
    qr: QRPayload | QRDecodeFailure | None = None,
    capacity_used: int | None = None,
    supported_qr_versions: frozenset[str] = frozenset({"v1"}),
    min_interval: timedelta = DEFAULT_MIN_INTERVAL,
) -> Decision:
    now = as_utc(now)

    # EVENT_CANCELLED is checked ahead of EVENT_NOT_ACTIVE inside check_event; a
    # cancelled event would otherwise never surface its own code.
    rejected = check_event(event, now)
    if rejected:
        return rejected

    zones = getattr(event, "allowed_scan_zones", None)
    if zones and ctx.location not in set(zones):
        return _reject(ResultCode.ZONE_RESTRICTION)

    t_status = _status(ticket.status, TicketStatus)
    if t_status != TicketStatus.ACTIVE:
        if t_status == TicketStatus.USED and history.admitted_count > 0:
            # consumed by a scan: the caller lost to (or is repeating) a won admission
            return _reject(ResultCode.TICKET_ALREADY_VALIDATED)
        return _reject(_TICKET_STATUS_CODES.get(t_status, ResultCode.TICKET_VOID))

    if isinstance(qr, QRDecodeFailure):
        return _reject(qr.code, qr.reason)
    if isinstance(qr, QRPayload):
        if qr.version not in supported_qr_versions:
            return _reject(ResultCode.INVALID_QR_FORMAT)
        if qr.ticket_id != ticket.id or qr.event_id != event.id:
            return _reject(ResultCode.QR_TICKET_MISMATCH)

    max_scans = ticket.max_scans or 1
    if history.admitted_count >= max_scans:
        return _reject(ResultCode.SCAN_LIMIT_REACHED)

    if history.last_admitted_at is not None:
        if now - as_utc(history.last_admitted_at) < min_interval:
            return _reject(ResultCode.SCAN_TOO_FREQUENT)

    restrictions: list[str] = []
    max_attendees = getattr(event, "max_attendees", None)
    if max_attendees is not None:
        # re-entries on a multi-scan ticket already hold their seat
        if history.admitted_count == 0 and (capacity_used or 0) >= max_attendees:
            return _reject(ResultCode.EVENT_FULL)
        restrictions.append(f"capacity:{max_attendees}")
    if zones:
        restrictions.append("zone:" + ",".join(sorted(zones)))
    if max_scans > 1:
        restrictions.append(f"scans_remaining:{max_scans - history.admitted_count - 1}")
    return Admit(restrictions=restrictions)
