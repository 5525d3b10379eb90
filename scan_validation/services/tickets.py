from __future__ import annotations
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..codes import ResultCode
from ..models import TicketStatus
from .store import store_transaction

logger = logging.getLogger(__name__)

# admin-only moves; "used" is reachable through an admission only
ALLOWED_TRANSITIONS: dict[TicketStatus, frozenset[TicketStatus]] = {
    TicketStatus.ACTIVE: frozenset({TicketStatus.CANCELLED, TicketStatus.EXPIRED, TicketStatus.VOID}),
    TicketStatus.USED: frozenset({TicketStatus.VOID}),
    TicketStatus.CANCELLED: frozenset({TicketStatus.VOID}),
    TicketStatus.EXPIRED: frozenset({TicketStatus.VOID}),
    TicketStatus.VOID: frozenset(),
}

class TransitionError(Exception):
    def __init__(self, code: ResultCode, detail: str):
        super().__init__(detail)
        self.code = code
        self.detail = detail

@dataclass(frozen=True)
class TransitionResult:
    ticket_id: uuid.UUID
    previous: TicketStatus
    status: TicketStatus
    updated_at: datetime

def can_transition(current: TicketStatus, new: TicketStatus) -> bool:
    return new in ALLOWED_TRANSITIONS.get(current, frozenset())

async def change_ticket_status(
    session_maker: async_sessionmaker[AsyncSession],
    ticket_id: uuid.UUID,
    new: TicketStatus,
    now: datetime,
    *,
    reason: str | None = None,
) -> TransitionResult:
    async with store_transaction(session_maker) as store:
        row = await store.load_ticket_for_update(ticket_id)
        if row is None:
            raise TransitionError(ResultCode.TICKET_NOT_FOUND, "Ticket not found")
        current = TicketStatus(row.ticket.status)
        if not can_transition(current, new):
            raise TransitionError(
                ResultCode.INVALID_STATUS_TRANSITION, f"cannot move ticket from {current.value} to {new.value}"
            )
        if not await store.update_ticket_status(ticket_id, expected=current, new=new, now=now):
            # a scan consumed it between the read and the write
            raise TransitionError(ResultCode.INVALID_STATUS_TRANSITION, "ticket status changed concurrently")
    logger.info("ticket %s status %s -> %s reason=%s", ticket_id, current.value, new.value, reason or "-")
    return TransitionResult(ticket_id=ticket_id, previous=current, status=new, updated_at=now)
