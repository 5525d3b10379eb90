from __future__ import annotations
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, AsyncIterator

from sqlalchemy import case, extract, func, insert, literal, select, text, update
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.clock import as_utc
from ..models import Event, EventGuest, ScanDecision, ScanLog, Ticket, TicketStatus

# ---- failure classes raised at the store boundary ----

class StoreError(Exception):
    pass

class TransientStoreError(StoreError):
    """Serialization failure, deadlock, lock/statement timeout or a dropped connection."""

class ReplayRaceError(StoreError):
    """A unique constraint on the scan log fired: another admission got there first."""

class InvalidReferenceError(StoreError):
    pass

_TRANSIENT_SQLSTATES = {"40001", "40P01", "55P03", "57014", "08000", "08003", "08006"}
_TRANSIENT_MARKERS = ("database is locked", "deadlock", "could not serialize", "serializationerror")

def classify_db_error(exc: DBAPIError) -> StoreError | None:
    """Map a driver error onto a store failure class; None means it is not ours to handle."""
    orig = getattr(exc, "orig", None)
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    msg = str(orig if orig is not None else exc).lower()
    if isinstance(exc, IntegrityError):
        if sqlstate == "23505" or "unique constraint" in msg or "duplicate key" in msg:
            return ReplayRaceError("unique violation")
        if sqlstate == "23503" or "foreign key constraint" in msg:
            return InvalidReferenceError("foreign key violation")
        return None
    if sqlstate in _TRANSIENT_SQLSTATES or exc.connection_invalidated:
        return TransientStoreError(sqlstate or "connection lost")
    if any(m in msg for m in _TRANSIENT_MARKERS):
        return TransientStoreError("lock contention")
    return None

@dataclass(frozen=True)
class ScanFilters:
    start_date: datetime | None = None
    end_date: datetime | None = None
    location: str | None = None
    decision: ScanDecision | None = None

@dataclass(frozen=True)
class TicketRow:
    ticket: Ticket
    event_id: uuid.UUID

class ScanStore:
    """Typed persistence operations over one AsyncSession. Callers own the transaction."""

    def __init__(self, session: AsyncSession):
        self.session = session

    # ---- reads ----

    def _ticket_query(self):
        return select(Ticket, EventGuest.event_id).join(EventGuest, Ticket.event_guest_id == EventGuest.id)

    async def load_ticket_for_update(self, ticket_id: uuid.UUID, event_id: uuid.UUID | None = None) -> TicketRow | None:
        """
        Row-lock the ticket for the rest of the enclosing transaction.
        With event_id, a ticket of another event counts as not found.
        """
        q = self._ticket_query().where(Ticket.id == ticket_id).with_for_update(of=Ticket)
        if event_id is not None:
            q = q.where(EventGuest.event_id == event_id)
        row = (await self.session.execute(q)).first()
        if row is None:
            return None
        return TicketRow(ticket=row[0], event_id=row[1])

    async def load_ticket(self, ticket_id: uuid.UUID) -> TicketRow | None:
        row = (await self.session.execute(self._ticket_query().where(Ticket.id == ticket_id))).first()
        return TicketRow(ticket=row[0], event_id=row[1]) if row else None

    async def load_ticket_by_code(self, ticket_code: str) -> TicketRow | None:
        row = (await self.session.execute(self._ticket_query().where(Ticket.ticket_code == ticket_code))).first()
        return TicketRow(ticket=row[0], event_id=row[1]) if row else None

    async def load_event(self, event_id: uuid.UUID) -> Event | None:
        return (await self.session.execute(select(Event).where(Event.id == event_id))).scalar_one_or_none()

    async def count_admitted_scans(self, event_id: uuid.UUID) -> int:
        q = select(func.count()).select_from(ScanLog).where(
            ScanLog.event_id == event_id, ScanLog.decision == ScanDecision.ADMITTED
        )
        return (await self.session.execute(q)).scalar_one()

    async def count_admitted_tickets(self, event_id: uuid.UUID) -> int:
        """Distinct tickets holding at least one admission; this is what capacity bounds."""
        q = select(func.count(func.distinct(ScanLog.ticket_id))).where(
            ScanLog.event_id == event_id, ScanLog.decision == ScanDecision.ADMITTED
        )
        return (await self.session.execute(q)).scalar_one()

    async def count_admitted_for_ticket(self, ticket_id: uuid.UUID) -> int:
        q = select(func.count()).select_from(ScanLog).where(
            ScanLog.ticket_id == ticket_id, ScanLog.decision == ScanDecision.ADMITTED
        )
        return (await self.session.execute(q)).scalar_one()

    async def last_admitted_at(self, ticket_id: uuid.UUID) -> datetime | None:
        q = select(func.max(ScanLog.scanned_at)).where(
            ScanLog.ticket_id == ticket_id, ScanLog.decision == ScanDecision.ADMITTED
        )
        return as_utc((await self.session.execute(q)).scalar_one_or_none())

    def _filtered(self, q, ticket_id: uuid.UUID | None, event_id: uuid.UUID | None, filters: ScanFilters | None):
        if ticket_id is not None:
            q = q.where(ScanLog.ticket_id == ticket_id)
        if event_id is not None:
            q = q.where(ScanLog.event_id == event_id)
        f = filters or ScanFilters()
        if f.start_date is not None:
            q = q.where(ScanLog.scanned_at >= f.start_date)
        if f.end_date is not None:
            q = q.where(ScanLog.scanned_at <= f.end_date)
        if f.location:
            q = q.where(ScanLog.location == f.location)
        if f.decision is not None:
            q = q.where(ScanLog.decision == f.decision)
        return q

    async def list_scan_history(
        self,
        ticket_id: uuid.UUID,
        limit: int = 50,
        offset: int = 0,
        filters: ScanFilters | None = None,
        *,
        newest_first: bool = False,
    ) -> list[ScanLog]:
        q = self._filtered(select(ScanLog), ticket_id, None, filters)
        if newest_first:
            q = q.order_by(ScanLog.scanned_at.desc(), ScanLog.id.desc())
        else:
            q = q.order_by(ScanLog.scanned_at.asc(), ScanLog.id.asc())
        return list((await self.session.execute(q.limit(limit).offset(offset))).scalars().all())

    async def count_scan_history(self, ticket_id: uuid.UUID, filters: ScanFilters | None = None) -> int:
        q = self._filtered(select(func.count()).select_from(ScanLog), ticket_id, None, filters)
        return (await self.session.execute(q)).scalar_one()

    # ---- aggregates; every count runs in SQL ----

    async def scan_totals(
        self, *, ticket_id: uuid.UUID | None = None, event_id: uuid.UUID | None = None, filters: ScanFilters | None = None
    ) -> dict[str, Any]:
        is_admitted = ScanLog.decision == ScanDecision.ADMITTED
        q = select(
            func.count(),
            func.coalesce(func.sum(case((is_admitted, 1), else_=0)), 0),
            func.count(func.distinct(case((is_admitted, ScanLog.ticket_id)))),
            func.min(ScanLog.scanned_at),
            func.max(ScanLog.scanned_at),
        ).select_from(ScanLog)
        total, admitted, tickets, first, last = (
            await self.session.execute(self._filtered(q, ticket_id, event_id, filters))
        ).one()
        return {
            "total": total,
            "admitted": int(admitted),
            "admitted_tickets": tickets,
            "first": as_utc(first),
            "last": as_utc(last),
        }

    async def count_scans_by(
        self,
        column,
        *,
        ticket_id: uuid.UUID | None = None,
        event_id: uuid.UUID | None = None,
        filters: ScanFilters | None = None,
    ) -> dict[Any, int]:
        q = select(column, func.count()).select_from(ScanLog).where(column.is_not(None)).group_by(column)
        rows = (await self.session.execute(self._filtered(q, ticket_id, event_id, filters))).all()
        return {key: n for key, n in rows}

    async def count_scans_by_hour(
        self, *, ticket_id: uuid.UUID | None = None, event_id: uuid.UUID | None = None, filters: ScanFilters | None = None
    ) -> list[tuple[int, int, int, int, int]]:
        """(year, month, day, hour, count) buckets of scanned_at in UTC."""
        parts = [extract(p, ScanLog.scanned_at) for p in ("year", "month", "day", "hour")]
        q = select(*parts, func.count()).select_from(ScanLog).group_by(*parts)
        rows = (await self.session.execute(self._filtered(q, ticket_id, event_id, filters))).all()
        return [tuple(int(v) for v in row) for row in rows]

    async def recent_scans(self, ticket_id: uuid.UUID, since: datetime, limit: int = 10) -> list[ScanLog]:
        q = (
            select(ScanLog)
            .where(ScanLog.ticket_id == ticket_id, ScanLog.scanned_at >= since)
            .order_by(ScanLog.scanned_at.desc())
            .limit(limit)
        )
        return list((await self.session.execute(q)).scalars().all())

    # ---- writes ----

    async def mark_ticket_consumed(self, ticket_id: uuid.UUID, now: datetime, *, expected_scans: int) -> bool:
        """
        Compare-and-set admission: succeeds only while the ticket is still active and
        nobody else has consumed the admission we observed. Flips status to used on the
        final admission. True iff exactly one row changed.
        """
        final = Ticket.scans_used + 1 >= Ticket.max_scans
        stmt = (
            update(Ticket)
            .where(
                Ticket.id == ticket_id,
                Ticket.status == TicketStatus.ACTIVE,
                Ticket.scans_used == expected_scans,
                Ticket.scans_used < Ticket.max_scans,
            )
            .values(
                scans_used=Ticket.scans_used + 1,
                status=case((final, literal(TicketStatus.USED, Ticket.__table__.c.status.type)), else_=Ticket.status),
                validated_at=case((final, literal(now, Ticket.__table__.c.validated_at.type)), else_=Ticket.validated_at),
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        res = await self.session.execute(stmt)
        return res.rowcount == 1

    async def append_scan_log(self, **fields: Any) -> uuid.UUID:
        log_id = fields.pop("id", None) or uuid.uuid4()
        await self.session.execute(insert(ScanLog).values(id=log_id, **fields))
        return log_id

    async def update_ticket_status(
        self, ticket_id: uuid.UUID, *, expected: TicketStatus, new: TicketStatus, now: datetime
    ) -> bool:
        stmt = (
            update(Ticket)
            .where(Ticket.id == ticket_id, Ticket.status == expected)
            .values(status=new, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        res = await self.session.execute(stmt)
        return res.rowcount == 1

    async def ping(self) -> bool:
        return (await self.session.execute(text("SELECT 1"))).scalar_one() == 1

@asynccontextmanager
async def store_transaction(session_maker: async_sessionmaker[AsyncSession]) -> AsyncIterator[ScanStore]:
    """
    One transaction, one ScanStore. Commits on clean exit, rolls back on any exception
    (cancellation included) and re-raises driver errors as store failure classes.
    """
    try:
        async with session_maker() as session:
            async with session.begin():
                yield ScanStore(session)
    except DBAPIError as exc:
        err = classify_db_error(exc)
        if err is None:
            raise
        raise err from exc
