from __future__ import annotations
import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import uuid
from datetime import timedelta

import pytest

from scan_validation.core.clock import ManualClock
from scan_validation.core.config import get_settings
from scan_validation.core.qr import QRPayload, encode_qr
from scan_validation.core.ratelimit import TokenBucketLimiter
from scan_validation.db import build_engine, build_session_maker, init_db
from scan_validation.models import Event, EventGuest, EventStatus, Ticket, TicketStatus
from scan_validation.services.engine import ValidationEngine, ValidationRequest
from scan_validation.services.policy import ScanContext

@pytest.fixture
def anyio_backend():
    return "asyncio"

@pytest.fixture
def settings():
    return get_settings()

@pytest.fixture
def clock():
    return ManualClock()

@pytest.fixture
async def db_engine(tmp_path, settings):
    eng = build_engine(settings.model_copy(update={"database_url": f"sqlite+aiosqlite:///{tmp_path / 'scan.db'}"}))
    await init_db(eng)
    yield eng
    await eng.dispose()

@pytest.fixture
def session_maker(db_engine):
    return build_session_maker(db_engine)

@pytest.fixture
def limiter(clock):
    return TokenBucketLimiter(capacity=5, refill_per_sec=1.0, idle_ttl_sec=300, clock=clock)

@pytest.fixture
def validator(session_maker, limiter, clock, settings):
    return ValidationEngine(session_maker, limiter=limiter, clock=clock, settings=settings)

class Seeder:
    """Inserts events and tickets relative to the test clock."""

    def __init__(self, session_maker, clock):
        self.session_maker = session_maker
        self.clock = clock

    async def event(
        self,
        *,
        status: EventStatus = EventStatus.ACTIVE,
        starts_in: timedelta = timedelta(hours=-1),
        ends_in: timedelta = timedelta(hours=1),
        max_attendees: int | None = 100,
        zones: list[str] | None = None,
        window: tuple[int | None, int | None] | None = None,
    ) -> Event:
        now = self.clock.now()
        ev = Event(
            title="Launch night",
            status=status,
            starts_at=now + starts_in,
            ends_at=now + ends_in,
            max_attendees=max_attendees,
            allowed_scan_zones=zones,
            window_start_minute=window[0] if window else None,
            window_end_minute=window[1] if window else None,
        )
        async with self.session_maker() as s:
            async with s.begin():
                s.add(ev)
        return ev

    async def ticket(
        self,
        event: Event,
        *,
        max_scans: int = 1,
        status: TicketStatus = TicketStatus.ACTIVE,
        with_qr: bool = False,
        code: str | None = None,
    ) -> Ticket:
        ticket_id = uuid.uuid4()
        guest = EventGuest(event_id=event.id, guest_name="Ada", invitation_code=uuid.uuid4().hex[:16])
        qr = None
        if with_qr:
            qr = encode_qr(QRPayload(ticket_id=ticket_id, event_id=event.id, issued_at=self.clock.now()))
        t = Ticket(
            id=ticket_id,
            guest=guest,
            ticket_code=code or f"TCK-{uuid.uuid4().hex[:10].upper()}",
            qr_payload=qr,
            status=status,
            max_scans=max_scans,
        )
        async with self.session_maker() as s:
            async with s.begin():
                s.add_all([guest, t])
        return t

@pytest.fixture
def seed(session_maker, clock):
    return Seeder(session_maker, clock)

def scan_request(ticket, event, *, location="gate-A", device_id="D1", operator_id=None, **kwargs) -> ValidationRequest:
    return ValidationRequest(
        ticket_id=ticket.id,
        event_id=event.id,
        context=ScanContext(device_id=device_id, location=location, operator_id=operator_id),
        **kwargs,
    )
