from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    CheckConstraint,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    JSON,
    LargeBinary,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, declarative_base, relationship
from sqlalchemy.types import DateTime, Integer

Base = declarative_base()

def utcnow():
    return datetime.now(timezone.utc)

class EventStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    ENDED = "ended"
    CANCELLED = "cancelled"

class TicketStatus(str, Enum):
    ACTIVE = "active"
    USED = "used"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    VOID = "void"

class ScanDecision(str, Enum):
    ADMITTED = "admitted"
    REJECTED = "rejected"

class Event(Base):
    __tablename__ = "events"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[EventStatus] = mapped_column(
        SqlEnum(EventStatus, values_callable=lambda e: [m.value for m in e]),
        default=EventStatus.DRAFT, nullable=False,
    )
    starts_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    ends_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    max_attendees: Mapped[int | None] = mapped_column(Integer)
    allowed_scan_zones: Mapped[list[str] | None] = mapped_column(JSON)
    # minutes since midnight UTC, both bounds inclusive
    window_start_minute: Mapped[int | None] = mapped_column(Integer)
    window_end_minute: Mapped[int | None] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("ends_at >= starts_at", name="ck_events_time_range"),
        CheckConstraint("max_attendees IS NULL OR max_attendees > 0", name="ck_events_capacity_pos"),
        Index("ix_events_status", "status"),
    )

    guests: Mapped[list["EventGuest"]] = relationship(
        "EventGuest", back_populates="event", cascade="all, delete-orphan"
    )

class EventGuest(Base):
    __tablename__ = "event_guests"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    event_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("events.id", ondelete="CASCADE"), nullable=False)
    guest_name: Mapped[str] = mapped_column(String(255), nullable=False)
    invitation_code: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        UniqueConstraint("invitation_code", name="uq_event_guests_invitation_code"),
        Index("ix_event_guests_event", "event_id"),
    )

    event: Mapped[Event] = relationship("Event", back_populates="guests")
    tickets: Mapped[list["Ticket"]] = relationship(
        "Ticket", back_populates="guest", cascade="all, delete-orphan"
    )

class Ticket(Base):
    __tablename__ = "tickets"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    event_guest_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("event_guests.id", ondelete="CASCADE"), nullable=False
    )
    ticket_code: Mapped[str] = mapped_column(String(128), nullable=False)
    qr_payload: Mapped[bytes | None] = mapped_column(LargeBinary)
    status: Mapped[TicketStatus] = mapped_column(
        SqlEnum(TicketStatus, values_callable=lambda e: [m.value for m in e]),
        default=TicketStatus.ACTIVE, nullable=False,
    )
    max_scans: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    # admissions consumed so far; the compare-and-set target of every admission
    scans_used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    validated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("ticket_code", name="uq_tickets_ticket_code"),
        CheckConstraint("max_scans > 0", name="ck_tickets_max_scans_pos"),
        CheckConstraint("scans_used >= 0 AND scans_used <= max_scans", name="ck_tickets_scans_used_range"),
        Index("ix_tickets_guest", "event_guest_id"),
    )

    guest: Mapped[EventGuest] = relationship("EventGuest", back_populates="tickets")

class ScanLog(Base):
    __tablename__ = "scan_logs"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    ticket_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False)
    event_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("events.id", ondelete="CASCADE"), nullable=False)
    operator_id: Mapped[str | None] = mapped_column(String(128))
    device_id: Mapped[str] = mapped_column(String(128), nullable=False)
    location: Mapped[str] = mapped_column(String(255), nullable=False)
    checkpoint_id: Mapped[str | None] = mapped_column(String(128))
    scanned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    decision: Mapped[ScanDecision] = mapped_column(
        SqlEnum(ScanDecision, values_callable=lambda e: [m.value for m in e]), nullable=False
    )
    rejection_code: Mapped[str | None] = mapped_column(String(64))
    request_fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)
    # 1-based ordinal on admitted rows, NULL on rejected rows
    admission_seq: Mapped[int | None] = mapped_column(Integer)

    __table_args__ = (
        UniqueConstraint("ticket_id", "admission_seq", name="uq_scan_logs_ticket_admission"),
        Index("ix_scan_logs_ticket_scanned", "ticket_id", "scanned_at"),
        Index("ix_scan_logs_event_decision", "event_id", "decision"),
        Index("ix_scan_logs_fingerprint", "request_fingerprint"),
    )
