from __future__ import annotations
from pydantic import BaseModel, Field
from uuid import UUID
from datetime import datetime
from typing import Any

from .models import TicketStatus

class ScanContextIn(BaseModel):
    location: str = Field(min_length=1, max_length=255)
    device_id: str = Field(min_length=1, max_length=128)
    timestamp: datetime | None = None
    operator_id: str | None = Field(default=None, max_length=128)
    checkpoint_id: str | None = Field(default=None, max_length=128)

class ValidationMetadata(BaseModel):
    qr_version: str | None = None
    qr_algorithm: str | None = None
    validated_at: datetime | None = None
    qr_data: str | None = None  # payload as read by the scanner; stored payload is used when absent

class ValidateTicketIn(BaseModel):
    ticket_id: UUID
    event_id: UUID
    ticket_type: str | None = None
    user_id: str | None = None
    scan_context: ScanContextIn
    validation_metadata: ValidationMetadata | None = None

class ValidateByCodeIn(BaseModel):
    ticket_code: str = Field(min_length=1, max_length=128)
    scan_context: ScanContextIn
    validation_metadata: ValidationMetadata | None = None

class ValidateBatchIn(BaseModel):
    # upper bound is BATCH_MAX_ITEMS, checked in the router
    tickets: list[ValidateTicketIn] = Field(min_length=1)
    batch_id: str | None = Field(default=None, max_length=128)
    metadata: dict[str, Any] | None = None

class TicketStatusPatch(BaseModel):
    status: TicketStatus
    reason: str | None = Field(default=None, max_length=500)

class FraudOut(BaseModel):
    detected: bool
    flags: list[dict[str, Any]]
    risk_score: int
    risk_level: str
    recommendation: str

class AdmissionOut(BaseModel):
    valid: bool = True
    code: str = "ADMITTED"
    ticket_id: UUID
    event_id: UUID
    scan_log_id: UUID
    admitted_at: datetime
    admission_seq: int
    remaining_scans: int
    restrictions: list[str] = []
    fraud: FraudOut | None = None

class ScanLogOut(BaseModel):
    id: UUID
    ticket_id: UUID
    event_id: UUID
    operator_id: str | None = None
    device_id: str
    location: str
    checkpoint_id: str | None = None
    scanned_at: datetime
    decision: str
    rejection_code: str | None = None

class TicketStatusOut(BaseModel):
    ticket_id: UUID
    event_id: UUID
    ticket_code: str
    status: str
    max_scans: int
    validated_at: datetime | None = None
    updated_at: datetime | None = None
    admitted_count: int
    last_admitted_at: datetime | None = None
    remaining_scans: int
    can_be_scanned: bool

class Envelope(BaseModel):
    success: bool
    data: Any | None = None
    error: str | None = None
    code: str | None = None
    error_id: str
    timestamp: datetime
    processing_time_ms: float | None = None
