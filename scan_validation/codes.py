from __future__ import annotations
from enum import Enum

class ResultCode(str, Enum):
    ADMITTED = "ADMITTED"

    TICKET_NOT_FOUND = "TICKET_NOT_FOUND"
    TICKET_EVENT_MISMATCH = "TICKET_EVENT_MISMATCH"
    TICKET_ALREADY_VALIDATED = "TICKET_ALREADY_VALIDATED"
    TICKET_USED = "TICKET_USED"
    TICKET_CANCELLED = "TICKET_CANCELLED"
    TICKET_EXPIRED = "TICKET_EXPIRED"
    TICKET_VOID = "TICKET_VOID"
    EVENT_NOT_ACTIVE = "EVENT_NOT_ACTIVE"
    EVENT_NOT_STARTED = "EVENT_NOT_STARTED"
    EVENT_ENDED = "EVENT_ENDED"
    EVENT_CANCELLED = "EVENT_CANCELLED"
    EVENT_FULL = "EVENT_FULL"
    TIME_RESTRICTION = "TIME_RESTRICTION"
    ZONE_RESTRICTION = "ZONE_RESTRICTION"
    SCAN_LIMIT_REACHED = "SCAN_LIMIT_REACHED"
    SCAN_TOO_FREQUENT = "SCAN_TOO_FREQUENT"
    QR_TICKET_MISMATCH = "QR_TICKET_MISMATCH"
    INVALID_QR_FORMAT = "INVALID_QR_FORMAT"
    CORRUPTED_QR_CODE = "CORRUPTED_QR_CODE"
    INVALID_REFERENCE = "INVALID_REFERENCE"
    REPLAY_RACE = "REPLAY_RACE"
    TRANSIENT_RETRY_EXHAUSTED = "TRANSIENT_RETRY_EXHAUSTED"

    VALIDATION_ERROR = "VALIDATION_ERROR"
    EVENT_NOT_FOUND = "EVENT_NOT_FOUND"
    INVALID_STATUS_TRANSITION = "INVALID_STATUS_TRANSITION"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    INTERNAL_ERROR = "INTERNAL_ERROR"

_HTTP_STATUS: dict[ResultCode, int] = {
    ResultCode.ADMITTED: 200,
    ResultCode.TICKET_NOT_FOUND: 404,
    ResultCode.EVENT_NOT_FOUND: 404,
    ResultCode.TICKET_ALREADY_VALIDATED: 409,
    ResultCode.REPLAY_RACE: 409,
    ResultCode.SCAN_TOO_FREQUENT: 429,
    ResultCode.QR_TICKET_MISMATCH: 403,
    ResultCode.CORRUPTED_QR_CODE: 403,
    ResultCode.FORBIDDEN: 403,
    ResultCode.UNAUTHORIZED: 401,
    ResultCode.TRANSIENT_RETRY_EXHAUSTED: 500,
    ResultCode.INTERNAL_ERROR: 500,
}

def http_status_for(code: ResultCode) -> int:
    return _HTTP_STATUS.get(code, 400)

MESSAGES: dict[ResultCode, str] = {
    ResultCode.ADMITTED: "Ticket validated",
    ResultCode.TICKET_NOT_FOUND: "Ticket not found",
    ResultCode.TICKET_EVENT_MISMATCH: "Ticket does not belong to this event",
    ResultCode.TICKET_ALREADY_VALIDATED: "Ticket already validated",
    ResultCode.TICKET_USED: "Ticket already used",
    ResultCode.TICKET_CANCELLED: "Ticket cancelled",
    ResultCode.TICKET_EXPIRED: "Ticket expired",
    ResultCode.TICKET_VOID: "Ticket void",
    ResultCode.EVENT_NOT_ACTIVE: "Event not active",
    ResultCode.EVENT_NOT_STARTED: "Event has not started",
    ResultCode.EVENT_ENDED: "Event has ended",
    ResultCode.EVENT_CANCELLED: "Event cancelled",
    ResultCode.EVENT_FULL: "Event capacity reached",
    ResultCode.TIME_RESTRICTION: "Outside allowed scanning hours",
    ResultCode.ZONE_RESTRICTION: "Scan zone not allowed",
    ResultCode.SCAN_LIMIT_REACHED: "Maximum number of scans reached",
    ResultCode.SCAN_TOO_FREQUENT: "Scans too close together",
    ResultCode.QR_TICKET_MISMATCH: "QR code does not match ticket",
    ResultCode.INVALID_QR_FORMAT: "Invalid QR code format",
    ResultCode.CORRUPTED_QR_CODE: "QR code integrity check failed",
    ResultCode.INVALID_REFERENCE: "Invalid reference",
    ResultCode.REPLAY_RACE: "Concurrent admission detected",
    ResultCode.TRANSIENT_RETRY_EXHAUSTED: "Validation temporarily unavailable, retry",
    ResultCode.VALIDATION_ERROR: "Invalid request",
    ResultCode.EVENT_NOT_FOUND: "Event not found",
    ResultCode.INVALID_STATUS_TRANSITION: "Status transition not allowed",
    ResultCode.UNAUTHORIZED: "Missing or invalid token",
    ResultCode.FORBIDDEN: "Caller not allowed",
    ResultCode.INTERNAL_ERROR: "Internal error",
}

def message_for(code: ResultCode) -> str:
    return MESSAGES.get(code, code.value)
