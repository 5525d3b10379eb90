from __future__ import annotations
import asyncio
import hashlib
import logging
import random
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Union

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..codes import ResultCode, message_for
from ..core.clock import SystemClock
from ..core.config import Settings, get_settings
from ..core.qr import QRDecodeFailure, QRPayload, inspect_qr
from ..core.ratelimit import RateLimiter, scan_keys
from ..models import ScanDecision
from . import policy
from .fraud import SPREAD_WINDOW, FraudAnalysis, analyze as analyze_fraud
from .policy import Admit, ScanContext, ScanHistory
from .store import (
    InvalidReferenceError,
    ReplayRaceError,
    ScanStore,
    TransientStoreError,
    store_transaction,
)

logger = logging.getLogger(__name__)

# backoff before retry n (ms); each delay is jittered by +/-50%
_BACKOFF_MS = (2, 8, 32)

@dataclass(frozen=True)
class ValidationRequest:
    ticket_id: uuid.UUID
    event_id: uuid.UUID
    context: ScanContext
    qr_data: str | None = None
    qr_version: str | None = None

@dataclass(frozen=True)
class Admitted:
    ticket_id: uuid.UUID
    event_id: uuid.UUID
    scan_log_id: uuid.UUID
    admitted_at: datetime
    admission_seq: int
    remaining_scans: int
    restrictions: list[str] = field(default_factory=list)
    fraud: FraudAnalysis | None = None
    code: ResultCode = ResultCode.ADMITTED

@dataclass(frozen=True)
class Rejected:
    code: ResultCode
    reason: str
    ticket_id: uuid.UUID | None = None
    event_id: uuid.UUID | None = None
    scan_log_id: uuid.UUID | None = None
    fraud: FraudAnalysis | None = None

@dataclass(frozen=True)
class Failed:
    code: ResultCode
    reason: str
    error_id: str | None = None

ValidationResult = Union[Admitted, Rejected, Failed]

def request_fingerprint(req: ValidationRequest) -> str:
    ctx = req.context
    parts = [
        str(req.ticket_id),
        str(req.event_id),
        ctx.device_id,
        ctx.location,
        ctx.operator_id or "",
        ctx.checkpoint_id or "",
        ctx.timestamp.isoformat() if ctx.timestamp else "",
    ]
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()

class ValidationEngine:
    """
    Orchestrates one scan: rate limit, then a single transaction that locks the ticket,
    evaluates the policy and either consumes an admission or records the rejection.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        *,
        limiter: RateLimiter,
        clock=None,
        settings: Settings | None = None,
    ):
        self.session_maker = session_maker
        self.limiter = limiter
        self.clock = clock or SystemClock()
        self.settings = settings or get_settings()

    @property
    def min_interval(self) -> timedelta:
        return timedelta(milliseconds=self.settings.min_scan_interval_ms)

    async def validate(self, req: ValidationRequest) -> ValidationResult:
        keys = scan_keys(
            ticket_id=str(req.ticket_id), device_id=req.context.device_id, operator_id=req.context.operator_id
        )
        if not await self.limiter.allow(keys):
            logger.info("scan throttled ticket=%s device=%s", req.ticket_id, req.context.device_id)
            return Rejected(
                code=ResultCode.SCAN_TOO_FREQUENT,
                reason="Rate limit exceeded for this ticket/device",
                ticket_id=req.ticket_id,
                event_id=req.event_id,
            )
        result = await self._bounded(lambda: self._guarded_attempt(req), ref=req.ticket_id)
        logger.info("scan decision ticket=%s event=%s code=%s", req.ticket_id, req.event_id, result.code.value)
        return result

    async def validate_by_code(
        self, ticket_code: str, context: ScanContext, *, qr_data: str | None = None, qr_version: str | None = None
    ) -> ValidationResult:
        async def lookup() -> ValidationRequest | Rejected:
            async with store_transaction(self.session_maker) as store:
                row = await store.load_ticket_by_code(ticket_code)
            if row is None:
                return Rejected(code=ResultCode.TICKET_NOT_FOUND, reason=message_for(ResultCode.TICKET_NOT_FOUND))
            return ValidationRequest(
                ticket_id=row.ticket.id,
                event_id=row.event_id,
                context=context,
                qr_data=qr_data,
                qr_version=qr_version,
            )

        found = await self._bounded(lookup, ref=ticket_code)
        if not isinstance(found, ValidationRequest):
            logger.info("ticket code lookup ticket_code=%s code=%s", ticket_code, found.code.value)
            return found
        return await self.validate(found)

    async def _bounded(self, op: Callable[[], Awaitable[Any]], *, ref: object) -> Any:
        """Run op under the request deadline, retrying transient store failures."""
        try:
            return await asyncio.wait_for(self._with_retries(op, ref), timeout=self.settings.request_deadline_sec)
        except asyncio.TimeoutError:
            logger.warning("validation deadline exceeded ref=%s", ref)
            return Failed(code=ResultCode.TRANSIENT_RETRY_EXHAUSTED, reason="Validation deadline exceeded")

    async def _with_retries(self, op: Callable[[], Awaitable[Any]], ref: object) -> Any:
        attempt = 0
        while True:
            attempt += 1
            try:
                return await op()
            except TransientStoreError as exc:
                if attempt > self.settings.transient_retry_limit:
                    logger.warning("retries exhausted ref=%s attempts=%d: %s", ref, attempt, exc)
                    return Failed(
                        code=ResultCode.TRANSIENT_RETRY_EXHAUSTED,
                        reason=message_for(ResultCode.TRANSIENT_RETRY_EXHAUSTED),
                    )
                base = _BACKOFF_MS[min(attempt, len(_BACKOFF_MS)) - 1]
                delay = base * random.uniform(0.5, 1.5) / 1000.0
                logger.warning("transient store failure ref=%s attempt=%d: %s", ref, attempt, exc)
                await asyncio.sleep(delay)

    async def _guarded_attempt(self, req: ValidationRequest) -> ValidationResult:
        try:
            return await self._attempt(req)
        except ReplayRaceError:
            logger.info("replay race ticket=%s", req.ticket_id)
            return Rejected(
                code=ResultCode.REPLAY_RACE,
                reason=message_for(ResultCode.REPLAY_RACE),
                ticket_id=req.ticket_id,
                event_id=req.event_id,
            )
        except InvalidReferenceError:
            return Failed(code=ResultCode.INVALID_REFERENCE, reason=message_for(ResultCode.INVALID_REFERENCE))

    def _inspect_qr(self, req: ValidationRequest, stored: bytes | None) -> QRPayload | QRDecodeFailure | None:
        data = req.qr_data if req.qr_data is not None else stored
        qr = inspect_qr(data, supported_versions=self.settings.qr_supported_versions, secret=self.settings.qr_secret)
        if isinstance(qr, QRPayload) and req.qr_version and req.qr_version != qr.version:
            return QRDecodeFailure(ResultCode.INVALID_QR_FORMAT, "declared qr_version does not match payload")
        return qr

    async def _attempt(self, req: ValidationRequest) -> ValidationResult:
        now = self.clock.now()
        ctx = req.context
        fingerprint = request_fingerprint(req)

        async with store_transaction(self.session_maker) as store:
            row = await store.load_ticket_for_update(req.ticket_id)
            if row is None:
                return Rejected(
                    code=ResultCode.TICKET_NOT_FOUND,
                    reason=message_for(ResultCode.TICKET_NOT_FOUND),
                    ticket_id=req.ticket_id,
                    event_id=req.event_id,
                )
            ticket = row.ticket
            event = await store.load_event(row.event_id)
            if event is None:
                return Failed(code=ResultCode.INVALID_REFERENCE, reason=message_for(ResultCode.INVALID_REFERENCE))

            async def reject(code: ResultCode, reason: str | None = None, analysis=None) -> Rejected:
                log_id = await store.append_scan_log(
                    ticket_id=ticket.id,
                    event_id=event.id,
                    operator_id=ctx.operator_id,
                    device_id=ctx.device_id,
                    location=ctx.location,
                    checkpoint_id=ctx.checkpoint_id,
                    scanned_at=now,
                    decision=ScanDecision.REJECTED,
                    rejection_code=code.value,
                    request_fingerprint=fingerprint,
                    admission_seq=None,
                )
                return Rejected(
                    code=code,
                    reason=reason or message_for(code),
                    ticket_id=ticket.id,
                    event_id=event.id,
                    scan_log_id=log_id,
                    fraud=analysis,
                )

            if req.event_id != event.id:
                # logged against the ticket's own event
                return await reject(ResultCode.TICKET_EVENT_MISMATCH)

            history = ScanHistory(
                admitted_count=await store.count_admitted_for_ticket(ticket.id),
                last_admitted_at=await store.last_admitted_at(ticket.id),
            )
            capacity_used = None
            if event.max_attendees is not None:
                capacity_used = await store.count_admitted_tickets(event.id)

            analysis = analyze_fraud(
                await store.recent_scans(ticket.id, now - SPREAD_WINDOW),
                location=ctx.location,
                device_id=ctx.device_id,
                now=now,
            )

            decision = policy.evaluate(
                ticket,
                event,
                ctx,
                now,
                history,
                qr=self._inspect_qr(req, ticket.qr_payload),
                capacity_used=capacity_used,
                supported_qr_versions=self.settings.qr_supported_versions,
                min_interval=self.min_interval,
            )
            if not isinstance(decision, Admit):
                return await reject(decision.code, decision.reason, analysis)

            if event.max_attendees is not None and history.admitted_count == 0:
                if await store.count_admitted_tickets(event.id) >= event.max_attendees:
                    return await reject(ResultCode.EVENT_FULL, analysis=analysis)

            observed = ticket.scans_used
            if not await store.mark_ticket_consumed(ticket.id, now, expected_scans=observed):
                return await reject(ResultCode.TICKET_ALREADY_VALIDATED, analysis=analysis)

            seq = observed + 1
            log_id = await store.append_scan_log(
                ticket_id=ticket.id,
                event_id=event.id,
                operator_id=ctx.operator_id,
                device_id=ctx.device_id,
                location=ctx.location,
                checkpoint_id=ctx.checkpoint_id,
                scanned_at=now,
                decision=ScanDecision.ADMITTED,
                rejection_code=None,
                request_fingerprint=fingerprint,
                admission_seq=seq,
            )
            return Admitted(
                ticket_id=ticket.id,
                event_id=event.id,
                scan_log_id=log_id,
                admitted_at=now,
                admission_seq=seq,
                remaining_scans=max(0, ticket.max_scans - seq),
                restrictions=decision.restrictions,
                fraud=analysis,
            )
