from __future__ import annotations
import logging
import time
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..codes import ResultCode
from ..core.config import get_settings
from ..core.nats import publish_admission
from ..core.ratelimit import RateLimiter
from ..deps import get_limiter, get_session_maker, get_validation_engine, require_internal_caller
from ..responses import fail, ok
from ..schemas import AdmissionOut, FraudOut, ValidateBatchIn, ValidateByCodeIn, ValidateTicketIn, ScanContextIn
from ..services.batch import validate_batch
from ..services.engine import Admitted, Failed, Rejected, ValidationEngine, ValidationRequest, ValidationResult
from ..services.health import check_health
from ..services.policy import ScanContext

logger = logging.getLogger(__name__)
settings = get_settings()
router = APIRouter(prefix="/internal/validation", tags=["validation"])

def _context(sc: ScanContextIn) -> ScanContext:
    return ScanContext(
        device_id=sc.device_id,
        location=sc.location,
        timestamp=sc.timestamp,
        operator_id=sc.operator_id,
        checkpoint_id=sc.checkpoint_id,
    )

def _to_request(body: ValidateTicketIn) -> ValidationRequest:
    meta = body.validation_metadata
    return ValidationRequest(
        ticket_id=body.ticket_id,
        event_id=body.event_id,
        context=_context(body.scan_context),
        qr_data=meta.qr_data if meta else None,
        qr_version=meta.qr_version if meta else None,
    )

def _fraud(result) -> dict | None:
    return result.fraud.as_dict() if result.fraud else None

def _admission(result: Admitted) -> dict:
    return AdmissionOut(
        ticket_id=result.ticket_id,
        event_id=result.event_id,
        scan_log_id=result.scan_log_id,
        admitted_at=result.admitted_at,
        admission_seq=result.admission_seq,
        remaining_scans=result.remaining_scans,
        restrictions=result.restrictions,
        fraud=FraudOut(**result.fraud.as_dict()) if result.fraud else None,
    ).model_dump()

def _rejection(result: Rejected) -> dict:
    return {
        "valid": False,
        "ticket_id": result.ticket_id,
        "event_id": result.event_id,
        "scan_log_id": result.scan_log_id,
        "fraud": _fraud(result),
    }

def render_result(result: ValidationResult, started: float):
    if isinstance(result, Admitted):
        return ok(_admission(result), started=started)
    if isinstance(result, Rejected):
        return fail(result.code, result.reason, data=_rejection(result), started=started)
    return fail(result.code, result.reason, started=started, error_id=result.error_id)

def _batch_item(index: int, result: ValidationResult) -> dict:
    if isinstance(result, Admitted):
        return {"index": index, "success": True, "code": result.code.value, "data": _admission(result)}
    item = {"index": index, "success": False, "code": result.code.value, "error": result.reason}
    if isinstance(result, Rejected):
        item["data"] = _rejection(result)
    elif isinstance(result, Failed) and result.error_id:
        item["error_id"] = result.error_id
    return item

async def _announce(result: ValidationResult) -> None:
    if not settings.nats_publish_enabled or not isinstance(result, Admitted):
        return
    try:
        await publish_admission({
            "ticket_id": str(result.ticket_id),
            "event_id": str(result.event_id),
            "scan_log_id": str(result.scan_log_id),
            "admitted_at": result.admitted_at.isoformat(),
            "idempotency_key": f"{result.ticket_id}:{result.admission_seq}",
        })
    except Exception as exc:
        # the admission is already committed; consumers reconcile from the scan log
        logger.warning("admission publish failed ticket=%s: %s", result.ticket_id, exc)

# --- 1) Single validation by id
@router.post("/validate-ticket")
async def validate_ticket(
    payload: ValidateTicketIn,
    claims: dict = Depends(require_internal_caller),
    engine: ValidationEngine = Depends(get_validation_engine),
):
    started = time.perf_counter()
    result = await engine.validate(_to_request(payload))
    await _announce(result)
    return render_result(result, started)

# --- 2) Validation by ticket code (ticket's own event)
@router.post("/validate-ticket-by-code")
async def validate_ticket_by_code(
    payload: ValidateByCodeIn,
    claims: dict = Depends(require_internal_caller),
    engine: ValidationEngine = Depends(get_validation_engine),
):
    started = time.perf_counter()
    meta = payload.validation_metadata
    result = await engine.validate_by_code(
        payload.ticket_code,
        _context(payload.scan_context),
        qr_data=meta.qr_data if meta else None,
        qr_version=meta.qr_version if meta else None,
    )
    await _announce(result)
    return render_result(result, started)

# --- 3) Batch, each item isolated
@router.post("/validate-batch")
async def validate_ticket_batch(
    payload: ValidateBatchIn,
    claims: dict = Depends(require_internal_caller),
    engine: ValidationEngine = Depends(get_validation_engine),
):
    started = time.perf_counter()
    if len(payload.tickets) > settings.batch_max_items:
        return fail(
            ResultCode.VALIDATION_ERROR,
            f"at most {settings.batch_max_items} tickets per batch",
            started=started,
        )
    outcome = await validate_batch(
        engine,
        [_to_request(t) for t in payload.tickets],
        batch_id=payload.batch_id,
        metadata=payload.metadata,
    )
    for r in outcome.results:
        await _announce(r)
    return ok(
        {
            "batch_id": outcome.batch_id,
            "processed_at": outcome.processed_at,
            "metadata": outcome.metadata,
            "summary": outcome.summary(),
            "results": [_batch_item(i, r) for i, r in enumerate(outcome.results)],
        },
        started=started,
    )

@router.get("/health")
async def validation_health(
    session_maker: async_sessionmaker[AsyncSession] = Depends(get_session_maker),
    limiter: RateLimiter = Depends(get_limiter),
):
    healthy, report = await check_health("validation", session_maker, limiter)
    if healthy:
        return ok(report)
    return fail(ResultCode.INTERNAL_ERROR, "Service unhealthy", data=report, status_code=503)
