"""
Every route answers with the same envelope; the HTTP status is derived from the result code.
"""
from __future__ import annotations
import time
import uuid
from datetime import datetime, timezone
from typing import Any

from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from .codes import ResultCode, http_status_for, message_for
from .schemas import Envelope

def _elapsed_ms(started: float | None) -> float | None:
    if started is None:
        return None
    return round((time.perf_counter() - started) * 1000, 3)

def _render(env: Envelope, status_code: int) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=jsonable_encoder(env))

def ok(data: Any = None, *, started: float | None = None, status_code: int = 200) -> JSONResponse:
    env = Envelope(
        success=True,
        data=data,
        error_id=str(uuid.uuid4()),
        timestamp=datetime.now(timezone.utc),
        processing_time_ms=_elapsed_ms(started),
    )
    return _render(env, status_code)

def fail(
    code: ResultCode,
    error: str | None = None,
    *,
    data: Any = None,
    started: float | None = None,
    status_code: int | None = None,
    error_id: str | None = None,
) -> JSONResponse:
    env = Envelope(
        success=False,
        data=data,
        error=error or message_for(code),
        code=code.value,
        error_id=error_id or str(uuid.uuid4()),
        timestamp=datetime.now(timezone.utc),
        processing_time_ms=_elapsed_ms(started),
    )
    return _render(env, status_code or http_status_for(code))
