from __future__ import annotations
import logging
import uuid
from contextlib import asynccontextmanager
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator
from starlette.exceptions import HTTPException as StarletteHTTPException

from .codes import ResultCode
from .core.config import get_settings
from .core.nats import nats_close, nats_connect
from .core.redis import ping_redis
from .db import init_db
from .deps import get_limiter
from .responses import fail
from .routers import events, tickets, validation

settings = get_settings()
logging.basicConfig(level=settings.log_level.upper())
logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()

def sweep_rate_limiter() -> None:
    get_limiter().sweep()

@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    scheduler.add_job(sweep_rate_limiter, "interval", seconds=60, id="rate-limiter-sweep", replace_existing=True)
    scheduler.start()
    # best-effort connect to infra; service still runs if these fail
    if settings.nats_publish_enabled:
        try:
            await nats_connect()
        except Exception as exc:
            logger.warning("NATS unavailable at startup: %s", exc)
    if settings.rate_limit_backend == "redis" and not await ping_redis():
        logger.warning("Redis unavailable at startup")
    yield
    scheduler.shutdown(wait=False)
    await nats_close()

app = FastAPI(title="scan-validation-svc", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:5173",
        "http://127.0.0.1:5173",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_STATUS_CODES = {
    401: ResultCode.UNAUTHORIZED,
    403: ResultCode.FORBIDDEN,
}

@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(p) for p in e.get("loc", ())), "message": e.get("msg")}
        for e in exc.errors()
    ]
    return fail(ResultCode.VALIDATION_ERROR, data={"errors": errors}, status_code=400)

@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    fallback = ResultCode.INTERNAL_ERROR if exc.status_code >= 500 else ResultCode.VALIDATION_ERROR
    code = _STATUS_CODES.get(exc.status_code, fallback)
    return fail(code, str(exc.detail), status_code=exc.status_code)

@app.exception_handler(Exception)
async def internal_error_handler(request: Request, exc: Exception):
    error_id = str(uuid.uuid4())
    logger.exception("unhandled error on %s %s error_id=%s", request.method, request.url.path, error_id)
    return fail(ResultCode.INTERNAL_ERROR, error_id=error_id, status_code=500)

app.include_router(validation.router)
app.include_router(tickets.router)
app.include_router(events.router)

@app.get("/health")
async def health():
    return {"status": "ok", "service": "scan-validation-svc"}

Instrumentator().instrument(app).expose(app)
