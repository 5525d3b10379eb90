from __future__ import annotations
import json
import logging
from typing import Sequence
from nats.aio.client import Client as NATS
from nats.errors import Error as NATSError
from .config import get_settings

logger = logging.getLogger(__name__)

_settings = get_settings()
_nats = NATS()

async def nats_connect():
    if not _nats.is_connected:
        servers: Sequence[str] = [u.strip() for u in _settings.nats_urls.split(",") if u.strip()]
        await _nats.connect(servers=servers, connect_timeout=2, max_reconnect_attempts=1)

async def nats_close():
    try:
        if _nats.is_connected:
            await _nats.drain()
    except (NATSError, OSError) as exc:
        logger.warning("NATS drain failed: %s", exc)

async def publish_admission(evt: dict):
    """
    evt = {
      "ticket_id": str,
      "event_id": str,
      "scan_log_id": str,
      "admitted_at": iso8601,
      "idempotency_key": "ticket_id:admission_seq"
    }
    """
    await nats_connect()
    await _nats.publish(_settings.nats_subject_admitted, json.dumps(evt).encode("utf-8"))
