from __future__ import annotations
import base64
import binascii
import hashlib
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict

import jwt

from ..codes import ResultCode

logger = logging.getLogger(__name__)

QR_AUD = "ticket-scan"
QR_ISS = "scan-validation-svc"

V1 = "v1"
V2 = "v2"

@dataclass(frozen=True)
class QRPayload:
    ticket_id: uuid.UUID
    event_id: uuid.UUID
    issued_at: datetime
    version: str = V1
    algorithm: str = "sha256"

@dataclass(frozen=True)
class QRDecodeFailure:
    code: ResultCode
    reason: str

class QRDecodeError(ValueError):
    def __init__(self, code: ResultCode, reason: str):
        super().__init__(reason)
        self.code = code
        self.reason = reason

def _claims(p: QRPayload) -> Dict[str, Any]:
    return {
        "ticket_id": str(p.ticket_id),
        "event_id": str(p.event_id),
        "issued_at": p.issued_at.astimezone(timezone.utc).isoformat(),
        "version": p.version,
        "algorithm": p.algorithm,
    }

def _integrity(claims: Dict[str, Any]) -> str:
    canonical = json.dumps(claims, sort_keys=True, separators=(",", ":"), ensure_ascii=True)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

def encode_qr(payload: QRPayload, *, secret: str | None = None) -> bytes:
    if payload.version == V1:
        body = _claims(payload)
        body["integrity"] = _integrity(body)
        raw = json.dumps(body, sort_keys=True, separators=(",", ":")).encode("utf-8")
        return base64.urlsafe_b64encode(raw).rstrip(b"=")
    if payload.version == V2:
        if not secret:
            raise ValueError("QR_SECRET is required for signed v2 payloads")
        claims = _claims(payload)
        claims.update({"aud": QR_AUD, "iss": QR_ISS})
        return jwt.encode(claims, secret, algorithm="HS256").encode("ascii")
    raise ValueError(f"unsupported QR version: {payload.version}")

def _parse_claims(body: Dict[str, Any]) -> QRPayload:
    try:
        issued_at = datetime.fromisoformat(str(body["issued_at"]).replace("Z", "+00:00"))
        if issued_at.tzinfo is None:
            issued_at = issued_at.replace(tzinfo=timezone.utc)
        return QRPayload(
            ticket_id=uuid.UUID(str(body["ticket_id"])),
            event_id=uuid.UUID(str(body["event_id"])),
            issued_at=issued_at,
            version=str(body["version"]),
            algorithm=str(body["algorithm"]),
        )
    except (KeyError, ValueError, TypeError) as exc:
        logger.debug("malformed QR claims: %r", exc)
        raise QRDecodeError(ResultCode.INVALID_QR_FORMAT, "malformed claims") from exc

def _decode_v1(data: bytes) -> QRPayload:
    try:
        padded = data + b"=" * (-len(data) % 4)
        body = json.loads(base64.urlsafe_b64decode(padded).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
        raise QRDecodeError(ResultCode.INVALID_QR_FORMAT, "payload is not base64 JSON") from exc
    if not isinstance(body, dict):
        raise QRDecodeError(ResultCode.INVALID_QR_FORMAT, "payload is not an object")
    presented = body.pop("integrity", None)
    if not isinstance(presented, str):
        raise QRDecodeError(ResultCode.INVALID_QR_FORMAT, "missing integrity field")
    payload = _parse_claims(body)
    if presented != _integrity(_claims(payload)):
        raise QRDecodeError(ResultCode.CORRUPTED_QR_CODE, "integrity digest mismatch")
    return payload

def _decode_v2(data: bytes, secret: str | None) -> QRPayload:
    if not secret:
        raise QRDecodeError(ResultCode.INVALID_QR_FORMAT, "signed payloads are not enabled")
    try:
        claims = jwt.decode(
            data.decode("ascii"),
            secret,
            algorithms=["HS256"],
            audience=QR_AUD,
            options={"require": ["aud", "iss"]},
        )
    except jwt.InvalidSignatureError as exc:
        raise QRDecodeError(ResultCode.CORRUPTED_QR_CODE, "signature mismatch") from exc
    except (jwt.InvalidTokenError, UnicodeDecodeError) as exc:
        raise QRDecodeError(ResultCode.INVALID_QR_FORMAT, "invalid signed payload") from exc
    if claims.get("iss") != QR_ISS:
        raise QRDecodeError(ResultCode.CORRUPTED_QR_CODE, "invalid issuer")
    return _parse_claims(claims)

def decode_qr(data: bytes | str, *, supported_versions: frozenset[str], secret: str | None = None) -> QRPayload:
    if isinstance(data, str):
        data = data.encode("utf-8")
    data = data.strip()
    if not data:
        raise QRDecodeError(ResultCode.INVALID_QR_FORMAT, "empty payload")
    # compact JWS has exactly two dots; base64url never contains one
    payload = _decode_v2(data, secret) if data.count(b".") == 2 else _decode_v1(data)
    if payload.version not in supported_versions:
        raise QRDecodeError(ResultCode.INVALID_QR_FORMAT, f"unsupported version {payload.version}")
    return payload

def inspect_qr(
    data: bytes | str | None, *, supported_versions: frozenset[str], secret: str | None = None
) -> QRPayload | QRDecodeFailure | None:
    """Non-raising variant used on the validation path."""
    if data is None:
        return None
    try:
        return decode_qr(data, supported_versions=supported_versions, secret=secret)
    except QRDecodeError as exc:
        return QRDecodeFailure(code=exc.code, reason=exc.reason)
