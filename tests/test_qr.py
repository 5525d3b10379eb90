from __future__ import annotations
import base64
import json
import uuid
from datetime import datetime, timezone

import pytest

from scan_validation.codes import ResultCode
from scan_validation.core.qr import QRDecodeError, QRDecodeFailure, QRPayload, decode_qr, encode_qr, inspect_qr

SECRET = "qr-secret-for-tests-0123456789abcdef"
V1_ONLY = frozenset({"v1"})
BOTH = frozenset({"v1", "v2"})

def payload(version: str = "v1") -> QRPayload:
    return QRPayload(
        ticket_id=uuid.uuid4(),
        event_id=uuid.uuid4(),
        issued_at=datetime(2026, 1, 1, 9, 0, tzinfo=timezone.utc),
        version=version,
    )

def test_v1_round_trip() -> None:
    p = payload()
    assert decode_qr(encode_qr(p), supported_versions=V1_ONLY) == p
    # str input is accepted too
    assert decode_qr(encode_qr(p).decode("ascii"), supported_versions=V1_ONLY) == p

def test_v2_round_trip() -> None:
    p = payload("v2")
    token = encode_qr(p, secret=SECRET)
    assert token.count(b".") == 2
    assert decode_qr(token, supported_versions=BOTH, secret=SECRET) == p

def test_v1_tampered_body_is_corrupted() -> None:
    raw = encode_qr(payload())
    body = json.loads(base64.urlsafe_b64decode(raw + b"=" * (-len(raw) % 4)))
    body["ticket_id"] = str(uuid.uuid4())
    forged = base64.urlsafe_b64encode(json.dumps(body).encode("utf-8")).rstrip(b"=")
    with pytest.raises(QRDecodeError) as exc:
        decode_qr(forged, supported_versions=V1_ONLY)
    assert exc.value.code == ResultCode.CORRUPTED_QR_CODE

@pytest.mark.parametrize("garbage", [b"", b"not-a-qr", base64.urlsafe_b64encode(b"[1, 2, 3]")])
def test_unparseable_payloads_are_invalid_format(garbage) -> None:
    with pytest.raises(QRDecodeError) as exc:
        decode_qr(garbage, supported_versions=V1_ONLY)
    assert exc.value.code == ResultCode.INVALID_QR_FORMAT

def test_missing_integrity_is_invalid_format() -> None:
    body = {"ticket_id": str(uuid.uuid4()), "event_id": str(uuid.uuid4()), "issued_at": "2026-01-01T00:00:00+00:00",
            "version": "v1", "algorithm": "sha256"}
    raw = base64.urlsafe_b64encode(json.dumps(body).encode("utf-8"))
    with pytest.raises(QRDecodeError) as exc:
        decode_qr(raw, supported_versions=V1_ONLY)
    assert exc.value.code == ResultCode.INVALID_QR_FORMAT

def test_v2_needs_secret_and_support() -> None:
    token = encode_qr(payload("v2"), secret=SECRET)
    with pytest.raises(QRDecodeError) as exc:
        decode_qr(token, supported_versions=BOTH, secret=None)
    assert exc.value.code == ResultCode.INVALID_QR_FORMAT
    with pytest.raises(QRDecodeError) as exc:
        decode_qr(token, supported_versions=V1_ONLY, secret=SECRET)
    assert exc.value.code == ResultCode.INVALID_QR_FORMAT

def test_v2_wrong_secret_is_corrupted() -> None:
    token = encode_qr(payload("v2"), secret=SECRET)
    with pytest.raises(QRDecodeError) as exc:
        decode_qr(token, supported_versions=BOTH, secret="another-secret-of-sufficient-length-xyz")
    assert exc.value.code == ResultCode.CORRUPTED_QR_CODE

def test_encode_rejects_unknown_versions_and_missing_secret() -> None:
    with pytest.raises(ValueError):
        encode_qr(payload("v9"))
    with pytest.raises(ValueError):
        encode_qr(payload("v2"))

def test_inspect_never_raises() -> None:
    assert inspect_qr(None, supported_versions=V1_ONLY) is None
    p = payload()
    assert inspect_qr(encode_qr(p), supported_versions=V1_ONLY) == p
    res = inspect_qr(b"%%%", supported_versions=V1_ONLY)
    assert isinstance(res, QRDecodeFailure)
    assert res.code == ResultCode.INVALID_QR_FORMAT

def test_malformed_claims_do_not_leak_parser_details() -> None:
    body = {"event_id": "not-a-uuid", "issued_at": "2026-01-01T09:00:00Z", "version": "v1",
            "algorithm": "sha256", "integrity": "0" * 64}
    raw = base64.urlsafe_b64encode(json.dumps(body).encode("utf-8")).rstrip(b"=")
    res = inspect_qr(raw, supported_versions=V1_ONLY)
    assert isinstance(res, QRDecodeFailure)
    assert res.code == ResultCode.INVALID_QR_FORMAT
    assert res.reason == "malformed claims"
