from __future__ import annotations
import uuid

import httpx
import pytest

from scan_validation.deps import get_clock, get_db, get_limiter, get_session_maker
from scan_validation.main import app

pytestmark = pytest.mark.anyio

@pytest.fixture
async def client(session_maker, limiter, clock):
    async def _db():
        async with session_maker() as s:
            yield s

    app.dependency_overrides[get_session_maker] = lambda: session_maker
    app.dependency_overrides[get_db] = _db
    app.dependency_overrides[get_limiter] = lambda: limiter
    app.dependency_overrides[get_clock] = lambda: clock
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()

def body(ticket_id, event_id, **ctx) -> dict:
    scan_context = {"location": "gate-A", "device_id": "D1"}
    scan_context.update(ctx)
    return {"ticket_id": str(ticket_id), "event_id": str(event_id), "scan_context": scan_context}

async def test_admit_then_conflict(client, seed) -> None:
    ev = await seed.event()
    t = await seed.ticket(ev)

    r = await client.post("/internal/validation/validate-ticket", json=body(t.id, ev.id))
    assert r.status_code == 200
    env = r.json()
    assert env["success"] is True
    assert env["data"]["valid"] is True
    assert env["data"]["ticket_id"] == str(t.id)
    assert env["error_id"]
    assert env["timestamp"]
    assert env["processing_time_ms"] >= 0

    r = await client.post("/internal/validation/validate-ticket", json=body(t.id, ev.id))
    assert r.status_code == 409
    env = r.json()
    assert env["success"] is False
    assert env["code"] == "TICKET_ALREADY_VALIDATED"
    assert env["data"]["valid"] is False

async def test_status_codes_follow_result_codes(client, seed) -> None:
    ev = await seed.event(zones=["main"])
    t = await seed.ticket(ev)
    r = await client.post("/internal/validation/validate-ticket", json=body(uuid.uuid4(), ev.id))
    assert (r.status_code, r.json()["code"]) == (404, "TICKET_NOT_FOUND")
    r = await client.post("/internal/validation/validate-ticket", json=body(t.id, ev.id, location="side"))
    assert (r.status_code, r.json()["code"]) == (400, "ZONE_RESTRICTION")
    r = await client.post(
        "/internal/validation/validate-ticket",
        json={**body(t.id, ev.id, location="main"), "validation_metadata": {"qr_data": "garbage"}},
    )
    assert (r.status_code, r.json()["code"]) == (400, "INVALID_QR_FORMAT")

async def test_malformed_body_is_validation_error(client) -> None:
    r = await client.post("/internal/validation/validate-ticket", json={"ticket_id": "not-a-uuid"})
    assert r.status_code == 400
    env = r.json()
    assert env["code"] == "VALIDATION_ERROR"
    assert env["error_id"]
    assert env["data"]["errors"]

async def test_validate_by_code(client, seed) -> None:
    ev = await seed.event()
    await seed.ticket(ev, code="TCK-HTTP-1")
    r = await client.post(
        "/internal/validation/validate-ticket-by-code",
        json={"ticket_code": "TCK-HTTP-1", "scan_context": {"location": "gate-A", "device_id": "D7"}},
    )
    assert r.status_code == 200
    assert r.json()["data"]["event_id"] == str(ev.id)

async def test_batch(client, seed, settings) -> None:
    ev = await seed.event()
    t1, t2 = await seed.ticket(ev), await seed.ticket(ev)
    r = await client.post(
        "/internal/validation/validate-batch",
        json={"tickets": [body(t1.id, ev.id), body(uuid.uuid4(), ev.id), body(t2.id, ev.id)], "metadata": {"lane": 3}},
    )
    assert r.status_code == 200
    data = r.json()["data"]
    assert [i["code"] for i in data["results"]] == ["ADMITTED", "TICKET_NOT_FOUND", "ADMITTED"]
    assert [i["index"] for i in data["results"]] == [0, 1, 2]
    assert data["summary"]["admitted"] == 2
    assert data["summary"]["rejected"] == 1
    assert data["batch_id"].startswith("batch_")
    assert data["metadata"] == {"lane": 3}

    too_many = [body(uuid.uuid4(), ev.id) for _ in range(settings.batch_max_items + 1)]
    r = await client.post("/internal/validation/validate-batch", json={"tickets": too_many})
    assert (r.status_code, r.json()["code"]) == (400, "VALIDATION_ERROR")
    r = await client.post("/internal/validation/validate-batch", json={"tickets": []})
    assert r.status_code == 400

async def test_ticket_status_history_and_patch(client, seed) -> None:
    ev = await seed.event()
    t = await seed.ticket(ev, max_scans=2)
    await client.post("/internal/validation/validate-ticket", json=body(t.id, ev.id))

    r = await client.get(f"/internal/tickets/{t.id}/status")
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["status"] == "active"
    assert data["admitted_count"] == 1
    assert data["remaining_scans"] == 1
    assert data["can_be_scanned"] is True

    r = await client.get(f"/internal/tickets/{t.id}/scan-history", params={"limit": 10})
    assert r.status_code == 200
    data = r.json()["data"]
    assert len(data["scans"]) == 1
    assert data["scans"][0]["decision"] == "admitted"
    assert data["pagination"] == {"total": 1, "limit": 10, "offset": 0, "has_more": False}
    assert data["statistics"]["admitted"] == 1

    r = await client.patch(f"/internal/tickets/{t.id}/status", json={"status": "expired", "reason": "event moved"})
    assert r.status_code == 200
    assert r.json()["data"]["previous_status"] == "active"
    r = await client.patch(f"/internal/tickets/{t.id}/status", json={"status": "cancelled"})
    assert (r.status_code, r.json()["code"]) == (400, "INVALID_STATUS_TRANSITION")
    r = await client.patch(f"/internal/tickets/{t.id}/status", json={"status": "bogus"})
    assert (r.status_code, r.json()["code"]) == (400, "VALIDATION_ERROR")

    r = await client.get(f"/internal/tickets/{uuid.uuid4()}/status")
    assert (r.status_code, r.json()["code"]) == (404, "TICKET_NOT_FOUND")

async def test_event_probe_and_stats(client, seed) -> None:
    ev = await seed.event(max_attendees=3)
    r = await client.get(f"/internal/events/{ev.id}/validate")
    assert r.status_code == 200
    assert r.json()["data"]["can_scan"] is True
    assert r.json()["data"]["remaining_capacity"] == 3

    r = await client.get(f"/internal/events/{ev.id}/scan-stats")
    assert r.status_code == 200
    assert r.json()["data"]["total_scans"] == 0

    r = await client.get(f"/internal/events/{uuid.uuid4()}/validate")
    assert (r.status_code, r.json()["code"]) == (404, "EVENT_NOT_FOUND")

@pytest.mark.parametrize("path", ["/internal/validation/health", "/internal/tickets/health", "/internal/events/health"])
async def test_health(client, path) -> None:
    r = await client.get(path)
    assert r.status_code == 200
    assert r.json()["data"]["database"] == "ok"

async def test_plain_health(client) -> None:
    r = await client.get("/health")
    assert r.json() == {"status": "ok", "service": "scan-validation-svc"}
