import uuid

import pytest
from httpx import AsyncClient

from booking_sync.core.exceptions import ExternalTransient
from booking_sync.db.models import Provider
from tests.conftest import INTERNAL_HEADERS, MONDAY, FakeEhrClient, at, booking_payload


@pytest.mark.asyncio
async def test_health(client: AsyncClient):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


@pytest.mark.asyncio
async def test_create_booking_and_replay(client: AsyncClient, provider: Provider, ehr: FakeEhrClient):
    payload = booking_payload(provider)

    created = await client.post("/bookings", json=payload)
    assert created.status_code == 201
    body = created.json()
    assert body["replayed"] is False
    assert body["is_new_patient"] is True
    assert body["status"] == "scheduled"
    assert body["external_appointment_id"] in ehr.appointments

    replay = await client.post("/bookings", json=payload)
    assert replay.status_code == 200
    assert replay.json()["appointment_id"] == body["appointment_id"]
    assert replay.json()["replayed"] is True
    assert ehr.count("create_appointment") == 1


@pytest.mark.asyncio
async def test_idempotency_key_header(client: AsyncClient, provider: Provider):
    payload = booking_payload(provider, idempotency_key=None)
    response = await client.post("/bookings", json=payload, headers={"Idempotency-Key": "hdr-1"})
    assert response.status_code == 201


@pytest.mark.asyncio
async def test_missing_idempotency_key(client: AsyncClient, provider: Provider):
    response = await client.post("/bookings", json=booking_payload(provider, idempotency_key=None))
    assert response.status_code == 422
    assert response.json()["error"]["kind"] == "ValidationError"


@pytest.mark.asyncio
async def test_key_reuse_with_different_request(client: AsyncClient, provider: Provider):
    await client.post("/bookings", json=booking_payload(provider))
    response = await client.post(
        "/bookings",
        json=booking_payload(provider, start=at(12).isoformat(), end=at(13).isoformat()),
    )
    assert response.status_code == 422
    assert response.json()["error"]["kind"] == "IdempotencyKeyConflict"


@pytest.mark.asyncio
async def test_conflicts_map_to_409(client: AsyncClient, provider: Provider):
    await client.post("/bookings", json=booking_payload(provider))

    booked = await client.post(
        "/bookings",
        json=booking_payload(provider, idempotency_key="k2", start=at(10, 30).isoformat(), end=at(11, 30).isoformat()),
    )
    assert booked.status_code == 409
    assert booked.json()["error"]["kind"] == "SlotBooked"

    unavailable = await client.post(
        "/bookings",
        json=booking_payload(provider, idempotency_key="k3", start=at(18).isoformat(), end=at(19).isoformat()),
    )
    assert unavailable.status_code == 409
    assert unavailable.json()["error"]["kind"] == "SlotUnavailable"


@pytest.mark.asyncio
async def test_invalid_email_is_rejected(client: AsyncClient, provider: Provider):
    payload = booking_payload(provider)
    payload["patient"]["email"] = "not-an-email"
    response = await client.post("/bookings", json=payload)
    assert response.status_code == 422
    error = response.json()["error"]
    assert error["kind"] == "ValidationError"
    assert error["message"].startswith("patient.email:")
    assert "not-an-email" not in response.text


@pytest.mark.asyncio
async def test_external_outage_still_books(client: AsyncClient, provider: Provider, ehr: FakeEhrClient):
    ehr.fail("find_client", *[ExternalTransient("down", status_code=503) for _ in range(3)])

    created = await client.post("/bookings", json=booking_payload(provider))
    assert created.status_code == 201
    assert created.json()["status"] == "pending"

    status = await client.get(f"/bookings/{created.json()['appointment_id']}")
    assert status.status_code == 200
    body = status.json()
    assert body["pending_external_sync"] is True
    assert body["sync_attempts"] == 1
    assert body["last_sync_error"].startswith("ExternalTransient")


@pytest.mark.asyncio
async def test_get_unknown_booking(client: AsyncClient):
    response = await client.get(f"/bookings/{uuid.uuid4()}")
    assert response.status_code == 404
    assert response.json()["error"]["kind"] == "NotFound"


@pytest.mark.asyncio
async def test_availability_endpoint(client: AsyncClient, provider: Provider):
    response = await client.get(
        f"/providers/{provider.id}/availability", params={"date": MONDAY.isoformat()}
    )
    assert response.status_code == 200
    body = response.json()
    assert body["timezone"] == "UTC"
    assert [(w["local_start"], w["local_end"]) for w in body["windows"]] == [("09:00:00", "17:00:00")]


@pytest.mark.asyncio
async def test_audit_requires_internal_secret(client: AsyncClient):
    response = await client.get("/audit")
    assert response.status_code == 422
    assert response.json()["error"]["kind"] == "ValidationError"

    response = await client.get("/audit", headers={"X-Internal-Secret": "wrong"})
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_audit_lists_redacted_entries(client: AsyncClient, provider: Provider):
    created = await client.post("/bookings", json=booking_payload(provider))
    appointment_id = created.json()["appointment_id"]

    response = await client.get(
        "/audit", params={"appointment_id": appointment_id}, headers=INTERNAL_HEADERS
    )

    assert response.status_code == 200
    items = response.json()["items"]
    assert {item["action"] for item in items} >= {"find_client", "create_client", "create_appointment"}
    assert "jane@example.com" not in response.text


@pytest.mark.asyncio
async def test_internal_reconcile(client: AsyncClient, provider: Provider, ehr: FakeEhrClient):
    ehr.fail("find_client", *[ExternalTransient("down", status_code=503) for _ in range(3)])
    created = await client.post("/bookings", json=booking_payload(provider))
    appointment_id = created.json()["appointment_id"]

    response = await client.post(
        "/internal/reconcile", json={"appointment_id": appointment_id}, headers=INTERNAL_HEADERS
    )

    assert response.status_code == 200
    assert response.json()["synced"] == 1
    status = await client.get(f"/bookings/{appointment_id}")
    assert status.json()["status"] == "scheduled"


@pytest.mark.asyncio
async def test_internal_reconcile_requires_secret(client: AsyncClient):
    response = await client.post("/internal/reconcile", headers={"X-Internal-Secret": "nope"})
    assert response.status_code == 403
