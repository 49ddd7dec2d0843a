import json
from datetime import date

import httpx
import pytest

from booking_sync.core.exceptions import ExternalPermanent, ExternalRateLimited, ExternalTransient
from booking_sync.schemas.ehr import ClientFields
from booking_sync.services.ehr_client import HttpEhrClient
from tests.conftest import at


def _client(handler) -> HttpEhrClient:
    return HttpEhrClient(
        "https://ehr.test/api/v1", "secret-key", timeout=5, transport=httpx.MockTransport(handler)
    )


@pytest.mark.asyncio
async def test_find_client_requires_exact_email():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["key"] = request.headers["X-Auth-Key"]
        return httpx.Response(
            200,
            json=[
                {"ClientId": 7, "Email": "jane.other@example.com", "FirstName": "J"},
                {"ClientId": 8, "Email": "Jane@Example.com", "FirstName": "Jane", "LastName": "Doe",
                 "DateOfBirth": 638928000000},
            ],
        )

    found = await _client(handler).find_client_by_email("jane@example.com")

    assert found.client_id == "8"
    assert found.date_of_birth == date(1990, 4, 1)
    assert seen["key"] == "secret-key"
    assert seen["url"].startswith("https://ehr.test/api/v1/clients?search=")


@pytest.mark.asyncio
async def test_find_client_none():
    client = _client(lambda request: httpx.Response(200, json=[]))
    assert await client.find_client_by_email("nobody@example.com") is None


@pytest.mark.asyncio
async def test_create_client_sends_wire_fields():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured.update(json.loads(request.content))
        return httpx.Response(200, json={"ClientId": 42, **captured})

    fields = ClientFields(
        email="jane@example.com",
        first_name="Jane",
        last_name="Doe",
        date_of_birth=date(1990, 4, 1),
        phone="3035550100",
    )
    client_id = await _client(handler).create_client(fields)

    assert client_id == "42"
    assert captured == {
        "FirstName": "Jane",
        "LastName": "Doe",
        "Name": "Jane Doe",
        "Email": "jane@example.com",
        "DateOfBirth": "1990-04-01",
        "Phone": "(303) 555-0100",
    }


@pytest.mark.asyncio
async def test_create_appointment_returns_id():
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        assert request.url.path.endswith("/appointments")
        assert body["ClientId"] == "42"
        assert body["StartDateIso"] == at(10).isoformat()
        return httpx.Response(200, json={"Id": "appt-xyz"})

    result = await _client(handler).create_appointment("42", "prac", "svc", at(10), at(11))
    assert result == "appt-xyz"


@pytest.mark.asyncio
async def test_client_not_found_on_appointment_is_transient():
    client = _client(lambda request: httpx.Response(400, text="Client not found"))
    with pytest.raises(ExternalTransient):
        await client.create_appointment("42", "prac", "svc", at(10), at(11))


@pytest.mark.asyncio
async def test_other_400_is_permanent():
    client = _client(lambda request: httpx.Response(400, text="PractitionerId is invalid"))
    with pytest.raises(ExternalPermanent) as excinfo:
        await client.create_appointment("42", "prac", "svc", at(10), at(11))
    assert excinfo.value.status_code == 400


@pytest.mark.asyncio
async def test_rate_limit_carries_retry_after():
    client = _client(lambda request: httpx.Response(429, headers={"Retry-After": "12"}))
    with pytest.raises(ExternalRateLimited) as excinfo:
        await client.get_client("42")
    assert excinfo.value.retry_after == 12.0


@pytest.mark.asyncio
async def test_network_errors_are_transient():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(ExternalTransient):
        await _client(handler).get_client("42")


@pytest.mark.asyncio
async def test_timeouts_are_transient():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(ExternalTransient):
        await _client(handler).get_client("42")


@pytest.mark.asyncio
async def test_update_client_puts_full_record():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["method"] = request.method
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, json={})

    await _client(handler).update_client("42", {"FirstName": "Jane", "Tags": ["a"]})

    assert captured["method"] == "PUT"
    assert captured["body"] == {"FirstName": "Jane", "Tags": ["a"], "ClientId": "42"}
