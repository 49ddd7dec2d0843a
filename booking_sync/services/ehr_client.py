"""Client for the external EHR / practice-management system of record.

Handles:
- Narrow async interface (EhrClient) that sync and enrichment depend on
- HTTP/JSON implementation with an explicit per-request timeout
- Error translation into ExternalTransient / ExternalRateLimited / ExternalPermanent

Retries are not done here; callers wrap each call with
http_service.call_with_retries so every attempt is accounted for in the audit log.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Protocol

import httpx

from booking_sync.core.config import settings
from booking_sync.core.exceptions import ExternalPermanent, ExternalTransient
from booking_sync.schemas.ehr import ClientFields, ExternalClient
from booking_sync.services.http_service import raise_for_status

logger = logging.getLogger(__name__)

# Returned by the EHR when a freshly created client has not propagated yet.
CLIENT_NOT_FOUND_MARKER = "client not found"


class EhrClient(Protocol):
    """Subset of the external API needed to keep identity and appointments consistent."""

    async def find_client_by_email(self, email: str) -> ExternalClient | None: ...

    async def get_client(self, client_id: str) -> dict[str, Any]: ...

    async def create_client(self, fields: ClientFields) -> str: ...

    async def update_client(self, client_id: str, record: dict[str, Any]) -> None: ...

    async def create_appointment(
        self,
        client_id: str,
        practitioner_id: str,
        service_id: str,
        start: datetime,
        end: datetime,
    ) -> str: ...


class HttpEhrClient:
    """EhrClient over HTTP with JSON bodies; API key in X-Auth-Key."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = httpx.Timeout(timeout, connect=min(timeout, 5.0))
        self._transport = transport

    async def _request(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> httpx.Response:
        headers = {"X-Auth-Key": self.api_key, "Accept": "application/json"}
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.request(
                    method, path, params=params, json=json, headers=headers
                )
        except httpx.TimeoutException as exc:
            raise ExternalTransient(f"{operation} timed out") from exc
        except httpx.RequestError as exc:
            raise ExternalTransient(f"{operation} failed: {type(exc).__name__}") from exc

        logger.debug("EHR %s -> %s", operation, response.status_code)
        raise_for_status(response, operation=operation)
        return response

    @staticmethod
    def _json(response: httpx.Response, *, operation: str) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise ExternalPermanent(
                f"{operation} returned a non-JSON body", status_code=response.status_code
            ) from exc

    async def find_client_by_email(self, email: str) -> ExternalClient | None:
        response = await self._request(
            "GET", "/clients", operation="find_client", params={"search": email}
        )
        data = self._json(response, operation="find_client")
        if not isinstance(data, list):
            raise ExternalPermanent("find_client returned an unexpected shape")
        # search is fuzzy on the external side; only an exact email is a hit
        for item in data:
            if str(item.get("Email") or "").strip().lower() == email:
                return _client_from_wire(item, operation="find_client")
        return None

    async def get_client(self, client_id: str) -> dict[str, Any]:
        response = await self._request("GET", f"/clients/{client_id}", operation="get_client")
        data = self._json(response, operation="get_client")
        if not isinstance(data, dict):
            raise ExternalPermanent("get_client returned an unexpected shape")
        return data

    async def create_client(self, fields: ClientFields) -> str:
        response = await self._request(
            "POST", "/clients", operation="create_client", json=fields.to_wire()
        )
        data = self._json(response, operation="create_client")
        return _client_from_wire(data, operation="create_client").client_id

    async def update_client(self, client_id: str, record: dict[str, Any]) -> None:
        body = {**record, "ClientId": record.get("ClientId", client_id)}
        await self._request("PUT", f"/clients/{client_id}", operation="update_client", json=body)

    async def create_appointment(
        self,
        client_id: str,
        practitioner_id: str,
        service_id: str,
        start: datetime,
        end: datetime,
    ) -> str:
        body = {
            "ClientId": client_id,
            "PractitionerId": practitioner_id,
            "ServiceId": service_id,
            "StartDateIso": start.isoformat(),
            "EndDateIso": end.isoformat(),
            "Status": "Confirmed",
            "SendClientEmailNotification": False,
        }
        try:
            response = await self._request(
                "POST", "/appointments", operation="create_appointment", json=body
            )
        except ExternalPermanent as exc:
            # A client created moments ago may not be visible yet; worth a retry.
            if exc.status_code == 400 and CLIENT_NOT_FOUND_MARKER in (exc.response_text or ""):
                raise ExternalTransient(
                    "create_appointment: client not visible yet", status_code=400
                ) from exc
            raise
        data = self._json(response, operation="create_appointment")
        appointment_id = data.get("Id") if isinstance(data, dict) else None
        if not appointment_id:
            raise ExternalPermanent("create_appointment response has no Id")
        return str(appointment_id)


def _client_from_wire(data: Any, *, operation: str) -> ExternalClient:
    if not isinstance(data, dict) or data.get("ClientId") in (None, ""):
        raise ExternalPermanent(f"{operation} response has no ClientId")
    return ExternalClient.from_wire(data)


def build_ehr_client() -> HttpEhrClient:
    """EHR client configured from settings."""
    return HttpEhrClient(
        settings.EHR_API_BASE_URL,
        settings.EHR_API_KEY,
        timeout=settings.EHR_TIMEOUT_SECONDS,
    )
