"""Closed, versioned field sets exchanged with the external EHR.

Internal code builds these models; only to_wire()/from_wire() know the
external system's JSON shape.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict

from booking_sync.utils.normalization import format_phone, normalize_member_id

EHR_SCHEMA_VERSION = 1


class ClientFields(BaseModel):
    """Identity fields used to create an external client."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    schema_version: Literal[1] = EHR_SCHEMA_VERSION
    email: str
    first_name: str
    last_name: str
    date_of_birth: date | None = None
    phone: str | None = None

    def to_wire(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "FirstName": self.first_name,
            "LastName": self.last_name,
            "Name": f"{self.first_name} {self.last_name}",
            "Email": self.email,
        }
        if self.date_of_birth is not None:
            payload["DateOfBirth"] = self.date_of_birth.isoformat()
        phone = format_phone(self.phone)
        if phone:
            payload["Phone"] = phone
        return payload


class ReferringContact(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str | None = None
    email: str | None = None
    phone: str | None = None


class EnrichmentFields(BaseModel):
    """
    Non-identity fields pushed onto an existing external client.

    Stored on the appointment (model_dump(mode="json")) so that
    reconciliation can re-drive the same push later.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    schema_version: Literal[1] = EHR_SCHEMA_VERSION
    date_of_birth: date | None = None
    phone: str | None = None
    insurance_company_name: str | None = None
    member_id: str | None = None
    group_number: str | None = None
    referring_contact: ReferringContact | None = None

    def to_wire(self) -> dict[str, Any]:
        """Wire fields with a value; absent fields are never sent as blanks."""
        payload: dict[str, Any] = {}
        if self.date_of_birth is not None:
            payload["DateOfBirth"] = self.date_of_birth.isoformat()
        phone = format_phone(self.phone)
        if phone:
            payload["Phone"] = phone
        if self.insurance_company_name:
            payload["PrimaryInsuranceCompany"] = self.insurance_company_name
        member_id = normalize_member_id(self.member_id)
        if member_id:
            payload["PrimaryInsurancePolicyNumber"] = member_id
        if self.group_number:
            payload["PrimaryInsuranceGroupNumber"] = self.group_number.strip()
        contact = self.referring_contact
        if contact is not None:
            if contact.name:
                payload["ReferringContactName"] = contact.name.strip()
            if contact.email:
                payload["ReferringContactEmail"] = contact.email.strip().lower()
            contact_phone = format_phone(contact.phone)
            if contact_phone:
                payload["ReferringContactPhone"] = contact_phone
        return payload

    @property
    def is_empty(self) -> bool:
        return not self.to_wire()


class ExternalClient(BaseModel):
    """Client record as read back from the external system."""

    model_config = ConfigDict(frozen=True)

    client_id: str
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    date_of_birth: date | None = None

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> "ExternalClient":
        return cls(
            client_id=str(data["ClientId"]),
            email=data.get("Email") or None,
            first_name=data.get("FirstName") or None,
            last_name=data.get("LastName") or None,
            date_of_birth=_wire_date(data.get("DateOfBirth")),
        )


def _wire_date(value: Any) -> date | None:
    """DateOfBirth arrives as ISO text or as Unix milliseconds."""
    if value in (None, ""):
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc).date()
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return None
