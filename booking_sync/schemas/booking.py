"""Booking schemas - Pydantic models for the booking API."""

from datetime import date, datetime, time
from uuid import UUID

from pydantic import BaseModel, EmailStr, Field


# =============================================================================
# Booking Requests
# =============================================================================

class PatientIdentityIn(BaseModel):
    """Demographics submitted with a booking."""
    email: EmailStr
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    date_of_birth: str | None = Field(None, max_length=40, description="YYYY-MM-DD")
    phone: str | None = Field(None, max_length=30)


class InsuranceIn(BaseModel):
    """Insurance identifiers pushed to the external record."""
    member_id: str | None = Field(None, max_length=64)
    group_number: str | None = Field(None, max_length=64)


class ReferringContactIn(BaseModel):
    """Referring party (case manager, partner) mirrored onto the external record."""
    name: str | None = Field(None, max_length=200)
    email: EmailStr | None = None
    phone: str | None = Field(None, max_length=30)


class BookingCreate(BaseModel):
    """Schema for creating a booking."""
    patient: PatientIdentityIn
    provider_id: UUID
    payer_id: UUID | None = None
    start: datetime
    end: datetime
    idempotency_key: str | None = Field(
        None, min_length=1, max_length=255, description="May also be sent as Idempotency-Key header"
    )
    notes: str | None = Field(None, max_length=2000)
    insurance: InsuranceIn | None = None
    referring_contact: ReferringContactIn | None = None


# =============================================================================
# Booking Responses
# =============================================================================

class BookingRead(BaseModel):
    """Result of a booking request (new or replayed)."""
    appointment_id: UUID
    patient_id: UUID
    external_appointment_id: str | None
    status: str
    is_new_patient: bool
    replayed: bool


class BookingStatusRead(BaseModel):
    """Booking with its external sync state."""
    appointment_id: UUID
    patient_id: UUID
    provider_id: UUID
    payer_id: UUID | None
    start: datetime
    end: datetime
    status: str
    external_appointment_id: str | None
    enrichment_status: str
    pending_external_sync: bool
    sync_attempts: int
    last_sync_error: str | None
    created_at: datetime


# =============================================================================
# Availability
# =============================================================================

class AvailabilityWindowRead(BaseModel):
    """Effective availability window (UTC instants plus provider-local times)."""
    start: datetime
    end: datetime
    local_start: time
    local_end: time


class EffectiveAvailabilityRead(BaseModel):
    """Effective availability for one provider-local date."""
    provider_id: UUID
    date: date
    timezone: str
    windows: list[AvailabilityWindowRead]
