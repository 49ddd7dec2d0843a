"""Pydantic schemas for API request/response models and EHR payloads."""

from booking_sync.schemas.booking import (
    AvailabilityWindowRead,
    BookingCreate,
    BookingRead,
    BookingStatusRead,
    EffectiveAvailabilityRead,
    InsuranceIn,
    PatientIdentityIn,
    ReferringContactIn,
)
from booking_sync.schemas.ehr import (
    EHR_SCHEMA_VERSION,
    ClientFields,
    EnrichmentFields,
    ExternalClient,
    ReferringContact,
)

__all__ = [
    # Booking API
    "BookingCreate",
    "BookingRead",
    "BookingStatusRead",
    "PatientIdentityIn",
    "InsuranceIn",
    "ReferringContactIn",
    "AvailabilityWindowRead",
    "EffectiveAvailabilityRead",
    # EHR payloads
    "EHR_SCHEMA_VERSION",
    "ClientFields",
    "EnrichmentFields",
    "ExternalClient",
    "ReferringContact",
]
