"""Enum definitions for application constants."""

from booking_sync.db.enums.appointments import (
    ACTIVE_APPOINTMENT_STATUSES,
    AppointmentStatus,
    AvailabilityExceptionKind,
    EnrichmentStatus,
)
from booking_sync.db.enums.audit import SyncAction, SyncReason, SyncStatus

__all__ = [
    "ACTIVE_APPOINTMENT_STATUSES",
    "AppointmentStatus",
    "AvailabilityExceptionKind",
    "EnrichmentStatus",
    "SyncAction",
    "SyncReason",
    "SyncStatus",
]
