"""SQLAlchemy ORM models."""

from booking_sync.db.models.appointments import (
    Appointment,
    AvailabilityException,
    AvailabilityRule,
    IdempotencyRecord,
)
from booking_sync.db.models.audit import AuditLogEntry
from booking_sync.db.models.patients import Patient, Payer, Provider

__all__ = [
    "Appointment",
    "AuditLogEntry",
    "AvailabilityException",
    "AvailabilityRule",
    "IdempotencyRecord",
    "Patient",
    "Payer",
    "Provider",
]
