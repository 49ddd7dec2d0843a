"""Appointment, availability and sync enums."""

from enum import Enum


class AppointmentStatus(str, Enum):
    """
    Appointment lifecycle status.

    Flow: pending → scheduled
              ↘ error      (external system rejected the appointment)
              ↘ cancelled

    pending, scheduled and error hold the provider's time slot; an errored
    appointment is still a real booking awaiting reconciliation.
    """

    PENDING = "pending"  # Committed locally, external appointment not created yet
    SCHEDULED = "scheduled"  # External appointment exists
    ERROR = "error"  # Permanent external failure, needs reconciliation
    CANCELLED = "cancelled"


ACTIVE_APPOINTMENT_STATUSES = (
    AppointmentStatus.PENDING,
    AppointmentStatus.SCHEDULED,
    AppointmentStatus.ERROR,
)


class EnrichmentStatus(str, Enum):
    """State of the supplementary-field push for an appointment."""

    PENDING = "pending"
    COMPLETE = "complete"
    FAILED = "failed"


class AvailabilityExceptionKind(str, Enum):
    """
    Date-scoped override of a provider's weekly template.

    Null bounds mean the entire day.
    """

    BLOCK = "block"  # Remove the window (or the whole day)
    ADD = "add"  # Extra hours on top of the template
    MODIFY = "modify"  # Replace the day's template hours
