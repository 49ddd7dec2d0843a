"""Availability, appointment and idempotency models."""

from __future__ import annotations

from typing import TYPE_CHECKING

import uuid
from datetime import date, datetime, time

from sqlalchemy import (
    DDL,
    Boolean,
    CheckConstraint,
    Date,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Time,
    Uuid,
    event,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from booking_sync.db.base import Base, utcnow
from booking_sync.db.enums import ACTIVE_APPOINTMENT_STATUSES, AppointmentStatus, EnrichmentStatus
from booking_sync.db.types import JsonType

if TYPE_CHECKING:
    from booking_sync.db.models.patients import Patient, Payer, Provider


class AvailabilityRule(Base):
    """
    Weekly availability rule (e.g., "Monday 9am-5pm").

    Uses ISO weekday: Monday=0, Sunday=6. Times are wall-clock in the
    provider's timezone. Only recurring rules form the weekly template.
    """

    __tablename__ = "availability_rules"
    __table_args__ = (
        Index("idx_availability_rules_provider", "provider_id", "day_of_week"),
        CheckConstraint("day_of_week >= 0 AND day_of_week <= 6", name="ck_valid_day_of_week"),
        CheckConstraint("start_time < end_time", name="ck_availability_rule_window"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    provider_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("providers.id", ondelete="CASCADE"), nullable=False
    )
    day_of_week: Mapped[int] = mapped_column(Integer, nullable=False)
    start_time: Mapped[time] = mapped_column(Time, nullable=False)
    end_time: Mapped[time] = mapped_column(Time, nullable=False)
    is_recurring: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)


class AvailabilityException(Base):
    """
    Date-specific override of the weekly template.

    kind is block, add or modify; null start/end means the entire day.
    """

    __tablename__ = "availability_exceptions"
    __table_args__ = (
        Index("idx_availability_exceptions_provider_date", "provider_id", "exception_date"),
        CheckConstraint(
            "(start_time IS NULL) = (end_time IS NULL)",
            name="ck_availability_exception_bounds",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    provider_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("providers.id", ondelete="CASCADE"), nullable=False
    )
    exception_date: Mapped[date] = mapped_column(Date, nullable=False)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)  # AvailabilityExceptionKind
    start_time: Mapped[time | None] = mapped_column(Time, nullable=True)
    end_time: Mapped[time | None] = mapped_column(Time, nullable=True)
    reason: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    @property
    def is_full_day(self) -> bool:
        return self.start_time is None and self.end_time is None


class Appointment(Base):
    """
    Booked appointment.

    Lifecycle: pending → scheduled | error; cancelled at any point.
    Stored in UTC. external_appointment_id is null until the external
    system of record has the appointment ("pending external sync").
    """

    __tablename__ = "appointments"
    __table_args__ = (
        Index("idx_appointments_provider_start", "provider_id", "start_at"),
        Index("idx_appointments_patient", "patient_id"),
        Index("idx_appointments_sync", "status", "external_appointment_id"),
        CheckConstraint("start_at < end_at", name="ck_appointment_interval"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    patient_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("patients.id", ondelete="CASCADE"), nullable=False
    )
    provider_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("providers.id", ondelete="RESTRICT"), nullable=False
    )
    payer_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("payers.id", ondelete="SET NULL"), nullable=True
    )

    start_at: Mapped[datetime] = mapped_column(nullable=False)
    end_at: Mapped[datetime] = mapped_column(nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=AppointmentStatus.PENDING.value, nullable=False
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    idempotency_key: Mapped[str] = mapped_column(
        String(255), unique=True, nullable=False
    )  # uq_appointments_idempotency_key

    # External sync state
    external_appointment_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    enrichment_fields: Mapped[dict | None] = mapped_column(JsonType, nullable=True)
    enrichment_status: Mapped[str] = mapped_column(
        String(20), default=EnrichmentStatus.PENDING.value, nullable=False
    )
    sync_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_sync_attempt_at: Mapped[datetime | None] = mapped_column(nullable=True)
    last_sync_error: Mapped[str | None] = mapped_column(String(500), nullable=True)

    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow, nullable=False)

    # Relationships
    patient: Mapped["Patient"] = relationship()
    provider: Mapped["Provider"] = relationship()
    payer: Mapped["Payer | None"] = relationship()

    @property
    def pending_external_sync(self) -> bool:
        return (
            self.status == AppointmentStatus.PENDING.value
            and self.external_appointment_id is None
        )


class IdempotencyRecord(Base):
    """Stored outcome of a booking request, keyed by the caller's idempotency key."""

    __tablename__ = "idempotency_records"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    idempotency_key: Mapped[str] = mapped_column(
        String(255), unique=True, nullable=False
    )  # uq_idempotency_records_idempotency_key
    request_fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)
    appointment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("appointments.id", ondelete="CASCADE"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)


# =============================================================================
# Provider overlap guard
# =============================================================================
# No two slot-holding appointments (pending, scheduled, error) for one
# provider may overlap.
# PostgreSQL enforces it with an exclusion constraint; SQLite with triggers.
# Both surface as IntegrityError whose text contains OVERLAP_CONSTRAINT_MARKER.

OVERLAP_CONSTRAINT_MARKER = "no_overlap"

_ACTIVE_SQL = "(" + ", ".join(f"'{s.value}'" for s in ACTIVE_APPOINTMENT_STATUSES) + ")"

POSTGRES_OVERLAP_DDL = (
    "CREATE EXTENSION IF NOT EXISTS btree_gist",
    "ALTER TABLE appointments ADD CONSTRAINT ex_appointments_provider_no_overlap "
    "EXCLUDE USING gist (provider_id WITH =, tstzrange(start_at, end_at, '[)') WITH &&) "
    f"WHERE (status IN {_ACTIVE_SQL})",
)

SQLITE_OVERLAP_DDL = (
    f"""
    CREATE TRIGGER trg_appointments_no_overlap_insert
    BEFORE INSERT ON appointments
    WHEN NEW.status IN {_ACTIVE_SQL}
    BEGIN
        SELECT RAISE(ABORT, 'appointments_provider_no_overlap')
        WHERE EXISTS (
            SELECT 1 FROM appointments
            WHERE provider_id = NEW.provider_id
              AND status IN {_ACTIVE_SQL}
              AND start_at < NEW.end_at
              AND end_at > NEW.start_at
        );
    END
    """,
    f"""
    CREATE TRIGGER trg_appointments_no_overlap_update
    BEFORE UPDATE OF provider_id, start_at, end_at, status ON appointments
    WHEN NEW.status IN {_ACTIVE_SQL}
    BEGIN
        SELECT RAISE(ABORT, 'appointments_provider_no_overlap')
        WHERE EXISTS (
            SELECT 1 FROM appointments
            WHERE provider_id = NEW.provider_id
              AND id != NEW.id
              AND status IN {_ACTIVE_SQL}
              AND start_at < NEW.end_at
              AND end_at > NEW.start_at
        );
    END
    """,
)

for _statement in POSTGRES_OVERLAP_DDL:
    event.listen(
        Appointment.__table__, "after_create", DDL(_statement).execute_if(dialect="postgresql")
    )
for _statement in SQLITE_OVERLAP_DDL:
    event.listen(
        Appointment.__table__, "after_create", DDL(_statement).execute_if(dialect="sqlite")
    )
