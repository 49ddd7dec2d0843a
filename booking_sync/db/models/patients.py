"""Patient, provider and payer models."""

from __future__ import annotations

import uuid
from datetime import date, datetime

from sqlalchemy import Boolean, Date, Index, String, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from booking_sync.db.base import Base, utcnow


class Patient(Base):
    """
    Canonical patient identity.

    One row per real person. Rows may share canonical_email (shared inbox,
    e.g. a case manager) only when name or date of birth differ.

    External linkage: unlinked → linked-canonical | linked-aliased.
    Once external_client_id is set it is never changed by the application.
    """

    __tablename__ = "patients"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    canonical_email: Mapped[str] = mapped_column(String(320), nullable=False, index=True)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    date_of_birth: Mapped[date | None] = mapped_column(Date, nullable=True)
    phone: Mapped[str | None] = mapped_column(String(20), nullable=True)  # Digits only

    # External system of record
    external_client_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    external_email_alias: Mapped[str | None] = mapped_column(String(320), nullable=True)

    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow, nullable=False)

    @property
    def is_linked(self) -> bool:
        return self.external_client_id is not None


# Strong identity is unique; dob-less rows are not covered (NULLs are distinct).
Index(
    "uq_patients_strong_identity",
    Patient.canonical_email,
    func.lower(Patient.first_name),
    func.lower(Patient.last_name),
    Patient.date_of_birth,
    unique=True,
)


class Provider(Base):
    """Bookable provider. Managed by admin tooling; read-only here."""

    __tablename__ = "providers"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    timezone: Mapped[str] = mapped_column(String(50), default="America/Denver", nullable=False)

    # Ids in the external system used when creating appointments
    external_practitioner_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    external_service_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)


class Payer(Base):
    """Insurance payer with its name as the external system expects it."""

    __tablename__ = "payers"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    external_insurance_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    @property
    def insurance_company_name(self) -> str:
        return self.external_insurance_name or self.name
