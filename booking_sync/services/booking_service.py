"""Booking service - create and read bookings.

A booking commits locally first (patient resolution, slot check,
appointment insert and idempotency record in one transaction) and only then
attempts external sync. External failures never fail the booking; the
reconciler picks up whatever the inline sync did not finish.
"""

from __future__ import annotations

import logging
from typing import NamedTuple
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from booking_sync.core.async_utils import run_async
from booking_sync.core.config import settings
from booking_sync.core.exceptions import NotFoundError, ValidationError
from booking_sync.core.structured_logging import build_log_context
from booking_sync.db.enums import AppointmentStatus, EnrichmentStatus
from booking_sync.db.models import Appointment, Payer
from booking_sync.schemas.booking import BookingCreate
from booking_sync.services import (
    availability_service,
    enrichment_service,
    idempotency_service,
    patient_service,
    sync_service,
)
from booking_sync.services.ehr_client import EhrClient
from booking_sync.services.idempotency_service import OperationResult
from booking_sync.services.patient_service import PatientIdentity
from booking_sync.utils.normalization import normalize_member_id, normalize_phone

logger = logging.getLogger(__name__)

# One retry when a concurrent request created the same patient first.
MAX_BOOKING_ATTEMPTS = 2


class BookingResult(NamedTuple):
    appointment: Appointment
    is_new_patient: bool
    replayed: bool


def resolve_idempotency_key(header_key: str | None, body_key: str | None) -> str:
    """Pick the idempotency key from the header or body; both must agree when given."""
    header_key = (header_key or "").strip() or None
    body_key = (body_key or "").strip() or None
    if header_key and body_key and header_key != body_key:
        raise ValidationError("Idempotency-Key header and body idempotency_key differ")
    key = header_key or body_key
    if not key:
        raise ValidationError("An idempotency key is required")
    return key


def _contact_phone(data: BookingCreate) -> str | None:
    if not data.referring_contact or not data.referring_contact.phone:
        return None
    try:
        return normalize_phone(data.referring_contact.phone)
    except ValueError as exc:
        raise ValidationError(f"Referring contact {exc}") from exc


def build_fingerprint(identity: PatientIdentity, data: BookingCreate, start, end) -> str:
    """Fingerprint of the normalized request, so cosmetic differences still replay."""
    insurance = data.insurance
    contact = data.referring_contact
    return idempotency_service.compute_fingerprint(
        {
            "patient": {
                "email": identity.email,
                "first_name": identity.first_name.lower(),
                "last_name": identity.last_name.lower(),
                "date_of_birth": identity.date_of_birth.isoformat() if identity.date_of_birth else None,
                "phone": identity.phone,
            },
            "provider_id": str(data.provider_id),
            "payer_id": str(data.payer_id) if data.payer_id else None,
            "start": start.isoformat(),
            "end": end.isoformat(),
            "notes": (data.notes or "").strip() or None,
            "member_id": normalize_member_id(insurance.member_id) if insurance else None,
            "group_number": normalize_member_id(insurance.group_number) if insurance else None,
            "referring_contact": {
                "name": (contact.name or "").strip() or None,
                "email": (contact.email or "").lower() or None,
                "phone": _contact_phone(data),
            }
            if contact
            else None,
        }
    )


def _get_payer(db: Session, payer_id: UUID | None) -> Payer | None:
    if payer_id is None:
        return None
    payer = db.get(Payer, payer_id)
    if not payer:
        raise ValidationError(f"Unknown payer {payer_id}")
    return payer


def _book(db: Session, identity: PatientIdentity, data: BookingCreate, start, end, key: str) -> OperationResult:
    provider = availability_service.get_provider(db, data.provider_id)
    payer = _get_payer(db, data.payer_id)
    resolution = patient_service.resolve(db, identity)
    availability_service.ensure_slot_available(db, provider.id, start, end)

    insurance = data.insurance
    contact = data.referring_contact
    fields = enrichment_service.build_enrichment_fields(
        date_of_birth=identity.date_of_birth,
        phone=identity.phone,
        payer=payer,
        member_id=normalize_member_id(insurance.member_id) if insurance else None,
        group_number=normalize_member_id(insurance.group_number) if insurance else None,
        contact_name=contact.name if contact else None,
        contact_email=contact.email if contact else None,
        contact_phone=_contact_phone(data),
    )

    appointment = Appointment(
        patient_id=resolution.patient.id,
        provider_id=provider.id,
        payer_id=payer.id if payer else None,
        start_at=start,
        end_at=end,
        status=AppointmentStatus.PENDING.value,
        notes=(data.notes or "").strip() or None,
        idempotency_key=key,
        enrichment_fields=fields.model_dump(mode="json"),
        enrichment_status=EnrichmentStatus.PENDING.value,
    )
    db.add(appointment)
    db.flush()
    logger.info(
        "Booked appointment %s",
        appointment.id,
        extra=build_log_context(
            patient_id=resolution.patient.id,
            appointment_id=appointment.id,
            provider_id=provider.id,
        ),
    )
    return OperationResult(appointment, resolution.is_new)


def _sync_inline(db: Session, ehr: EhrClient, appointment: Appointment) -> None:
    """Best-effort external sync right after booking; never raises."""
    appointment_id = appointment.id
    # Runs on the app event loop; its short DB writes block the loop while they commit.
    try:
        run_async(
            sync_service.sync_appointment(db, ehr, appointment_id),
            timeout=settings.EHR_SYNC_TIMEOUT_SECONDS,
        )
    except Exception as exc:
        logger.exception("Inline sync failed for appointment %s", appointment_id)
        db.rollback()
        sync_service.mark_sync_failure(db, appointment_id, f"{type(exc).__name__}: inline sync aborted")
    db.refresh(appointment)


def create_booking(
    db: Session,
    data: BookingCreate,
    *,
    idempotency_key: str | None = None,
    ehr: EhrClient | None = None,
    sync: bool | None = None,
) -> BookingResult:
    """
    Create (or replay) a booking.

    Raises:
        ValidationError: bad input, unknown provider/payer, missing key
        SlotUnavailable: interval is outside the provider's availability
        SlotBooked: interval overlaps an active appointment
        IdempotencyKeyConflict: key reused for a different request
    """
    key = resolve_idempotency_key(idempotency_key, data.idempotency_key)
    identity = patient_service.normalize_identity(
        email=data.patient.email,
        first_name=data.patient.first_name,
        last_name=data.patient.last_name,
        date_of_birth=data.patient.date_of_birth,
        phone=data.patient.phone,
    )
    start, end = availability_service.validate_interval(data.start, data.end)
    fingerprint = build_fingerprint(identity, data, start, end)

    attempt = 0
    while True:
        attempt += 1
        try:
            result = idempotency_service.with_idempotency(
                db, key, fingerprint, lambda: _book(db, identity, data, start, end, key)
            )
            break
        except IntegrityError as exc:
            if attempt >= MAX_BOOKING_ATTEMPTS or not idempotency_service.is_patient_identity_violation(exc):
                raise
            logger.info("Patient created concurrently; retrying booking")

    if sync is None:
        sync = settings.EHR_SYNC_ON_BOOKING
    if not result.replayed and sync and ehr is not None:
        _sync_inline(db, ehr, result.appointment)

    return BookingResult(result.appointment, result.is_new_patient, result.replayed)


def get_booking(db: Session, appointment_id: UUID) -> Appointment:
    appointment = db.get(Appointment, appointment_id)
    if not appointment:
        raise NotFoundError(f"Booking {appointment_id} not found")
    return appointment
