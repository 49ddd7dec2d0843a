"""Bookings router - create bookings and read their sync state.

Endpoints are sync functions: FastAPI runs them in a worker thread, which
is where run_async expects inline external sync to start from.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, Header, Request, Response
from sqlalchemy.orm import Session

from booking_sync.core.config import settings
from booking_sync.core.deps import get_db, get_ehr_client
from booking_sync.core.rate_limit import limiter
from booking_sync.db.base import ensure_utc
from booking_sync.schemas.booking import BookingCreate, BookingRead, BookingStatusRead
from booking_sync.services import booking_service
from booking_sync.services.ehr_client import EhrClient

router = APIRouter(prefix="/bookings", tags=["bookings"])


@router.post("", response_model=BookingRead, status_code=201)
@limiter.limit(settings.RATE_LIMIT_BOOKING)
def create_booking(
    data: BookingCreate,
    request: Request,
    response: Response,
    idempotency_key: str | None = Header(None, alias="Idempotency-Key"),
    db: Session = Depends(get_db),
    ehr: EhrClient = Depends(get_ehr_client),
):
    """
    Book an appointment.

    The booking commits before any external call; external sync failures are
    reported through GET /bookings/{id}, never as a booking error. Replays of
    the same idempotency key return 200 with the original appointment.
    """
    result = booking_service.create_booking(db, data, idempotency_key=idempotency_key, ehr=ehr)
    if result.replayed:
        response.status_code = 200
    appointment = result.appointment
    return BookingRead(
        appointment_id=appointment.id,
        patient_id=appointment.patient_id,
        external_appointment_id=appointment.external_appointment_id,
        status=appointment.status,
        is_new_patient=result.is_new_patient,
        replayed=result.replayed,
    )


@router.get("/{appointment_id}", response_model=BookingStatusRead)
def get_booking(appointment_id: UUID, db: Session = Depends(get_db)):
    """Booking with its external sync state."""
    appointment = booking_service.get_booking(db, appointment_id)
    return BookingStatusRead(
        appointment_id=appointment.id,
        patient_id=appointment.patient_id,
        provider_id=appointment.provider_id,
        payer_id=appointment.payer_id,
        start=ensure_utc(appointment.start_at),
        end=ensure_utc(appointment.end_at),
        status=appointment.status,
        external_appointment_id=appointment.external_appointment_id,
        enrichment_status=appointment.enrichment_status,
        pending_external_sync=appointment.pending_external_sync,
        sync_attempts=appointment.sync_attempts,
        last_sync_error=appointment.last_sync_error,
        created_at=ensure_utc(appointment.created_at),
    )
