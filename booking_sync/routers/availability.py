"""Availability router - effective provider availability for a date."""

from datetime import date
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from booking_sync.core.deps import get_db
from booking_sync.schemas.booking import AvailabilityWindowRead, EffectiveAvailabilityRead
from booking_sync.services import availability_service

router = APIRouter(prefix="/providers", tags=["availability"])


@router.get("/{provider_id}/availability", response_model=EffectiveAvailabilityRead)
def get_availability(
    provider_id: UUID,
    day: date = Query(..., alias="date", description="Provider-local date (YYYY-MM-DD)"),
    db: Session = Depends(get_db),
):
    """Effective availability (rules plus that day's exceptions) for one date."""
    provider = availability_service.get_provider(db, provider_id)
    windows = availability_service.get_effective_windows(db, provider_id, day)
    return EffectiveAvailabilityRead(
        provider_id=provider.id,
        date=day,
        timezone=provider.timezone,
        windows=[AvailabilityWindowRead(**window._asdict()) for window in windows],
    )
