"""Conflict checker - provider availability and double-booking prevention.

Effective availability for a provider-local date:
- recurring AvailabilityRules for that weekday
- that date's AvailabilityExceptions applied in order modify, add, block
  (modify replaces the day, add unions, block subtracts; null bounds = whole day)

The pre-check here is a fast path. Two concurrent bookings can both pass it;
the storage-level overlap guard on appointments decides the winner.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from typing import NamedTuple
from uuid import UUID
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy.orm import Session

from booking_sync.core.exceptions import SlotBooked, SlotUnavailable, ValidationError
from booking_sync.db.enums import ACTIVE_APPOINTMENT_STATUSES, AvailabilityExceptionKind
from booking_sync.db.models import (
    Appointment,
    AvailabilityException,
    AvailabilityRule,
    Provider,
)

logger = logging.getLogger(__name__)

DAY_SECONDS = 24 * 60 * 60
DEFAULT_TIMEZONE = "America/Denver"


class SlotCheck(str, Enum):
    OK = "ok"
    SLOT_UNAVAILABLE = "slot_unavailable"
    SLOT_BOOKED = "slot_booked"


class AvailabilityWindow(NamedTuple):
    """Bookable window. start/end are UTC; local_* are provider wall-clock."""
    start: datetime
    end: datetime
    local_start: time
    local_end: time


# =============================================================================
# Interval arithmetic (seconds since local midnight)
# =============================================================================

Span = tuple[int, int]


def _seconds(value: time) -> int:
    return value.hour * 3600 + value.minute * 60 + value.second


def _merge(spans: list[Span]) -> list[Span]:
    merged: list[Span] = []
    for start, end in sorted(s for s in spans if s[0] < s[1]):
        if merged and start <= merged[-1][1]:
            merged[-1] = (merged[-1][0], max(merged[-1][1], end))
        else:
            merged.append((start, end))
    return merged


def _subtract(spans: list[Span], cut: Span) -> list[Span]:
    result: list[Span] = []
    cut_start, cut_end = cut
    for start, end in spans:
        if cut_end <= start or cut_start >= end:
            result.append((start, end))
            continue
        if start < cut_start:
            result.append((start, cut_start))
        if cut_end < end:
            result.append((cut_end, end))
    return result


def _exception_span(exception: AvailabilityException) -> Span | None:
    """Span covered by an exception; None for an unusable one."""
    if exception.is_full_day:
        return (0, DAY_SECONDS)
    if exception.start_time is None or exception.end_time is None:
        return None
    start = _seconds(exception.start_time)
    end = _seconds(exception.end_time)
    if end == 0:
        end = DAY_SECONDS  # "until midnight"
    if end <= start:
        logger.warning("Ignoring availability exception %s with empty window", exception.id)
        return None
    return (start, end)


def effective_spans(
    rules: list[AvailabilityRule], exceptions: list[AvailabilityException]
) -> list[Span]:
    """Bookable spans for one date, in seconds since local midnight."""
    spans: list[Span] = [
        (_seconds(rule.start_time), _seconds(rule.end_time))
        for rule in rules
        if rule.is_recurring
    ]

    by_kind: dict[str, list[Span]] = {kind.value: [] for kind in AvailabilityExceptionKind}
    for exception in exceptions:
        span = _exception_span(exception)
        if span is not None and exception.kind in by_kind:
            by_kind[exception.kind].append(span)

    if by_kind[AvailabilityExceptionKind.MODIFY.value]:
        spans = list(by_kind[AvailabilityExceptionKind.MODIFY.value])
    spans.extend(by_kind[AvailabilityExceptionKind.ADD.value])
    spans = _merge(spans)
    for cut in by_kind[AvailabilityExceptionKind.BLOCK.value]:
        spans = _subtract(spans, cut)
    return spans


# =============================================================================
# Provider windows
# =============================================================================


def _get_timezone(name: str | None) -> ZoneInfo:
    """Get a ZoneInfo timezone with safe fallback."""
    if not name:
        return ZoneInfo(DEFAULT_TIMEZONE)
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown provider timezone %r, using %s", name, DEFAULT_TIMEZONE)
        return ZoneInfo(DEFAULT_TIMEZONE)


def _local_instant(day: date, seconds: int, tz: ZoneInfo) -> datetime:
    if seconds >= DAY_SECONDS:
        return datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)
    hours, remainder = divmod(seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    return datetime.combine(day, time(hours, minutes, secs), tzinfo=tz)


def get_provider(db: Session, provider_id: UUID) -> Provider:
    provider = db.get(Provider, provider_id)
    if not provider or not provider.is_active:
        raise ValidationError(f"Unknown provider {provider_id}")
    return provider


def _windows_for_dates(db: Session, provider: Provider, days: list[date]) -> list[AvailabilityWindow]:
    tz = _get_timezone(provider.timezone)
    weekdays = {day.weekday() for day in days}

    rules = (
        db.query(AvailabilityRule)
        .filter(
            AvailabilityRule.provider_id == provider.id,
            AvailabilityRule.day_of_week.in_(weekdays),
        )
        .all()
    )
    exceptions = (
        db.query(AvailabilityException)
        .filter(
            AvailabilityException.provider_id == provider.id,
            AvailabilityException.exception_date.in_(days),
        )
        .all()
    )

    windows: list[AvailabilityWindow] = []
    for day in days:
        day_rules = [r for r in rules if r.day_of_week == day.weekday()]
        day_exceptions = [e for e in exceptions if e.exception_date == day]
        for start, end in effective_spans(day_rules, day_exceptions):
            local_start = _local_instant(day, start, tz)
            local_end = _local_instant(day, end, tz)
            windows.append(
                AvailabilityWindow(
                    start=local_start.astimezone(timezone.utc),
                    end=local_end.astimezone(timezone.utc),
                    local_start=local_start.time(),
                    local_end=local_end.time(),
                )
            )
    return windows


def get_effective_windows(db: Session, provider_id: UUID, day: date) -> list[AvailabilityWindow]:
    """Effective availability for one provider-local date."""
    provider = get_provider(db, provider_id)
    return _windows_for_dates(db, provider, [day])


def _merge_windows(windows: list[AvailabilityWindow]) -> list[tuple[datetime, datetime]]:
    merged: list[tuple[datetime, datetime]] = []
    for window in sorted(windows, key=lambda w: w.start):
        if merged and window.start <= merged[-1][1]:
            merged[-1] = (merged[-1][0], max(merged[-1][1], window.end))
        else:
            merged.append((window.start, window.end))
    return merged


# =============================================================================
# Conflict checks
# =============================================================================


def validate_interval(start: datetime, end: datetime) -> tuple[datetime, datetime]:
    """Require aware datetimes with start < end; returns them in UTC."""
    if start.tzinfo is None or end.tzinfo is None:
        raise ValidationError("start and end must include a timezone offset")
    start = start.astimezone(timezone.utc)
    end = end.astimezone(timezone.utc)
    if start >= end:
        raise ValidationError("start must be before end")
    return start, end


def find_conflicting_appointments(
    db: Session,
    provider_id: UUID,
    start: datetime,
    end: datetime,
    exclude_appointment_id: UUID | None = None,
) -> list[Appointment]:
    """Slot-holding (pending/scheduled/error) appointments overlapping [start, end)."""
    query = db.query(Appointment).filter(
        Appointment.provider_id == provider_id,
        Appointment.status.in_([s.value for s in ACTIVE_APPOINTMENT_STATUSES]),
        Appointment.start_at < end,
        Appointment.end_at > start,
    )
    if exclude_appointment_id:
        query = query.filter(Appointment.id != exclude_appointment_id)
    return query.all()


def is_within_availability(
    db: Session, provider: Provider, start: datetime, end: datetime
) -> bool:
    tz = _get_timezone(provider.timezone)
    first_day = start.astimezone(tz).date()
    last_day = (end - timedelta(microseconds=1)).astimezone(tz).date()
    days = [first_day + timedelta(days=n) for n in range((last_day - first_day).days + 1)]
    merged = _merge_windows(_windows_for_dates(db, provider, days))
    return any(w_start <= start and end <= w_end for w_start, w_end in merged)


def check_availability(
    db: Session,
    provider_id: UUID,
    start: datetime,
    end: datetime,
) -> SlotCheck:
    """
    Is the provider free during [start, end)?

    Returns SLOT_UNAVAILABLE when the interval is not fully inside one
    effective window, SLOT_BOOKED when an active appointment overlaps it.
    """
    start, end = validate_interval(start, end)
    provider = get_provider(db, provider_id)

    if not is_within_availability(db, provider, start, end):
        return SlotCheck.SLOT_UNAVAILABLE
    if find_conflicting_appointments(db, provider_id, start, end):
        return SlotCheck.SLOT_BOOKED
    return SlotCheck.OK


def ensure_slot_available(db: Session, provider_id: UUID, start: datetime, end: datetime) -> None:
    """check_availability, raising SlotUnavailable / SlotBooked."""
    result = check_availability(db, provider_id, start, end)
    if result == SlotCheck.SLOT_UNAVAILABLE:
        raise SlotUnavailable("Requested time is outside the provider's availability")
    if result == SlotCheck.SLOT_BOOKED:
        raise SlotBooked("Requested time overlaps an existing appointment")
