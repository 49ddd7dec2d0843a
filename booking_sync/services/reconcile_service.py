"""Reconciler - re-drive appointments whose external sync did not finish.

Candidates:
- pending with no external appointment id
- scheduled with enrichment not complete
- error (only when include_errors is set; re-activated to pending first)

Each row is claimed with a conditional update of last_sync_attempt_at so
concurrent reconcilers do not drive the same appointment. Safe to re-run.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from booking_sync.core.config import settings
from booking_sync.db.base import utcnow
from booking_sync.db.enums import AppointmentStatus, EnrichmentStatus
from booking_sync.db.models import Appointment
from booking_sync.services import sync_service
from booking_sync.services.ehr_client import EhrClient
from booking_sync.services.http_service import RetryPolicy, SleepFn

logger = logging.getLogger(__name__)


@dataclass
class ReconcileSummary:
    examined: int = 0
    synced: int = 0
    still_pending: int = 0
    failed: int = 0
    skipped: int = 0
    errors: int = 0
    appointment_ids: list[UUID] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "examined": self.examined,
            "synced": self.synced,
            "still_pending": self.still_pending,
            "failed": self.failed,
            "skipped": self.skipped,
            "errors": self.errors,
        }


def _candidate_filter(include_errors: bool):
    conditions = [
        and_(
            Appointment.status == AppointmentStatus.PENDING.value,
            Appointment.external_appointment_id.is_(None),
        ),
        and_(
            Appointment.status == AppointmentStatus.SCHEDULED.value,
            Appointment.enrichment_status != EnrichmentStatus.COMPLETE.value,
        ),
    ]
    if include_errors:
        conditions.append(Appointment.status == AppointmentStatus.ERROR.value)
    return or_(*conditions)


def _lease_filter(now: datetime):
    expired = now - timedelta(seconds=settings.RECONCILE_LEASE_SECONDS)
    return or_(
        Appointment.last_sync_attempt_at.is_(None),
        Appointment.last_sync_attempt_at < expired,
    )


def find_candidates(
    db: Session,
    *,
    limit: int,
    now: datetime,
    include_errors: bool = False,
) -> list[UUID]:
    """Ids of appointments due for reconciliation, oldest first."""
    cutoff = now - timedelta(seconds=settings.RECONCILE_GRACE_SECONDS)
    rows = (
        db.query(Appointment.id)
        .filter(
            _candidate_filter(include_errors),
            Appointment.created_at <= cutoff,
            Appointment.sync_attempts < settings.RECONCILE_MAX_ATTEMPTS,
            _lease_filter(now),
        )
        .order_by(Appointment.created_at)
        .limit(limit)
        .all()
    )
    return [row.id for row in rows]


def claim(db: Session, appointment_id: UUID, now: datetime, *, force: bool = False) -> bool:
    """Take the lease on one appointment. False when another worker holds it."""
    query = db.query(Appointment).filter(Appointment.id == appointment_id)
    if not force:
        query = query.filter(_lease_filter(now))
    claimed = query.update({"last_sync_attempt_at": now}, synchronize_session=False)
    db.commit()
    return bool(claimed)


def reactivate(db: Session, appointment_id: UUID) -> bool:
    """
    Move an errored appointment back to pending.

    The slot never left the appointment, so this cannot collide with
    another booking. False when the row is no longer in error.
    """
    updated = (
        db.query(Appointment)
        .filter(
            Appointment.id == appointment_id,
            Appointment.status == AppointmentStatus.ERROR.value,
        )
        .update(
            {"status": AppointmentStatus.PENDING.value, "updated_at": utcnow()},
            synchronize_session=False,
        )
    )
    db.commit()
    return bool(updated)


def _count(summary: ReconcileSummary, outcome: sync_service.SyncOutcome) -> None:
    if outcome.status == AppointmentStatus.ERROR.value:
        summary.failed += 1
    elif (
        outcome.status == AppointmentStatus.SCHEDULED.value
        and outcome.enrichment_status == EnrichmentStatus.COMPLETE.value
    ):
        summary.synced += 1
    elif outcome.status in (AppointmentStatus.PENDING.value, AppointmentStatus.SCHEDULED.value):
        summary.still_pending += 1
    else:
        summary.skipped += 1


async def reconcile_pending(
    db: Session,
    ehr: EhrClient,
    *,
    limit: int | None = None,
    now: datetime | None = None,
    include_errors: bool = False,
    appointment_id: UUID | None = None,
    policy: RetryPolicy | None = None,
    sleep: SleepFn | None = None,
) -> ReconcileSummary:
    """
    Run one reconciliation pass.

    A named appointment bypasses the grace period, attempt cap and lease.
    Unexpected per-row failures are logged and counted; the pass continues.
    """
    now = now or utcnow()
    summary = ReconcileSummary()

    if appointment_id is not None:
        ids = [sync_service.get_appointment(db, appointment_id).id]
        force = True
    else:
        ids = find_candidates(
            db,
            limit=limit or settings.RECONCILE_BATCH_SIZE,
            now=now,
            include_errors=include_errors,
        )
        force = False
    db.commit()

    for candidate_id in ids:
        summary.examined += 1
        summary.appointment_ids.append(candidate_id)
        try:
            if not claim(db, candidate_id, now, force=force):
                summary.skipped += 1
                continue
            appointment = sync_service.get_appointment(db, candidate_id)
            status = appointment.status
            db.commit()
            if status == AppointmentStatus.ERROR.value:
                if not (include_errors or force) or not reactivate(db, candidate_id):
                    summary.skipped += 1
                    continue
            outcome = await sync_service.sync_appointment(
                db, ehr, candidate_id, policy=policy, sleep=sleep
            )
        except Exception:
            db.rollback()
            summary.errors += 1
            logger.exception("Reconciliation failed for appointment %s", candidate_id)
            continue
        _count(summary, outcome)

    logger.info("Reconciliation pass finished: %s", summary.as_dict())
    return summary
