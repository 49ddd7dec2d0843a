"""Idempotency guard for booking creation.

A caller-supplied key scopes one logical booking. The first use runs the
operation and stores (key, fingerprint, appointment_id) in the same
transaction; replays return the stored appointment without side effects.
Concurrent first uses race on the unique key and the loser replays.
"""

from __future__ import annotations

import hashlib
import logging
from typing import Callable, NamedTuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from booking_sync.core.exceptions import IdempotencyKeyConflict, NotFoundError, SlotBooked
from booking_sync.db.models import Appointment, IdempotencyRecord
from booking_sync.db.models.appointments import OVERLAP_CONSTRAINT_MARKER
from booking_sync.services.audit_service import canonical_json

logger = logging.getLogger(__name__)

PATIENT_IDENTITY_MARKER = "uq_patients_strong_identity"


class OperationResult(NamedTuple):
    """What the guarded operation produced (flushed, not committed)."""
    appointment: Appointment
    is_new_patient: bool


class IdempotentResult(NamedTuple):
    appointment: Appointment
    is_new_patient: bool
    replayed: bool


def compute_fingerprint(request: dict) -> str:
    """sha256 of the canonical JSON of a normalized request."""
    return hashlib.sha256(canonical_json(request).encode()).hexdigest()


def _violation_text(exc: IntegrityError) -> str:
    return str(exc.orig if exc.orig is not None else exc).lower()


def is_overlap_violation(exc: IntegrityError) -> bool:
    return OVERLAP_CONSTRAINT_MARKER in _violation_text(exc)


def is_patient_identity_violation(exc: IntegrityError) -> bool:
    return PATIENT_IDENTITY_MARKER in _violation_text(exc)


def get_record(db: Session, key: str) -> IdempotencyRecord | None:
    return db.query(IdempotencyRecord).filter(IdempotencyRecord.idempotency_key == key).first()


def _replay(db: Session, record: IdempotencyRecord, fingerprint: str) -> IdempotentResult:
    if record.request_fingerprint != fingerprint:
        raise IdempotencyKeyConflict(
            "Idempotency key was already used for a different booking request"
        )
    appointment = db.get(Appointment, record.appointment_id)
    if appointment is None:
        raise NotFoundError(f"Appointment {record.appointment_id} for idempotency key is gone")
    logger.info("Replaying booking %s for idempotency key", appointment.id)
    return IdempotentResult(appointment, is_new_patient=False, replayed=True)


def with_idempotency(
    db: Session,
    key: str,
    fingerprint: str,
    operation: Callable[[], OperationResult],
) -> IdempotentResult:
    """
    Run `operation` at most once per key.

    - stored key, same fingerprint: replay the stored appointment
    - stored key, different fingerprint: IdempotencyKeyConflict
    - first use: run, store the record, commit everything together
    - lost a race on the key: roll back and replay the winner
    - storage overlap guard fired: SlotBooked

    Other IntegrityErrors propagate after rollback.
    """
    existing = get_record(db, key)
    if existing:
        return _replay(db, existing, fingerprint)

    try:
        result = operation()
        db.add(
            IdempotencyRecord(
                idempotency_key=key,
                request_fingerprint=fingerprint,
                appointment_id=result.appointment.id,
            )
        )
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        existing = get_record(db, key)
        if existing:
            logger.info("Concurrent booking with the same idempotency key; replaying winner")
            return _replay(db, existing, fingerprint)
        if is_overlap_violation(exc):
            raise SlotBooked("Requested time overlaps an existing appointment") from exc
        raise
    except Exception:
        db.rollback()
        raise

    db.refresh(result.appointment)
    return IdempotentResult(result.appointment, result.is_new_patient, replayed=False)
