"""Patient resolver - tiered identity matching.

Tiers, first hit wins:
1. strong: email + first + last + date of birth
2. fallback (submission has no dob): email + first + last + phone,
   exactly one candidate
3. none: create a new Patient

Never merges rows and never rewrites an existing patient's identity fields.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import NamedTuple
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session

from booking_sync.core.exceptions import NotFoundError, ValidationError
from booking_sync.db.models import Patient
from booking_sync.utils.normalization import (
    normalize_email,
    normalize_name,
    normalize_phone,
    parse_date_of_birth,
    split_email,
)

logger = logging.getLogger(__name__)


class PatientIdentity(NamedTuple):
    """Normalized identity fields used for matching."""
    email: str
    first_name: str
    last_name: str
    date_of_birth: date | None
    phone: str | None


class Resolution(NamedTuple):
    patient: Patient
    is_new: bool


def normalize_identity(
    *,
    email: str | None,
    first_name: str | None,
    last_name: str | None,
    date_of_birth: str | date | None = None,
    phone: str | None = None,
) -> PatientIdentity:
    """
    Normalize submitted demographics.

    Raises:
        ValidationError: missing or malformed field (nothing has been written)
    """
    canonical_email = normalize_email(email)
    if not canonical_email:
        raise ValidationError("Patient email is required")
    try:
        split_email(canonical_email)
    except ValueError as exc:
        raise ValidationError("Patient email is invalid") from exc

    first = normalize_name(first_name)
    last = normalize_name(last_name)
    if not first or not last:
        raise ValidationError("Patient first and last name are required")

    try:
        dob = parse_date_of_birth(date_of_birth)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc

    try:
        digits = normalize_phone(phone)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc

    return PatientIdentity(
        email=canonical_email,
        first_name=first,
        last_name=last,
        date_of_birth=dob,
        phone=digits,
    )


def _identity_query(db: Session, identity: PatientIdentity):
    return db.query(Patient).filter(
        Patient.canonical_email == identity.email,
        func.lower(Patient.first_name) == identity.first_name.lower(),
        func.lower(Patient.last_name) == identity.last_name.lower(),
    )


def find_strong_match(db: Session, identity: PatientIdentity) -> Patient | None:
    """email + first + last + dob all equal."""
    if identity.date_of_birth is None:
        return None
    return (
        _identity_query(db, identity)
        .filter(Patient.date_of_birth == identity.date_of_birth)
        .first()
    )


def find_fallback_match(db: Session, identity: PatientIdentity) -> Patient | None:
    """
    email + first + last + phone, only for submissions without a dob.

    Two or more candidates is ambiguous and fails closed (no match).
    """
    if identity.date_of_birth is not None or identity.phone is None:
        return None
    candidates = (
        _identity_query(db, identity).filter(Patient.phone == identity.phone).limit(2).all()
    )
    if len(candidates) > 1:
        logger.warning("Ambiguous fallback patient match; creating a new patient")
        return None
    return candidates[0] if candidates else None


def resolve(db: Session, identity: PatientIdentity) -> Resolution:
    """
    Return the canonical patient for `identity`, creating one when no tier matches.

    A new patient is added and flushed but not committed; the caller owns
    the transaction so the insert commits (or rolls back) with the booking.
    """
    patient = find_strong_match(db, identity)
    if patient:
        return Resolution(patient, False)

    patient = find_fallback_match(db, identity)
    if patient:
        return Resolution(patient, False)

    patient = Patient(
        canonical_email=identity.email,
        first_name=identity.first_name,
        last_name=identity.last_name,
        date_of_birth=identity.date_of_birth,
        phone=identity.phone,
    )
    db.add(patient)
    db.flush()
    logger.info("Created patient %s", patient.id)
    return Resolution(patient, True)


def get_patient(db: Session, patient_id: UUID) -> Patient:
    patient = db.get(Patient, patient_id)
    if not patient:
        raise NotFoundError(f"Patient {patient_id} not found")
    return patient
