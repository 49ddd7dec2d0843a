from datetime import date

import pytest
from sqlalchemy.orm import Session

from booking_sync.core.exceptions import NotFoundError, ValidationError
from booking_sync.db.models import Patient
from booking_sync.services import patient_service
from booking_sync.services.patient_service import normalize_identity


def _identity(**overrides):
    fields = {
        "email": "Jane@Example.com",
        "first_name": "Jane",
        "last_name": "Doe",
        "date_of_birth": "1990-04-01",
        "phone": "303-555-0100",
    }
    fields.update(overrides)
    return normalize_identity(**fields)


def test_normalize_identity():
    identity = _identity(first_name="  Jane ")
    assert identity.email == "jane@example.com"
    assert identity.first_name == "Jane"
    assert identity.date_of_birth == date(1990, 4, 1)
    assert identity.phone == "3035550100"


@pytest.mark.parametrize(
    "overrides",
    [
        {"email": ""},
        {"email": "not-an-email"},
        {"first_name": "  "},
        {"last_name": None},
        {"date_of_birth": "31/31/1990"},
        {"phone": "12345"},
    ],
)
def test_normalize_identity_rejects_bad_input(overrides):
    with pytest.raises(ValidationError):
        _identity(**overrides)


def test_resolve_creates_then_reuses_on_strong_match(db: Session):
    first = patient_service.resolve(db, _identity())
    db.commit()
    assert first.is_new

    second = patient_service.resolve(db, _identity(email=" JANE@example.com", first_name="jane"))
    assert not second.is_new
    assert second.patient.id == first.patient.id
    assert db.query(Patient).count() == 1


def test_resolve_shared_email_creates_distinct_patient(db: Session):
    jane = patient_service.resolve(db, _identity()).patient
    db.commit()

    john = patient_service.resolve(
        db, _identity(first_name="John", date_of_birth="1985-02-02")
    )
    db.commit()
    assert john.is_new
    assert john.patient.id != jane.id
    assert john.patient.canonical_email == jane.canonical_email


def test_resolve_different_dob_is_a_different_person(db: Session):
    patient_service.resolve(db, _identity())
    db.commit()
    other = patient_service.resolve(db, _identity(date_of_birth="1991-04-01"))
    assert other.is_new


def test_fallback_match_without_dob_uses_phone(db: Session):
    existing = patient_service.resolve(db, _identity(date_of_birth=None)).patient
    db.commit()

    match = patient_service.resolve(db, _identity(date_of_birth=None, phone="(303) 555-0100"))
    assert not match.is_new
    assert match.patient.id == existing.id


def test_fallback_requires_phone(db: Session):
    patient_service.resolve(db, _identity(date_of_birth=None))
    db.commit()
    result = patient_service.resolve(db, _identity(date_of_birth=None, phone=None))
    assert result.is_new


def test_ambiguous_fallback_creates_new_patient(db: Session):
    for _ in range(2):
        db.add(
            Patient(
                canonical_email="jane@example.com",
                first_name="Jane",
                last_name="Doe",
                phone="3035550100",
            )
        )
    db.commit()

    result = patient_service.resolve(db, _identity(date_of_birth=None))
    assert result.is_new
    assert db.query(Patient).count() == 3


def test_resolve_never_rewrites_existing_identity(db: Session):
    patient = patient_service.resolve(db, _identity(phone=None)).patient
    db.commit()
    patient_service.resolve(db, _identity(phone="720-555-0199"))
    db.refresh(patient)
    assert patient.phone is None


def test_get_patient_not_found(db: Session):
    import uuid

    with pytest.raises(NotFoundError):
        patient_service.get_patient(db, uuid.uuid4())
