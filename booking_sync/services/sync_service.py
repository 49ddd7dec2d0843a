"""External identity synchronizer and appointment sync.

ensure_external_client links a Patient to exactly one external client:
- already linked: no-op
- no client with the canonical email: create one (created_canonical)
- a client with that email is the same person and not linked to another
  local patient: reuse it (reused_existing)
- a client with that email is someone else (shared inbox): create a client
  under a plus-alias local+<patient_id>@domain (created_aliased)

Linkage is terminal. No database transaction is held open while waiting on
the external system: state is read into snapshots and committed first.
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from typing import NamedTuple
from uuid import UUID

from sqlalchemy.orm import Session

from booking_sync.core.exceptions import ExternalError, ExternalPermanent, NotFoundError
from booking_sync.core.structured_logging import build_log_context
from booking_sync.db.base import ensure_utc, utcnow
from booking_sync.db.enums import (
    AppointmentStatus,
    EnrichmentStatus,
    SyncAction,
    SyncReason,
    SyncStatus,
)
from booking_sync.db.models import Appointment, Patient, Provider
from booking_sync.schemas.ehr import ClientFields, EnrichmentFields, ExternalClient
from booking_sync.services import audit_service, enrichment_service, patient_service
from booking_sync.services.audit_service import AuditedCall, AuditRecord
from booking_sync.services.ehr_client import EhrClient
from booking_sync.services.http_service import RetryPolicy, SleepFn
from booking_sync.utils.normalization import build_email_alias, names_equal

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 500


class PatientSnapshot(NamedTuple):
    id: UUID
    canonical_email: str
    first_name: str
    last_name: str
    date_of_birth: date | None
    phone: str | None
    external_client_id: str | None


class AppointmentSnapshot(NamedTuple):
    id: UUID
    patient_id: UUID
    status: str
    start_at: datetime
    end_at: datetime
    external_appointment_id: str | None
    enrichment_fields: dict | None
    enrichment_status: str
    practitioner_id: str | None
    service_id: str | None


class SyncOutcome(NamedTuple):
    appointment_id: UUID
    status: str
    external_client_id: str | None
    external_appointment_id: str | None
    enrichment_status: str
    error: str | None = None


def _patient_snapshot(patient: Patient) -> PatientSnapshot:
    return PatientSnapshot(
        id=patient.id,
        canonical_email=patient.canonical_email,
        first_name=patient.first_name,
        last_name=patient.last_name,
        date_of_birth=patient.date_of_birth,
        phone=patient.phone,
        external_client_id=patient.external_client_id,
    )


def is_same_person(client: ExternalClient, patient: PatientSnapshot) -> bool:
    """
    Does an external client with the patient's email describe this patient?

    Names must match case-insensitively. Dates of birth must be equal; a
    date on only one side is a mismatch.
    """
    if not names_equal(client.first_name, patient.first_name):
        return False
    if not names_equal(client.last_name, patient.last_name):
        return False
    return client.date_of_birth == patient.date_of_birth


def is_linked_elsewhere(db: Session, client_id: str, patient_id: UUID) -> bool:
    """Is this external client already linked to a different local patient?"""
    other = (
        db.query(Patient.id)
        .filter(Patient.external_client_id == client_id, Patient.id != patient_id)
        .first()
    )
    return other is not None


# =============================================================================
# External client linkage
# =============================================================================


def _link_patient(db: Session, patient_id: UUID, client_id: str, alias: str | None) -> str:
    """Persist the linkage unless another worker linked the patient first."""
    updated = (
        db.query(Patient)
        .filter(Patient.id == patient_id, Patient.external_client_id.is_(None))
        .update(
            {
                "external_client_id": client_id,
                "external_email_alias": alias,
                "updated_at": utcnow(),
            },
            synchronize_session=False,
        )
    )
    db.commit()
    if updated:
        return client_id

    stored = patient_service.get_patient(db, patient_id)
    db.refresh(stored)
    stored_client_id = stored.external_client_id
    db.commit()
    logger.warning(
        "Patient %s was linked concurrently to %s; discarding %s",
        patient_id,
        stored_client_id,
        client_id,
    )
    return stored_client_id or client_id


async def _find_client(
    db: Session,
    ehr: EhrClient,
    email: str,
    patient: PatientSnapshot,
    appointment_id: UUID | None,
    *,
    policy: RetryPolicy | None,
    sleep: SleepFn | None,
) -> tuple[ExternalClient | None, bool]:
    """
    Look up a client by email. Returns (client, reusable).

    A found client is reusable only when it describes this patient and no
    other local patient is already linked to it.
    """
    reusable = False

    def _describe(found: ExternalClient | None) -> AuditRecord:
        nonlocal reusable
        if found is None:
            return AuditRecord(
                action=SyncAction.FIND_CLIENT,
                status=SyncStatus.SUCCESS,
                response={"found": False},
            )
        matches = is_same_person(found, patient)
        linked_elsewhere = is_linked_elsewhere(db, found.client_id, patient.id)
        reusable = matches and not linked_elsewhere
        response = {
            "found": True,
            "ClientId": found.client_id,
            "matches_patient": matches,
            "linked_elsewhere": linked_elsewhere,
        }
        if reusable:
            return AuditRecord(
                action=SyncAction.FIND_CLIENT,
                status=SyncStatus.SUCCESS,
                reason=SyncReason.REUSED_EXISTING,
                external_client_id=found.client_id,
                response=response,
            )
        return AuditRecord(
            action=SyncAction.FIND_CLIENT,
            status=SyncStatus.DUPLICATE_DETECTED,
            reason=SyncReason.EMAIL_COLLISION,
            response=response,
        )

    found, _ = await audit_service.run_audited(
        db,
        AuditedCall(
            action=SyncAction.FIND_CLIENT,
            patient_id=patient.id,
            appointment_id=appointment_id,
            payload={"email": email},
        ),
        lambda: ehr.find_client_by_email(email),
        describe=_describe,
        policy=policy,
        sleep=sleep,
    )
    return found, reusable


async def _create_client(
    db: Session,
    ehr: EhrClient,
    fields: ClientFields,
    reason: SyncReason,
    patient: PatientSnapshot,
    appointment_id: UUID | None,
    *,
    policy: RetryPolicy | None,
    sleep: SleepFn | None,
) -> str:
    client_id, _ = await audit_service.run_audited(
        db,
        AuditedCall(
            action=SyncAction.CREATE_CLIENT,
            patient_id=patient.id,
            appointment_id=appointment_id,
            payload=fields.to_wire(),
        ),
        lambda: ehr.create_client(fields),
        describe=lambda created: AuditRecord(
            action=SyncAction.CREATE_CLIENT,
            status=SyncStatus.SUCCESS,
            reason=reason,
            external_client_id=created,
            response={"ClientId": created},
        ),
        policy=policy,
        sleep=sleep,
    )
    return client_id


async def ensure_external_client(
    db: Session,
    ehr: EhrClient,
    patient_id: UUID,
    *,
    appointment_id: UUID | None = None,
    policy: RetryPolicy | None = None,
    sleep: SleepFn | None = None,
) -> str:
    """
    Return the patient's external client id, creating or reusing one as needed.

    Raises:
        ExternalError: the external system failed (already audit-logged)
    """
    patient = _patient_snapshot(patient_service.get_patient(db, patient_id))
    db.commit()
    if patient.external_client_id:
        return patient.external_client_id

    existing, reusable = await _find_client(
        db, ehr, patient.canonical_email, patient, appointment_id, policy=policy, sleep=sleep
    )
    if existing and reusable:
        return _link_patient(db, patient.id, existing.client_id, None)

    alias: str | None = None
    email = patient.canonical_email
    reason = SyncReason.CREATED_CANONICAL
    if existing:
        # Shared inbox: the email belongs to someone else, externally or locally.
        alias = build_email_alias(patient.canonical_email, str(patient.id))
        email = alias
        reason = SyncReason.CREATED_ALIASED
        logger.info(
            "Email collision for patient %s; using alias",
            patient.id,
            extra=build_log_context(patient_id=patient.id, appointment_id=appointment_id),
        )
        # A previous run may have created the aliased client without persisting the link.
        aliased, alias_reusable = await _find_client(
            db, ehr, alias, patient, appointment_id, policy=policy, sleep=sleep
        )
        if aliased and alias_reusable:
            return _link_patient(db, patient.id, aliased.client_id, alias)

    fields = ClientFields(
        email=email,
        first_name=patient.first_name,
        last_name=patient.last_name,
        date_of_birth=patient.date_of_birth,
        phone=patient.phone,
    )
    client_id = await _create_client(
        db, ehr, fields, reason, patient, appointment_id, policy=policy, sleep=sleep
    )
    return _link_patient(db, patient.id, client_id, alias)


# =============================================================================
# Appointment sync
# =============================================================================


def get_appointment(db: Session, appointment_id: UUID) -> Appointment:
    appointment = db.get(Appointment, appointment_id)
    if not appointment:
        raise NotFoundError(f"Appointment {appointment_id} not found")
    return appointment


def _appointment_snapshot(db: Session, appointment: Appointment) -> AppointmentSnapshot:
    provider = db.get(Provider, appointment.provider_id)
    return AppointmentSnapshot(
        id=appointment.id,
        patient_id=appointment.patient_id,
        status=appointment.status,
        start_at=ensure_utc(appointment.start_at),
        end_at=ensure_utc(appointment.end_at),
        external_appointment_id=appointment.external_appointment_id,
        enrichment_fields=appointment.enrichment_fields,
        enrichment_status=appointment.enrichment_status,
        practitioner_id=provider.external_practitioner_id if provider else None,
        service_id=provider.external_service_id if provider else None,
    )


def _update_appointment(db: Session, appointment_id: UUID, values: dict, *criteria) -> int:
    values = {**values, "updated_at": utcnow()}
    updated = (
        db.query(Appointment)
        .filter(Appointment.id == appointment_id, *criteria)
        .update(values, synchronize_session=False)
    )
    db.commit()
    return updated


def _mark_attempt(db: Session, appointment_id: UUID) -> None:
    _update_appointment(
        db,
        appointment_id,
        {
            "sync_attempts": Appointment.sync_attempts + 1,
            "last_sync_attempt_at": utcnow(),
        },
    )


def mark_sync_failure(db: Session, appointment_id: UUID, error: str, *, permanent: bool = False) -> None:
    """
    Record a failed sync attempt.

    Transient failures leave the appointment pending for reconciliation;
    permanent ones move a still-pending appointment to error.
    """
    values: dict = {"last_sync_error": error[:MAX_ERROR_LENGTH]}
    if permanent and _update_appointment(
        db,
        appointment_id,
        {**values, "status": AppointmentStatus.ERROR.value},
        Appointment.status == AppointmentStatus.PENDING.value,
        Appointment.external_appointment_id.is_(None),
    ):
        return
    _update_appointment(db, appointment_id, values)


def _outcome(db: Session, appointment_id: UUID, error: str | None = None) -> SyncOutcome:
    appointment = get_appointment(db, appointment_id)
    db.refresh(appointment)
    patient = db.get(Patient, appointment.patient_id)
    outcome = SyncOutcome(
        appointment_id=appointment.id,
        status=appointment.status,
        external_client_id=patient.external_client_id if patient else None,
        external_appointment_id=appointment.external_appointment_id,
        enrichment_status=appointment.enrichment_status,
        error=error,
    )
    db.commit()
    return outcome


async def _create_external_appointment(
    db: Session,
    ehr: EhrClient,
    snapshot: AppointmentSnapshot,
    client_id: str,
    *,
    policy: RetryPolicy | None,
    sleep: SleepFn | None,
) -> str:
    if not snapshot.practitioner_id or not snapshot.service_id:
        raise ExternalPermanent("Provider has no external practitioner/service mapping")

    external_id, _ = await audit_service.run_audited(
        db,
        AuditedCall(
            action=SyncAction.CREATE_APPOINTMENT,
            patient_id=snapshot.patient_id,
            appointment_id=snapshot.id,
            external_client_id=client_id,
            payload={
                "ClientId": client_id,
                "PractitionerId": snapshot.practitioner_id,
                "ServiceId": snapshot.service_id,
                "StartDateIso": snapshot.start_at.isoformat(),
                "EndDateIso": snapshot.end_at.isoformat(),
            },
        ),
        lambda: ehr.create_appointment(
            client_id,
            snapshot.practitioner_id,
            snapshot.service_id,
            snapshot.start_at,
            snapshot.end_at,
        ),
        describe=lambda created: AuditRecord(
            action=SyncAction.CREATE_APPOINTMENT,
            status=SyncStatus.SUCCESS,
            response={"AppointmentId": created},
        ),
        policy=policy,
        sleep=sleep,
    )
    _update_appointment(
        db,
        snapshot.id,
        {
            "external_appointment_id": external_id,
            "status": AppointmentStatus.SCHEDULED.value,
            "last_sync_error": None,
        },
        Appointment.external_appointment_id.is_(None),
    )
    return external_id


async def sync_appointment(
    db: Session,
    ehr: EhrClient,
    appointment_id: UUID,
    *,
    policy: RetryPolicy | None = None,
    sleep: SleepFn | None = None,
) -> SyncOutcome:
    """
    Drive one committed appointment through external sync.

    ensure client → create external appointment (if missing) → enrichment.
    Safe to re-run: linked clients and appointments are not re-created and
    enrichment only writes fields that differ. External failures are recorded
    on the appointment and in the audit trail, never raised.
    """
    snapshot = _appointment_snapshot(db, get_appointment(db, appointment_id))
    db.commit()

    if snapshot.status not in (AppointmentStatus.PENDING.value, AppointmentStatus.SCHEDULED.value):
        logger.info("Skipping sync for appointment %s in status %s", snapshot.id, snapshot.status)
        return _outcome(db, snapshot.id)

    _mark_attempt(db, snapshot.id)

    try:
        client_id = await ensure_external_client(
            db, ehr, snapshot.patient_id, appointment_id=snapshot.id, policy=policy, sleep=sleep
        )
        if snapshot.external_appointment_id is None:
            await _create_external_appointment(
                db, ehr, snapshot, client_id, policy=policy, sleep=sleep
            )
    except ExternalError as exc:
        error = f"{exc.kind}: {exc.message}"
        mark_sync_failure(db, snapshot.id, error, permanent=isinstance(exc, ExternalPermanent))
        logger.warning(
            "External sync failed for appointment %s (%s)",
            snapshot.id,
            exc.kind,
            extra=build_log_context(appointment_id=snapshot.id, patient_id=snapshot.patient_id),
        )
        return _outcome(db, snapshot.id, error)

    if snapshot.enrichment_status != EnrichmentStatus.COMPLETE.value:
        fields = EnrichmentFields.model_validate(snapshot.enrichment_fields or {})
        result = await enrichment_service.enrich(
            db,
            ehr,
            snapshot.patient_id,
            snapshot.id,
            fields,
            client_id=client_id,
            policy=policy,
            sleep=sleep,
        )
        if result.error:
            _update_appointment(db, snapshot.id, {"last_sync_error": result.error[:MAX_ERROR_LENGTH]})
            return _outcome(db, snapshot.id, result.error)

    return _outcome(db, snapshot.id)
