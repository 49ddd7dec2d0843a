"""Enrichment pipeline - push non-identity fields onto the external client.

Read-modify-write: every attempt re-fetches the external record right
before writing, merges our fields over it and writes it back, so fields set
elsewhere are never clobbered. The whole read-modify-write is one audited
external call (send_enrichment) retried under the shared policy.
"""

from __future__ import annotations

import logging
import re
from datetime import date
from typing import Any, NamedTuple
from uuid import UUID

from sqlalchemy.orm import Session

from booking_sync.core.exceptions import ExternalError
from booking_sync.db.base import utcnow
from booking_sync.db.enums import EnrichmentStatus, SyncAction, SyncStatus
from booking_sync.db.models import Appointment, Payer
from booking_sync.schemas.ehr import EnrichmentFields, ReferringContact
from booking_sync.services import audit_service, patient_service
from booking_sync.services.audit_service import AuditedCall, AuditRecord
from booking_sync.services.ehr_client import EhrClient
from booking_sync.services.http_service import RetryPolicy, SleepFn

logger = logging.getLogger(__name__)

_DIGITS = re.compile(r"\D")


class EnrichmentResult(NamedTuple):
    status: SyncStatus
    changed_fields: list[str]
    attempts: int = 0
    error: str | None = None


def build_enrichment_fields(
    *,
    date_of_birth: date | None = None,
    phone: str | None = None,
    payer: Payer | None = None,
    member_id: str | None = None,
    group_number: str | None = None,
    contact_name: str | None = None,
    contact_email: str | None = None,
    contact_phone: str | None = None,
) -> EnrichmentFields:
    """Assemble the enrichment field set captured at booking time."""
    contact = None
    if contact_name or contact_email or contact_phone:
        contact = ReferringContact(name=contact_name, email=contact_email, phone=contact_phone)
    return EnrichmentFields(
        date_of_birth=date_of_birth,
        phone=phone,
        insurance_company_name=payer.insurance_company_name if payer else None,
        member_id=member_id,
        group_number=group_number,
        referring_contact=contact,
    )


def _comparable(key: str, value: Any) -> str:
    if value is None:
        return ""
    text = str(value).strip()
    if key.endswith("Phone"):
        return _DIGITS.sub("", text)[-10:]
    if key == "DateOfBirth":
        return text[:10]
    return text.lower()


def merge_client_record(
    current: dict[str, Any], updates: dict[str, Any]
) -> tuple[dict[str, Any], list[str]]:
    """
    Overlay `updates` on the fetched record.

    Returns (merged_record, changed_field_names); unchanged fields are not
    reported and untouched fields keep their external values.
    """
    merged = dict(current)
    changed: list[str] = []
    for key, value in updates.items():
        if _comparable(key, current.get(key)) == _comparable(key, value):
            continue
        merged[key] = value
        changed.append(key)
    return merged, sorted(changed)


def _set_enrichment_status(db: Session, appointment_id: UUID | None, status: EnrichmentStatus) -> None:
    if appointment_id is None:
        return
    db.query(Appointment).filter(Appointment.id == appointment_id).update(
        {"enrichment_status": status.value, "updated_at": utcnow()},
        synchronize_session=False,
    )
    db.commit()


async def enrich(
    db: Session,
    ehr: EhrClient,
    patient_id: UUID,
    appointment_id: UUID | None,
    fields: EnrichmentFields,
    *,
    client_id: str | None = None,
    policy: RetryPolicy | None = None,
    sleep: SleepFn | None = None,
) -> EnrichmentResult:
    """
    Push `fields` to the patient's external client.

    The patient must already be linked. Failures are recorded and returned,
    not raised.
    """
    if client_id is None:
        client_id = patient_service.get_patient(db, patient_id).external_client_id
        db.commit()
    if not client_id:
        _set_enrichment_status(db, appointment_id, EnrichmentStatus.FAILED)
        return EnrichmentResult(SyncStatus.FAILED, [], error="Patient has no external client")

    updates = fields.to_wire()
    if not updates:
        logger.info("No enrichment fields for appointment %s", appointment_id)
        _set_enrichment_status(db, appointment_id, EnrichmentStatus.COMPLETE)
        return EnrichmentResult(SyncStatus.SUCCESS, [])

    async def _read_modify_write() -> list[str]:
        current = await ehr.get_client(client_id)
        merged, changed = merge_client_record(current, updates)
        if changed:
            await ehr.update_client(client_id, merged)
        return changed

    def _describe(changed: list[str]) -> AuditRecord:
        return AuditRecord(
            action=SyncAction.SEND_ENRICHMENT,
            status=SyncStatus.SUCCESS,
            response={"changed_fields": changed, "write_skipped": not changed},
        )

    call = AuditedCall(
        action=SyncAction.SEND_ENRICHMENT,
        patient_id=patient_id,
        appointment_id=appointment_id,
        external_client_id=client_id,
        payload={
            "ClientId": client_id,
            "schema_version": fields.schema_version,
            "fields": updates,
        },
    )
    try:
        changed, attempts = await audit_service.run_audited(
            db, call, _read_modify_write, describe=_describe, policy=policy, sleep=sleep
        )
    except ExternalError as exc:
        _set_enrichment_status(db, appointment_id, EnrichmentStatus.FAILED)
        return EnrichmentResult(
            SyncStatus.FAILED, [], attempts=exc.attempts, error=f"{exc.kind}: {exc.message}"
        )

    _set_enrichment_status(db, appointment_id, EnrichmentStatus.COMPLETE)
    return EnrichmentResult(SyncStatus.SUCCESS, changed, attempts=attempts)
