from datetime import date

import pytest
from sqlalchemy.orm import Session

from booking_sync.core.exceptions import ExternalTransient
from booking_sync.db.enums import SyncAction, SyncStatus
from booking_sync.db.models import AuditLogEntry, Patient, Payer
from booking_sync.schemas.ehr import EnrichmentFields
from booking_sync.services import enrichment_service
from booking_sync.services.enrichment_service import build_enrichment_fields, merge_client_record
from tests.conftest import FakeEhrClient


def _linked_patient(db: Session, client_id: str) -> Patient:
    patient = Patient(
        canonical_email="jane@example.com",
        first_name="Jane",
        last_name="Doe",
        external_client_id=client_id,
    )
    db.add(patient)
    db.commit()
    return patient


def test_merge_only_reports_real_changes():
    current = {"ClientId": "c1", "Phone": "303-555-0100", "Tags": ["vip"], "DateOfBirth": "1990-04-01T00:00:00"}
    updates = {"Phone": "(303) 555-0100", "DateOfBirth": "1990-04-01", "PrimaryInsuranceCompany": "Acme"}

    merged, changed = merge_client_record(current, updates)

    assert changed == ["PrimaryInsuranceCompany"]
    assert merged["Tags"] == ["vip"]
    assert merged["Phone"] == "303-555-0100"


def test_build_enrichment_fields_uses_payer_external_name(payer: Payer):
    fields = build_enrichment_fields(
        date_of_birth=date(1990, 4, 1),
        phone="3035550100",
        payer=payer,
        member_id="ABC123",
        contact_name="Case Manager",
        contact_email="CM@Org.com",
    )
    wire = fields.to_wire()
    assert wire["PrimaryInsuranceCompany"] == "ACME HEALTH PLAN"
    assert wire["PrimaryInsurancePolicyNumber"] == "ABC123"
    assert wire["Phone"] == "(303) 555-0100"
    assert wire["ReferringContactEmail"] == "cm@org.com"
    assert "PrimaryInsuranceGroupNumber" not in wire


def test_enrichment_fields_survive_storage():
    fields = build_enrichment_fields(phone="3035550100", member_id="X1")
    restored = EnrichmentFields.model_validate(fields.model_dump(mode="json"))
    assert restored == fields


@pytest.mark.asyncio
async def test_enrich_preserves_unrelated_external_fields(db: Session, ehr: FakeEhrClient):
    client_id = ehr.add_client("jane@example.com", "Jane", "Doe", Tags=["from-intake-form"])
    patient = _linked_patient(db, client_id)
    fields = build_enrichment_fields(member_id="M-1", group_number="G-9")

    result = await enrichment_service.enrich(db, ehr, patient.id, None, fields)

    assert result.status == SyncStatus.SUCCESS
    assert result.changed_fields == ["PrimaryInsuranceGroupNumber", "PrimaryInsurancePolicyNumber"]
    record = ehr.clients[client_id]
    assert record["Tags"] == ["from-intake-form"]
    assert record["FirstName"] == "Jane"
    assert record["PrimaryInsurancePolicyNumber"] == "M1"


@pytest.mark.asyncio
async def test_enrich_skips_write_when_nothing_changed(db: Session, ehr: FakeEhrClient):
    client_id = ehr.add_client("jane@example.com", "Jane", "Doe", Phone="(303) 555-0100")
    patient = _linked_patient(db, client_id)

    result = await enrichment_service.enrich(db, ehr, patient.id, None, build_enrichment_fields(phone="3035550100"))

    assert result.changed_fields == []
    assert ehr.count("update_client") == 0
    [entry] = db.query(AuditLogEntry).all()
    assert entry.action == SyncAction.SEND_ENRICHMENT.value
    assert entry.redacted_response == {"changed_fields": [], "write_skipped": True}


@pytest.mark.asyncio
async def test_enrich_retries_are_one_audit_entry(db: Session, ehr: FakeEhrClient, policy, sleeper):
    client_id = ehr.add_client("jane@example.com", "Jane", "Doe")
    patient = _linked_patient(db, client_id)
    ehr.fail("update_client", ExternalTransient("boom", status_code=503))

    result = await enrichment_service.enrich(
        db, ehr, patient.id, None, build_enrichment_fields(member_id="M1"), policy=policy, sleep=sleeper
    )

    assert result.status == SyncStatus.SUCCESS
    assert result.attempts == 2
    # Re-read before every write
    assert ehr.count("get_client") == 2
    [entry] = db.query(AuditLogEntry).all()
    assert entry.attempts == 2
    assert entry.redacted_payload["fields"]["PrimaryInsurancePolicyNumber"] == "[REDACTED]"


@pytest.mark.asyncio
async def test_enrich_failure_is_returned_not_raised(db: Session, ehr: FakeEhrClient, policy, sleeper):
    client_id = ehr.add_client("jane@example.com", "Jane", "Doe")
    patient = _linked_patient(db, client_id)
    ehr.fail("get_client", *[ExternalTransient("down", status_code=503) for _ in range(3)])

    result = await enrichment_service.enrich(
        db, ehr, patient.id, None, build_enrichment_fields(member_id="M1"), policy=policy, sleep=sleeper
    )

    assert result.status == SyncStatus.FAILED
    assert result.attempts == 3
    assert result.error.startswith("ExternalTransient")


@pytest.mark.asyncio
async def test_enrich_unlinked_patient_fails(db: Session, ehr: FakeEhrClient):
    patient = _linked_patient(db, None)

    result = await enrichment_service.enrich(db, ehr, patient.id, None, build_enrichment_fields(member_id="M1"))

    assert result.status == SyncStatus.FAILED
    assert ehr.calls == []
