import uuid

from sqlalchemy.orm import Session

from booking_sync.db.enums import SyncAction, SyncReason, SyncStatus
from booking_sync.services import audit_service
from booking_sync.services.audit_service import REDACTION_MARKER, AuditRecord, redact, scrub_text


def test_redact_identity_fields_keeps_ids():
    payload = {
        "ClientId": "c-1",
        "FirstName": "Jane",
        "LastName": "Doe",
        "Name": "Jane Doe",
        "Email": "jane@example.com",
        "DateOfBirth": "1990-04-01",
        "Phone": "(303) 555-0100",
        "PrimaryInsuranceCompany": "Acme",
        "PrimaryInsurancePolicyNumber": "M1",
        "nested": {"referring_contact_email": "cm@org.com", "PractitionerId": "p-1"},
    }

    redacted = redact(payload)

    assert redacted["ClientId"] == "c-1"
    assert redacted["PrimaryInsuranceCompany"] == "Acme"
    assert redacted["nested"]["PractitionerId"] == "p-1"
    for key in ("FirstName", "LastName", "Name", "Email", "DateOfBirth", "Phone", "PrimaryInsurancePolicyNumber"):
        assert redacted[key] == REDACTION_MARKER
    assert redacted["nested"]["referring_contact_email"] == REDACTION_MARKER


def test_redact_leaves_empty_values():
    assert redact({"Email": None, "Phone": ""}) == {"Email": None, "Phone": ""}


def test_scrub_text_catches_embedded_identifiers():
    text = "duplicate client jane@example.com, call 303-555-0100"
    scrubbed = scrub_text(text)
    assert "jane@example.com" not in scrubbed
    assert "555-0100" not in scrubbed


def test_record_is_redacted_and_listed(db: Session):
    appointment_id = uuid.uuid4()
    audit_service.record(
        db,
        AuditRecord(
            action=SyncAction.CREATE_CLIENT,
            status=SyncStatus.SUCCESS,
            reason=SyncReason.CREATED_CANONICAL,
            appointment_id=appointment_id,
            external_client_id="c-1",
            payload={"Email": "jane@example.com"},
            response={"ClientId": "c-1"},
        ),
    )
    audit_service.record(
        db,
        AuditRecord(
            action=SyncAction.CREATE_APPOINTMENT,
            status=SyncStatus.FAILED,
            appointment_id=appointment_id,
            error_message="ExternalPermanent: rejected jane@example.com",
            http_status=422,
        ),
    )

    entries = {e.action: e for e in audit_service.list_entries(db, appointment_id=appointment_id)}
    assert set(entries) == {"create_client", "create_appointment"}
    assert entries["create_client"].redacted_payload == {"Email": REDACTION_MARKER}
    assert "jane@example.com" not in entries["create_appointment"].error_message

    failed = audit_service.list_entries(db, status=SyncStatus.FAILED)
    assert [e.http_status for e in failed] == [422]
