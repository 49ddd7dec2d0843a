"""Audit trail for external-system calls.

Every call to the EHR (retries included) ends up as exactly one
AuditLogEntry. Payloads and responses are redacted before storage.

Redaction guidelines:
- Values of name, email, phone, date-of-birth, address, insurance-identifier
  and free-text fields become REDACTION_MARKER
- Email/phone-looking text anywhere else is scrubbed as well
- External ids, field names, statuses and timings are stored verbatim
"""

from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar
from uuid import UUID

from sqlalchemy.orm import Session

from booking_sync.core.exceptions import ExternalError
from booking_sync.core.structured_logging import build_log_context
from booking_sync.db.enums import SyncAction, SyncReason, SyncStatus
from booking_sync.db.models import AuditLogEntry
from booking_sync.services.http_service import RetryPolicy, SleepFn, call_with_retries

logger = logging.getLogger(__name__)

T = TypeVar("T")

REDACTION_MARKER = "[REDACTED]"

# Compared after lower-casing and stripping non-letters: "first_name" == "FirstName".
PHI_KEYS = {
    "name",
    "firstname",
    "lastname",
    "middlename",
    "fullname",
    "email",
    "emailalias",
    "phone",
    "mobilephone",
    "homephone",
    "workphone",
    "dateofbirth",
    "dob",
    "address",
    "streetaddress",
    "unitnumber",
    "postalcode",
    "notes",
    "additionalinformation",
    "comments",
    "description",
    "memberid",
    "groupnumber",
    "primaryinsurancepolicynumber",
    "primaryinsurancegroupnumber",
    "primaryinsuranceholdername",
    "primaryinsuranceholderdateofbirth",
}
PHI_KEY_SUFFIXES = ("email", "phone", "name", "dateofbirth", "address", "notes")
NON_PHI_KEYS = {"primaryinsurancecompany", "insurancecompanyname", "servicename"}

EMAIL_PATTERN = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")
PHONE_PATTERNS = [
    re.compile(r"\(\d{3}\)\s*\d{3}[-.\s]?\d{4}\b"),  # (123) 456-7890
    re.compile(r"\b\+?1?[-.\s]?\d{3}[-.\s]?\d{3}[-.\s]?\d{4}\b"),  # 123-456-7890, +1 123 456 7890
]


def canonical_json(obj: dict | None) -> str:
    """
    Serialize object to canonical JSON for consistent hashing.

    Uses sorted keys, compact separators, and str() for non-JSON types.
    """
    return json.dumps(obj or {}, sort_keys=True, separators=(",", ":"), default=str)


# =============================================================================
# Redaction
# =============================================================================


def _is_phi_key(key: str) -> bool:
    normalized = re.sub(r"[^a-z]", "", key.lower())
    if normalized in NON_PHI_KEYS:
        return False
    return normalized in PHI_KEYS or normalized.endswith(PHI_KEY_SUFFIXES)


def _is_id_key(key: str) -> bool:
    return re.sub(r"[^a-z]", "", key.lower()).endswith("id")


def scrub_text(text: str | None) -> str | None:
    """Replace email and phone patterns inside free text."""
    if not text:
        return text
    scrubbed = EMAIL_PATTERN.sub(REDACTION_MARKER, text)
    for pattern in PHONE_PATTERNS:
        scrubbed = pattern.sub(REDACTION_MARKER, scrubbed)
    return scrubbed


def redact(value: Any) -> Any:
    """Recursively redact PHI from a JSON-like structure."""
    if isinstance(value, dict):
        redacted: dict[str, Any] = {}
        for key, item in value.items():
            if _is_phi_key(str(key)) and item not in (None, ""):
                redacted[key] = REDACTION_MARKER
            elif _is_id_key(str(key)):
                redacted[key] = item
            else:
                redacted[key] = redact(item)
        return redacted
    if isinstance(value, (list, tuple)):
        return [redact(item) for item in value]
    if isinstance(value, str):
        return scrub_text(value)
    return value


# =============================================================================
# Recording
# =============================================================================


@dataclass
class AuditRecord:
    """Unredacted description of one external call; redacted on record()."""

    action: SyncAction
    status: SyncStatus
    patient_id: UUID | None = None
    appointment_id: UUID | None = None
    external_client_id: str | None = None
    reason: SyncReason | None = None
    payload: dict[str, Any] | None = None
    response: dict[str, Any] | None = None
    error_message: str | None = None
    http_status: int | None = None
    attempts: int = 1
    duration_ms: int = 0


def record(db: Session, entry: AuditRecord) -> AuditLogEntry:
    """
    Append one redacted entry to the audit trail and commit it.

    Commits immediately so the trail survives whatever happens next.
    """
    row = AuditLogEntry(
        action=entry.action.value,
        status=entry.status.value,
        reason=entry.reason.value if entry.reason else None,
        patient_id=entry.patient_id,
        appointment_id=entry.appointment_id,
        external_client_id=entry.external_client_id,
        redacted_payload=redact(entry.payload) if entry.payload is not None else None,
        redacted_response=redact(entry.response) if entry.response is not None else None,
        error_message=scrub_text(entry.error_message),
        http_status=entry.http_status,
        attempts=entry.attempts,
        duration_ms=entry.duration_ms,
    )
    db.add(row)
    db.commit()

    log = logger.warning if entry.status == SyncStatus.FAILED else logger.info
    log(
        "EHR %s %s (attempts=%s, %sms)",
        entry.action.value,
        entry.status.value,
        entry.attempts,
        entry.duration_ms,
        extra=build_log_context(
            patient_id=entry.patient_id,
            appointment_id=entry.appointment_id,
            external_client_id=entry.external_client_id,
            action=entry.action.value,
            status=entry.status.value,
        ),
    )
    return row


@dataclass
class AuditedCall:
    """Context shared by the entry written for one audited external call."""

    action: SyncAction
    patient_id: UUID | None = None
    appointment_id: UUID | None = None
    external_client_id: str | None = None
    payload: dict[str, Any] | None = None


async def run_audited(
    db: Session,
    call: AuditedCall,
    fn: Callable[[], Awaitable[T]],
    *,
    describe: Callable[[T], AuditRecord] | None = None,
    policy: RetryPolicy | None = None,
    sleep: SleepFn | None = None,
) -> tuple[T, int]:
    """
    Run an external call under the retry policy and record exactly one entry.

    Returns (result, attempts). On success, `describe(result)` supplies the
    entry (status, reason, response); on failure a `failed` entry is written
    and the ExternalError re-raised.
    """
    started = time.monotonic()
    try:
        result, attempts = await call_with_retries(
            fn, policy=policy, sleep=sleep, operation=call.action.value
        )
    except ExternalError as exc:
        record(
            db,
            AuditRecord(
                action=call.action,
                status=SyncStatus.FAILED,
                patient_id=call.patient_id,
                appointment_id=call.appointment_id,
                external_client_id=call.external_client_id,
                payload=call.payload,
                error_message=f"{exc.kind}: {exc.message}",
                http_status=exc.status_code,
                attempts=exc.attempts,
                duration_ms=_elapsed_ms(started),
            ),
        )
        raise

    entry = (
        describe(result)
        if describe
        else AuditRecord(action=call.action, status=SyncStatus.SUCCESS)
    )
    entry.patient_id = entry.patient_id or call.patient_id
    entry.appointment_id = entry.appointment_id or call.appointment_id
    entry.external_client_id = entry.external_client_id or call.external_client_id
    if entry.payload is None:
        entry.payload = call.payload
    entry.attempts = attempts
    entry.duration_ms = _elapsed_ms(started)
    record(db, entry)
    return result, attempts


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


# =============================================================================
# Queries
# =============================================================================


def list_entries(
    db: Session,
    *,
    appointment_id: UUID | None = None,
    patient_id: UUID | None = None,
    action: SyncAction | str | None = None,
    status: SyncStatus | str | None = None,
    limit: int = 100,
    offset: int = 0,
) -> list[AuditLogEntry]:
    """Audit entries filtered by appointment, patient or action+status; oldest first."""
    query = db.query(AuditLogEntry)
    if appointment_id:
        query = query.filter(AuditLogEntry.appointment_id == appointment_id)
    if patient_id:
        query = query.filter(AuditLogEntry.patient_id == patient_id)
    if action:
        query = query.filter(AuditLogEntry.action == _value(action))
    if status:
        query = query.filter(AuditLogEntry.status == _value(status))
    return (
        query.order_by(AuditLogEntry.created_at, AuditLogEntry.id)
        .offset(offset)
        .limit(limit)
        .all()
    )


def _value(item: SyncAction | SyncStatus | str) -> str:
    return item.value if hasattr(item, "value") else item
