"""Audit router - read the redacted external sync audit trail."""

from datetime import datetime
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from booking_sync.core.deps import get_db, verify_internal_secret
from booking_sync.db.enums import SyncAction, SyncStatus
from booking_sync.services import audit_service

router = APIRouter(prefix="/audit", tags=["audit"], dependencies=[Depends(verify_internal_secret)])


# ============================================================================
# Schemas
# ============================================================================

class AuditLogRead(BaseModel):
    """Audit entry for API response. Payloads are already redacted."""
    id: UUID
    created_at: datetime
    action: str
    status: str
    reason: str | None
    patient_id: UUID | None
    appointment_id: UUID | None
    external_client_id: str | None
    redacted_payload: dict[str, Any] | None
    redacted_response: dict[str, Any] | None
    error_message: str | None
    http_status: int | None
    attempts: int
    duration_ms: int | None

    model_config = {"from_attributes": True}


class AuditLogListResponse(BaseModel):
    items: list[AuditLogRead]
    limit: int
    offset: int


# ============================================================================
# Endpoints
# ============================================================================

@router.get("", response_model=AuditLogListResponse)
def list_audit_entries(
    appointment_id: UUID | None = Query(None),
    patient_id: UUID | None = Query(None),
    action: SyncAction | None = Query(None),
    status: SyncStatus | None = Query(None),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
) -> AuditLogListResponse:
    """List audit entries, oldest first."""
    entries = audit_service.list_entries(
        db,
        appointment_id=appointment_id,
        patient_id=patient_id,
        action=action,
        status=status,
        limit=limit,
        offset=offset,
    )
    return AuditLogListResponse(
        items=[AuditLogRead.model_validate(entry) for entry in entries],
        limit=limit,
        offset=offset,
    )
