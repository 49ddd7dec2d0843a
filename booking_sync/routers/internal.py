"""
Internal endpoints for scheduled/cron operations.

Protected by X-Internal-Secret header.
"""

from uuid import UUID

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from booking_sync.core.async_utils import run_async
from booking_sync.core.deps import get_db, get_ehr_client, verify_internal_secret
from booking_sync.services import reconcile_service
from booking_sync.services.ehr_client import EhrClient

router = APIRouter(
    prefix="/internal",
    tags=["internal"],
    dependencies=[Depends(verify_internal_secret)],
)


class ReconcileRequest(BaseModel):
    appointment_id: UUID | None = None
    limit: int | None = None
    include_errors: bool = False


class ReconcileResponse(BaseModel):
    examined: int
    synced: int
    still_pending: int
    failed: int
    skipped: int
    errors: int
    appointment_ids: list[UUID]


@router.post("/reconcile", response_model=ReconcileResponse)
def reconcile(
    data: ReconcileRequest | None = None,
    db: Session = Depends(get_db),
    ehr: EhrClient = Depends(get_ehr_client),
):
    """Run one reconciliation pass over appointments with unfinished external sync."""
    data = data or ReconcileRequest()
    summary = run_async(
        reconcile_service.reconcile_pending(
            db,
            ehr,
            limit=data.limit,
            include_errors=data.include_errors,
            appointment_id=data.appointment_id,
        )
    )
    return ReconcileResponse(**summary.as_dict(), appointment_ids=summary.appointment_ids)
