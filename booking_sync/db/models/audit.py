"""Append-only audit trail of external-system calls."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Index, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from booking_sync.db.base import Base, utcnow
from booking_sync.db.types import JsonType


class AuditLogEntry(Base):
    """
    One row per external call (including its retries).

    Security:
    - payload/response are PHI-redacted before they reach this table
    - only external ids, field names, statuses and timings are verbatim
    - rows are never updated or deleted by the application
    """

    __tablename__ = "sync_audit_log"
    __table_args__ = (
        Index("idx_sync_audit_appointment", "appointment_id", "created_at"),
        Index("idx_sync_audit_patient", "patient_id", "created_at"),
        Index("idx_sync_audit_action_status", "action", "status", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    action: Mapped[str] = mapped_column(String(40), nullable=False)  # SyncAction
    status: Mapped[str] = mapped_column(String(30), nullable=False)  # SyncStatus
    reason: Mapped[str | None] = mapped_column(String(40), nullable=True)  # SyncReason

    # No foreign keys: the trail outlives the rows it describes.
    patient_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    appointment_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    external_client_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    redacted_payload: Mapped[dict | None] = mapped_column(JsonType, nullable=True)
    redacted_response: Mapped[dict | None] = mapped_column(JsonType, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    http_status: Mapped[int | None] = mapped_column(Integer, nullable=True)

    attempts: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    duration_ms: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
