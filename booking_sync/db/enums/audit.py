"""Audit log enums for external-system calls."""

from enum import Enum


class SyncAction(str, Enum):
    """External call recorded in the audit log."""

    FIND_CLIENT = "find_client"
    CREATE_CLIENT = "create_client"
    CREATE_APPOINTMENT = "create_appointment"
    SEND_ENRICHMENT = "send_enrichment"


class SyncStatus(str, Enum):
    """Outcome of an audited external call."""

    SUCCESS = "success"
    FAILED = "failed"
    DUPLICATE_DETECTED = "duplicate_detected"


class SyncReason(str, Enum):
    """Branch taken by the identity synchronizer."""

    CREATED_CANONICAL = "created_canonical"
    CREATED_ALIASED = "created_aliased"
    REUSED_EXISTING = "reused_existing"
    EMAIL_COLLISION = "email_collision"
