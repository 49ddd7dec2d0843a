"""Structured logging helpers (PHI-safe).

Log lines carry ids, actions and statuses only. Identity fields (names,
emails, phones, dates of birth) never reach a logger.
"""

import logging
from typing import Any
from uuid import UUID

from booking_sync.core.config import settings

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def configure_logging(level: str | None = None) -> None:
    """Configure root logging once for the API, CLI and worker."""
    logging.basicConfig(level=(level or settings.LOG_LEVEL).upper(), format=LOG_FORMAT)


def build_log_context(
    *,
    patient_id: UUID | str | None = None,
    appointment_id: UUID | str | None = None,
    provider_id: UUID | str | None = None,
    external_client_id: str | None = None,
    action: str | None = None,
    status: str | None = None,
) -> dict[str, Any]:
    """Return a PHI-safe log context dict."""
    context: dict[str, Any] = {}
    if patient_id:
        context["patient_id"] = str(patient_id)
    if appointment_id:
        context["appointment_id"] = str(appointment_id)
    if provider_id:
        context["provider_id"] = str(provider_id)
    if external_client_id:
        context["external_client_id"] = external_client_id
    if action:
        context["action"] = action
    if status:
        context["status"] = status
    return context
