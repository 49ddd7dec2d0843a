"""Error taxonomy for booking and external sync.

Local errors (validation, slot conflicts, idempotency conflicts) are returned
to the caller. External errors are caught by the sync layer, recorded in the
audit trail and never surface as a booking failure.
"""

from __future__ import annotations


class BookingSyncError(Exception):
    """Base class for all domain errors."""

    kind = "BookingSyncError"
    http_status = 500

    def __init__(self, message: str = "") -> None:
        self.message = message or (self.__doc__ or self.kind).strip()
        super().__init__(self.message)


class ValidationError(BookingSyncError):
    """Malformed or missing input."""

    kind = "ValidationError"
    http_status = 422


class NotFoundError(BookingSyncError):
    """Requested record does not exist."""

    kind = "NotFound"
    http_status = 404


class SlotUnavailable(BookingSyncError):
    """Requested interval is outside the provider's availability."""

    kind = "SlotUnavailable"
    http_status = 409


class SlotBooked(BookingSyncError):
    """Requested interval overlaps an existing appointment."""

    kind = "SlotBooked"
    http_status = 409


class IdempotencyKeyConflict(BookingSyncError):
    """Idempotency key was already used for a different request."""

    kind = "IdempotencyKeyConflict"
    http_status = 422


# =============================================================================
# External system errors
# =============================================================================


class ExternalError(BookingSyncError):
    """Failure talking to the external system of record."""

    kind = "ExternalError"
    http_status = 502
    attempts = 1  # Set by the retry loop

    def __init__(
        self,
        message: str = "",
        *,
        status_code: int | None = None,
        response_text: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        # Raw body for classification only; may hold PHI, never persisted or logged.
        self.response_text = response_text


class ExternalTransient(ExternalError):
    """Timeout, connection failure or 5xx; safe to retry."""

    kind = "ExternalTransient"


class ExternalRateLimited(ExternalTransient):
    """429 from the external system."""

    kind = "ExternalRateLimited"

    def __init__(
        self,
        message: str = "",
        *,
        status_code: int | None = 429,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message, status_code=status_code)
        self.retry_after = retry_after


class ExternalPermanent(ExternalError):
    """4xx other than 429; retrying will not help."""

    kind = "ExternalPermanent"
