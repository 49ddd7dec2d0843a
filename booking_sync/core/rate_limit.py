"""Rate limiting configuration for the booking API."""

from slowapi import Limiter
from slowapi.util import get_remote_address

from booking_sync.core.config import settings

limiter = Limiter(
    key_func=get_remote_address,
    storage_uri=settings.RATE_LIMIT_STORAGE_URI,
    enabled=settings.RATE_LIMIT_ENABLED,
)
