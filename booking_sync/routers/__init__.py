"""API routers."""

from booking_sync.routers.audit import router as audit_router
from booking_sync.routers.availability import router as availability_router
from booking_sync.routers.bookings import router as bookings_router
from booking_sync.routers.internal import router as internal_router

__all__ = [
    "audit_router",
    "availability_router",
    "bookings_router",
    "internal_router",
]
