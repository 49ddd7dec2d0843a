"""FastAPI dependencies for database access, the EHR client and internal auth."""

from typing import Generator

from fastapi import Header, HTTPException
from sqlalchemy.orm import Session

from booking_sync.core.config import settings
from booking_sync.db.session import SessionLocal
from booking_sync.services.ehr_client import EhrClient, build_ehr_client


def get_db() -> Generator[Session, None, None]:
    """
    Database session dependency.

    Yields a database session and ensures it's closed after the request.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_ehr_client() -> EhrClient:
    """EHR client dependency; overridden with a fake in tests."""
    return build_ehr_client()


def verify_internal_secret(x_internal_secret: str = Header(...)) -> None:
    """Verify the internal secret header."""
    expected = settings.INTERNAL_SECRET
    if not expected:
        raise HTTPException(status_code=501, detail="INTERNAL_SECRET not configured")
    if x_internal_secret != expected:
        raise HTTPException(status_code=403, detail="Invalid internal secret")
