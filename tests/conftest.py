"""
Test configuration and fixtures.

Provides:
- Fresh in-memory SQLite database per test (overlap triggers included)
- Provider / payer / availability factories
- FakeEhrClient: in-memory external system with scripted failures
- HTTPX AsyncClient against the app with dependency overrides
"""
import itertools
import os
import uuid
from collections import defaultdict
from datetime import date, datetime, time, timezone
from typing import Any, AsyncGenerator, Generator

# Settings are read at import time; configure before importing the app.
os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ["EHR_BACKOFF_BASE_SECONDS"] = "0"
os.environ["EHR_BACKOFF_MAX_SECONDS"] = "0"
os.environ["EHR_RATE_LIMIT_COOLDOWN_SECONDS"] = "0"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["INTERNAL_SECRET"] = "test-internal-secret"
os.environ["ENV"] = "test"

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from booking_sync.core.deps import get_db, get_ehr_client
from booking_sync.core.exceptions import ExternalPermanent
from booking_sync.db import models  # noqa: F401
from booking_sync.db.base import Base
from booking_sync.db.enums import AvailabilityExceptionKind
from booking_sync.db.models import AvailabilityException, AvailabilityRule, Payer, Provider
from booking_sync.main import app
from booking_sync.schemas.ehr import ClientFields, ExternalClient
from booking_sync.services.http_service import RetryPolicy

INTERNAL_HEADERS = {"X-Internal-Secret": "test-internal-secret"}

# Monday 2030-01-07; provider timezone is UTC so local == UTC in most tests.
MONDAY = date(2030, 1, 7)


def at(hour: int, minute: int = 0, day: date = MONDAY) -> datetime:
    return datetime.combine(day, time(hour, minute), tzinfo=timezone.utc)


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest.fixture(scope="function")
def engine():
    """Fresh in-memory database per test."""
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope="function")
def db(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    yield session
    session.close()


# =============================================================================
# Model Factories
# =============================================================================

@pytest.fixture(scope="function")
def provider(db: Session) -> Provider:
    """Active provider in UTC, Monday 09:00-17:00, with external mapping."""
    provider = Provider(
        id=uuid.uuid4(),
        name="Dr. Test",
        timezone="UTC",
        external_practitioner_id="prac-1",
        external_service_id="svc-1",
    )
    db.add(provider)
    db.flush()
    db.add(
        AvailabilityRule(
            provider_id=provider.id,
            day_of_week=0,
            start_time=time(9, 0),
            end_time=time(17, 0),
        )
    )
    db.commit()
    return provider


@pytest.fixture(scope="function")
def payer(db: Session) -> Payer:
    payer = Payer(id=uuid.uuid4(), name="Acme Health", external_insurance_name="ACME HEALTH PLAN")
    db.add(payer)
    db.commit()
    return payer


@pytest.fixture(scope="function")
def add_rule(db: Session):
    def _add(provider: Provider, day_of_week: int, start: time, end: time, *, is_recurring=True):
        rule = AvailabilityRule(
            provider_id=provider.id,
            day_of_week=day_of_week,
            start_time=start,
            end_time=end,
            is_recurring=is_recurring,
        )
        db.add(rule)
        db.commit()
        return rule

    return _add


@pytest.fixture(scope="function")
def add_exception(db: Session):
    def _add(
        provider: Provider,
        day: date,
        kind: AvailabilityExceptionKind,
        start: time | None = None,
        end: time | None = None,
    ):
        exception = AvailabilityException(
            provider_id=provider.id,
            exception_date=day,
            kind=kind.value,
            start_time=start,
            end_time=end,
        )
        db.add(exception)
        db.commit()
        return exception

    return _add


def booking_payload(provider: Provider, **overrides: Any) -> dict[str, Any]:
    """JSON body for POST /bookings (also fed to BookingCreate.model_validate)."""
    payload: dict[str, Any] = {
        "patient": {
            "email": "jane@example.com",
            "first_name": "Jane",
            "last_name": "Doe",
            "date_of_birth": "1990-04-01",
            "phone": "(303) 555-0100",
        },
        "provider_id": str(provider.id),
        "start": at(10).isoformat(),
        "end": at(11).isoformat(),
        "idempotency_key": "k1",
    }
    payload.update(overrides)
    return payload


# =============================================================================
# External System Fake
# =============================================================================

class FakeEhrClient:
    """
    In-memory EhrClient.

    `fail(operation, *errors)` queues exceptions raised by the next calls of
    that operation; `calls` records every call by operation name.
    """

    def __init__(self) -> None:
        self.clients: dict[str, dict[str, Any]] = {}
        self.appointments: dict[str, dict[str, Any]] = {}
        self.calls: list[str] = []
        self.updates: list[tuple[str, dict[str, Any]]] = []
        self._failures: dict[str, list[Exception]] = defaultdict(list)
        self._ids = itertools.count(1)

    def fail(self, operation: str, *errors: Exception) -> None:
        self._failures[operation].extend(errors)

    def count(self, operation: str) -> int:
        return self.calls.count(operation)

    def add_client(
        self,
        email: str,
        first_name: str,
        last_name: str,
        date_of_birth: str | None = None,
        **extra: Any,
    ) -> str:
        client_id = f"client-{next(self._ids)}"
        self.clients[client_id] = {
            "ClientId": client_id,
            "Email": email,
            "FirstName": first_name,
            "LastName": last_name,
            "DateOfBirth": date_of_birth,
            **extra,
        }
        return client_id

    def _enter(self, operation: str) -> None:
        self.calls.append(operation)
        if self._failures[operation]:
            raise self._failures[operation].pop(0)

    async def find_client_by_email(self, email: str) -> ExternalClient | None:
        self._enter("find_client")
        for record in self.clients.values():
            if (record.get("Email") or "").lower() == email.lower():
                return ExternalClient.from_wire(record)
        return None

    async def get_client(self, client_id: str) -> dict[str, Any]:
        self._enter("get_client")
        if client_id not in self.clients:
            raise ExternalPermanent("get_client returned HTTP 404", status_code=404)
        return dict(self.clients[client_id])

    async def create_client(self, fields: ClientFields) -> str:
        self._enter("create_client")
        client_id = f"client-{next(self._ids)}"
        self.clients[client_id] = {"ClientId": client_id, **fields.to_wire()}
        return client_id

    async def update_client(self, client_id: str, record: dict[str, Any]) -> None:
        self._enter("update_client")
        self.updates.append((client_id, dict(record)))
        self.clients[client_id] = dict(record)

    async def create_appointment(
        self,
        client_id: str,
        practitioner_id: str,
        service_id: str,
        start: datetime,
        end: datetime,
    ) -> str:
        self._enter("create_appointment")
        appointment_id = f"appt-{next(self._ids)}"
        self.appointments[appointment_id] = {
            "ClientId": client_id,
            "PractitionerId": practitioner_id,
            "ServiceId": service_id,
            "Start": start,
            "End": end,
        }
        return appointment_id


@pytest.fixture(scope="function")
def ehr() -> FakeEhrClient:
    return FakeEhrClient()


class SleepRecorder:
    """Injected sleep that records delays instead of waiting."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture(scope="function")
def sleeper() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture(scope="function")
def policy() -> RetryPolicy:
    return RetryPolicy(
        max_attempts=3,
        base_delay=0.5,
        max_delay=8.0,
        rate_limit_cooldown=10.0,
        max_rate_limit_cooldown=60.0,
    )


# =============================================================================
# Client Fixtures
# =============================================================================

@pytest.fixture(scope="function")
async def client(db: Session, ehr: FakeEhrClient) -> AsyncGenerator[AsyncClient, None]:
    """AsyncClient against the app, bound to the test database and fake EHR."""
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_ehr_client] = lambda: ehr

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as c:
        yield c

    app.dependency_overrides.clear()
