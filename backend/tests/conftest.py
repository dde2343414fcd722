# backend/tests/conftest.py
"""
Shared fixtures for the portal test suite.

The settings are pinned before anything from ``portal`` is imported: an
in-memory SQLite database, console email, mock Stripe, no Teams. Every test
gets a fresh schema.
"""

import os

os.environ["ENVIRONMENT"] = "testing"
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["EMAIL_PROVIDER"] = "console"
os.environ["STRIPE_SECRET_KEY"] = ""
os.environ["STRIPE_WEBHOOK_SECRET"] = ""
os.environ["MICROSOFT_CLIENT_ID"] = ""
os.environ["PRACTICE_TIMEZONE"] = "Europe/Amsterdam"

from contextlib import contextmanager
from datetime import date, timedelta
from typing import Any, Callable, Iterator, Optional

from fastapi.testclient import TestClient
import pytest
from sqlalchemy.orm import Session

from portal.api.dependencies import get_db, get_meeting_client_dep
from portal.core.timezone_utils import practice_today
from portal.database import Base, SessionLocal, engine
from portal.integrations.microsoft_teams import FakeTeamsClient
from portal.main import app
import portal.models  # noqa: F401
from portal.models.appointment import Appointment, AppointmentStatus
from portal.models.user import User
from portal.services.appointment_service import AppointmentService
from portal.services.availability_service import AvailabilityService
from portal.services.billing_service import SubscriptionBillingService
from portal.services.email import ConsoleEmailService
from portal.services.invoice_service import InvoiceService
from portal.services.notification_service import NotificationService
from portal.services.stripe_service import StripeService


@pytest.fixture(scope="function")
def db() -> Iterator[Session]:
    """Fresh schema and session per test."""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def fake_teams() -> FakeTeamsClient:
    return FakeTeamsClient()


@pytest.fixture
def email_sender() -> ConsoleEmailService:
    return ConsoleEmailService()


@pytest.fixture
def notification_service(db: Session, email_sender: ConsoleEmailService) -> NotificationService:
    return NotificationService(db, email_service=email_sender)


@pytest.fixture
def stripe_service(db: Session) -> StripeService:
    return StripeService(db)


@pytest.fixture
def invoice_service(
    db: Session, notification_service: NotificationService, stripe_service: StripeService
) -> InvoiceService:
    return InvoiceService(db, notification_service=notification_service, payment_service=stripe_service)


@pytest.fixture
def availability_service(db: Session) -> AvailabilityService:
    return AvailabilityService(db)


@pytest.fixture
def appointment_service(
    db: Session,
    notification_service: NotificationService,
    invoice_service: InvoiceService,
    availability_service: AvailabilityService,
    fake_teams: FakeTeamsClient,
) -> AppointmentService:
    return AppointmentService(
        db,
        notification_service=notification_service,
        invoice_service=invoice_service,
        availability_service=availability_service,
        meeting_client=fake_teams,
    )


@pytest.fixture
def billing_service(
    db: Session, invoice_service: InvoiceService, notification_service: NotificationService
) -> SubscriptionBillingService:
    return SubscriptionBillingService(
        db, invoice_service=invoice_service, notification_service=notification_service
    )


@pytest.fixture
def client(db: Session, fake_teams: FakeTeamsClient) -> Iterator[TestClient]:
    """Create a test client bound to the test session."""

    def override_get_db() -> Iterator[Session]:
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_meeting_client_dep] = lambda: fake_teams

    test_client = TestClient(app, raise_server_exceptions=False)
    yield test_client

    app.dependency_overrides.clear()
    test_client.close()


# Factories


@pytest.fixture
def make_user(db: Session) -> Callable[..., User]:
    counter = {"n": 0}

    def _make(**overrides: Any) -> User:
        counter["n"] += 1
        fields = {
            "email": f"client{counter['n']}@example.com",
            "name": f"Client {counter['n']}",
            "language": "en",
        }
        fields.update(overrides)
        user = User(**fields)
        db.add(user)
        db.commit()
        return user

    return _make


@pytest.fixture
def user(make_user: Callable[..., User]) -> User:
    return make_user(email="jane@example.com", name="Jane Doe")


@pytest.fixture
def make_appointment(db: Session) -> Callable[..., Appointment]:
    """Insert an appointment directly, bypassing the booking rules."""

    def _make(
        user: User,
        *,
        slot_date: Optional[date] = None,
        timeslot: str = "10:00",
        status: AppointmentStatus = AppointmentStatus.CONFIRMED,
        type: str = "Initial",
        **overrides: Any,
    ) -> Appointment:
        appointment = Appointment(
            user_id=user.id,
            client_name=user.name,
            client_email=user.email,
            type=type,
            date=slot_date or practice_today() + timedelta(days=7),
            timeslot=timeslot,
            status=status.value,
            **overrides,
        )
        db.add(appointment)
        db.commit()
        return appointment

    return _make


@pytest.fixture
def session_scope_for(db: Session) -> Callable[[], Any]:
    """Stand-in for ``portal.database.session_scope`` bound to the test session."""

    @contextmanager
    def _scope() -> Iterator[Session]:
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise

    return _scope
