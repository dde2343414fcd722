# backend/portal/api/dependencies/services.py
"""
Service layer dependencies for dependency injection.

Each factory builds a service for the request's session. Collaborators
(payment, meeting, email) come from settings; tests override these
providers through ``app.dependency_overrides``.
"""

import logging
from typing import Optional

from fastapi import Depends
from sqlalchemy.orm import Session

from ...integrations.microsoft_teams import MeetingClient, get_meeting_client
from ...services.appointment_service import AppointmentService
from ...services.availability_service import AvailabilityService
from ...services.billing_service import SubscriptionBillingService
from ...services.invoice_service import InvoiceService
from ...services.notification_service import NotificationService
from ...services.stripe_service import StripeService
from .database import get_db

logger = logging.getLogger(__name__)


def get_meeting_client_dep() -> Optional[MeetingClient]:
    """Teams client, or ``None`` when meetings are not configured."""
    return get_meeting_client()


def get_notification_service(db: Session = Depends(get_db)) -> NotificationService:
    return NotificationService(db)


def get_stripe_service(db: Session = Depends(get_db)) -> StripeService:
    return StripeService(db)


def get_availability_service(db: Session = Depends(get_db)) -> AvailabilityService:
    return AvailabilityService(db)


def get_invoice_service(
    db: Session = Depends(get_db),
    notification_service: NotificationService = Depends(get_notification_service),
    stripe_service: StripeService = Depends(get_stripe_service),
) -> InvoiceService:
    """
    Get invoice service instance with all dependencies.

    Args:
        db: Database session
        notification_service: Outbox used for invoice emails
        stripe_service: Payment collaborator

    Returns:
        InvoiceService instance
    """
    return InvoiceService(db, notification_service=notification_service, payment_service=stripe_service)


def get_appointment_service(
    db: Session = Depends(get_db),
    notification_service: NotificationService = Depends(get_notification_service),
    invoice_service: InvoiceService = Depends(get_invoice_service),
    availability_service: AvailabilityService = Depends(get_availability_service),
    meeting_client: Optional[MeetingClient] = Depends(get_meeting_client_dep),
) -> AppointmentService:
    """
    Get appointment service instance with all dependencies.

    Args:
        db: Database session
        notification_service: Outbox producer
        invoice_service: Invoice generator for completion and no-show
        availability_service: Slot grid and blocked slots
        meeting_client: Teams client (None when not configured)

    Returns:
        AppointmentService instance
    """
    return AppointmentService(
        db,
        notification_service=notification_service,
        invoice_service=invoice_service,
        availability_service=availability_service,
        meeting_client=meeting_client,
    )


def get_billing_service(
    db: Session = Depends(get_db),
    invoice_service: InvoiceService = Depends(get_invoice_service),
    notification_service: NotificationService = Depends(get_notification_service),
) -> SubscriptionBillingService:
    return SubscriptionBillingService(
        db, invoice_service=invoice_service, notification_service=notification_service
    )
