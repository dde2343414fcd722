# backend/portal/api/dependencies/__init__.py
"""
Central export point for all dependencies.

This module re-exports all dependencies from submodules
for convenient access throughout the application.
"""

from .database import get_db
from .services import (
    get_appointment_service,
    get_availability_service,
    get_billing_service,
    get_invoice_service,
    get_meeting_client_dep,
    get_notification_service,
    get_stripe_service,
)

__all__ = [
    # Database
    "get_db",
    # Services
    "get_appointment_service",
    "get_availability_service",
    "get_billing_service",
    "get_invoice_service",
    "get_meeting_client_dep",
    "get_notification_service",
    "get_stripe_service",
]
