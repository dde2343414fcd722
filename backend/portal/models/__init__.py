"""
Database models for the nutrition portal.

The models are organized by functionality:
- Client accounts and subscription state
- Appointments and their reschedule history
- Blocked consultation slots
- Invoices and invoice line items
- Mail queue for transactional email
- Health intake (consent records, pre-evaluations)
"""

from .appointment import (
    TERMINAL_STATUSES,
    Appointment,
    AppointmentReschedule,
    AppointmentStatus,
    AppointmentType,
)
from .availability import UnavailableSlot
from .intake import ConsentRecord, PreEvaluation
from .invoice import Invoice, InvoiceCharge, InvoiceItem, InvoiceItemType, InvoiceStatus, InvoiceType
from .mail_queue import MailQueueEntry, MailStatus
from .user import ServicePlan, SubscriptionStatus, User

__all__ = [
    "Appointment",
    "AppointmentReschedule",
    "AppointmentStatus",
    "AppointmentType",
    "ConsentRecord",
    "Invoice",
    "InvoiceCharge",
    "InvoiceItem",
    "InvoiceItemType",
    "InvoiceStatus",
    "InvoiceType",
    "MailQueueEntry",
    "MailStatus",
    "PreEvaluation",
    "ServicePlan",
    "SubscriptionStatus",
    "TERMINAL_STATUSES",
    "UnavailableSlot",
    "User",
]
