"""
Repository layer for the nutrition portal.

Repositories wrap SQLAlchemy queries; services own the transactions.
"""

from .appointment_repository import AppointmentRepository
from .availability_repository import AvailabilityRepository
from .base_repository import BaseRepository
from .invoice_repository import InvoiceRepository
from .mail_queue_repository import MailQueueRepository
from .user_repository import UserRepository

__all__ = [
    "AppointmentRepository",
    "AvailabilityRepository",
    "BaseRepository",
    "InvoiceRepository",
    "MailQueueRepository",
    "UserRepository",
]
