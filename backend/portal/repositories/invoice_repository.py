# backend/portal/repositories/invoice_repository.py
"""
Data access for invoices.

Inserts rely on the partial unique indexes declared on ``Invoice``; a
violation is reported as ``DuplicateInvoiceException`` carrying the id of the
invoice that already holds the key.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from ..core.exceptions import DuplicateInvoiceException, RepositoryException
from ..database.session_utils import is_unique_violation
from ..models.invoice import Invoice, InvoiceStatus, InvoiceType
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


class InvoiceRepository(BaseRepository[Invoice]):
    def __init__(self, db: Session):
        super().__init__(db, Invoice)

    def insert(self, invoice: Invoice) -> Invoice:
        """Persist a new invoice with its items, translating uniqueness violations."""
        try:
            return self.add(invoice)
        except IntegrityError as exc:
            if not is_unique_violation(exc):
                raise RepositoryException(f"Integrity constraint violated: {exc}") from exc
            existing = self._find_conflicting(invoice)
            if existing is None:
                raise RepositoryException(f"Integrity constraint violated: {exc}") from exc
            logger.info(
                "Invoice insert collided with %s (type=%s user=%s cycle=%s appointment=%s)",
                existing.id,
                invoice.invoice_type,
                invoice.user_id,
                invoice.billing_cycle,
                invoice.appointment_id,
            )
            raise DuplicateInvoiceException(existing.id) from exc

    def _find_conflicting(self, invoice: Invoice) -> Optional[Invoice]:
        if invoice.invoice_type == InvoiceType.SUBSCRIPTION.value and invoice.billing_cycle:
            existing = self.find_active_subscription(invoice.user_id, invoice.billing_cycle)
            if existing is not None:
                return existing
        if invoice.appointment_id:
            return self.find_active_for_appointment(invoice.appointment_id)
        return None

    def get_with_items(self, invoice_id: str) -> Optional[Invoice]:
        stmt = select(Invoice).where(Invoice.id == invoice_id).options(selectinload(Invoice.items))
        if self.dialect_name == "postgresql":
            stmt = stmt.with_for_update()
        return self.db.execute(stmt).scalar_one_or_none()

    def get_by_number(self, invoice_number: str) -> Optional[Invoice]:
        stmt = select(Invoice).where(Invoice.invoice_number == invoice_number)
        return self.db.execute(stmt).scalar_one_or_none()

    def get_by_payment_intent(self, payment_intent_id: str) -> Optional[Invoice]:
        stmt = select(Invoice).where(Invoice.stripe_payment_intent_id == payment_intent_id)
        return self.db.execute(stmt.limit(1)).scalar_one_or_none()

    def find_active_subscription(self, user_id: str, billing_cycle: int) -> Optional[Invoice]:
        stmt = select(Invoice).where(
            Invoice.user_id == user_id,
            Invoice.billing_cycle == billing_cycle,
            Invoice.invoice_type == InvoiceType.SUBSCRIPTION.value,
            Invoice.status != InvoiceStatus.CREDITED.value,
        )
        return self.db.execute(stmt.limit(1)).scalar_one_or_none()

    def find_active_for_appointment(self, appointment_id: str) -> Optional[Invoice]:
        stmt = select(Invoice).where(
            Invoice.appointment_id == appointment_id,
            Invoice.status != InvoiceStatus.CREDITED.value,
        )
        return self.db.execute(stmt.limit(1)).scalar_one_or_none()

    def list_for_user(self, user_id: str, *, limit: int = 100) -> List[Invoice]:
        stmt = (
            select(Invoice)
            .where(Invoice.user_id == user_id)
            .options(selectinload(Invoice.items))
            .order_by(Invoice.created_at.desc(), Invoice.id.desc())
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def list_unpaid(self, *, limit: int = 200) -> List[Invoice]:
        stmt = (
            select(Invoice)
            .where(Invoice.status.in_([InvoiceStatus.UNPAID.value, InvoiceStatus.PENDING.value]))
            .order_by(Invoice.due_date.asc(), Invoice.id.asc())
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())
