# backend/portal/models/invoice.py
"""
Invoice persistence models.

Uniqueness is enforced by partial indexes rather than by query-then-insert:
- one non-credited subscription invoice per (user, billing cycle)
- one non-credited invoice per appointment

An appointment-linked invoice lists the charges it covers in ``charges``
(session, late_reschedule, no_show) so later charges can be folded into it.

A credited invoice is frozen; replacements link back through
``original_invoice_id`` and ``credit_note_number``.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Any, Dict

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    event,
    inspect,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from sqlalchemy.types import JSON
import ulid

from ..core.exceptions import BusinessRuleException
from ..database import Base


class InvoiceStatus(str, Enum):
    UNPAID = "unpaid"
    PAID = "paid"
    CREDITED = "credited"
    PENDING = "pending"


class InvoiceType(str, Enum):
    SESSION = "session"
    SUBSCRIPTION = "subscription"
    PENALTY = "penalty"


class InvoiceItemType(str, Enum):
    SESSION = "session"
    PENALTY = "penalty"
    SUBSCRIPTION = "subscription"


class InvoiceCharge(str, Enum):
    """What an appointment-linked invoice bills for."""

    SESSION = "session"
    LATE_RESCHEDULE = "late_reschedule"
    NO_SHOW = "no_show"


class Invoice(Base):
    __tablename__ = "invoices"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    invoice_number = Column(String(64), nullable=False, unique=True, index=True)
    user_id = Column(String(26), ForeignKey("users.id"), nullable=False, index=True)
    client_name = Column(String(200), nullable=False)
    client_email = Column(String(255), nullable=False)
    invoice_type = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False, default=InvoiceStatus.UNPAID.value, index=True)
    total_amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="eur")
    due_date = Column(Date, nullable=False)
    description = Column(Text, nullable=True)
    billing_cycle = Column(Integer, nullable=True)
    appointment_id = Column(String(26), ForeignKey("appointments.id"), nullable=True, index=True)
    charges = Column(
        JSONB(astext_type=Text()).with_variant(JSON(), "sqlite"),
        nullable=False,
        default=list,
    )
    pdf_url = Column(Text, nullable=True)

    stripe_payment_intent_id = Column(String(255), nullable=True, index=True)
    payment_client_secret = Column(String(255), nullable=True)
    payment_url = Column(Text, nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)

    credit_note_number = Column(String(80), nullable=True)
    credited_at = Column(DateTime(timezone=True), nullable=True)
    original_invoice_id = Column(String(26), ForeignKey("invoices.id"), nullable=True)
    original_amount = Column(Numeric(10, 2), nullable=True)
    is_reissued = Column(Boolean, nullable=False, default=False)
    reissue_reason = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    user = relationship("User", back_populates="invoices")
    items = relationship(
        "InvoiceItem",
        back_populates="invoice",
        order_by="InvoiceItem.position",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index(
            "uq_invoices_subscription_cycle",
            "user_id",
            "billing_cycle",
            unique=True,
            postgresql_where=text("invoice_type = 'subscription' AND status <> 'credited'"),
            sqlite_where=text("invoice_type = 'subscription' AND status <> 'credited'"),
        ),
        Index(
            "uq_invoices_active_appointment",
            "appointment_id",
            unique=True,
            postgresql_where=text("appointment_id IS NOT NULL AND status <> 'credited'"),
            sqlite_where=text("appointment_id IS NOT NULL AND status <> 'credited'"),
        ),
    )

    @property
    def items_total(self) -> Decimal:
        return sum((Decimal(item.amount) for item in self.items), Decimal("0"))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "invoice_number": self.invoice_number,
            "user_id": self.user_id,
            "client_name": self.client_name,
            "client_email": self.client_email,
            "invoice_type": self.invoice_type,
            "status": self.status,
            "total_amount": float(self.total_amount),
            "currency": self.currency,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "billing_cycle": self.billing_cycle,
            "appointment_id": self.appointment_id,
            "charges": list(self.charges or []),
            "payment_url": self.payment_url,
            "items": [
                {"description": item.description, "amount": float(item.amount), "type": item.item_type}
                for item in self.items
            ],
        }

    def __repr__(self) -> str:
        return f"<Invoice {self.invoice_number} {self.invoice_type} {self.total_amount} {self.status}>"


class InvoiceItem(Base):
    __tablename__ = "invoice_items"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    invoice_id = Column(
        String(26), ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False, index=True
    )
    position = Column(Integer, nullable=False, default=0)
    description = Column(String(255), nullable=False)
    amount = Column(Numeric(10, 2), nullable=False)
    item_type = Column(String(20), nullable=False)

    invoice = relationship("Invoice", back_populates="items")


@event.listens_for(Invoice, "before_update")
def _freeze_credited_invoice(mapper: Any, connection: Any, target: Invoice) -> None:
    """Reject any write to an invoice that was already credited."""
    history = inspect(target).attrs.status.history
    previous = history.deleted[0] if history.deleted else target.status
    if previous == InvoiceStatus.CREDITED.value:
        raise BusinessRuleException(
            "Credited invoices are immutable",
            code="INVOICE_CREDITED",
            details={"invoice_id": target.id},
        )
