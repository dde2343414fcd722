# backend/portal/models/user.py
"""
Client accounts and their service-plan / subscription state.

Authentication lives with the identity provider; this table only keeps what
billing and notifications need.
"""

from __future__ import annotations

from enum import Enum

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Integer,
    Numeric,
    String,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import ulid

from ..core.constants import PLAN_COMPLETE_PROGRAM, PLAN_PAY_AS_YOU_GO
from ..database import Base


class ServicePlan(str, Enum):
    PAY_AS_YOU_GO = PLAN_PAY_AS_YOU_GO
    COMPLETE_PROGRAM = PLAN_COMPLETE_PROGRAM


class SubscriptionStatus(str, Enum):
    NONE = "none"
    ACTIVE = "active"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    DOWNGRADED = "downgraded"


class User(Base):
    __tablename__ = "users"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    email = Column(String(255), nullable=False, unique=True, index=True)
    name = Column(String(200), nullable=False)
    phone = Column(String(50), nullable=True)
    language = Column(String(5), nullable=False, default="en")

    service_plan = Column(String(30), nullable=False, default=ServicePlan.PAY_AS_YOU_GO.value)
    subscription_status = Column(
        String(20), nullable=False, default=SubscriptionStatus.NONE.value, index=True
    )
    current_billing_cycle = Column(Integer, nullable=True)
    max_billing_cycles = Column(Integer, nullable=True)
    monthly_amount = Column(Numeric(10, 2), nullable=True)
    next_billing_date = Column(Date, nullable=True, index=True)
    program_start_date = Column(Date, nullable=True)
    program_end_date = Column(Date, nullable=True)
    subscription_cancelled_at = Column(DateTime(timezone=True), nullable=True)

    planned_downgrade = Column(Boolean, nullable=False, default=False)
    downgrade_effective_date = Column(Date, nullable=True)
    downgrade_executed_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    appointments = relationship("Appointment", back_populates="user")
    invoices = relationship("Invoice", back_populates="user")

    __table_args__ = (
        CheckConstraint(
            "current_billing_cycle IS NULL OR max_billing_cycles IS NULL "
            "OR current_billing_cycle <= max_billing_cycles",
            name="ck_users_billing_cycle_bounds",
        ),
    )

    @property
    def is_complete_program(self) -> bool:
        return self.service_plan == ServicePlan.COMPLETE_PROGRAM.value

    @property
    def has_active_subscription(self) -> bool:
        return self.subscription_status == SubscriptionStatus.ACTIVE.value

    def clear_program_fields(self) -> None:
        """Drop every Complete-Program field (used by downgrades)."""
        self.current_billing_cycle = None
        self.max_billing_cycles = None
        self.monthly_amount = None
        self.next_billing_date = None
        self.program_start_date = None
        self.program_end_date = None
        self.planned_downgrade = False
        self.downgrade_effective_date = None

    def __repr__(self) -> str:
        return f"<User {self.id} plan={self.service_plan} subscription={self.subscription_status}>"
