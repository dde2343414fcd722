# backend/portal/models/appointment.py
"""
Appointment models for the nutrition portal.

An appointment is a single consultation slot identified by a practice-local
date and an ``HH:MM`` timeslot. Appointments are never hard-deleted; every
state change goes through the transition rules in
``portal.services.appointment_rules``.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
import logging
from typing import Any, Dict, Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import ulid

from ..core.constants import APPOINTMENT_TYPE_FOLLOW_UP, APPOINTMENT_TYPE_INITIAL
from ..core.exceptions import ValidationException
from ..database import Base

logger = logging.getLogger(__name__)


class AppointmentStatus(str, Enum):
    """Closed set of appointment lifecycle states."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    DONE = "done"
    CANCELLED = "cancelled"
    CANCELLED_CLIENT = "cancelled_client"
    CANCELLED_RESCHEDULE = "cancelled_reschedule"
    CLIENT_RESCHEDULE_REQUESTED = "clientRescheduleRequested"
    CONFIRM_RESCHEDULE_REQUEST = "confirmRescheduleRequest"
    VEE_RESCHEDULE_REQUEST = "veeRescheduleRequest"
    NO_SHOW = "no-show"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @classmethod
    def parse(cls, value: "str | AppointmentStatus") -> "AppointmentStatus":
        """Normalise legacy spellings and reject anything outside the closed set."""
        if isinstance(value, cls):
            return value
        raw = (value or "").strip()
        raw = _LEGACY_STATUS_ALIASES.get(raw, raw)
        try:
            return cls(raw)
        except ValueError:
            raise ValidationException(
                f"Unknown appointment status '{value}'",
                code="UNKNOWN_STATUS",
                details={"status": value, "allowed": [s.value for s in cls]},
            )


TERMINAL_STATUSES = frozenset(
    {
        AppointmentStatus.DONE,
        AppointmentStatus.CANCELLED,
        AppointmentStatus.CANCELLED_CLIENT,
        AppointmentStatus.CANCELLED_RESCHEDULE,
        AppointmentStatus.NO_SHOW,
    }
)

_LEGACY_STATUS_ALIASES = {
    "reschedule_requested": AppointmentStatus.CLIENT_RESCHEDULE_REQUESTED.value,
    "no_show": AppointmentStatus.NO_SHOW.value,
}


class AppointmentType(str, Enum):
    INITIAL = APPOINTMENT_TYPE_INITIAL
    FOLLOW_UP = APPOINTMENT_TYPE_FOLLOW_UP


_TERMINAL_SQL = ", ".join(f"'{status.value}'" for status in sorted(TERMINAL_STATUSES))
_STATUS_SQL = ", ".join(f"'{status.value}'" for status in AppointmentStatus)
_TYPE_SQL = ", ".join(f"'{kind.value}'" for kind in AppointmentType)


class Appointment(Base):
    """
    A booked consultation.

    Attributes:
        status: One of ``AppointmentStatus``
        late_reschedule: Set once a client reschedules within the late window
        potential_late_fee: Fee attached to a late reschedule
        no_show_penalty: Penalty amount recorded when the client did not show up
        teams_join_url / teams_meeting_id: Online meeting handle, set once on confirmation
    """

    __tablename__ = "appointments"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    user_id = Column(String(26), ForeignKey("users.id"), nullable=False, index=True)
    client_name = Column(String(200), nullable=False)
    client_email = Column(String(255), nullable=False)
    phone = Column(String(50), nullable=True)
    language = Column(String(5), nullable=False, default="en")
    type = Column(String(20), nullable=False, default=AppointmentType.INITIAL.value)
    date = Column(Date, nullable=False)
    timeslot = Column(String(5), nullable=False)
    status = Column(String(40), nullable=False, default=AppointmentStatus.PENDING.value, index=True)
    goals = Column(Text, nullable=True)

    reschedule_reason = Column(Text, nullable=True)
    requested_date = Column(Date, nullable=True)
    requested_timeslot = Column(String(5), nullable=True)
    cancel_reason = Column(Text, nullable=True)

    late_reschedule = Column(Boolean, nullable=False, default=False)
    potential_late_fee = Column(Numeric(10, 2), nullable=True)
    no_show_penalty = Column(Numeric(10, 2), nullable=True)

    teams_join_url = Column(Text, nullable=True)
    teams_meeting_id = Column(String(255), nullable=True)

    invoice_generated = Column(Boolean, nullable=False, default=False)
    consent_form_submitted = Column(Boolean, nullable=False, default=False)
    pre_evaluation_completed = Column(Boolean, nullable=False, default=False)

    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    user = relationship("User", back_populates="appointments")
    reschedule_history = relationship(
        "AppointmentReschedule",
        back_populates="appointment",
        order_by="AppointmentReschedule.rescheduled_at",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        CheckConstraint(f"status IN ({_STATUS_SQL})", name="ck_appointments_status"),
        CheckConstraint(f"type IN ({_TYPE_SQL})", name="ck_appointments_type"),
        Index(
            "uq_appointments_active_slot",
            "date",
            "timeslot",
            unique=True,
            postgresql_where=text(f"status NOT IN ({_TERMINAL_SQL})"),
            sqlite_where=text(f"status NOT IN ({_TERMINAL_SQL})"),
        ),
    )

    @property
    def status_enum(self) -> AppointmentStatus:
        return AppointmentStatus.parse(self.status)

    @property
    def is_terminal(self) -> bool:
        return self.status_enum.is_terminal

    def record_reschedule(
        self,
        *,
        initiated_by: str,
        new_date: Optional[date] = None,
        new_timeslot: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> AppointmentReschedule:
        """Append a reschedule request or proposal to the history."""
        entry = AppointmentReschedule(
            rescheduled_at=datetime.now(timezone.utc),
            previous_date=self.date,
            previous_timeslot=self.timeslot,
            new_date=new_date,
            new_timeslot=new_timeslot,
            initiated_by=initiated_by,
            reason=reason,
        )
        self.reschedule_history.append(entry)
        return entry

    def move_to(self, new_date: date, new_timeslot: str) -> None:
        """Take the new slot and clear the pending request."""
        self.date = new_date
        self.timeslot = new_timeslot
        self.requested_date = None
        self.requested_timeslot = None

    def to_dict(self) -> Dict[str, Any]:
        """Plain payload used for notification templates."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "client_name": self.client_name,
            "client_email": self.client_email,
            "type": self.type,
            "date": self.date.isoformat() if self.date else None,
            "timeslot": self.timeslot,
            "status": self.status,
            "late_reschedule": bool(self.late_reschedule),
            "potential_late_fee": _money(self.potential_late_fee),
            "no_show_penalty": _money(self.no_show_penalty),
            "teams_join_url": self.teams_join_url,
        }

    def __repr__(self) -> str:
        return f"<Appointment {self.id} {self.date} {self.timeslot} status={self.status}>"


class AppointmentReschedule(Base):
    """One entry of an appointment's reschedule history."""

    __tablename__ = "appointment_reschedules"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    appointment_id = Column(
        String(26), ForeignKey("appointments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    rescheduled_at = Column(DateTime(timezone=True), nullable=False)
    previous_date = Column(Date, nullable=False)
    previous_timeslot = Column(String(5), nullable=False)
    new_date = Column(Date, nullable=True)
    new_timeslot = Column(String(5), nullable=True)
    initiated_by = Column(String(10), nullable=False)
    reason = Column(Text, nullable=True)

    appointment = relationship("Appointment", back_populates="reschedule_history")


def _money(value: Optional[Decimal]) -> Optional[float]:
    return float(value) if value is not None else None
