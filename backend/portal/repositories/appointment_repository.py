# backend/portal/repositories/appointment_repository.py
"""Data access for appointments."""

from __future__ import annotations

from datetime import date
from typing import Iterable, List, Optional, Set

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from ..models.appointment import TERMINAL_STATUSES, Appointment, AppointmentStatus
from .base_repository import BaseRepository

_TERMINAL_VALUES = [status.value for status in TERMINAL_STATUSES]


class AppointmentRepository(BaseRepository[Appointment]):
    def __init__(self, db: Session):
        super().__init__(db, Appointment)

    def get_for_update(self, appointment_id: str) -> Optional[Appointment]:
        """Load an appointment, row-locked on PostgreSQL."""
        stmt = (
            select(Appointment)
            .where(Appointment.id == appointment_id)
            .options(selectinload(Appointment.reschedule_history))
        )
        if self.dialect_name == "postgresql":
            stmt = stmt.with_for_update()
        return self.db.execute(stmt).scalar_one_or_none()

    def find_active_in_slot(
        self,
        slot_date: date,
        timeslot: str,
        *,
        exclude_id: Optional[str] = None,
    ) -> Optional[Appointment]:
        """Return the non-terminal appointment occupying a slot, if any."""
        stmt = select(Appointment).where(
            Appointment.date == slot_date,
            Appointment.timeslot == timeslot,
            Appointment.status.notin_(_TERMINAL_VALUES),
        )
        if exclude_id:
            stmt = stmt.where(Appointment.id != exclude_id)
        return self.db.execute(stmt.limit(1)).scalar_one_or_none()

    def list_for_user(self, user_id: str, *, limit: int = 100) -> List[Appointment]:
        stmt = (
            select(Appointment)
            .where(Appointment.user_id == user_id)
            .order_by(Appointment.date.desc(), Appointment.timeslot.desc())
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def list_on_date(
        self,
        slot_date: date,
        statuses: Optional[Iterable[AppointmentStatus]] = None,
    ) -> List[Appointment]:
        stmt = select(Appointment).where(Appointment.date == slot_date)
        if statuses is not None:
            stmt = stmt.where(Appointment.status.in_([status.value for status in statuses]))
        stmt = stmt.order_by(Appointment.timeslot.asc(), Appointment.id.asc())
        return list(self.db.execute(stmt).scalars().all())

    def booked_timeslots(self, slot_date: date) -> Set[str]:
        """Timeslots held by a non-terminal appointment on ``slot_date``."""
        stmt = select(Appointment.timeslot).where(
            Appointment.date == slot_date,
            Appointment.status.notin_(_TERMINAL_VALUES),
        )
        return set(self.db.execute(stmt).scalars().all())
