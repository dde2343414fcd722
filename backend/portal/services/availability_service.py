# backend/portal/services/availability_service.py
"""
Slot availability for the nutrition portal.

A timeslot can be booked when it is on the practice grid
(``settings.bookable_timeslots``), is not blocked by an ``UnavailableSlot``
for that date and is not held by a non-terminal appointment.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
import logging
from typing import Iterable, List, Optional

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.constants import DEFAULT_QUERY_LIMIT, DEFAULT_UNAVAILABLE_REASON, TIMESLOT_FORMAT
from ..core.exceptions import ConflictException, NotFoundException, ValidationException
from ..core.timezone_utils import parse_timeslot
from ..models.availability import UnavailableSlot
from ..repositories.appointment_repository import AppointmentRepository
from ..repositories.availability_repository import AvailabilityRepository
from .base import BaseService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SlotAvailability:
    timeslot: str
    available: bool
    reason: Optional[str] = None


class AvailabilityService(BaseService):
    """Blocked slots (admin) and the bookable-slot query used by booking and rescheduling."""

    def __init__(self, db: Session) -> None:
        super().__init__(db)
        self.repository = AvailabilityRepository(db)
        self.appointment_repository = AppointmentRepository(db)

    @BaseService.measure_operation("block_slots")
    def block(self, slot_date: date, timeslots: Iterable[str], reason: Optional[str] = None) -> UnavailableSlot:
        """
        Take timeslots off the grid for one date.

        Existing appointments in those slots are left alone; only new bookings
        and reschedules are refused.

        Raises:
            ValidationException: no timeslots, or a timeslot off the practice grid
        """
        slots = sorted({self.normalize(slot) for slot in timeslots})
        if not slots:
            raise ValidationException("At least one timeslot is required", code="NO_TIMESLOTS")
        for slot in slots:
            self._ensure_on_grid(slot)

        with self.transaction():
            block = UnavailableSlot(
                date=slot_date,
                timeslots=slots,
                reason=(reason or "").strip() or DEFAULT_UNAVAILABLE_REASON,
            )
            self.repository.add(block)

        self.log_operation("slots_blocked", block_id=block.id, date=str(slot_date), timeslots=slots)
        return block

    @BaseService.measure_operation("unblock_slots")
    def unblock(self, block_id: str) -> None:
        with self.transaction():
            block = self.repository.get_by_id(block_id)
            if block is None:
                raise NotFoundException(f"Unavailable slot {block_id} not found", code="UNAVAILABLE_SLOT_NOT_FOUND")
            self.repository.delete(block)
        self.log_operation("slots_unblocked", block_id=block_id)

    def list_blocks(
        self,
        start: Optional[date] = None,
        end: Optional[date] = None,
        limit: int = DEFAULT_QUERY_LIMIT,
    ) -> List[UnavailableSlot]:
        if start is not None and end is not None and end < start:
            raise ValidationException("end must not be before start", code="INVALID_DATE_RANGE")
        return self.repository.list_between(start, end, limit=limit)

    def list_available_slots(self, slot_date: date) -> List[SlotAvailability]:
        """Every grid timeslot on ``slot_date`` with whether it can still be booked."""
        blocked = {}
        for block in self.repository.list_for_date(slot_date):
            for slot in block.timeslots or []:
                blocked.setdefault(slot, block.reason)
        booked = self.appointment_repository.booked_timeslots(slot_date)

        result = []
        for slot in settings.bookable_timeslots:
            if slot in blocked:
                result.append(SlotAvailability(slot, False, blocked[slot]))
            elif slot in booked:
                result.append(SlotAvailability(slot, False, "Booked"))
            else:
                result.append(SlotAvailability(slot, True))
        return result

    def ensure_bookable(self, slot_date: date, timeslot: str) -> None:
        """
        Refuse timeslots off the grid or blocked for the date.

        Occupancy by other appointments is checked by the caller, which knows
        which appointment to exclude.

        Raises:
            ValidationException: timeslot not on the practice grid
            ConflictException: timeslot blocked for that date
        """
        self._ensure_on_grid(timeslot)
        if timeslot in self.repository.blocked_timeslots(slot_date):
            raise ConflictException(
                f"Timeslot {slot_date.isoformat()} {timeslot} is not available",
                code="SLOT_UNAVAILABLE",
                details={"date": slot_date.isoformat(), "timeslot": timeslot},
            )

    @staticmethod
    def normalize(timeslot: str) -> str:
        return parse_timeslot(timeslot).strftime(TIMESLOT_FORMAT)

    @staticmethod
    def _ensure_on_grid(timeslot: str) -> None:
        if timeslot not in settings.bookable_timeslots:
            raise ValidationException(
                f"Timeslot {timeslot} is not offered",
                code="TIMESLOT_NOT_OFFERED",
                details={"timeslot": timeslot, "offered": list(settings.bookable_timeslots)},
            )
