# backend/portal/repositories/availability_repository.py
"""Data access for blocked consultation slots."""

from __future__ import annotations

from datetime import date
from typing import List, Optional, Set

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..models.availability import UnavailableSlot
from .base_repository import BaseRepository


class AvailabilityRepository(BaseRepository[UnavailableSlot]):
    def __init__(self, db: Session):
        super().__init__(db, UnavailableSlot)

    def list_for_date(self, slot_date: date) -> List[UnavailableSlot]:
        stmt = (
            select(UnavailableSlot)
            .where(UnavailableSlot.date == slot_date)
            .order_by(UnavailableSlot.created_at.asc(), UnavailableSlot.id.asc())
        )
        return list(self.db.execute(stmt).scalars().all())

    def list_between(
        self, start: Optional[date] = None, end: Optional[date] = None, *, limit: int = 100
    ) -> List[UnavailableSlot]:
        stmt = select(UnavailableSlot)
        if start is not None:
            stmt = stmt.where(UnavailableSlot.date >= start)
        if end is not None:
            stmt = stmt.where(UnavailableSlot.date <= end)
        stmt = stmt.order_by(UnavailableSlot.date.asc(), UnavailableSlot.id.asc()).limit(limit)
        return list(self.db.execute(stmt).scalars().all())

    def blocked_timeslots(self, slot_date: date) -> Set[str]:
        """Union of every blocked timeslot on ``slot_date``."""
        return {slot for block in self.list_for_date(slot_date) for slot in (block.timeslots or [])}

    def delete(self, block: UnavailableSlot) -> None:
        self.db.delete(block)
        self.flush()
