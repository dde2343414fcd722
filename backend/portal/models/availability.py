# backend/portal/models/availability.py
"""
Blocked consultation slots.

The practice offers a fixed daily grid of start times
(``settings.bookable_timeslots``). An ``UnavailableSlot`` takes some of those
times off the grid for one date, e.g. for holidays or training days.
"""

from __future__ import annotations

from typing import Any, Dict

from sqlalchemy import Column, Date, DateTime, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func
from sqlalchemy.types import JSON
import ulid

from ..core.constants import DEFAULT_UNAVAILABLE_REASON
from ..database import Base


class UnavailableSlot(Base):
    __tablename__ = "unavailable_slots"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    date = Column(Date, nullable=False, index=True)
    timeslots = Column(
        JSONB(astext_type=Text()).with_variant(JSON(), "sqlite"),
        nullable=False,
        default=list,
    )
    reason = Column(Text, nullable=False, default=DEFAULT_UNAVAILABLE_REASON)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "date": self.date.isoformat() if self.date else None,
            "timeslots": list(self.timeslots or []),
            "reason": self.reason,
        }

    def __repr__(self) -> str:
        return f"<UnavailableSlot {self.date} {self.timeslots}>"
