"""Availability schemas: the practice slot grid and blocked slots."""

from datetime import date, datetime
from typing import List, Optional

from pydantic import Field

from ..core.constants import MAX_REASON_LENGTH
from ._strict_base import StrictRequestModel
from .appointment import TIMESLOT_PATTERN
from .base import StandardizedModel


class UnavailableSlotCreate(StrictRequestModel):
    date: date
    timeslots: List[str] = Field(..., min_length=1, max_length=24)
    reason: Optional[str] = Field(None, max_length=MAX_REASON_LENGTH)


class UnavailableSlotResponse(StandardizedModel):
    id: str
    date: date
    timeslots: List[str]
    reason: str
    created_at: Optional[datetime] = None


class SlotAvailabilityResponse(StandardizedModel):
    timeslot: str = Field(..., pattern=TIMESLOT_PATTERN)
    available: bool
    reason: Optional[str] = None


class DayAvailabilityResponse(StandardizedModel):
    date: date
    slots: List[SlotAvailabilityResponse]
