"""Online meeting schemas."""

from typing import Optional

from pydantic import Field

from ._strict_base import StrictRequestModel
from .base import StandardizedModel


class CreateMeetingRequest(StrictRequestModel):
    appointment_id: str = Field(..., min_length=1, max_length=26)


class MeetingResponse(StandardizedModel):
    appointment_id: str
    join_url: Optional[str] = None
    meeting_id: Optional[str] = None
