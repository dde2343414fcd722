# backend/portal/routes/v1/teams.py
"""Online meeting routes."""

import logging

from fastapi import APIRouter, Depends

from ...api.dependencies import get_appointment_service
from ...schemas.teams import CreateMeetingRequest, MeetingResponse
from ...services.appointment_service import AppointmentService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["teams"])


@router.post("/create-meeting", response_model=MeetingResponse)
def create_meeting(
    payload: CreateMeetingRequest,
    service: AppointmentService = Depends(get_appointment_service),
) -> MeetingResponse:
    """Attach a Teams meeting to a confirmed appointment that has none yet."""
    appointment = service.create_meeting(payload.appointment_id)
    return MeetingResponse(
        appointment_id=appointment.id,
        join_url=appointment.teams_join_url,
        meeting_id=appointment.teams_meeting_id,
    )
