# backend/portal/routes/v1/appointments.py
"""
Client appointment routes.

Endpoints:
    POST / - Book an appointment
    GET / - List a client's appointments
    GET /available-slots - Bookable timeslots on a date
    GET /{appointment_id} - Appointment details
    POST /{appointment_id}/reschedule-request - Ask to move a confirmed appointment
    POST /{appointment_id}/reschedule-response - Accept or decline a coach proposal
    POST /{appointment_id}/cancel - Cancel (at least 30 minutes before the start)
    POST /{appointment_id}/consent - Record a consent form
    POST /{appointment_id}/pre-evaluation - Submit the health questionnaire
"""

from datetime import date
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status

from ...api.dependencies import get_appointment_service, get_availability_service
from ...schemas.appointment import (
    AppointmentCreate,
    AppointmentResponse,
    ClientCancelCreate,
    ConsentCreate,
    ConsentResponse,
    PreEvaluationCreate,
    PreEvaluationResponse,
    RescheduleRequestCreate,
    RescheduleResponseCreate,
)
from ...schemas.availability import DayAvailabilityResponse, SlotAvailabilityResponse
from ...services.appointment_rules import Actor
from ...services.appointment_service import AppointmentService
from ...services.availability_service import AvailabilityService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["appointments"])


@router.post("", response_model=AppointmentResponse, status_code=status.HTTP_201_CREATED)
def book_appointment(
    payload: AppointmentCreate,
    service: AppointmentService = Depends(get_appointment_service),
) -> AppointmentResponse:
    appointment = service.book(
        user_id=payload.user_id,
        type=payload.type.value,
        date=payload.date,
        timeslot=payload.timeslot,
        client_name=payload.client_name,
        client_email=str(payload.client_email) if payload.client_email else None,
        goals=payload.goals,
        phone=payload.phone,
        language=payload.language,
    )
    return AppointmentResponse.model_validate(appointment)


@router.get("", response_model=List[AppointmentResponse])
def list_appointments(
    user_id: str = Query(..., min_length=1, max_length=26),
    limit: int = Query(100, ge=1, le=500),
    service: AppointmentService = Depends(get_appointment_service),
) -> List[AppointmentResponse]:
    return [AppointmentResponse.model_validate(a) for a in service.list_for_user(user_id, limit)]


@router.get("/available-slots", response_model=DayAvailabilityResponse)
def list_available_slots(
    day: date = Query(..., alias="date"),
    service: AvailabilityService = Depends(get_availability_service),
) -> DayAvailabilityResponse:
    slots = service.list_available_slots(day)
    return DayAvailabilityResponse(
        date=day,
        slots=[SlotAvailabilityResponse.model_validate(slot) for slot in slots],
    )


@router.get("/{appointment_id}", response_model=AppointmentResponse)
def get_appointment(
    appointment_id: str,
    user_id: Optional[str] = Query(None, max_length=26),
    service: AppointmentService = Depends(get_appointment_service),
) -> AppointmentResponse:
    return AppointmentResponse.model_validate(service.get(appointment_id, user_id=user_id))


@router.post("/{appointment_id}/reschedule-request", response_model=AppointmentResponse)
def request_reschedule(
    appointment_id: str,
    payload: RescheduleRequestCreate,
    service: AppointmentService = Depends(get_appointment_service),
) -> AppointmentResponse:
    appointment = service.request_reschedule(
        appointment_id,
        user_id=payload.user_id,
        reason=payload.reason,
        new_date=payload.new_date,
        new_timeslot=payload.new_timeslot,
    )
    return AppointmentResponse.model_validate(appointment)


@router.post("/{appointment_id}/reschedule-response", response_model=AppointmentResponse)
def respond_to_proposal(
    appointment_id: str,
    payload: RescheduleResponseCreate,
    service: AppointmentService = Depends(get_appointment_service),
) -> AppointmentResponse:
    """Client answer to a reschedule the coach proposed."""
    appointment = service.respond_to_reschedule(
        appointment_id,
        actor=Actor.CLIENT,
        accept=payload.accept,
        new_date=payload.new_date,
        new_timeslot=payload.new_timeslot,
        user_id=payload.user_id,
    )
    return AppointmentResponse.model_validate(appointment)


@router.post("/{appointment_id}/cancel", response_model=AppointmentResponse)
def cancel_appointment(
    appointment_id: str,
    payload: ClientCancelCreate,
    service: AppointmentService = Depends(get_appointment_service),
) -> AppointmentResponse:
    appointment = service.cancel_by_client(appointment_id, user_id=payload.user_id, reason=payload.reason)
    return AppointmentResponse.model_validate(appointment)


@router.post(
    "/{appointment_id}/consent",
    response_model=ConsentResponse,
    status_code=status.HTTP_201_CREATED,
)
def submit_consent(
    appointment_id: str,
    payload: ConsentCreate,
    service: AppointmentService = Depends(get_appointment_service),
) -> ConsentResponse:
    record = service.record_consent(
        appointment_id,
        user_id=payload.user_id,
        consent_type=payload.consent_type,
        consent_given=payload.consent_given,
        consent_version=payload.consent_version,
    )
    return ConsentResponse.model_validate(record)


@router.post(
    "/{appointment_id}/pre-evaluation",
    response_model=PreEvaluationResponse,
    status_code=status.HTTP_201_CREATED,
)
def submit_pre_evaluation(
    appointment_id: str,
    payload: PreEvaluationCreate,
    service: AppointmentService = Depends(get_appointment_service),
) -> PreEvaluationResponse:
    evaluation = service.record_pre_evaluation(
        appointment_id,
        user_id=payload.user_id,
        answers=payload.answers,
        health_goals=payload.health_goals,
    )
    return PreEvaluationResponse.model_validate(evaluation)
