# backend/portal/routes/v1/admin_appointments.py
"""
Admin appointment routes. Every transition here runs with the admin actor.

Endpoints:
    GET / - Appointments on a day
    POST /{appointment_id}/confirm
    POST /{appointment_id}/complete - Done, plus the session invoice
    POST /{appointment_id}/cancel
    POST /{appointment_id}/no-show - Cancelled with penalty, plus the penalty invoice
    POST /{appointment_id}/propose-reschedule
    POST /{appointment_id}/reschedule-response - Answer a client reschedule request
"""

from datetime import date
import logging
from typing import List, Optional

from fastapi import APIRouter, Body, Depends, Query

from ...api.dependencies import get_appointment_service
from ...models.appointment import AppointmentStatus
from ...schemas.appointment import (
    AdminCancelCreate,
    AppointmentResponse,
    BilledAppointmentResponse,
    ProposeRescheduleCreate,
    RescheduleResponseCreate,
)
from ...services.appointment_rules import Actor
from ...services.appointment_service import AppointmentService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["admin-appointments"])


@router.get("", response_model=List[AppointmentResponse])
def list_appointments_for_day(
    day: date = Query(..., alias="date"),
    status: Optional[List[AppointmentStatus]] = Query(None),
    service: AppointmentService = Depends(get_appointment_service),
) -> List[AppointmentResponse]:
    return [AppointmentResponse.model_validate(a) for a in service.list_for_date(day, status)]


@router.post("/{appointment_id}/confirm", response_model=AppointmentResponse)
def confirm_appointment(
    appointment_id: str,
    service: AppointmentService = Depends(get_appointment_service),
) -> AppointmentResponse:
    return AppointmentResponse.model_validate(service.confirm(appointment_id))


@router.post("/{appointment_id}/complete", response_model=BilledAppointmentResponse)
def complete_appointment(
    appointment_id: str,
    service: AppointmentService = Depends(get_appointment_service),
) -> BilledAppointmentResponse:
    return BilledAppointmentResponse.model_validate(service.complete(appointment_id))


@router.post("/{appointment_id}/cancel", response_model=AppointmentResponse)
def cancel_appointment(
    appointment_id: str,
    payload: Optional[AdminCancelCreate] = Body(None),
    service: AppointmentService = Depends(get_appointment_service),
) -> AppointmentResponse:
    reason = payload.reason if payload else None
    return AppointmentResponse.model_validate(service.cancel(appointment_id, reason=reason))


@router.post("/{appointment_id}/no-show", response_model=BilledAppointmentResponse)
def mark_no_show(
    appointment_id: str,
    service: AppointmentService = Depends(get_appointment_service),
) -> BilledAppointmentResponse:
    return BilledAppointmentResponse.model_validate(service.mark_no_show(appointment_id))


@router.post("/{appointment_id}/propose-reschedule", response_model=AppointmentResponse)
def propose_reschedule(
    appointment_id: str,
    payload: ProposeRescheduleCreate,
    service: AppointmentService = Depends(get_appointment_service),
) -> AppointmentResponse:
    appointment = service.propose_reschedule(
        appointment_id,
        new_date=payload.new_date,
        new_timeslot=payload.new_timeslot,
        reason=payload.reason,
    )
    return AppointmentResponse.model_validate(appointment)


@router.post("/{appointment_id}/reschedule-response", response_model=AppointmentResponse)
def respond_to_request(
    appointment_id: str,
    payload: RescheduleResponseCreate,
    service: AppointmentService = Depends(get_appointment_service),
) -> AppointmentResponse:
    appointment = service.respond_to_reschedule(
        appointment_id,
        actor=Actor.ADMIN,
        accept=payload.accept,
        new_date=payload.new_date,
        new_timeslot=payload.new_timeslot,
    )
    return AppointmentResponse.model_validate(appointment)
