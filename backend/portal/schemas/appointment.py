"""
Appointment schemas for the nutrition portal.

Dates are plain ``YYYY-MM-DD`` calendar dates and timeslots ``HH:MM``; both
are interpreted in the practice timezone.
"""

from datetime import date, datetime
from typing import Any, Dict, List, Optional

from pydantic import EmailStr, Field, model_validator

from ..core.constants import MAX_REASON_LENGTH
from ..models.appointment import AppointmentType
from ._strict_base import StrictRequestModel
from .base import Money, StandardizedModel
from .invoice import InvoiceResponse

TIMESLOT_PATTERN = r"^([01]\d|2[0-3]):[0-5]\d$"


class AppointmentCreate(StrictRequestModel):
    user_id: str = Field(..., min_length=1, max_length=26)
    type: AppointmentType = Field(..., description="Initial or Follow-up")
    date: date
    timeslot: str = Field(..., pattern=TIMESLOT_PATTERN, description="Start time HH:MM")
    client_name: Optional[str] = Field(None, max_length=200)
    client_email: Optional[EmailStr] = None
    goals: Optional[str] = Field(None, max_length=2000)
    phone: Optional[str] = Field(None, max_length=50)
    language: Optional[str] = Field(None, max_length=5)


class _OptionalSlot(StrictRequestModel):
    new_date: Optional[date] = None
    new_timeslot: Optional[str] = Field(None, pattern=TIMESLOT_PATTERN)

    @model_validator(mode="after")
    def _slot_given_together(self) -> "_OptionalSlot":
        if (self.new_date is None) != (self.new_timeslot is None):
            raise ValueError("new_date and new_timeslot must be given together")
        return self


class RescheduleRequestCreate(_OptionalSlot):
    """Client asks to move a confirmed appointment."""

    user_id: str = Field(..., min_length=1, max_length=26)
    reason: Optional[str] = Field(None, max_length=MAX_REASON_LENGTH)


class RescheduleResponseCreate(_OptionalSlot):
    """Answer to a pending reschedule (client for coach proposals, admin for client requests)."""

    accept: bool
    user_id: Optional[str] = Field(None, max_length=26)


class ProposeRescheduleCreate(StrictRequestModel):
    new_date: date
    new_timeslot: str = Field(..., pattern=TIMESLOT_PATTERN)
    reason: Optional[str] = Field(None, max_length=MAX_REASON_LENGTH)


class ClientCancelCreate(StrictRequestModel):
    user_id: str = Field(..., min_length=1, max_length=26)
    reason: Optional[str] = Field(None, max_length=MAX_REASON_LENGTH)


class AdminCancelCreate(StrictRequestModel):
    reason: Optional[str] = Field(None, max_length=MAX_REASON_LENGTH)


class ConsentCreate(StrictRequestModel):
    user_id: str = Field(..., min_length=1, max_length=26)
    consent_type: str = Field(..., min_length=1, max_length=50)
    consent_given: bool
    consent_version: str = Field("1.0", max_length=20)


class PreEvaluationCreate(StrictRequestModel):
    user_id: str = Field(..., min_length=1, max_length=26)
    answers: Dict[str, Any] = Field(default_factory=dict)
    health_goals: Optional[str] = Field(None, max_length=2000)


class RescheduleEntryResponse(StandardizedModel):
    rescheduled_at: datetime
    previous_date: date
    previous_timeslot: str
    new_date: Optional[date] = None
    new_timeslot: Optional[str] = None
    initiated_by: str
    reason: Optional[str] = None


class AppointmentResponse(StandardizedModel):
    id: str
    user_id: str
    client_name: str
    client_email: str
    type: str
    date: date
    timeslot: str
    status: str
    goals: Optional[str] = None
    reschedule_reason: Optional[str] = None
    requested_date: Optional[date] = None
    requested_timeslot: Optional[str] = None
    cancel_reason: Optional[str] = None
    late_reschedule: bool = False
    potential_late_fee: Optional[Money] = None
    no_show_penalty: Optional[Money] = None
    teams_join_url: Optional[str] = None
    invoice_generated: bool = False
    consent_form_submitted: bool = False
    pre_evaluation_completed: bool = False
    reschedule_history: List[RescheduleEntryResponse] = Field(default_factory=list)


class BilledAppointmentResponse(StandardizedModel):
    appointment: AppointmentResponse
    invoice: Optional[InvoiceResponse] = None
    invoice_created: bool = False


class ConsentResponse(StandardizedModel):
    id: str
    user_id: str
    appointment_id: Optional[str] = None
    consent_type: str
    consent_given: bool
    consent_version: str


class PreEvaluationResponse(StandardizedModel):
    id: str
    user_id: str
    appointment_id: Optional[str] = None
    health_goals: Optional[str] = None
    answers: Dict[str, Any] = Field(default_factory=dict)
