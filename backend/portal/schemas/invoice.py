"""Invoice schemas."""

from datetime import date, datetime
from typing import List, Literal, Optional

from pydantic import EmailStr, Field, model_validator

from ..core.constants import MAX_DESCRIPTION_LENGTH, MAX_REASON_LENGTH
from ._strict_base import StrictRequestModel
from .base import Money, StandardizedModel


class InvoiceCreateRequest(StrictRequestModel):
    """
    Body of ``POST /api/invoices/create``.

    ``kind`` defaults to ``custom``, the admin-issued invoice. The other kinds
    take the same keys the scheduled jobs and appointment flow use.
    """

    kind: Literal["session", "subscription", "penalty", "custom"] = "custom"
    user_id: Optional[str] = Field(None, max_length=26)
    client_name: Optional[str] = Field(None, max_length=200)
    client_email: Optional[EmailStr] = None
    amount: Optional[Money] = None
    description: Optional[str] = Field(None, max_length=MAX_DESCRIPTION_LENGTH)
    appointment_id: Optional[str] = Field(None, max_length=26)
    session_type: Optional[str] = Field(None, max_length=20)
    billing_cycle: Optional[int] = Field(None, ge=1)
    billing_date: Optional[date] = None
    penalty_type: Optional[Literal["late_reschedule", "no_show"]] = None

    @model_validator(mode="after")
    def _required_per_kind(self) -> "InvoiceCreateRequest":
        if self.kind == "custom" and (self.user_id is None or self.amount is None):
            raise ValueError("custom invoices need user_id and amount")
        if self.kind == "subscription" and self.user_id is None:
            raise ValueError("subscription invoices need user_id")
        if self.kind in ("session", "penalty") and self.appointment_id is None:
            raise ValueError(f"{self.kind} invoices need appointment_id")
        if self.kind == "penalty" and self.penalty_type is None:
            raise ValueError("penalty invoices need penalty_type")
        return self


class InvoiceReissueRequest(StrictRequestModel):
    invoice_id: str = Field(..., min_length=1, max_length=26)
    new_amount: Money
    reason: Optional[str] = Field(None, max_length=MAX_REASON_LENGTH)


class SendReminderRequest(StrictRequestModel):
    invoice_id: str = Field(..., min_length=1, max_length=26)


class MarkPaidRequest(StrictRequestModel):
    payment_intent_id: Optional[str] = Field(None, max_length=255)


class InvoiceItemResponse(StandardizedModel):
    description: str
    amount: Money
    item_type: str


class InvoiceResponse(StandardizedModel):
    id: str
    invoice_number: str
    user_id: str
    client_name: str
    client_email: str
    invoice_type: str
    status: str
    total_amount: Money
    currency: str
    due_date: date
    description: Optional[str] = None
    billing_cycle: Optional[int] = None
    appointment_id: Optional[str] = None
    charges: List[str] = Field(default_factory=list)
    payment_url: Optional[str] = None
    pdf_url: Optional[str] = None
    paid_at: Optional[datetime] = None
    credit_note_number: Optional[str] = None
    credited_at: Optional[datetime] = None
    original_invoice_id: Optional[str] = None
    original_amount: Optional[Money] = None
    is_reissued: bool = False
    reissue_reason: Optional[str] = None
    items: List[InvoiceItemResponse] = Field(default_factory=list)


class InvoiceCreatedResponse(StandardizedModel):
    invoice_id: str
    invoice_number: str
    created: bool
    payment_url: Optional[str] = None
    client_secret: Optional[str] = None
    invoice: InvoiceResponse


class InvoiceReminderResponse(StandardizedModel):
    invoice_id: str
    status: str
    queued: bool = True
