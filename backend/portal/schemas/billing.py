"""Complete Program subscription schemas."""

from datetime import date
from typing import List, Optional

from pydantic import Field

from ._strict_base import StrictRequestModel
from .base import Money, StandardizedModel
from .invoice import InvoiceCreatedResponse, InvoiceResponse


class SubscriptionStartRequest(StrictRequestModel):
    user_id: str = Field(..., min_length=1, max_length=26)
    monthly_amount: Optional[Money] = None
    start_date: Optional[date] = None


class SubscriptionCancelRequest(StrictRequestModel):
    user_id: str = Field(..., min_length=1, max_length=26)


class ScheduleDowngradeRequest(StrictRequestModel):
    user_id: str = Field(..., min_length=1, max_length=26)
    effective_date: Optional[date] = None


class BillingStatusResponse(StandardizedModel):
    user_id: str
    service_plan: str
    subscription_status: str
    current_billing_cycle: Optional[int] = None
    max_billing_cycles: Optional[int] = None
    monthly_amount: Optional[Money] = None
    next_billing_date: Optional[date] = None
    program_start_date: Optional[date] = None
    program_end_date: Optional[date] = None
    planned_downgrade: bool = False
    downgrade_effective_date: Optional[date] = None
    subscription_invoices: List[InvoiceResponse] = Field(default_factory=list)


class SubscriptionStartResponse(StandardizedModel):
    status: BillingStatusResponse
    first_invoice: InvoiceCreatedResponse
