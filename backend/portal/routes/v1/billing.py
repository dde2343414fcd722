# backend/portal/routes/v1/billing.py
"""
Complete Program subscription routes.

Endpoints:
    POST /subscriptions/start - Enroll and bill month one
    POST /subscriptions/cancel - Stop the program
    POST /subscriptions/schedule-downgrade - Plan the switch to pay-as-you-go
    GET /subscriptions/{user_id} - Dashboard billing widget
"""

import logging

from fastapi import APIRouter, Depends, status

from ...api.dependencies import get_billing_service
from ...schemas.billing import (
    BillingStatusResponse,
    ScheduleDowngradeRequest,
    SubscriptionCancelRequest,
    SubscriptionStartRequest,
    SubscriptionStartResponse,
)
from ...services.billing_service import SubscriptionBillingService
from .invoices import to_created_response

logger = logging.getLogger(__name__)

router = APIRouter(tags=["billing"])


def _status(service: SubscriptionBillingService, user_id: str) -> BillingStatusResponse:
    return BillingStatusResponse.model_validate(service.billing_status(user_id))


@router.post(
    "/subscriptions/start",
    response_model=SubscriptionStartResponse,
    status_code=status.HTTP_201_CREATED,
)
def start_subscription(
    payload: SubscriptionStartRequest,
    service: SubscriptionBillingService = Depends(get_billing_service),
) -> SubscriptionStartResponse:
    enrollment = service.start_complete_program(
        payload.user_id,
        monthly_amount=payload.monthly_amount,
        start_date=payload.start_date,
    )
    return SubscriptionStartResponse(
        status=_status(service, enrollment.user.id),
        first_invoice=to_created_response(enrollment.invoice),
    )


@router.post("/subscriptions/cancel", response_model=BillingStatusResponse)
def cancel_subscription(
    payload: SubscriptionCancelRequest,
    service: SubscriptionBillingService = Depends(get_billing_service),
) -> BillingStatusResponse:
    user = service.cancel_subscription(payload.user_id)
    return _status(service, user.id)


@router.post("/subscriptions/schedule-downgrade", response_model=BillingStatusResponse)
def schedule_downgrade(
    payload: ScheduleDowngradeRequest,
    service: SubscriptionBillingService = Depends(get_billing_service),
) -> BillingStatusResponse:
    user = service.schedule_downgrade(payload.user_id, payload.effective_date)
    return _status(service, user.id)


@router.get("/subscriptions/{user_id}", response_model=BillingStatusResponse)
def get_billing_status(
    user_id: str,
    service: SubscriptionBillingService = Depends(get_billing_service),
) -> BillingStatusResponse:
    return _status(service, user_id)
