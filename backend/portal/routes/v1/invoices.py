# backend/portal/routes/v1/invoices.py
"""
Invoice routes.

Endpoints:
    POST /create - Issue an invoice (custom by default)
    POST /reissue - Credit an invoice and issue its replacement
    POST /send-reminder - Queue a payment reminder
    GET / - Invoices of a client, or every open invoice
    GET /{invoice_number} - Invoice by number (payment page)
    POST /{invoice_id}/mark-paid - Record a payment confirmed outside the webhook
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, Query, status

from ...api.dependencies import get_invoice_service
from ...schemas.invoice import (
    InvoiceCreatedResponse,
    InvoiceCreateRequest,
    InvoiceReissueRequest,
    InvoiceReminderResponse,
    InvoiceResponse,
    MarkPaidRequest,
    SendReminderRequest,
)
from ...services.invoice_service import InvoiceResult, InvoiceService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["invoices"])


def to_created_response(result: InvoiceResult) -> InvoiceCreatedResponse:
    invoice = result.invoice
    return InvoiceCreatedResponse(
        invoice_id=invoice.id,
        invoice_number=invoice.invoice_number,
        created=result.created,
        payment_url=invoice.payment_url,
        client_secret=invoice.payment_client_secret,
        invoice=InvoiceResponse.model_validate(invoice),
    )


@router.post("/create", response_model=InvoiceCreatedResponse, status_code=status.HTTP_201_CREATED)
def create_invoice(
    payload: InvoiceCreateRequest,
    service: InvoiceService = Depends(get_invoice_service),
) -> InvoiceCreatedResponse:
    context: Dict[str, Any] = payload.model_dump(exclude={"kind"}, exclude_none=True)
    if payload.client_email is not None:
        context["client_email"] = str(payload.client_email)
    result = service.create(payload.kind, context)
    return to_created_response(result)


@router.post("/reissue", response_model=InvoiceCreatedResponse, status_code=status.HTTP_201_CREATED)
def reissue_invoice(
    payload: InvoiceReissueRequest,
    service: InvoiceService = Depends(get_invoice_service),
) -> InvoiceCreatedResponse:
    result = service.reissue(payload.invoice_id, payload.new_amount, payload.reason)
    return to_created_response(result)


@router.post("/send-reminder", response_model=InvoiceReminderResponse)
def send_payment_reminder(
    payload: SendReminderRequest,
    service: InvoiceService = Depends(get_invoice_service),
) -> InvoiceReminderResponse:
    invoice = service.send_payment_reminder(payload.invoice_id)
    return InvoiceReminderResponse(invoice_id=invoice.id, status=invoice.status)


@router.get("", response_model=List[InvoiceResponse])
def list_invoices(
    user_id: Optional[str] = Query(None, max_length=26),
    limit: int = Query(100, ge=1, le=500),
    service: InvoiceService = Depends(get_invoice_service),
) -> List[InvoiceResponse]:
    invoices = service.list_for_user(user_id, limit) if user_id else service.list_unpaid(limit)
    return [InvoiceResponse.model_validate(invoice) for invoice in invoices]


@router.get("/{invoice_number}", response_model=InvoiceResponse)
def get_invoice(
    invoice_number: str,
    service: InvoiceService = Depends(get_invoice_service),
) -> InvoiceResponse:
    return InvoiceResponse.model_validate(service.get_by_number(invoice_number))


@router.post("/{invoice_id}/mark-paid", response_model=InvoiceResponse)
def mark_invoice_paid(
    invoice_id: str,
    payload: Optional[MarkPaidRequest] = Body(None),
    service: InvoiceService = Depends(get_invoice_service),
) -> InvoiceResponse:
    invoice = service.mark_paid(
        invoice_id=invoice_id,
        payment_intent_id=payload.payment_intent_id if payload else None,
    )
    return InvoiceResponse.model_validate(invoice)
