# backend/portal/routes/v1/stripe_webhooks.py
"""
Stripe webhook endpoint.

Handled events:
- payment_intent.succeeded: the invoice becomes ``paid``
- payment_intent.processing: an unpaid invoice becomes ``pending``

A payment landing on a credited invoice (its intent could not be cancelled in
time) is acknowledged as ``ignored``; the replacement invoice stays open.

Other events are acknowledged and ignored so Stripe stops retrying them.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request

from ...api.dependencies import get_invoice_service, get_stripe_service
from ...core.exceptions import BusinessRuleException, NotFoundException
from ...services.invoice_service import InvoiceService
from ...services.stripe_service import StripeService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["stripe-webhooks"])


def _intent_details(event: Dict[str, Any]) -> tuple[Optional[str], Optional[str]]:
    intent = (event.get("data") or {}).get("object") or {}
    metadata = intent.get("metadata") or {}
    return intent.get("id"), metadata.get("invoice_number")


@router.post("/stripe-webhook")
async def handle_stripe_webhook(
    request: Request,
    stripe_service: StripeService = Depends(get_stripe_service),
    invoice_service: InvoiceService = Depends(get_invoice_service),
) -> Dict[str, Any]:
    payload = await request.body()
    signature = request.headers.get("stripe-signature")
    event = stripe_service.construct_webhook_event(payload, signature)
    event_type = event.get("type", "")
    logger.info(f"Processing Stripe webhook event: {event_type}")

    if event_type == "payment_intent.succeeded":
        intent_id, invoice_number = _intent_details(event)
        try:
            if invoice_number:
                invoice = invoice_service.mark_paid(invoice_number=invoice_number, payment_intent_id=intent_id)
            else:
                invoice = invoice_service.mark_paid(payment_intent_id=intent_id)
        except NotFoundException:
            logger.warning(f"No invoice for payment intent {intent_id}; ignoring")
            return {"received": True, "event_type": event_type, "status": "ignored"}
        except BusinessRuleException as e:
            if e.code != "INVOICE_CREDITED":
                raise
            logger.warning(f"Payment intent {intent_id} succeeded on a credited invoice; ignoring")
            return {"received": True, "event_type": event_type, "status": "ignored"}
        return {
            "received": True,
            "event_type": event_type,
            "status": "processed",
            "invoice_number": invoice.invoice_number,
        }

    if event_type == "payment_intent.processing":
        intent_id, _ = _intent_details(event)
        invoice = invoice_service.mark_processing(intent_id) if intent_id else None
        return {
            "received": True,
            "event_type": event_type,
            "status": "processed" if invoice is not None else "ignored",
        }

    logger.info(f"Unhandled Stripe event type: {event_type}")
    return {"received": True, "event_type": event_type, "status": "ignored"}
