"""
Stripe Service for the nutrition portal.

Creates the payment handle (a PaymentIntent) behind every invoice with a
positive amount, and verifies incoming webhook events.

Without ``STRIPE_SECRET_KEY`` the service runs in mock mode outside
production: handles are fabricated locally and nothing leaves the process.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
import json
import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session
import stripe

from ..core.config import settings
from ..core.exceptions import ServiceException, UpstreamCollaboratorException, ValidationException
from .base import BaseService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentHandle:
    """Client-facing payment reference for one invoice."""

    payment_intent_id: str
    client_secret: Optional[str]
    payment_url: str
    mock: bool = False


def to_cents(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def payment_url_for(invoice_number: str) -> str:
    return f"{settings.frontend_url.rstrip('/')}/pay-invoice/{invoice_number}"


class StripeService(BaseService):
    def __init__(self, db: Optional[Session] = None):
        super().__init__(db)  # type: ignore[arg-type]
        self.stripe_configured = False
        secret = settings.stripe_secret_key.get_secret_value()
        if secret:
            stripe.api_key = secret
            stripe.max_network_retries = 1
            self.stripe_configured = True
            self.logger.info("Stripe service configured successfully")
        else:
            self.logger.warning("Stripe secret key not configured - service will operate in mock mode")

    def _check_stripe_configured(self) -> None:
        if not self.stripe_configured and settings.environment == "production":
            raise UpstreamCollaboratorException(
                "payment",
                "Stripe service not configured. Please check STRIPE_SECRET_KEY environment variable.",
            )

    @BaseService.measure_operation("stripe_create_payment_handle")
    def create_payment_handle(
        self,
        *,
        amount: Decimal,
        invoice_number: str,
        customer_email: str,
        description: Optional[str] = None,
        currency: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> PaymentHandle:
        """
        Request a payment handle for an invoice.

        Raises:
            UpstreamCollaboratorException: Stripe rejected the request or is not configured
        """
        if amount <= 0:
            raise ValidationException(
                "Payment handles are only created for positive amounts",
                code="INVALID_PAYMENT_AMOUNT",
                details={"amount": str(amount)},
            )
        self._check_stripe_configured()

        if not self.stripe_configured:
            return self._mock_payment_handle(invoice_number)

        try:
            intent = stripe.PaymentIntent.create(
                amount=to_cents(amount),
                currency=(currency or settings.currency).lower(),
                description=description or f"Invoice {invoice_number}",
                receipt_email=customer_email,
                metadata={"invoice_number": invoice_number, **(metadata or {})},
                automatic_payment_methods={"enabled": True},
                idempotency_key=f"invoice-{invoice_number}",
            )
        except stripe.StripeError as e:
            self.logger.error(f"Stripe rejected payment intent for {invoice_number}: {str(e)}")
            raise UpstreamCollaboratorException(
                "payment",
                f"Failed to create payment intent: {str(e)}",
                details={"invoice_number": invoice_number},
            )

        self.log_operation("payment_intent_created", invoice_number=invoice_number, intent_id=intent.id)
        return PaymentHandle(
            payment_intent_id=intent.id,
            client_secret=intent.client_secret,
            payment_url=payment_url_for(invoice_number),
        )

    def _mock_payment_handle(self, invoice_number: str) -> PaymentHandle:
        """Return a mock handle for development and CI when Stripe is not configured."""
        return PaymentHandle(
            payment_intent_id=f"mock_pi_{invoice_number}",
            client_secret=None,
            payment_url=payment_url_for(invoice_number),
            mock=True,
        )

    @BaseService.measure_operation("stripe_cancel_payment_handle")
    def cancel_payment_handle(self, payment_intent_id: Optional[str], *, reason: str = "abandoned") -> bool:
        """
        Cancel the PaymentIntent of a credited invoice so it can no longer be paid.

        Mock handles have nothing to cancel. Stripe errors are logged and
        reported as ``False``; a late payment on a credited invoice is then
        acknowledged without effect by the webhook.
        """
        if not payment_intent_id or payment_intent_id.startswith("mock_pi_"):
            return False
        if not self.stripe_configured:
            return False

        try:
            stripe.PaymentIntent.cancel(payment_intent_id, cancellation_reason=reason)
        except stripe.StripeError as e:
            self.logger.error(f"Could not cancel payment intent {payment_intent_id}: {str(e)}")
            return False

        self.log_operation("payment_intent_cancelled", intent_id=payment_intent_id)
        return True

    def construct_webhook_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Verify and parse a webhook payload.

        Without a webhook secret (non-production only) the payload is parsed
        unverified so local tooling can replay events.
        """
        secret = settings.stripe_webhook_secret.get_secret_value()
        if not secret:
            if settings.environment == "production":
                raise ServiceException("Webhook secret not configured")
            try:
                return dict(json.loads(payload.decode("utf-8")))
            except (UnicodeDecodeError, json.JSONDecodeError) as e:
                raise ValidationException(f"Invalid webhook payload: {str(e)}", code="INVALID_WEBHOOK")

        try:
            event = stripe.Webhook.construct_event(payload, signature or "", secret)
        except stripe.SignatureVerificationError:
            self.logger.warning("Invalid webhook signature")
            raise ValidationException("Invalid webhook signature", code="INVALID_SIGNATURE")
        except ValueError as e:
            raise ValidationException(f"Invalid webhook payload: {str(e)}", code="INVALID_WEBHOOK")
        return event.to_dict() if hasattr(event, "to_dict") else dict(event)
