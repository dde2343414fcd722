# backend/portal/services/invoice_service.py
"""
Invoice generation for the nutrition portal.

Four kinds of invoice exist: session, subscription, penalty and custom.
All of them go through ``_issue``, which

1. returns the existing invoice when the idempotency key is already taken,
   or folds a new appointment charge into that appointment's live invoice
   (credit and reissue, so an appointment never has two live invoices),
2. asks the payment collaborator for a handle when something is due,
3. inserts the invoice (the partial unique indexes settle races), and
4. queues exactly one ``invoice-generated`` email.

The ``create_*`` methods run inside the caller's transaction; ``create``,
``reissue``, ``mark_paid`` and ``send_payment_reminder`` own theirs.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal, InvalidOperation
from enum import Enum
import logging
from typing import Any, List, Mapping, Optional, Sequence, Union

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.constants import (
    CREDIT_NOTE_PREFIX,
    DEFAULT_QUERY_LIMIT,
    INVOICE_PREFIX_PENALTY,
    INVOICE_PREFIX_SESSION,
    INVOICE_PREFIX_SUBSCRIPTION,
)
from ..core.exceptions import (
    BusinessRuleException,
    DuplicateInvoiceException,
    NotFoundException,
    ValidationException,
)
from ..core.timezone_utils import practice_today, utc_now
from ..core.ulid_helper import short_token
from ..models.appointment import Appointment, AppointmentStatus
from ..models.invoice import (
    Invoice,
    InvoiceCharge,
    InvoiceItem,
    InvoiceItemType,
    InvoiceStatus,
    InvoiceType,
)
from ..models.user import User
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.appointment_repository import AppointmentRepository
from ..repositories.invoice_repository import InvoiceRepository
from ..repositories.user_repository import UserRepository
from . import appointment_rules
from .base import BaseService
from .notification_service import NotificationService, Recipient
from .stripe_service import PaymentHandle, StripeService
from .template_registry import MailEvent

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


class InvoiceKind(str, Enum):
    SESSION = "session"
    SUBSCRIPTION = "subscription"
    PENALTY = "penalty"
    CUSTOM = "custom"


class PenaltyType(str, Enum):
    LATE_RESCHEDULE = "late_reschedule"
    NO_SHOW = "no_show"


@dataclass(frozen=True)
class LineItem:
    description: str
    amount: Decimal
    item_type: InvoiceItemType
    charge: Optional[InvoiceCharge] = None


@dataclass(frozen=True)
class InvoiceResult:
    """Outcome of an invoice request; ``created`` is False when an existing invoice was returned."""

    invoice: Invoice
    created: bool
    payment_handle: Optional[PaymentHandle] = None

    @property
    def invoice_id(self) -> str:
        return self.invoice.id


def to_amount(value: Any, *, field: str = "amount") -> Decimal:
    """Parse a money value into a two-decimal ``Decimal``; negatives are rejected."""
    try:
        amount = Decimal(str(value)).quantize(Decimal("0.01"))
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationException(f"Invalid {field} '{value}'", code="INVALID_AMOUNT")
    if amount < 0:
        raise ValidationException(f"{field} cannot be negative", code="INVALID_AMOUNT")
    return amount


def build_invoice_number(prefix: str, issued_on: date) -> str:
    return f"{prefix}-{issued_on:%Y%m%d}-{short_token()}"


def build_subscription_number(billing_date: date, billing_cycle: int) -> str:
    return f"{INVOICE_PREFIX_SUBSCRIPTION}-{billing_date:%Y}-{billing_date:%m}-{billing_cycle}-{short_token()}"


_PREFIX_BY_TYPE = {
    InvoiceType.SESSION.value: INVOICE_PREFIX_SESSION,
    InvoiceType.SUBSCRIPTION.value: INVOICE_PREFIX_SUBSCRIPTION,
    InvoiceType.PENALTY.value: INVOICE_PREFIX_PENALTY,
}


def _due_days(invoice_type: InvoiceType) -> int:
    if invoice_type is InvoiceType.SUBSCRIPTION:
        return settings.subscription_invoice_due_days
    if invoice_type is InvoiceType.PENALTY:
        return settings.penalty_invoice_due_days
    return settings.session_invoice_due_days


class InvoiceService(BaseService):
    """
    Invoice generator, reissue chain and payment bookkeeping.

    Args:
        db: Database session
        notification_service: Outbox used for invoice emails
        payment_service: Payment collaborator (Stripe, or its mock mode)
    """

    def __init__(
        self,
        db: Session,
        notification_service: Optional[NotificationService] = None,
        payment_service: Optional[StripeService] = None,
    ) -> None:
        super().__init__(db)
        self.repository = InvoiceRepository(db)
        self.user_repository = UserRepository(db)
        self.appointment_repository = AppointmentRepository(db)
        self.notifications = notification_service or NotificationService(db)
        self.payments = payment_service or StripeService(db)

    # Public entry point

    @BaseService.measure_operation("create_invoice")
    def create(self, kind: Union[str, InvoiceKind], context: Mapping[str, Any]) -> InvoiceResult:
        """
        Create an invoice of the given kind and commit it.

        Context keys per kind:
            session: appointment_id
            subscription: user_id, billing_cycle, billing_date (optional)
            penalty: appointment_id, penalty_type
            custom: user_id, client_name, client_email, amount, description,
                appointment_id (optional), session_type (optional)
        """
        try:
            invoice_kind = InvoiceKind(kind)
        except ValueError:
            raise ValidationException(
                f"Unknown invoice kind '{kind}'",
                code="UNKNOWN_INVOICE_KIND",
                details={"allowed": [k.value for k in InvoiceKind]},
            )

        with self.transaction():
            if invoice_kind is InvoiceKind.SESSION:
                result = self.create_session_invoice(self._require_appointment(context))
            elif invoice_kind is InvoiceKind.SUBSCRIPTION:
                user = self._require_user(context.get("user_id"))
                cycle = context.get("billing_cycle") or user.current_billing_cycle
                if not cycle:
                    raise ValidationException("billing_cycle is required", code="MISSING_BILLING_CYCLE")
                billing_date = context.get("billing_date") or practice_today()
                result = self.create_subscription_invoice(user, int(cycle), billing_date)
            elif invoice_kind is InvoiceKind.PENALTY:
                result = self.create_penalty_invoice(
                    self._require_appointment(context), context.get("penalty_type") or ""
                )
            else:
                result = self.create_custom_invoice(
                    user_id=context.get("user_id") or "",
                    client_name=context.get("client_name"),
                    client_email=context.get("client_email"),
                    amount=context.get("amount"),
                    description=context.get("description"),
                    appointment_id=context.get("appointment_id"),
                    session_type=context.get("session_type"),
                )
        return result

    # Creators (caller owns the transaction)

    def create_session_invoice(self, appointment: Appointment, user: Optional[User] = None) -> InvoiceResult:
        """
        Bill a completed session; free for Complete Program clients apart from penalties.

        A late-reschedule fee already billed on its own penalty invoice is not
        charged again: that invoice is folded into the session invoice.

        Raises:
            BusinessRuleException: the appointment is not ``done``
        """
        if appointment.status != AppointmentStatus.DONE.value:
            raise BusinessRuleException(
                "Session invoices are only issued for completed appointments",
                code="APPOINTMENT_NOT_COMPLETED",
                details={"appointment_id": appointment.id, "status": appointment.status},
            )
        user = user or self._require_user(appointment.user_id)
        base = ZERO if user.is_complete_program else appointment_rules.base_price(appointment.type)
        when = f"{appointment.date:%d-%m-%Y} {appointment.timeslot}"
        items = [
            LineItem(f"{appointment.type} consultation {when}", base, InvoiceItemType.SESSION, InvoiceCharge.SESSION)
        ]
        if appointment.late_reschedule:
            fee = Decimal(appointment.potential_late_fee or appointment_rules.late_reschedule_fee())
            items.append(
                LineItem("Late reschedule fee", fee, InvoiceItemType.PENALTY, InvoiceCharge.LATE_RESCHEDULE)
            )
        if appointment.no_show_penalty:
            items.append(
                LineItem(
                    "No-show fee",
                    Decimal(appointment.no_show_penalty),
                    InvoiceItemType.PENALTY,
                    InvoiceCharge.NO_SHOW,
                )
            )

        return self._issue(
            user=user,
            client_name=appointment.client_name,
            client_email=appointment.client_email,
            invoice_type=InvoiceType.SESSION,
            items=items,
            description=f"{appointment.type} consultation on {when}",
            due_days=settings.session_invoice_due_days,
            appointment_id=appointment.id,
        )

    def create_subscription_invoice(self, user: User, billing_cycle: int, billing_date: date) -> InvoiceResult:
        """
        Bill one Complete Program month; at most one live invoice per (user, cycle).

        Raises:
            BusinessRuleException: the user is not on an active Complete Program
            ValidationException: cycle outside ``1..max_billing_cycles``
        """
        if not user.is_complete_program or not user.has_active_subscription:
            raise BusinessRuleException(
                "Subscription invoices are only issued for an active Complete Program",
                code="SUBSCRIPTION_NOT_ACTIVE",
                details={
                    "user_id": user.id,
                    "service_plan": user.service_plan,
                    "subscription_status": user.subscription_status,
                },
            )
        max_cycles = user.max_billing_cycles or settings.max_billing_cycles
        if billing_cycle < 1 or billing_cycle > max_cycles:
            raise ValidationException(
                f"Billing cycle must be between 1 and {max_cycles}",
                code="INVALID_BILLING_CYCLE",
                details={"billing_cycle": billing_cycle},
            )
        amount = Decimal(user.monthly_amount or settings.complete_program_monthly_amount)
        label = f"Complete Program - Month {billing_cycle} of {max_cycles}"
        return self._issue(
            user=user,
            client_name=user.name,
            client_email=user.email,
            invoice_type=InvoiceType.SUBSCRIPTION,
            items=[LineItem(label, amount, InvoiceItemType.SUBSCRIPTION)],
            description=label,
            due_days=settings.subscription_invoice_due_days,
            billing_cycle=billing_cycle,
            invoice_number=build_subscription_number(billing_date, billing_cycle),
            issued_on=billing_date,
        )

    def create_penalty_invoice(
        self, appointment: Appointment, penalty_type: Union[str, PenaltyType]
    ) -> InvoiceResult:
        try:
            penalty = PenaltyType(penalty_type)
        except ValueError:
            raise ValidationException(
                f"Unknown penalty type '{penalty_type}'",
                code="UNKNOWN_PENALTY_TYPE",
                details={"allowed": [p.value for p in PenaltyType]},
            )

        when = f"{appointment.date:%d-%m-%Y} {appointment.timeslot}"
        if penalty is PenaltyType.LATE_RESCHEDULE:
            amount = appointment_rules.late_reschedule_fee()
            label = f"Late reschedule fee - {appointment.type} consultation {when}"
            charge = InvoiceCharge.LATE_RESCHEDULE
        else:
            amount = (
                Decimal(appointment.no_show_penalty)
                if appointment.no_show_penalty is not None
                else appointment_rules.no_show_penalty(appointment.type)
            )
            label = f"No-show fee - {appointment.type} consultation {when}"
            charge = InvoiceCharge.NO_SHOW

        return self._issue(
            user=self._require_user(appointment.user_id),
            client_name=appointment.client_name,
            client_email=appointment.client_email,
            invoice_type=InvoiceType.PENALTY,
            items=[LineItem(label, amount, InvoiceItemType.PENALTY, charge)],
            description=label,
            due_days=settings.penalty_invoice_due_days,
            appointment_id=appointment.id,
        )

    def create_custom_invoice(
        self,
        *,
        user_id: str,
        client_name: Optional[str],
        client_email: Optional[str],
        amount: Any,
        description: Optional[str],
        appointment_id: Optional[str] = None,
        session_type: Optional[str] = None,
    ) -> InvoiceResult:
        """Admin-issued invoice with a single free-form line."""
        user = self._require_user(user_id)
        value = to_amount(amount)
        if appointment_id and self.appointment_repository.get_by_id(appointment_id) is None:
            raise NotFoundException(f"Appointment {appointment_id} not found", code="APPOINTMENT_NOT_FOUND")
        label = (description or "").strip() or (
            f"{session_type} consultation" if session_type else "Custom invoice"
        )
        charge = InvoiceCharge.SESSION if appointment_id else None
        return self._issue(
            user=user,
            client_name=client_name or user.name,
            client_email=client_email or user.email,
            invoice_type=InvoiceType.SESSION,
            items=[LineItem(label, value, InvoiceItemType.SESSION, charge)],
            description=label,
            due_days=settings.session_invoice_due_days,
            appointment_id=appointment_id,
        )

    # Reissue and payment bookkeeping

    @BaseService.measure_operation("reissue_invoice")
    def reissue(self, invoice_id: str, new_amount: Any, reason: Optional[str] = None) -> InvoiceResult:
        """
        Credit an invoice and issue its replacement.

        The original becomes ``credited`` with ``CN-{number}`` as credit note
        and is frozen from then on. The replacement links back to it.

        Raises:
            NotFoundException: unknown invoice
            BusinessRuleException: invoice already credited or paid
            UpstreamCollaboratorException: no payment handle for the replacement
        """
        amount = to_amount(new_amount, field="new_amount")
        with self.transaction():
            original = self.repository.get_with_items(invoice_id)
            if original is None:
                raise NotFoundException(f"Invoice {invoice_id} not found", code="INVOICE_NOT_FOUND")
            if original.status == InvoiceStatus.CREDITED.value:
                raise BusinessRuleException(
                    "Invoice has already been credited",
                    code="INVOICE_CREDITED",
                    details={"invoice_id": original.id},
                )
            if original.status == InvoiceStatus.PAID.value:
                raise BusinessRuleException(
                    "Paid invoices cannot be reissued",
                    code="INVOICE_PAID",
                    details={"invoice_id": original.id},
                )

            original_amount = Decimal(original.total_amount)
            reason = (reason or "").strip() or (
                "Amount adjustment" if amount != original_amount else "Invoice correction"
            )
            credit_note_number = self._credit(original)

            base_description = original.description or original.invoice_number
            first_item = original.items[0] if original.items else None
            line = first_item.description if first_item else base_description
            item_type = InvoiceItemType(first_item.item_type) if first_item else InvoiceItemType.SESSION
            invoice_type = InvoiceType(original.invoice_type)
            result = self._issue(
                user=self._require_user(original.user_id),
                client_name=original.client_name,
                client_email=original.client_email,
                invoice_type=invoice_type,
                items=[LineItem(line, amount, item_type)],
                description=f"{base_description} (Reissued: {reason})",
                due_days=_due_days(invoice_type),
                appointment_id=original.appointment_id,
                billing_cycle=original.billing_cycle,
                reissue_of=original,
                reissue_reason=reason,
                charges=list(original.charges or []),
            )
        self.log_operation(
            "invoice_reissued",
            original_invoice_id=original.id,
            new_invoice_id=result.invoice_id,
            credit_note_number=credit_note_number,
        )
        return result

    @BaseService.measure_operation("mark_invoice_paid")
    def mark_paid(
        self,
        *,
        invoice_id: Optional[str] = None,
        invoice_number: Optional[str] = None,
        payment_intent_id: Optional[str] = None,
    ) -> Invoice:
        """Record a successful payment; repeated calls are no-ops."""
        with self.transaction():
            invoice = self._locate(invoice_id, invoice_number, payment_intent_id)
            if invoice.status == InvoiceStatus.PAID.value:
                return invoice
            if invoice.status == InvoiceStatus.CREDITED.value:
                raise BusinessRuleException(
                    "Credited invoices cannot be paid",
                    code="INVOICE_CREDITED",
                    details={"invoice_id": invoice.id},
                )
            invoice.status = InvoiceStatus.PAID.value
            invoice.paid_at = utc_now()
            if payment_intent_id and not invoice.stripe_payment_intent_id:
                invoice.stripe_payment_intent_id = payment_intent_id
            self.repository.flush()
            self.notifications.notify_admin(
                MailEvent.ADMIN_PAYMENT_RECEIVED, {"invoice": invoice.to_dict()}
            )
        self.log_operation("invoice_paid", invoice_id=invoice.id, invoice_number=invoice.invoice_number)
        return invoice

    @BaseService.measure_operation("mark_invoice_processing")
    def mark_processing(self, payment_intent_id: str) -> Optional[Invoice]:
        """Payment reported as processing by the provider: unpaid -> pending."""
        with self.transaction():
            invoice = self.repository.get_by_payment_intent(payment_intent_id)
            if invoice is None:
                self.logger.warning(f"No invoice for payment intent {payment_intent_id}")
                return None
            if invoice.status == InvoiceStatus.UNPAID.value:
                invoice.status = InvoiceStatus.PENDING.value
                self.repository.flush()
        return invoice

    @BaseService.measure_operation("send_payment_reminder")
    def send_payment_reminder(self, invoice_id: str) -> Invoice:
        with self.transaction():
            invoice = self.repository.get_with_items(invoice_id)
            if invoice is None:
                raise NotFoundException(f"Invoice {invoice_id} not found", code="INVOICE_NOT_FOUND")
            if invoice.status not in (InvoiceStatus.UNPAID.value, InvoiceStatus.PENDING.value):
                raise BusinessRuleException(
                    f"Invoice is '{invoice.status}', nothing to remind about",
                    code="INVOICE_NOT_OPEN",
                    details={"invoice_id": invoice.id, "status": invoice.status},
                )
            self.notifications.enqueue(
                MailEvent.PAYMENT_REMINDER,
                Recipient(invoice.client_email, invoice.client_name),
                {"invoice": invoice.to_dict()},
            )
        return invoice

    # Queries

    def get(self, invoice_id: str) -> Invoice:
        invoice = self.repository.get_by_id(invoice_id)
        if invoice is None:
            raise NotFoundException(f"Invoice {invoice_id} not found", code="INVOICE_NOT_FOUND")
        return invoice

    def get_by_number(self, invoice_number: str) -> Invoice:
        invoice = self.repository.get_by_number(invoice_number)
        if invoice is None:
            raise NotFoundException(f"Invoice {invoice_number} not found", code="INVOICE_NOT_FOUND")
        return invoice

    def list_for_user(self, user_id: str, limit: int = DEFAULT_QUERY_LIMIT) -> List[Invoice]:
        return self.repository.list_for_user(user_id, limit=limit)

    def list_unpaid(self, limit: int = DEFAULT_QUERY_LIMIT) -> List[Invoice]:
        return self.repository.list_unpaid(limit=limit)

    # Internals

    def _issue(
        self,
        *,
        user: User,
        client_name: str,
        client_email: str,
        invoice_type: InvoiceType,
        items: Sequence[LineItem],
        description: str,
        due_days: int,
        appointment_id: Optional[str] = None,
        billing_cycle: Optional[int] = None,
        invoice_number: Optional[str] = None,
        issued_on: Optional[date] = None,
        reissue_of: Optional[Invoice] = None,
        reissue_reason: Optional[str] = None,
        charges: Optional[Sequence[str]] = None,
    ) -> InvoiceResult:
        if reissue_of is None:
            existing = self._find_existing(user.id, invoice_type, appointment_id, billing_cycle)
            if existing is not None:
                new_charges = [
                    item for item in items if item.charge and item.charge.value not in (existing.charges or [])
                ]
                if appointment_id and new_charges:
                    return self._fold_into(existing, new_charges, user=user, description=description)
                self.logger.info(
                    f"Invoice already exists for {invoice_type.value} key, returning {existing.invoice_number}"
                )
                return InvoiceResult(existing, created=False)

        if charges is None:
            charges = [item.charge.value for item in items if item.charge]

        issued_on = issued_on or practice_today()
        number = invoice_number or build_invoice_number(_PREFIX_BY_TYPE[invoice_type.value], issued_on)
        total = sum((item.amount for item in items), ZERO)

        handle: Optional[PaymentHandle] = None
        if total > 0:
            handle = self.payments.create_payment_handle(
                amount=total,
                invoice_number=number,
                customer_email=client_email,
                description=description,
                metadata={"invoice_type": invoice_type.value, "user_id": user.id},
            )

        invoice = Invoice(
            invoice_number=number,
            user_id=user.id,
            client_name=client_name,
            client_email=client_email,
            invoice_type=invoice_type.value,
            status=InvoiceStatus.UNPAID.value if total > 0 else InvoiceStatus.PAID.value,
            total_amount=total,
            currency=settings.currency,
            due_date=issued_on + timedelta(days=due_days),
            description=description,
            billing_cycle=billing_cycle,
            appointment_id=appointment_id,
            charges=list(dict.fromkeys(charges)),
            paid_at=None if total > 0 else utc_now(),
            items=[
                InvoiceItem(
                    position=index,
                    description=item.description,
                    amount=item.amount,
                    item_type=item.item_type.value,
                )
                for index, item in enumerate(items)
            ],
        )
        if handle is not None:
            invoice.stripe_payment_intent_id = handle.payment_intent_id
            invoice.payment_client_secret = handle.client_secret
            invoice.payment_url = handle.payment_url
        if reissue_of is not None:
            invoice.original_invoice_id = reissue_of.id
            invoice.credit_note_number = reissue_of.credit_note_number
            invoice.original_amount = reissue_of.total_amount
            invoice.is_reissued = True
            invoice.reissue_reason = reissue_reason

        try:
            self.repository.insert(invoice)
        except DuplicateInvoiceException as dup:
            winner = self.repository.get_by_id(dup.existing_invoice_id) if dup.existing_invoice_id else None
            if winner is None:
                raise
            self.logger.info(f"Concurrent invoice insert lost to {winner.invoice_number}")
            return InvoiceResult(winner, created=False)

        prometheus_metrics.inc_invoice_created(invoice_type.value)
        self.log_operation(
            "invoice_created",
            invoice_id=invoice.id,
            invoice_number=number,
            invoice_type=invoice_type.value,
            total=str(total),
        )
        self.notifications.enqueue(
            MailEvent.INVOICE_GENERATED,
            Recipient(client_email, client_name),
            {"invoice": invoice.to_dict()},
        )
        return InvoiceResult(invoice, created=True, payment_handle=handle)

    def _fold_into(
        self, live: Invoice, new_charges: Sequence[LineItem], *, user: User, description: str
    ) -> InvoiceResult:
        """
        Credit the appointment's live invoice and reissue it with ``new_charges`` added.

        The replacement keeps every line of the credited invoice. When that
        invoice was already paid, a negative line deducts what was paid so the
        client only owes the new charges.

        Raises:
            BusinessRuleException: the live invoice has a payment in flight
        """
        if live.status == InvoiceStatus.PENDING.value:
            raise BusinessRuleException(
                "A payment for this appointment's invoice is still processing",
                code="INVOICE_PAYMENT_PENDING",
                details={"invoice_id": live.id, "appointment_id": live.appointment_id},
            )

        items = [
            LineItem(item.description, Decimal(item.amount), InvoiceItemType(item.item_type))
            for item in live.items
        ]
        paid = Decimal(live.total_amount) if live.status == InvoiceStatus.PAID.value else ZERO
        if paid > 0:
            items.append(
                LineItem(f"Paid with invoice {live.invoice_number}", -paid, InvoiceItemType(live.invoice_type))
            )
        items.extend(new_charges)
        charges = list(live.charges or []) + [item.charge.value for item in new_charges if item.charge]

        folded_type = InvoiceType.SESSION if InvoiceCharge.SESSION.value in charges else InvoiceType.PENALTY
        if any(item.charge is InvoiceCharge.SESSION for item in new_charges):
            folded_description = description
        elif live.invoice_type == InvoiceType.SESSION.value:
            folded_description = live.description or description
        else:
            folded_description = "; ".join(part for part in (live.description, description) if part)

        reason = "Combined with " + ", ".join(item.description for item in new_charges)
        credit_note_number = self._credit(live)
        result = self._issue(
            user=user,
            client_name=live.client_name,
            client_email=live.client_email,
            invoice_type=folded_type,
            items=items,
            description=folded_description,
            due_days=_due_days(folded_type),
            appointment_id=live.appointment_id,
            reissue_of=live,
            reissue_reason=reason,
            charges=charges,
        )
        self.log_operation(
            "invoice_folded",
            original_invoice_id=live.id,
            new_invoice_id=result.invoice_id,
            credit_note_number=credit_note_number,
            appointment_id=live.appointment_id,
        )
        return result

    def _credit(self, invoice: Invoice) -> str:
        """Mark ``invoice`` credited and withdraw its payment handle; returns the credit note number."""
        open_intent = (
            invoice.stripe_payment_intent_id
            if invoice.status in (InvoiceStatus.UNPAID.value, InvoiceStatus.PENDING.value)
            else None
        )
        credit_note_number = f"{CREDIT_NOTE_PREFIX}-{invoice.invoice_number}"
        invoice.status = InvoiceStatus.CREDITED.value
        invoice.credit_note_number = credit_note_number
        invoice.credited_at = utc_now()
        self.repository.flush()
        if open_intent:
            self.payments.cancel_payment_handle(open_intent)
        return credit_note_number

    def _find_existing(
        self,
        user_id: str,
        invoice_type: InvoiceType,
        appointment_id: Optional[str],
        billing_cycle: Optional[int],
    ) -> Optional[Invoice]:
        if invoice_type is InvoiceType.SUBSCRIPTION and billing_cycle:
            return self.repository.find_active_subscription(user_id, billing_cycle)
        if appointment_id:
            return self.repository.find_active_for_appointment(appointment_id)
        return None

    def _locate(
        self,
        invoice_id: Optional[str],
        invoice_number: Optional[str],
        payment_intent_id: Optional[str],
    ) -> Invoice:
        invoice: Optional[Invoice] = None
        if invoice_id:
            invoice = self.repository.get_by_id(invoice_id)
        elif invoice_number:
            invoice = self.repository.get_by_number(invoice_number)
        elif payment_intent_id:
            invoice = self.repository.get_by_payment_intent(payment_intent_id)
        else:
            raise ValidationException(
                "invoice_id, invoice_number or payment_intent_id is required", code="MISSING_INVOICE_REFERENCE"
            )
        if invoice is None:
            raise NotFoundException("Invoice not found", code="INVOICE_NOT_FOUND")
        return invoice

    def _require_user(self, user_id: Optional[str]) -> User:
        user = self.user_repository.get_by_id(user_id) if user_id else None
        if user is None:
            raise NotFoundException(f"User {user_id} not found", code="USER_NOT_FOUND")
        return user

    def _require_appointment(self, context: Mapping[str, Any]) -> Appointment:
        appointment_id = context.get("appointment_id")
        appointment = self.appointment_repository.get_by_id(appointment_id) if appointment_id else None
        if appointment is None:
            raise NotFoundException(f"Appointment {appointment_id} not found", code="APPOINTMENT_NOT_FOUND")
        return appointment
