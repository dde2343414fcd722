"""
Template registry for strongly-typed access to Jinja templates.

Every mail event the portal can enqueue maps to exactly one template here.
"""

from enum import Enum
from typing import Final, Union

from ..core.exceptions import ValidationException


class MailEvent(str, Enum):
    ACCOUNT_CONFIRMATION = "account-confirmation"
    APPOINTMENT_CONFIRMATION = "appointment-confirmation"
    APPOINTMENT_REMINDER = "appointment-reminder"
    ADMIN_NEW_APPOINTMENT = "admin-new-appointment"
    RESCHEDULE_REQUEST = "reschedule-request"
    VEE_RESCHEDULE_REQUEST = "vee-reschedule-request"
    RESCHEDULE_CONFIRMED = "reschedule-confirmed"
    APPOINTMENT_CANCELLED = "appointment-cancelled"
    LATE_RESCHEDULE = "late-reschedule"
    NO_SHOW = "no-show"
    INVOICE_GENERATED = "invoice-generated"
    PAYMENT_REMINDER = "payment-reminder"
    ADMIN_PAYMENT_RECEIVED = "admin-payment-received"
    ADMIN_HEALTH_UPDATE = "admin-health-update"
    PLAN_UPGRADE = "plan-upgrade"
    PLAN_DOWNGRADE_NOTIFICATION = "plan-downgrade-notification"

    @classmethod
    def parse(cls, value: Union[str, "MailEvent"]) -> "MailEvent":
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            raise ValidationException(
                f"Unknown email event type '{value}'",
                code="UNKNOWN_EVENT_TYPE",
                details={"event_type": value, "allowed": [event.value for event in cls]},
            )


class TemplateRegistry(str, Enum):
    # Account
    ACCOUNT_CONFIRMATION = "email/account/confirmation.html"

    # Appointments
    APPOINTMENT_CONFIRMATION = "email/appointments/confirmation.html"
    APPOINTMENT_REMINDER = "email/appointments/reminder.html"
    APPOINTMENT_CANCELLED = "email/appointments/cancelled.html"
    APPOINTMENT_NO_SHOW = "email/appointments/no_show.html"
    RESCHEDULE_PROPOSED = "email/appointments/reschedule_proposed.html"
    RESCHEDULE_CONFIRMED = "email/appointments/reschedule_confirmed.html"
    LATE_RESCHEDULE = "email/appointments/late_reschedule.html"

    # Billing
    INVOICE_GENERATED = "email/billing/invoice_generated.html"
    PAYMENT_REMINDER = "email/billing/payment_reminder.html"
    PLAN_UPGRADE = "email/billing/plan_upgrade.html"
    PLAN_DOWNGRADE = "email/billing/plan_downgrade.html"

    # Admin notices
    ADMIN_NEW_APPOINTMENT = "email/admin/new_appointment.html"
    ADMIN_RESCHEDULE_REQUEST = "email/admin/reschedule_request.html"
    ADMIN_PAYMENT_RECEIVED = "email/admin/payment_received.html"
    ADMIN_HEALTH_UPDATE = "email/admin/health_update.html"


_EVENT_TEMPLATES: Final[dict[MailEvent, TemplateRegistry]] = {
    MailEvent.ACCOUNT_CONFIRMATION: TemplateRegistry.ACCOUNT_CONFIRMATION,
    MailEvent.APPOINTMENT_CONFIRMATION: TemplateRegistry.APPOINTMENT_CONFIRMATION,
    MailEvent.APPOINTMENT_REMINDER: TemplateRegistry.APPOINTMENT_REMINDER,
    MailEvent.ADMIN_NEW_APPOINTMENT: TemplateRegistry.ADMIN_NEW_APPOINTMENT,
    MailEvent.RESCHEDULE_REQUEST: TemplateRegistry.ADMIN_RESCHEDULE_REQUEST,
    MailEvent.VEE_RESCHEDULE_REQUEST: TemplateRegistry.RESCHEDULE_PROPOSED,
    MailEvent.RESCHEDULE_CONFIRMED: TemplateRegistry.RESCHEDULE_CONFIRMED,
    MailEvent.APPOINTMENT_CANCELLED: TemplateRegistry.APPOINTMENT_CANCELLED,
    MailEvent.LATE_RESCHEDULE: TemplateRegistry.LATE_RESCHEDULE,
    MailEvent.NO_SHOW: TemplateRegistry.APPOINTMENT_NO_SHOW,
    MailEvent.INVOICE_GENERATED: TemplateRegistry.INVOICE_GENERATED,
    MailEvent.PAYMENT_REMINDER: TemplateRegistry.PAYMENT_REMINDER,
    MailEvent.ADMIN_PAYMENT_RECEIVED: TemplateRegistry.ADMIN_PAYMENT_RECEIVED,
    MailEvent.ADMIN_HEALTH_UPDATE: TemplateRegistry.ADMIN_HEALTH_UPDATE,
    MailEvent.PLAN_UPGRADE: TemplateRegistry.PLAN_UPGRADE,
    MailEvent.PLAN_DOWNGRADE_NOTIFICATION: TemplateRegistry.PLAN_DOWNGRADE,
}


def get_template_for_event(event_type: Union[str, MailEvent]) -> TemplateRegistry:
    """Resolve a mail event to its template, rejecting unknown events."""

    return _EVENT_TEMPLATES[MailEvent.parse(event_type)]
