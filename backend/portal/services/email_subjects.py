"""
Centralized email subject builders.

Keep subjects in code (not templates) for versioning and logging.
Bodies remain in Jinja templates.
"""

from typing import Any, Callable, Dict, Mapping

from ..core.constants import BRAND_NAME
from .template_registry import MailEvent


def _when(payload: Mapping[str, Any]) -> str:
    appointment = payload.get("appointment") or {}
    date = appointment.get("date") or payload.get("date") or ""
    timeslot = appointment.get("timeslot") or payload.get("timeslot") or ""
    return f"{date} {timeslot}".strip()


def _invoice_number(payload: Mapping[str, Any]) -> str:
    invoice = payload.get("invoice") or {}
    return str(invoice.get("invoice_number") or payload.get("invoice_number") or "")


class EmailSubject:
    """Utility class with static builders for email subjects."""

    @staticmethod
    def account_confirmation(payload: Mapping[str, Any]) -> str:
        return f"Welcome to {BRAND_NAME}"

    @staticmethod
    def appointment_confirmation(payload: Mapping[str, Any]) -> str:
        return f"Your appointment on {_when(payload)} is confirmed"

    @staticmethod
    def appointment_reminder(payload: Mapping[str, Any]) -> str:
        return f"Reminder: your appointment tomorrow at {(payload.get('appointment') or {}).get('timeslot', '')}".rstrip()

    @staticmethod
    def admin_new_appointment(payload: Mapping[str, Any]) -> str:
        name = (payload.get("appointment") or {}).get("client_name") or "A client"
        return f"New appointment request from {name}"

    @staticmethod
    def reschedule_request(payload: Mapping[str, Any]) -> str:
        name = (payload.get("appointment") or {}).get("client_name") or "A client"
        return f"{name} asked to reschedule {_when(payload)}"

    @staticmethod
    def vee_reschedule_request(payload: Mapping[str, Any]) -> str:
        return f"{BRAND_NAME} proposes a new time for your appointment"

    @staticmethod
    def reschedule_confirmed(payload: Mapping[str, Any]) -> str:
        return f"Your appointment has been moved to {_when(payload)}"

    @staticmethod
    def appointment_cancelled(payload: Mapping[str, Any]) -> str:
        return f"Appointment on {_when(payload)} cancelled"

    @staticmethod
    def late_reschedule(payload: Mapping[str, Any]) -> str:
        return "Late reschedule fee notice"

    @staticmethod
    def no_show(payload: Mapping[str, Any]) -> str:
        return f"Missed appointment on {_when(payload)}"

    @staticmethod
    def invoice_generated(payload: Mapping[str, Any]) -> str:
        return f"Invoice {_invoice_number(payload)} from {BRAND_NAME}"

    @staticmethod
    def payment_reminder(payload: Mapping[str, Any]) -> str:
        return f"Payment reminder for invoice {_invoice_number(payload)}"

    @staticmethod
    def admin_payment_received(payload: Mapping[str, Any]) -> str:
        return f"Payment received for invoice {_invoice_number(payload)}"

    @staticmethod
    def admin_health_update(payload: Mapping[str, Any]) -> str:
        name = payload.get("client_name") or "A client"
        return f"{name} submitted a pre-evaluation"

    @staticmethod
    def plan_upgrade(payload: Mapping[str, Any]) -> str:
        name = payload.get("client_name") or "A client"
        return f"{name} started the Complete Program"

    @staticmethod
    def plan_downgrade_notification(payload: Mapping[str, Any]) -> str:
        return f"Your {BRAND_NAME} plan has changed to pay-as-you-go"

    @classmethod
    def for_event(cls, event: MailEvent, payload: Mapping[str, Any]) -> str:
        return _SUBJECT_BUILDERS[event](payload)


_SUBJECT_BUILDERS: Dict[MailEvent, Callable[[Mapping[str, Any]], str]] = {
    MailEvent.ACCOUNT_CONFIRMATION: EmailSubject.account_confirmation,
    MailEvent.APPOINTMENT_CONFIRMATION: EmailSubject.appointment_confirmation,
    MailEvent.APPOINTMENT_REMINDER: EmailSubject.appointment_reminder,
    MailEvent.ADMIN_NEW_APPOINTMENT: EmailSubject.admin_new_appointment,
    MailEvent.RESCHEDULE_REQUEST: EmailSubject.reschedule_request,
    MailEvent.VEE_RESCHEDULE_REQUEST: EmailSubject.vee_reschedule_request,
    MailEvent.RESCHEDULE_CONFIRMED: EmailSubject.reschedule_confirmed,
    MailEvent.APPOINTMENT_CANCELLED: EmailSubject.appointment_cancelled,
    MailEvent.LATE_RESCHEDULE: EmailSubject.late_reschedule,
    MailEvent.NO_SHOW: EmailSubject.no_show,
    MailEvent.INVOICE_GENERATED: EmailSubject.invoice_generated,
    MailEvent.PAYMENT_REMINDER: EmailSubject.payment_reminder,
    MailEvent.ADMIN_PAYMENT_RECEIVED: EmailSubject.admin_payment_received,
    MailEvent.ADMIN_HEALTH_UPDATE: EmailSubject.admin_health_update,
    MailEvent.PLAN_UPGRADE: EmailSubject.plan_upgrade,
    MailEvent.PLAN_DOWNGRADE_NOTIFICATION: EmailSubject.plan_downgrade_notification,
}
