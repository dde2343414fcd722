# backend/portal/services/appointment_service.py
"""
Appointment Service for the nutrition portal.

Owns the appointment lifecycle. Every status change is validated by
``appointment_rules`` and committed once, together with the derived side
effects:

- meeting link on confirmation (non-fatal when the meeting service fails)
- session / penalty invoices on completion and no-show
- outbox emails for each event
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta
import logging
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.constants import DEFAULT_QUERY_LIMIT, TIMESLOT_FORMAT
from ..core.exceptions import (
    BusinessRuleException,
    NotFoundException,
    SlotConflictException,
    UpstreamCollaboratorException,
    ValidationException,
)
from ..core.timezone_utils import appointment_start, parse_timeslot, practice_today, utc_now
from ..database.session_utils import is_unique_violation
from ..integrations.microsoft_teams import MeetingClient, TeamsError, get_meeting_client, meeting_end
from ..models.appointment import Appointment, AppointmentStatus
from ..models.intake import ConsentRecord, PreEvaluation
from ..models.invoice import Invoice
from ..models.user import User
from ..repositories.appointment_repository import AppointmentRepository
from ..repositories.user_repository import UserRepository
from . import appointment_rules
from .appointment_rules import Actor, TransitionDecision
from .availability_service import AvailabilityService
from .base import BaseService
from .invoice_service import InvoiceResult, InvoiceService, PenaltyType
from .notification_service import NotificationService, Recipient
from .template_registry import MailEvent

logger = logging.getLogger(__name__)

S = AppointmentStatus


@dataclass(frozen=True)
class BilledAppointment:
    """An appointment together with the invoice its transition produced."""

    appointment: Appointment
    invoice: Optional[Invoice]
    invoice_created: bool = False


class AppointmentService(BaseService):
    """
    Appointment lifecycle orchestration.

    Args:
        db: Database session
        notification_service: Outbox producer
        invoice_service: Invoice generator used on completion and no-show
        availability_service: Slot grid and blocked slots
        meeting_client: Teams client; ``None`` skips meeting creation
    """

    def __init__(
        self,
        db: Session,
        notification_service: Optional[NotificationService] = None,
        invoice_service: Optional[InvoiceService] = None,
        availability_service: Optional[AvailabilityService] = None,
        meeting_client: Optional[MeetingClient] = None,
    ) -> None:
        super().__init__(db)
        self.repository = AppointmentRepository(db)
        self.user_repository = UserRepository(db)
        self.notifications = notification_service or NotificationService(db)
        self.invoices = invoice_service or InvoiceService(db, notification_service=self.notifications)
        self.availability = availability_service or AvailabilityService(db)
        self.meeting_client = meeting_client if meeting_client is not None else get_meeting_client()

    # Booking

    @BaseService.measure_operation("book_appointment")
    def book(
        self,
        *,
        user_id: str,
        type: str,
        date: date,
        timeslot: str,
        client_name: Optional[str] = None,
        client_email: Optional[str] = None,
        goals: Optional[str] = None,
        phone: Optional[str] = None,
        language: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Appointment:
        """
        Book a new appointment in ``pending``.

        Raises:
            NotFoundException: unknown user
            ValidationException: invalid type, a timeslot off the practice grid, or a start in the past
            ConflictException: the slot is blocked (``SLOT_UNAVAILABLE``) or held by another
                active appointment (``SLOT_CONFLICT``)
        """
        now = now or utc_now()
        kind = appointment_rules.parse_appointment_type(type)
        slot = self._normalize_timeslot(timeslot)
        start = appointment_start(date, slot)
        if start <= now:
            raise ValidationException(
                "Appointments must be booked in the future",
                code="APPOINTMENT_IN_PAST",
                details={"date": date.isoformat(), "timeslot": slot},
            )

        with self.transaction():
            user = self._require_user(user_id)
            self._ensure_slot_open(date, slot)
            appointment = Appointment(
                user_id=user.id,
                client_name=client_name or user.name,
                client_email=(client_email or user.email).strip().lower(),
                phone=phone or user.phone,
                language=language or user.language or "en",
                type=kind.value,
                date=date,
                timeslot=slot,
                status=S.PENDING.value,
                goals=goals,
            )
            try:
                self.repository.add(appointment)
            except IntegrityError as exc:
                if is_unique_violation(exc):
                    raise SlotConflictException(date.isoformat(), slot)
                raise
            self.notifications.notify_admin(
                MailEvent.ADMIN_NEW_APPOINTMENT, {"appointment": appointment.to_dict()}
            )

        self.log_operation("appointment_booked", appointment_id=appointment.id, date=str(date), timeslot=slot)
        return appointment

    # Admin transitions

    @BaseService.measure_operation("confirm_appointment")
    def confirm(self, appointment_id: str, *, now: Optional[datetime] = None) -> Appointment:
        """Confirm a pending (or reschedule-agreed) appointment and attach a meeting link."""
        now = now or utc_now()
        with self.transaction():
            appointment = self._load(appointment_id)
            decision = self._evaluate(appointment, S.CONFIRMED, Actor.ADMIN, now)
            appointment.status = decision.target.value
            appointment.confirmed_at = now
            if decision.request_meeting:
                self._attach_meeting(appointment, rescheduled=decision.current is S.CONFIRM_RESCHEDULE_REQUEST)
            self.repository.flush()
            self._notify_client(appointment, MailEvent.APPOINTMENT_CONFIRMATION)

        self.log_operation("appointment_confirmed", appointment_id=appointment.id)
        return appointment

    @BaseService.measure_operation("propose_reschedule")
    def propose_reschedule(
        self,
        appointment_id: str,
        *,
        new_date: date,
        new_timeslot: str,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Appointment:
        """Coach asks the client to move to another slot."""
        now = now or utc_now()
        slot = self._normalize_timeslot(new_timeslot)
        with self.transaction():
            appointment = self._load(appointment_id)
            self._evaluate(appointment, S.VEE_RESCHEDULE_REQUEST, Actor.ADMIN, now)
            self._ensure_slot_open(new_date, slot, exclude_id=appointment.id)
            appointment.status = S.VEE_RESCHEDULE_REQUEST.value
            appointment.requested_date = new_date
            appointment.requested_timeslot = slot
            appointment.reschedule_reason = reason
            appointment.record_reschedule(
                initiated_by=Actor.ADMIN.value, new_date=new_date, new_timeslot=slot, reason=reason
            )
            self.repository.flush()
            self._notify_client(
                appointment,
                MailEvent.VEE_RESCHEDULE_REQUEST,
                proposed_date=new_date.isoformat(),
                proposed_timeslot=slot,
                reason=reason,
            )
        return appointment

    @BaseService.measure_operation("cancel_appointment")
    def cancel(self, appointment_id: str, *, reason: Optional[str] = None, now: Optional[datetime] = None) -> Appointment:
        now = now or utc_now()
        with self.transaction():
            appointment = self._load(appointment_id)
            decision = self._evaluate(appointment, S.CANCELLED, Actor.ADMIN, now)
            self._apply_cancellation(appointment, decision, reason, now)
            self._notify_client(appointment, MailEvent.APPOINTMENT_CANCELLED, reason=reason)
        self.log_operation("appointment_cancelled", appointment_id=appointment.id, actor="admin")
        return appointment

    @BaseService.measure_operation("complete_appointment")
    def complete(self, appointment_id: str, *, now: Optional[datetime] = None) -> BilledAppointment:
        """
        Mark a session as done and bill it.

        A payment collaborator failure aborts the whole operation.
        """
        now = now or utc_now()
        with self.transaction():
            appointment = self._load(appointment_id)
            decision = self._evaluate(appointment, S.DONE, Actor.ADMIN, now)
            appointment.status = decision.target.value
            appointment.completed_at = now
            self.repository.flush()
            result = self.invoices.create_session_invoice(appointment)
            appointment.invoice_generated = True
            self.repository.flush()

        self.log_operation(
            "appointment_completed", appointment_id=appointment.id, invoice_id=result.invoice_id
        )
        return BilledAppointment(appointment, result.invoice, result.created)

    @BaseService.measure_operation("mark_no_show")
    def mark_no_show(self, appointment_id: str, *, now: Optional[datetime] = None) -> BilledAppointment:
        """Cancel with a no-show penalty and issue the penalty invoice."""
        now = now or utc_now()
        with self.transaction():
            appointment = self._load(appointment_id)
            decision = appointment_rules.evaluate_no_show(
                appointment.status,
                appointment.type,
                appointment_start=self._start_of(appointment),
                now=now,
            )
            appointment.status = decision.target.value
            appointment.no_show_penalty = decision.penalty
            appointment.cancel_reason = "no-show"
            appointment.cancelled_at = now
            self.repository.flush()
            result: InvoiceResult = self.invoices.create_penalty_invoice(appointment, PenaltyType.NO_SHOW)
            self._notify_client(
                appointment,
                MailEvent.NO_SHOW,
                penalty=decision.penalty,
                invoice_number=result.invoice.invoice_number,
            )

        self.log_operation("appointment_no_show", appointment_id=appointment.id, penalty=str(decision.penalty))
        return BilledAppointment(appointment, result.invoice, result.created)

    # Client transitions

    @BaseService.measure_operation("request_reschedule")
    def request_reschedule(
        self,
        appointment_id: str,
        *,
        user_id: str,
        reason: Optional[str] = None,
        new_date: Optional[date] = None,
        new_timeslot: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Appointment:
        """
        Client asks to move a confirmed appointment.

        Within the late window the appointment is flagged with the late fee
        and the client receives a late-reschedule notice.
        """
        now = now or utc_now()
        slot = self._optional_slot(new_date, new_timeslot)
        with self.transaction():
            appointment = self._load(appointment_id, user_id=user_id)
            if new_date and slot:
                self.availability.ensure_bookable(new_date, slot)
            new_start = appointment_start(new_date, slot) if new_date and slot else None
            decision = self._evaluate(
                appointment, S.CLIENT_RESCHEDULE_REQUESTED, Actor.CLIENT, now, new_start=new_start
            )
            appointment.status = decision.target.value
            appointment.reschedule_reason = reason
            appointment.requested_date = new_date
            appointment.requested_timeslot = slot
            self._apply_late_flags(appointment, decision)
            appointment.record_reschedule(
                initiated_by=Actor.CLIENT.value, new_date=new_date, new_timeslot=slot, reason=reason
            )
            self.repository.flush()

            self.notifications.notify_admin(
                MailEvent.RESCHEDULE_REQUEST,
                {
                    "appointment": appointment.to_dict(),
                    "reason": reason,
                    "requested_date": new_date.isoformat() if new_date else None,
                    "requested_timeslot": slot,
                },
            )
            if decision.late_reschedule:
                self._notify_client(
                    appointment,
                    MailEvent.LATE_RESCHEDULE,
                    late_fee=decision.late_fee,
                    late_window_hours=settings.late_reschedule_window_hours,
                )

        self.log_operation(
            "reschedule_requested",
            appointment_id=appointment.id,
            late=decision.late_reschedule,
            hours_until_start=round(decision.hours_until_start, 2),
        )
        return appointment

    @BaseService.measure_operation("respond_to_reschedule")
    def respond_to_reschedule(
        self,
        appointment_id: str,
        *,
        actor: Actor | str,
        accept: bool,
        new_date: Optional[date] = None,
        new_timeslot: Optional[str] = None,
        user_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Appointment:
        """
        Answer a pending reschedule.

        The admin answers client requests, the client answers coach
        proposals. Accepting moves the appointment to the agreed slot
        (``confirmRescheduleRequest``); declining ends it as
        ``cancelled_reschedule``.
        """
        now = now or utc_now()
        who = appointment_rules.parse_actor(actor)
        if who is Actor.CLIENT and not user_id:
            raise ValidationException("user_id is required for client responses", code="MISSING_USER")
        override = self._optional_slot(new_date, new_timeslot)

        with self.transaction():
            appointment = self._load(appointment_id, user_id=user_id if who is Actor.CLIENT else None)
            if not accept:
                decision = self._evaluate(appointment, S.CANCELLED_RESCHEDULE, who, now)
                self._apply_cancellation(appointment, decision, "Reschedule declined", now)
                self._notify_client(appointment, MailEvent.APPOINTMENT_CANCELLED, reason="Reschedule declined")
                if who is Actor.CLIENT:
                    self.notifications.notify_admin(
                        MailEvent.APPOINTMENT_CANCELLED,
                        {"appointment": appointment.to_dict(), "reason": "Reschedule declined"},
                    )
                return appointment

            target_date = new_date or appointment.requested_date
            target_slot = override or appointment.requested_timeslot
            if target_date is None or target_slot is None:
                raise ValidationException(
                    "A new date and timeslot are required to accept the reschedule",
                    code="NO_RESCHEDULE_SLOT",
                )
            decision = self._evaluate(
                appointment,
                S.CONFIRM_RESCHEDULE_REQUEST,
                who,
                now,
                new_start=appointment_start(target_date, target_slot),
            )
            if (target_date, target_slot) != (appointment.date, appointment.timeslot):
                self._ensure_slot_open(target_date, target_slot, exclude_id=appointment.id)
                appointment.move_to(target_date, target_slot)
            else:
                appointment.requested_date = None
                appointment.requested_timeslot = None
            appointment.status = decision.target.value
            self._apply_late_flags(appointment, decision)
            try:
                self.repository.flush()
            except IntegrityError as exc:
                if is_unique_violation(exc):
                    raise SlotConflictException(target_date.isoformat(), target_slot)
                raise
            self._notify_client(appointment, MailEvent.RESCHEDULE_CONFIRMED)

        self.log_operation("reschedule_accepted", appointment_id=appointment.id, actor=who.value)
        return appointment

    @BaseService.measure_operation("cancel_by_client")
    def cancel_by_client(
        self,
        appointment_id: str,
        *,
        user_id: str,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Appointment:
        now = now or utc_now()
        with self.transaction():
            appointment = self._load(appointment_id, user_id=user_id)
            decision = self._evaluate(appointment, S.CANCELLED_CLIENT, Actor.CLIENT, now)
            self._apply_cancellation(appointment, decision, reason, now)
            self.notifications.notify_admin(
                MailEvent.APPOINTMENT_CANCELLED, {"appointment": appointment.to_dict(), "reason": reason}
            )
        self.log_operation("appointment_cancelled", appointment_id=appointment.id, actor="client")
        return appointment

    # Intake forms

    @BaseService.measure_operation("record_consent")
    def record_consent(
        self,
        appointment_id: str,
        *,
        user_id: str,
        consent_type: str,
        consent_given: bool,
        consent_version: str = "1.0",
    ) -> ConsentRecord:
        with self.transaction():
            appointment = self._load(appointment_id, user_id=user_id)
            record = ConsentRecord(
                user_id=user_id,
                appointment_id=appointment.id,
                consent_type=consent_type,
                consent_given=consent_given,
                consent_version=consent_version,
            )
            self.db.add(record)
            appointment.consent_form_submitted = True
            self.repository.flush()
        return record

    @BaseService.measure_operation("record_pre_evaluation")
    def record_pre_evaluation(
        self,
        appointment_id: str,
        *,
        user_id: str,
        answers: Dict[str, Any],
        health_goals: Optional[str] = None,
    ) -> PreEvaluation:
        with self.transaction():
            appointment = self._load(appointment_id, user_id=user_id)
            evaluation = PreEvaluation(
                user_id=user_id,
                appointment_id=appointment.id,
                health_goals=health_goals,
                answers=answers,
            )
            self.db.add(evaluation)
            appointment.pre_evaluation_completed = True
            self.repository.flush()
            self.notifications.notify_admin(
                MailEvent.ADMIN_HEALTH_UPDATE,
                {
                    "client_name": appointment.client_name,
                    "appointment_id": appointment.id,
                    "appointment_date": appointment.date.isoformat(),
                    "health_goals": health_goals,
                },
            )
        return evaluation

    # Meetings

    @BaseService.measure_operation("create_meeting")
    def create_meeting(self, appointment_id: str) -> Appointment:
        """
        Attach an online meeting to a confirmed appointment on demand.

        Unlike confirmation, a meeting failure is surfaced to the caller here.
        """
        if self.meeting_client is None:
            raise UpstreamCollaboratorException("meeting", "Microsoft Teams is not configured")
        with self.transaction():
            appointment = self._load(appointment_id)
            if appointment.status_enum is not S.CONFIRMED:
                raise BusinessRuleException(
                    "Meetings can only be created for confirmed appointments",
                    code="APPOINTMENT_NOT_CONFIRMED",
                    details={"status": appointment.status},
                )
            if appointment.teams_join_url:
                return appointment
            start = self._start_of(appointment)
            try:
                meeting = self.meeting_client.create_meeting(
                    subject=f"{appointment.type} consultation - {appointment.client_name}",
                    start=start,
                    end=meeting_end(start),
                    attendee_email=appointment.client_email,
                    attendee_name=appointment.client_name,
                )
            except TeamsError as exc:
                raise UpstreamCollaboratorException(
                    "meeting", exc.message, details={"status_code": exc.status_code}
                )
            appointment.teams_join_url = meeting.join_url
            appointment.teams_meeting_id = meeting.id
            self.repository.flush()
        self.log_operation("meeting_created", appointment_id=appointment.id)
        return appointment

    # Reminders

    @BaseService.measure_operation("send_daily_reminders")
    def send_reminders_for_tomorrow(self, now: Optional[datetime] = None) -> int:
        """Queue a reminder for every confirmed appointment tomorrow; no appointment is modified."""
        tomorrow = practice_today(now) + timedelta(days=1)
        with self.transaction():
            appointments = self.repository.list_on_date(tomorrow, [S.CONFIRMED])
            queued = 0
            for appointment in appointments:
                if self._notify_client(appointment, MailEvent.APPOINTMENT_REMINDER) is not None:
                    queued += 1
        self.logger.info(f"Queued {queued} reminders for {tomorrow.isoformat()}")
        return queued

    # Queries

    def get(self, appointment_id: str, *, user_id: Optional[str] = None) -> Appointment:
        appointment = self.repository.get_by_id(appointment_id)
        if appointment is None or (user_id is not None and appointment.user_id != user_id):
            raise NotFoundException(f"Appointment {appointment_id} not found", code="APPOINTMENT_NOT_FOUND")
        return appointment

    def list_for_user(self, user_id: str, limit: int = DEFAULT_QUERY_LIMIT) -> List[Appointment]:
        return self.repository.list_for_user(user_id, limit=limit)

    def list_for_date(
        self, slot_date: date, statuses: Optional[Iterable[AppointmentStatus]] = None
    ) -> List[Appointment]:
        return self.repository.list_on_date(slot_date, statuses)

    # Internals

    def _load(self, appointment_id: str, *, user_id: Optional[str] = None) -> Appointment:
        appointment = self.repository.get_for_update(appointment_id)
        if appointment is None or (user_id is not None and appointment.user_id != user_id):
            raise NotFoundException(f"Appointment {appointment_id} not found", code="APPOINTMENT_NOT_FOUND")
        return appointment

    def _require_user(self, user_id: str) -> User:
        user = self.user_repository.get_by_id(user_id)
        if user is None:
            raise NotFoundException(f"User {user_id} not found", code="USER_NOT_FOUND")
        return user

    @staticmethod
    def _start_of(appointment: Appointment) -> datetime:
        return appointment_start(appointment.date, appointment.timeslot)

    def _evaluate(
        self,
        appointment: Appointment,
        target: AppointmentStatus,
        actor: Actor,
        now: datetime,
        *,
        new_start: Optional[datetime] = None,
    ) -> TransitionDecision:
        return appointment_rules.evaluate_transition(
            appointment.status,
            target,
            appointment_start=self._start_of(appointment),
            now=now,
            actor=actor,
            new_start=new_start,
        )

    @staticmethod
    def _normalize_timeslot(timeslot: str) -> str:
        return parse_timeslot(timeslot).strftime(TIMESLOT_FORMAT)

    def _optional_slot(self, new_date: Optional[date], new_timeslot: Optional[str]) -> Optional[str]:
        if (new_date is None) != (new_timeslot is None):
            raise ValidationException(
                "new_date and new_timeslot must be given together", code="INCOMPLETE_SLOT"
            )
        return self._normalize_timeslot(new_timeslot) if new_timeslot else None

    def _ensure_slot_open(self, slot_date: date, timeslot: str, *, exclude_id: Optional[str] = None) -> None:
        self.availability.ensure_bookable(slot_date, timeslot)
        existing = self.repository.find_active_in_slot(slot_date, timeslot, exclude_id=exclude_id)
        if existing is not None:
            raise SlotConflictException(slot_date.isoformat(), timeslot, existing.id)

    @staticmethod
    def _apply_late_flags(appointment: Appointment, decision: TransitionDecision) -> None:
        if decision.late_reschedule:
            appointment.late_reschedule = True
            appointment.potential_late_fee = decision.late_fee

    def _apply_cancellation(
        self,
        appointment: Appointment,
        decision: TransitionDecision,
        reason: Optional[str],
        now: datetime,
    ) -> None:
        appointment.status = decision.target.value
        appointment.cancel_reason = reason
        appointment.cancelled_at = now
        appointment.requested_date = None
        appointment.requested_timeslot = None
        self._release_meeting(appointment)
        self.repository.flush()

    def _attach_meeting(self, appointment: Appointment, *, rescheduled: bool) -> None:
        """Create (or move) the online meeting; failures never block the confirmation."""
        if self.meeting_client is None:
            return
        start = self._start_of(appointment)
        subject = f"{appointment.type} consultation - {appointment.client_name}"
        try:
            if appointment.teams_meeting_id and rescheduled:
                meeting = self.meeting_client.update_meeting(
                    appointment.teams_meeting_id, subject=subject, start=start, end=meeting_end(start)
                )
            elif appointment.teams_join_url:
                return
            else:
                meeting = self.meeting_client.create_meeting(
                    subject=subject,
                    start=start,
                    end=meeting_end(start),
                    attendee_email=appointment.client_email,
                    attendee_name=appointment.client_name,
                )
        except TeamsError as exc:
            self.logger.warning(f"Meeting creation failed for appointment {appointment.id}: {exc.message}")
            return
        appointment.teams_join_url = meeting.join_url
        appointment.teams_meeting_id = meeting.id

    def _release_meeting(self, appointment: Appointment) -> None:
        if self.meeting_client is None or not appointment.teams_meeting_id:
            return
        try:
            self.meeting_client.delete_meeting(appointment.teams_meeting_id)
        except TeamsError as exc:
            self.logger.warning(f"Meeting deletion failed for appointment {appointment.id}: {exc.message}")

    def _notify_client(self, appointment: Appointment, event: MailEvent, **extra: Any) -> Any:
        payload: Dict[str, Any] = {"appointment": appointment.to_dict(), **extra}
        return self.notifications.enqueue(
            event, Recipient(appointment.client_email, appointment.client_name), payload
        )
