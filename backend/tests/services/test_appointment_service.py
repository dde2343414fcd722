"""
Integration tests for AppointmentService against SQLite.

Covers booking, confirmation with meeting links, reschedules (both
directions), slot availability, cancellations, completion, no-shows and
reminders.
"""

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from portal.core.exceptions import (
    BusinessRuleException,
    ConflictException,
    IllegalTransitionException,
    ModificationWindowClosedException,
    NotFoundException,
    SlotConflictException,
    UpstreamCollaboratorException,
    ValidationException,
)
from portal.core.timezone_utils import practice_today, utc_now
from portal.integrations.microsoft_teams import TeamsError
from portal.models.appointment import AppointmentStatus
from portal.models.invoice import Invoice, InvoiceStatus, InvoiceType
from portal.services.appointment_service import AppointmentService
from tests.helpers.clock import hours_before
from tests.helpers.mail import queued_entries, queued_events

S = AppointmentStatus


def next_week():
    return practice_today() + timedelta(days=7)


class TestBooking:
    def test_book_creates_pending_appointment(self, db, appointment_service, user):
        appointment = appointment_service.book(
            user_id=user.id, type="Initial", date=next_week(), timeslot="9:00", goals="More energy"
        )

        assert appointment.status == S.PENDING.value
        assert appointment.timeslot == "09:00"
        assert appointment.client_email == "jane@example.com"
        assert queued_events(db) == ["admin-new-appointment"]

    def test_book_rejects_taken_slot(self, appointment_service, make_user, user):
        appointment_service.book(user_id=user.id, type="Initial", date=next_week(), timeslot="10:00")
        other = make_user()

        with pytest.raises(SlotConflictException) as exc_info:
            appointment_service.book(user_id=other.id, type="Follow-up", date=next_week(), timeslot="10:00")
        assert exc_info.value.status_code == 409

    def test_slot_reusable_after_cancellation(self, appointment_service, user):
        first = appointment_service.book(user_id=user.id, type="Initial", date=next_week(), timeslot="10:00")
        appointment_service.cancel(first.id, reason="Coach unavailable")

        second = appointment_service.book(user_id=user.id, type="Initial", date=next_week(), timeslot="10:00")
        assert second.id != first.id

    def test_book_rejects_past_start(self, appointment_service, user):
        with pytest.raises(ValidationException) as exc_info:
            appointment_service.book(
                user_id=user.id, type="Initial", date=practice_today() - timedelta(days=1), timeslot="10:00"
            )
        assert exc_info.value.code == "APPOINTMENT_IN_PAST"

    def test_book_rejects_unknown_user(self, appointment_service):
        with pytest.raises(NotFoundException):
            appointment_service.book(user_id="missing", type="Initial", date=next_week(), timeslot="10:00")

    def test_book_rejects_bad_timeslot(self, appointment_service, user):
        with pytest.raises(ValidationException):
            appointment_service.book(user_id=user.id, type="Initial", date=next_week(), timeslot="25:99")

    def test_book_rejects_slot_off_the_grid(self, db, appointment_service, user):
        with pytest.raises(ValidationException) as exc_info:
            appointment_service.book(user_id=user.id, type="Initial", date=next_week(), timeslot="11:30")

        assert exc_info.value.code == "TIMESLOT_NOT_OFFERED"
        assert queued_events(db) == []

    def test_book_rejects_blocked_slot(self, appointment_service, availability_service, user):
        availability_service.block(next_week(), ["10:00", "11:00"], reason="Training day")

        with pytest.raises(ConflictException) as exc_info:
            appointment_service.book(user_id=user.id, type="Initial", date=next_week(), timeslot="11:00")

        assert exc_info.value.code == "SLOT_UNAVAILABLE"
        assert exc_info.value.status_code == 409

    def test_blocked_slot_is_bookable_on_other_days(self, appointment_service, availability_service, user):
        availability_service.block(next_week(), ["10:00"])

        appointment = appointment_service.book(
            user_id=user.id, type="Initial", date=next_week() + timedelta(days=1), timeslot="10:00"
        )

        assert appointment.status == S.PENDING.value


class TestConfirmation:
    def test_book_then_confirm(self, db, appointment_service, fake_teams, user):
        appointment = appointment_service.book(
            user_id=user.id, type="Initial", date=next_week(), timeslot="10:00"
        )
        confirmed = appointment_service.confirm(appointment.id)

        assert confirmed.status == S.CONFIRMED.value
        assert confirmed.teams_join_url.startswith("https://teams.microsoft.com/")
        assert confirmed.confirmed_at is not None
        assert [call["method"] for call in fake_teams.calls] == ["create_meeting"]
        assert "appointment-confirmation" in queued_events(db, to_email=user.email)

    def test_confirm_survives_meeting_failure(self, db, appointment_service, fake_teams, user):
        fake_teams.set_error("create_meeting", TeamsError("Graph unavailable", status_code=503))
        appointment = appointment_service.book(
            user_id=user.id, type="Initial", date=next_week(), timeslot="10:00"
        )

        confirmed = appointment_service.confirm(appointment.id)

        assert confirmed.status == S.CONFIRMED.value
        assert confirmed.teams_join_url is None
        assert "appointment-confirmation" in queued_events(db, to_email=user.email)

    def test_confirm_without_meeting_client(self, db, notification_service, invoice_service, user):
        service = AppointmentService(
            db, notification_service=notification_service, invoice_service=invoice_service
        )
        appointment = service.book(user_id=user.id, type="Initial", date=next_week(), timeslot="11:00")

        confirmed = service.confirm(appointment.id)

        assert confirmed.status == S.CONFIRMED.value
        assert confirmed.teams_join_url is None

    def test_confirm_twice_is_rejected(self, appointment_service, user):
        appointment = appointment_service.book(
            user_id=user.id, type="Initial", date=next_week(), timeslot="10:00"
        )
        appointment_service.confirm(appointment.id)

        with pytest.raises(IllegalTransitionException):
            appointment_service.confirm(appointment.id)


class TestClientReschedule:
    def test_late_reschedule_flags_fee(self, db, appointment_service, make_appointment, user):
        appointment = make_appointment(user)

        updated = appointment_service.request_reschedule(
            appointment.id, user_id=user.id, reason="Traffic", now=hours_before(appointment, 2)
        )

        assert updated.status == S.CLIENT_RESCHEDULE_REQUESTED.value
        assert updated.late_reschedule is True
        assert updated.potential_late_fee == Decimal("5")
        assert len(updated.reschedule_history) == 1
        assert updated.reschedule_history[0].initiated_by == "client"
        assert "late-reschedule" in queued_events(db, to_email=user.email)

    def test_early_reschedule_has_no_fee(self, db, appointment_service, make_appointment, user):
        appointment = make_appointment(user)

        updated = appointment_service.request_reschedule(
            appointment.id, user_id=user.id, now=hours_before(appointment, 48)
        )

        assert updated.late_reschedule is False
        assert updated.potential_late_fee is None
        assert "late-reschedule" not in queued_events(db)
        assert "reschedule-request" in queued_events(db)

    def test_inside_cutoff_is_rejected(self, appointment_service, make_appointment, user):
        appointment = make_appointment(user)

        with pytest.raises(ModificationWindowClosedException):
            appointment_service.request_reschedule(
                appointment.id, user_id=user.id, now=hours_before(appointment, 0.2)
            )

    def test_other_clients_appointment_is_hidden(self, appointment_service, make_appointment, make_user, user):
        appointment = make_appointment(user)
        stranger = make_user()

        with pytest.raises(NotFoundException):
            appointment_service.request_reschedule(
                appointment.id, user_id=stranger.id, now=hours_before(appointment, 48)
            )

    def test_admin_accepts_and_reconfirms(self, db, appointment_service, fake_teams, make_appointment, user):
        appointment = make_appointment(user)
        new_date = appointment.date + timedelta(days=2)
        appointment_service.request_reschedule(
            appointment.id,
            user_id=user.id,
            new_date=new_date,
            new_timeslot="14:00",
            now=hours_before(appointment, 48),
        )

        agreed = appointment_service.respond_to_reschedule(
            appointment.id, actor="admin", accept=True, now=hours_before(appointment, 47)
        )
        assert agreed.status == S.CONFIRM_RESCHEDULE_REQUEST.value
        assert agreed.date == new_date
        assert agreed.timeslot == "14:00"
        assert agreed.requested_date is None

        confirmed = appointment_service.confirm(appointment.id, now=hours_before(appointment, 46))
        assert confirmed.status == S.CONFIRMED.value
        assert confirmed.teams_join_url is not None
        assert "reschedule-confirmed" in queued_events(db, to_email=user.email)

    def test_admin_declines(self, appointment_service, make_appointment, user):
        appointment = make_appointment(user)
        appointment_service.request_reschedule(appointment.id, user_id=user.id, now=hours_before(appointment, 48))

        declined = appointment_service.respond_to_reschedule(
            appointment.id, actor="admin", accept=False, now=hours_before(appointment, 47)
        )

        assert declined.status == S.CANCELLED_RESCHEDULE.value
        assert declined.cancelled_at is not None

    def test_accept_without_slot_is_rejected(self, appointment_service, make_appointment, user):
        appointment = make_appointment(user)
        appointment_service.request_reschedule(appointment.id, user_id=user.id, now=hours_before(appointment, 48))

        with pytest.raises(ValidationException) as exc_info:
            appointment_service.respond_to_reschedule(
                appointment.id, actor="admin", accept=True, now=hours_before(appointment, 47)
            )
        assert exc_info.value.code == "NO_RESCHEDULE_SLOT"

    def test_accept_into_taken_slot_conflicts(self, appointment_service, make_appointment, make_user, user):
        appointment = make_appointment(user)
        blocker = make_appointment(make_user(), slot_date=appointment.date, timeslot="15:00")
        appointment_service.request_reschedule(appointment.id, user_id=user.id, now=hours_before(appointment, 48))

        with pytest.raises(SlotConflictException):
            appointment_service.respond_to_reschedule(
                appointment.id,
                actor="admin",
                accept=True,
                new_date=blocker.date,
                new_timeslot="15:00",
                now=hours_before(appointment, 47),
            )

    def test_request_into_blocked_slot_is_rejected(
        self, appointment_service, availability_service, make_appointment, user
    ):
        appointment = make_appointment(user)
        new_date = appointment.date + timedelta(days=1)
        availability_service.block(new_date, ["14:00"])

        with pytest.raises(ConflictException) as exc_info:
            appointment_service.request_reschedule(
                appointment.id,
                user_id=user.id,
                new_date=new_date,
                new_timeslot="14:00",
                now=hours_before(appointment, 48),
            )
        assert exc_info.value.code == "SLOT_UNAVAILABLE"

    def test_accept_into_slot_blocked_meanwhile(
        self, appointment_service, availability_service, make_appointment, user
    ):
        appointment = make_appointment(user)
        new_date = appointment.date + timedelta(days=2)
        appointment_service.request_reschedule(
            appointment.id,
            user_id=user.id,
            new_date=new_date,
            new_timeslot="14:00",
            now=hours_before(appointment, 48),
        )
        availability_service.block(new_date, ["14:00"], reason="Holiday")

        with pytest.raises(ConflictException) as exc_info:
            appointment_service.respond_to_reschedule(
                appointment.id, actor="admin", accept=True, now=hours_before(appointment, 47)
            )
        assert exc_info.value.code == "SLOT_UNAVAILABLE"

    def test_accept_with_override_off_the_grid(self, appointment_service, make_appointment, user):
        appointment = make_appointment(user)
        appointment_service.request_reschedule(appointment.id, user_id=user.id, now=hours_before(appointment, 48))

        with pytest.raises(ValidationException) as exc_info:
            appointment_service.respond_to_reschedule(
                appointment.id,
                actor="admin",
                accept=True,
                new_date=appointment.date + timedelta(days=1),
                new_timeslot="12:00",
                now=hours_before(appointment, 47),
            )
        assert exc_info.value.code == "TIMESLOT_NOT_OFFERED"


class TestCoachProposal:
    def test_client_accepts_proposal(self, db, appointment_service, make_appointment, user):
        appointment = make_appointment(user)
        new_date = appointment.date + timedelta(days=1)

        proposed = appointment_service.propose_reschedule(
            appointment.id, new_date=new_date, new_timeslot="16:00", reason="Conference",
            now=hours_before(appointment, 72),
        )
        assert proposed.status == S.VEE_RESCHEDULE_REQUEST.value
        assert proposed.late_reschedule is False
        assert "vee-reschedule-request" in queued_events(db, to_email=user.email)

        accepted = appointment_service.respond_to_reschedule(
            appointment.id, actor="client", accept=True, user_id=user.id, now=hours_before(appointment, 70)
        )
        assert accepted.status == S.CONFIRM_RESCHEDULE_REQUEST.value
        assert accepted.date == new_date
        assert accepted.timeslot == "16:00"

    def test_client_response_requires_user(self, appointment_service, make_appointment, user):
        appointment = make_appointment(user, status=S.VEE_RESCHEDULE_REQUEST)

        with pytest.raises(ValidationException):
            appointment_service.respond_to_reschedule(appointment.id, actor="client", accept=False)

    def test_proposal_into_blocked_slot_is_rejected(
        self, appointment_service, availability_service, make_appointment, user
    ):
        appointment = make_appointment(user)
        new_date = appointment.date + timedelta(days=1)
        availability_service.block(new_date, ["16:00"])

        with pytest.raises(ConflictException) as exc_info:
            appointment_service.propose_reschedule(
                appointment.id, new_date=new_date, new_timeslot="16:00", now=hours_before(appointment, 72)
            )
        assert exc_info.value.code == "SLOT_UNAVAILABLE"

    def test_proposal_off_the_grid_is_rejected(self, appointment_service, make_appointment, user):
        appointment = make_appointment(user)

        with pytest.raises(ValidationException) as exc_info:
            appointment_service.propose_reschedule(
                appointment.id,
                new_date=appointment.date + timedelta(days=1),
                new_timeslot="08:00",
                now=hours_before(appointment, 72),
            )
        assert exc_info.value.code == "TIMESLOT_NOT_OFFERED"


class TestCancellation:
    def test_client_cancel(self, db, appointment_service, make_appointment, fake_teams, user):
        appointment = make_appointment(user, teams_meeting_id="fake_meeting_1", teams_join_url="https://x")

        cancelled = appointment_service.cancel_by_client(
            appointment.id, user_id=user.id, reason="Sick", now=hours_before(appointment, 5)
        )

        assert cancelled.status == S.CANCELLED_CLIENT.value
        assert cancelled.cancel_reason == "Sick"
        assert {"method": "delete_meeting", "meeting_id": "fake_meeting_1"} in fake_teams.calls
        assert "appointment-cancelled" in queued_events(db)

    def test_client_cancel_inside_cutoff(self, appointment_service, make_appointment, user):
        appointment = make_appointment(user)

        with pytest.raises(ModificationWindowClosedException):
            appointment_service.cancel_by_client(
                appointment.id, user_id=user.id, now=hours_before(appointment, 0.1)
            )

    def test_terminal_appointment_cannot_change(self, appointment_service, make_appointment, user):
        appointment = make_appointment(user, status=S.DONE)

        with pytest.raises(ModificationWindowClosedException):
            appointment_service.cancel(appointment.id)


class TestCompletion:
    def test_complete_bills_pay_as_you_go_session(self, db, appointment_service, make_appointment, user):
        appointment = make_appointment(user, type="Initial")

        billed = appointment_service.complete(appointment.id)

        assert billed.appointment.status == S.DONE.value
        assert billed.appointment.invoice_generated is True
        assert billed.invoice_created is True
        assert billed.invoice.invoice_type == InvoiceType.SESSION.value
        assert billed.invoice.total_amount == Decimal("75")
        assert billed.invoice.invoice_number.startswith("INV-")

    def test_complete_adds_late_fee_line(self, appointment_service, make_appointment, user):
        appointment = make_appointment(
            user, type="Follow-up", late_reschedule=True, potential_late_fee=Decimal("5")
        )

        billed = appointment_service.complete(appointment.id)

        amounts = [(item.item_type, item.amount) for item in billed.invoice.items]
        assert amounts == [("session", Decimal("50")), ("penalty", Decimal("5"))]
        assert billed.invoice.total_amount == Decimal("55")
        assert billed.invoice.total_amount == billed.invoice.items_total

    def test_complete_program_session_is_free(self, appointment_service, make_appointment, make_user):
        member = make_user(service_plan="complete-program", subscription_status="active")
        appointment = make_appointment(member)

        billed = appointment_service.complete(appointment.id)

        assert billed.invoice.total_amount == Decimal("0")
        assert billed.invoice.status == InvoiceStatus.PAID.value
        assert billed.invoice.stripe_payment_intent_id is None

    def test_complete_after_late_penalty_bills_the_fee_once(
        self, db, appointment_service, invoice_service, make_appointment, user
    ):
        appointment = make_appointment(
            user, type="Follow-up", late_reschedule=True, potential_late_fee=Decimal("5")
        )
        penalty = invoice_service.create(
            "penalty", {"appointment_id": appointment.id, "penalty_type": "late_reschedule"}
        ).invoice

        billed = appointment_service.complete(appointment.id)

        live = db.execute(
            select(Invoice).where(
                Invoice.appointment_id == appointment.id, Invoice.status != InvoiceStatus.CREDITED.value
            )
        ).scalars().all()
        assert [invoice.id for invoice in live] == [billed.invoice.id]
        assert billed.invoice.total_amount == Decimal("55")
        assert [item.item_type for item in billed.invoice.items].count("penalty") == 1
        assert billed.invoice.original_invoice_id == penalty.id


class TestNoShow:
    def test_follow_up_no_show(self, db, appointment_service, make_appointment, user):
        appointment = make_appointment(user, type="Follow-up", slot_date=practice_today(), timeslot="00:00")

        billed = appointment_service.mark_no_show(appointment.id, now=utc_now())

        assert billed.appointment.status == S.CANCELLED.value
        assert billed.appointment.no_show_penalty == Decimal("25")
        assert billed.invoice.invoice_type == InvoiceType.PENALTY.value
        assert len(billed.invoice.items) == 1
        assert billed.invoice.items[0].amount == Decimal("25")
        assert billed.invoice.items[0].item_type == "penalty"
        assert "no-show" in queued_events(db, to_email=user.email)

    def test_no_show_before_the_day_is_rejected(self, appointment_service, make_appointment, user):
        appointment = make_appointment(user)

        with pytest.raises(BusinessRuleException) as exc_info:
            appointment_service.mark_no_show(appointment.id, now=hours_before(appointment, 72))
        assert exc_info.value.code == "NO_SHOW_TOO_EARLY"

    def test_no_show_after_late_penalty_leaves_one_invoice(
        self, db, appointment_service, invoice_service, make_appointment, user
    ):
        appointment = make_appointment(user, type="Follow-up", slot_date=practice_today(), timeslot="00:00")
        late = invoice_service.create(
            "penalty", {"appointment_id": appointment.id, "penalty_type": "late_reschedule"}
        ).invoice

        billed = appointment_service.mark_no_show(appointment.id, now=utc_now())

        db.refresh(late)
        assert late.status == InvoiceStatus.CREDITED.value
        assert billed.invoice_created is True
        assert billed.invoice.id != late.id
        assert [item.amount for item in billed.invoice.items] == [Decimal("5"), Decimal("25")]
        assert billed.invoice.total_amount == Decimal("30")
        no_show_mail = [e for e in queued_entries(db, to_email=user.email) if e.event_type == "no-show"]
        assert len(no_show_mail) == 1
        assert no_show_mail[0].payload["invoice_number"] == billed.invoice.invoice_number


class TestMeetings:
    def test_create_meeting_for_confirmed_appointment(self, appointment_service, make_appointment, user):
        appointment = make_appointment(user)

        updated = appointment_service.create_meeting(appointment.id)

        assert updated.teams_join_url is not None
        assert updated.teams_meeting_id.startswith("fake_meeting_")

    def test_create_meeting_failure_surfaces(self, appointment_service, make_appointment, fake_teams, user):
        fake_teams.set_error("create_meeting", TeamsError("Forbidden", status_code=403))
        appointment = make_appointment(user)

        with pytest.raises(UpstreamCollaboratorException) as exc_info:
            appointment_service.create_meeting(appointment.id)
        assert exc_info.value.status_code == 502


class TestReminders:
    def test_reminders_only_for_confirmed_tomorrow(self, db, appointment_service, make_appointment, make_user):
        tomorrow = practice_today() + timedelta(days=1)
        first = make_appointment(make_user(), slot_date=tomorrow, timeslot="09:00")
        make_appointment(make_user(), slot_date=tomorrow, timeslot="10:00", status=S.PENDING)
        make_appointment(make_user(), slot_date=tomorrow + timedelta(days=1), timeslot="09:00")

        queued = appointment_service.send_reminders_for_tomorrow()

        assert queued == 1
        assert queued_events(db) == ["appointment-reminder"]
        db.refresh(first)
        assert first.status == S.CONFIRMED.value

    def test_running_the_sweep_twice_changes_nothing(self, db, appointment_service, make_appointment, user):
        tomorrow = practice_today() + timedelta(days=1)
        appointment = make_appointment(user, slot_date=tomorrow, timeslot="09:00")
        db.refresh(appointment)
        updated_at = appointment.updated_at

        first = appointment_service.send_reminders_for_tomorrow()
        second = appointment_service.send_reminders_for_tomorrow()

        db.expire_all()
        db.refresh(appointment)
        assert (first, second) == (1, 1)
        assert appointment.status == S.CONFIRMED.value
        assert appointment.updated_at == updated_at
        assert queued_events(db, to_email=user.email) == ["appointment-reminder", "appointment-reminder"]
