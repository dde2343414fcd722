"""
Unit tests for the appointment transition rules.

The rules module is pure, so these tests only need a start instant and a
reference clock.
"""

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from portal.core.exceptions import (
    BusinessRuleException,
    IllegalTransitionException,
    ModificationWindowClosedException,
    ValidationException,
)
from portal.core.timezone_utils import appointment_start
from portal.models.appointment import TERMINAL_STATUSES, AppointmentStatus
from portal.services import appointment_rules
from portal.services.appointment_rules import Actor, evaluate_no_show, evaluate_transition

S = AppointmentStatus

START = appointment_start(date(2030, 3, 14), "10:00")


def before_start(hours: float) -> datetime:
    return START.astimezone(timezone.utc) - timedelta(hours=hours)


class TestPricing:
    def test_base_prices(self):
        assert appointment_rules.base_price("Initial") == Decimal("75")
        assert appointment_rules.base_price("Follow-up") == Decimal("50")

    def test_no_show_penalty_rounds_half_up(self):
        assert appointment_rules.no_show_penalty("Initial") == Decimal("38")
        assert appointment_rules.no_show_penalty("Follow-up") == Decimal("25")

    def test_round_euros(self):
        assert appointment_rules.round_euros(Decimal("37.5")) == Decimal("38")
        assert appointment_rules.round_euros(Decimal("24.49")) == Decimal("24")

    def test_unknown_type_rejected(self):
        with pytest.raises(ValidationException) as exc_info:
            appointment_rules.base_price("Group")
        assert exc_info.value.code == "UNKNOWN_APPOINTMENT_TYPE"


class TestStatusParsing:
    def test_legacy_spellings_are_normalised(self):
        assert AppointmentStatus.parse("reschedule_requested") is S.CLIENT_RESCHEDULE_REQUESTED
        assert AppointmentStatus.parse("no_show") is S.NO_SHOW

    def test_unknown_status_rejected(self):
        with pytest.raises(ValidationException):
            AppointmentStatus.parse("archived")


class TestTransitions:
    @pytest.mark.parametrize(
        "current,target,actor",
        [
            (S.PENDING, S.CONFIRMED, Actor.ADMIN),
            (S.PENDING, S.CANCELLED, Actor.ADMIN),
            (S.CONFIRMED, S.DONE, Actor.ADMIN),
            (S.CONFIRMED, S.VEE_RESCHEDULE_REQUEST, Actor.ADMIN),
            (S.CONFIRMED, S.CLIENT_RESCHEDULE_REQUESTED, Actor.CLIENT),
            (S.CLIENT_RESCHEDULE_REQUESTED, S.CONFIRM_RESCHEDULE_REQUEST, Actor.ADMIN),
            (S.CLIENT_RESCHEDULE_REQUESTED, S.CANCELLED_RESCHEDULE, Actor.ADMIN),
            (S.VEE_RESCHEDULE_REQUEST, S.CONFIRM_RESCHEDULE_REQUEST, Actor.CLIENT),
            (S.VEE_RESCHEDULE_REQUEST, S.CANCELLED_RESCHEDULE, Actor.CLIENT),
            (S.CONFIRM_RESCHEDULE_REQUEST, S.CONFIRMED, Actor.ADMIN),
        ],
    )
    def test_allowed_moves(self, current, target, actor):
        decision = evaluate_transition(
            current, target, appointment_start=START, now=before_start(48), actor=actor
        )
        assert decision.target is target
        assert decision.current is current

    @pytest.mark.parametrize(
        "current,target,actor",
        [
            (S.PENDING, S.DONE, Actor.ADMIN),
            (S.PENDING, S.CLIENT_RESCHEDULE_REQUESTED, Actor.CLIENT),
            (S.CONFIRMED, S.CONFIRMED, Actor.CLIENT),
            (S.CLIENT_RESCHEDULE_REQUESTED, S.CONFIRM_RESCHEDULE_REQUEST, Actor.CLIENT),
            (S.VEE_RESCHEDULE_REQUEST, S.CONFIRM_RESCHEDULE_REQUEST, Actor.ADMIN),
            (S.CONFIRMED, S.CANCELLED_CLIENT, Actor.ADMIN),
        ],
    )
    def test_illegal_moves(self, current, target, actor):
        with pytest.raises(IllegalTransitionException) as exc_info:
            evaluate_transition(current, target, appointment_start=START, now=before_start(48), actor=actor)
        assert exc_info.value.code == "ILLEGAL_TRANSITION"

    @pytest.mark.parametrize("terminal", sorted(TERMINAL_STATUSES, key=lambda s: s.value))
    def test_terminal_appointments_are_frozen(self, terminal):
        for actor in Actor:
            with pytest.raises(ModificationWindowClosedException):
                evaluate_transition(
                    terminal, S.CANCELLED, appointment_start=START, now=before_start(48), actor=actor
                )

    def test_client_cancel_allowed_from_any_non_terminal_state(self):
        for current in (S.PENDING, S.CONFIRMED, S.VEE_RESCHEDULE_REQUEST):
            decision = evaluate_transition(
                current, S.CANCELLED_CLIENT, appointment_start=START, now=before_start(2), actor="client"
            )
            assert decision.is_cancellation

    def test_client_blocked_inside_cutoff(self):
        with pytest.raises(ModificationWindowClosedException) as exc_info:
            evaluate_transition(
                S.CONFIRMED,
                S.CANCELLED_CLIENT,
                appointment_start=START,
                now=before_start(0.25),
                actor=Actor.CLIENT,
            )
        assert exc_info.value.details["cutoff_minutes"] == 30

    def test_admin_not_bound_by_cutoff(self):
        decision = evaluate_transition(
            S.CONFIRMED, S.CANCELLED, appointment_start=START, now=before_start(0.1), actor=Actor.ADMIN
        )
        assert decision.target is S.CANCELLED

    def test_confirmation_requests_meeting(self):
        decision = evaluate_transition(
            S.PENDING, S.CONFIRMED, appointment_start=START, now=before_start(24), actor=Actor.ADMIN
        )
        assert decision.request_meeting is True

    def test_unknown_actor_rejected(self):
        with pytest.raises(ValidationException):
            evaluate_transition(S.PENDING, S.CONFIRMED, appointment_start=START, now=before_start(24), actor="coach")


class TestLateReschedule:
    @pytest.mark.parametrize("hours,late", [(2, True), (4, True), (4.01, False), (30, False)])
    def test_window_boundary(self, hours, late):
        decision = evaluate_transition(
            S.CONFIRMED,
            S.CLIENT_RESCHEDULE_REQUESTED,
            appointment_start=START,
            now=before_start(hours),
            actor=Actor.CLIENT,
        )
        assert decision.late_reschedule is late
        assert decision.late_fee == (Decimal("5") if late else None)

    def test_new_slot_inside_window_is_late(self):
        now = before_start(48)
        new_start = now + timedelta(hours=3)
        decision = evaluate_transition(
            S.CONFIRMED,
            S.CLIENT_RESCHEDULE_REQUESTED,
            appointment_start=START,
            now=now,
            actor=Actor.CLIENT,
            new_start=new_start,
        )
        assert decision.late_reschedule is True

    def test_lateness_rechecked_when_admin_accepts(self):
        decision = evaluate_transition(
            S.CLIENT_RESCHEDULE_REQUESTED,
            S.CONFIRM_RESCHEDULE_REQUEST,
            appointment_start=START,
            now=before_start(1),
            actor=Actor.ADMIN,
        )
        assert decision.late_reschedule is True

    def test_coach_proposal_never_charges_client(self):
        decision = evaluate_transition(
            S.CONFIRMED,
            S.VEE_RESCHEDULE_REQUEST,
            appointment_start=START,
            now=before_start(1),
            actor=Actor.ADMIN,
        )
        assert decision.late_reschedule is False
        assert decision.late_fee is None


class TestNoShow:
    def test_follow_up_penalty(self):
        decision = evaluate_no_show(
            S.CONFIRMED, "Follow-up", appointment_start=START, now=START + timedelta(hours=2)
        )
        assert decision.target is S.CANCELLED
        assert decision.penalty == Decimal("25")

    def test_rejected_before_appointment_day(self):
        with pytest.raises(BusinessRuleException) as exc_info:
            evaluate_no_show(S.CONFIRMED, "Initial", appointment_start=START, now=before_start(48))
        assert exc_info.value.code == "NO_SHOW_TOO_EARLY"

    def test_allowed_earlier_on_the_same_day(self):
        decision = evaluate_no_show(S.CONFIRMED, "Initial", appointment_start=START, now=before_start(1))
        assert decision.penalty == Decimal("38")

    def test_terminal_rejected(self):
        with pytest.raises(ModificationWindowClosedException):
            evaluate_no_show(S.DONE, "Initial")
