"""
Tests for InvoiceService: issuing, idempotency, reissue chains and payment
bookkeeping. Stripe runs in mock mode throughout.
"""

from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import select

from portal.core.config import settings
from portal.core.exceptions import (
    BusinessRuleException,
    NotFoundException,
    UpstreamCollaboratorException,
    ValidationException,
)
from portal.models.appointment import AppointmentStatus
from portal.models.invoice import Invoice, InvoiceStatus, InvoiceType
from portal.models.user import ServicePlan, SubscriptionStatus
from tests.helpers.mail import queued_entries, queued_events


DONE = AppointmentStatus.DONE


def active_member(make_user, **overrides):
    fields = {
        "service_plan": ServicePlan.COMPLETE_PROGRAM.value,
        "subscription_status": SubscriptionStatus.ACTIVE.value,
        "monthly_amount": Decimal("150"),
    }
    fields.update(overrides)
    return make_user(**fields)


def custom_context(user, amount="85", **extra):
    context = {
        "user_id": user.id,
        "client_name": user.name,
        "client_email": user.email,
        "amount": amount,
        "description": "Meal plan review",
    }
    context.update(extra)
    return context


class TestSessionInvoices:
    def test_session_invoice_for_initial(self, db, invoice_service, make_appointment, user):
        appointment = make_appointment(user, type="Initial", status=DONE)

        result = invoice_service.create("session", {"appointment_id": appointment.id})

        invoice = result.invoice
        assert result.created is True
        assert invoice.invoice_type == InvoiceType.SESSION.value
        assert invoice.status == InvoiceStatus.UNPAID.value
        assert invoice.total_amount == Decimal("75")
        assert invoice.invoice_number.startswith("INV-")
        assert invoice.stripe_payment_intent_id == f"mock_pi_{invoice.invoice_number}"
        assert invoice.payment_url.endswith(f"/pay-invoice/{invoice.invoice_number}")
        assert queued_events(db, to_email=user.email) == ["invoice-generated"]

    def test_late_fee_added_as_second_line(self, invoice_service, make_appointment, user):
        appointment = make_appointment(
            user, type="Follow-up", status=DONE, late_reschedule=True, potential_late_fee=Decimal("5")
        )

        invoice = invoice_service.create("session", {"appointment_id": appointment.id}).invoice

        assert [item.item_type for item in invoice.items] == ["session", "penalty"]
        assert invoice.total_amount == Decimal("55")
        assert invoice.items_total == invoice.total_amount

    def test_same_appointment_returns_existing(self, db, invoice_service, make_appointment, user):
        appointment = make_appointment(user, status=DONE)

        first = invoice_service.create("session", {"appointment_id": appointment.id})
        second = invoice_service.create("session", {"appointment_id": appointment.id})

        assert second.created is False
        assert second.invoice_id == first.invoice_id
        assert queued_events(db).count("invoice-generated") == 1

    def test_complete_program_session_is_free(self, db, invoice_service, make_appointment, make_user):
        member = make_user(service_plan=ServicePlan.COMPLETE_PROGRAM.value)
        appointment = make_appointment(member, status=DONE)

        invoice = invoice_service.create("session", {"appointment_id": appointment.id}).invoice

        assert invoice.total_amount == Decimal("0")
        assert invoice.status == InvoiceStatus.PAID.value
        assert invoice.stripe_payment_intent_id is None
        assert invoice.paid_at is not None

    @pytest.mark.parametrize("status", [AppointmentStatus.CONFIRMED, AppointmentStatus.PENDING])
    def test_only_completed_sessions_are_billed(self, db, invoice_service, make_appointment, user, status):
        appointment = make_appointment(user, status=status)

        with pytest.raises(BusinessRuleException) as exc_info:
            invoice_service.create("session", {"appointment_id": appointment.id})

        assert exc_info.value.code == "APPOINTMENT_NOT_COMPLETED"
        assert db.execute(select(Invoice)).scalars().all() == []
        assert queued_entries(db) == []

    def test_unknown_appointment(self, invoice_service):
        with pytest.raises(NotFoundException):
            invoice_service.create("session", {"appointment_id": "missing"})

    def test_unknown_kind(self, invoice_service, user):
        with pytest.raises(ValidationException) as exc_info:
            invoice_service.create("voucher", {"user_id": user.id})
        assert exc_info.value.code == "UNKNOWN_INVOICE_KIND"


class TestPenaltyInvoices:
    def test_no_show_penalty_is_half_price_rounded(self, invoice_service, make_appointment, user):
        appointment = make_appointment(user, type="Initial")

        invoice = invoice_service.create(
            "penalty", {"appointment_id": appointment.id, "penalty_type": "no_show"}
        ).invoice

        assert invoice.invoice_type == InvoiceType.PENALTY.value
        assert invoice.invoice_number.startswith("PEN-")
        assert invoice.total_amount == Decimal("38")

    def test_late_reschedule_penalty(self, invoice_service, make_appointment, user):
        appointment = make_appointment(user, type="Follow-up")

        invoice = invoice_service.create(
            "penalty", {"appointment_id": appointment.id, "penalty_type": "late_reschedule"}
        ).invoice

        assert invoice.total_amount == Decimal("5")

    def test_same_penalty_twice_returns_existing(self, db, invoice_service, make_appointment, user):
        appointment = make_appointment(user)
        context = {"appointment_id": appointment.id, "penalty_type": "late_reschedule"}

        first = invoice_service.create("penalty", context)
        second = invoice_service.create("penalty", context)

        assert second.created is False
        assert second.invoice_id == first.invoice_id
        assert queued_events(db).count("invoice-generated") == 1

    def test_unknown_penalty_type(self, invoice_service, make_appointment, user):
        appointment = make_appointment(user)

        with pytest.raises(ValidationException) as exc_info:
            invoice_service.create("penalty", {"appointment_id": appointment.id, "penalty_type": "rudeness"})
        assert exc_info.value.code == "UNKNOWN_PENALTY_TYPE"


class TestOneInvoicePerAppointment:
    def live_invoices(self, db, appointment_id):
        stmt = select(Invoice).where(
            Invoice.appointment_id == appointment_id,
            Invoice.status != InvoiceStatus.CREDITED.value,
        )
        return db.execute(stmt).scalars().all()

    def test_no_show_after_late_fee_is_folded_in(self, db, invoice_service, make_appointment, user):
        appointment = make_appointment(user, type="Follow-up")
        late = invoice_service.create(
            "penalty", {"appointment_id": appointment.id, "penalty_type": "late_reschedule"}
        ).invoice

        result = invoice_service.create("penalty", {"appointment_id": appointment.id, "penalty_type": "no_show"})

        db.refresh(late)
        folded = result.invoice
        assert result.created is True
        assert late.status == InvoiceStatus.CREDITED.value
        assert late.credit_note_number == f"CN-{late.invoice_number}"
        assert folded.invoice_type == InvoiceType.PENALTY.value
        assert [item.amount for item in folded.items] == [Decimal("5"), Decimal("25")]
        assert folded.total_amount == Decimal("30")
        assert folded.charges == ["late_reschedule", "no_show"]
        assert folded.original_invoice_id == late.id
        assert folded.is_reissued is True
        assert [i.id for i in self.live_invoices(db, appointment.id)] == [folded.id]

    def test_session_after_late_fee_charges_the_fee_once(self, invoice_service, make_appointment, user):
        appointment = make_appointment(
            user, type="Follow-up", status=DONE, late_reschedule=True, potential_late_fee=Decimal("5")
        )
        invoice_service.create("penalty", {"appointment_id": appointment.id, "penalty_type": "late_reschedule"})

        session = invoice_service.create("session", {"appointment_id": appointment.id}).invoice

        assert session.invoice_type == InvoiceType.SESSION.value
        assert session.invoice_number.startswith("INV-")
        assert [(item.item_type, item.amount) for item in session.items] == [
            ("penalty", Decimal("5")),
            ("session", Decimal("50")),
        ]
        assert session.total_amount == Decimal("55")
        assert session.charges == ["late_reschedule", "session"]

    def test_repeated_session_request_after_fold_returns_it(self, db, invoice_service, make_appointment, user):
        appointment = make_appointment(user, status=DONE, late_reschedule=True, potential_late_fee=Decimal("5"))
        invoice_service.create("penalty", {"appointment_id": appointment.id, "penalty_type": "late_reschedule"})
        folded = invoice_service.create("session", {"appointment_id": appointment.id})

        again = invoice_service.create("session", {"appointment_id": appointment.id})

        assert again.created is False
        assert again.invoice_id == folded.invoice_id
        assert queued_events(db).count("invoice-generated") == 2

    def test_paid_late_fee_is_deducted(self, db, invoice_service, make_appointment, user):
        appointment = make_appointment(user, type="Follow-up", status=DONE)
        late = invoice_service.create(
            "penalty", {"appointment_id": appointment.id, "penalty_type": "late_reschedule"}
        ).invoice
        invoice_service.mark_paid(invoice_id=late.id)

        session = invoice_service.create("session", {"appointment_id": appointment.id}).invoice

        db.refresh(late)
        assert late.status == InvoiceStatus.CREDITED.value
        assert [item.amount for item in session.items] == [Decimal("5"), Decimal("-5"), Decimal("50")]
        assert session.items[1].description == f"Paid with invoice {late.invoice_number}"
        assert session.total_amount == Decimal("50")
        assert session.status == InvoiceStatus.UNPAID.value

    def test_payment_in_flight_blocks_new_charge(self, invoice_service, make_appointment, user):
        appointment = make_appointment(user)
        late = invoice_service.create(
            "penalty", {"appointment_id": appointment.id, "penalty_type": "late_reschedule"}
        ).invoice
        invoice_service.mark_processing(late.stripe_payment_intent_id)

        with pytest.raises(BusinessRuleException) as exc_info:
            invoice_service.create("penalty", {"appointment_id": appointment.id, "penalty_type": "no_show"})
        assert exc_info.value.code == "INVOICE_PAYMENT_PENDING"

    def test_fold_withdraws_the_old_payment_intent(
        self, invoice_service, stripe_service, monkeypatch, make_appointment, user
    ):
        cancelled = []
        monkeypatch.setattr(stripe_service, "cancel_payment_handle", cancelled.append)
        appointment = make_appointment(user)
        late = invoice_service.create(
            "penalty", {"appointment_id": appointment.id, "penalty_type": "late_reschedule"}
        ).invoice

        invoice_service.create("penalty", {"appointment_id": appointment.id, "penalty_type": "no_show"})

        assert cancelled == [late.stripe_payment_intent_id]


class TestSubscriptionInvoices:
    def test_cycle_invoice_number_and_amount(self, invoice_service, make_user):
        member = active_member(make_user, max_billing_cycles=3, current_billing_cycle=2)

        result = invoice_service.create(
            "subscription", {"user_id": member.id, "billing_date": date(2030, 5, 1)}
        )

        invoice = result.invoice
        assert invoice.billing_cycle == 2
        assert invoice.invoice_number.startswith("SUB-2030-05-2-")
        assert invoice.total_amount == Decimal("150")
        assert invoice.due_date == date(2030, 5, 1 + settings.subscription_invoice_due_days)

    def test_one_invoice_per_cycle(self, db, invoice_service, make_user):
        member = active_member(make_user)

        first = invoice_service.create("subscription", {"user_id": member.id, "billing_cycle": 1})
        second = invoice_service.create("subscription", {"user_id": member.id, "billing_cycle": 1})

        assert second.created is False
        assert second.invoice_id == first.invoice_id
        rows = db.execute(select(Invoice).where(Invoice.user_id == member.id)).scalars().all()
        assert len(rows) == 1

    def test_cycle_out_of_range(self, invoice_service, make_user):
        member = active_member(make_user, max_billing_cycles=3)

        with pytest.raises(ValidationException) as exc_info:
            invoice_service.create("subscription", {"user_id": member.id, "billing_cycle": 4})
        assert exc_info.value.code == "INVALID_BILLING_CYCLE"

    def test_cycle_required(self, invoice_service, make_user):
        member = active_member(make_user)

        with pytest.raises(ValidationException) as exc_info:
            invoice_service.create("subscription", {"user_id": member.id})
        assert exc_info.value.code == "MISSING_BILLING_CYCLE"

    def test_pay_as_you_go_client_is_not_billed(self, db, invoice_service, user):
        with pytest.raises(BusinessRuleException) as exc_info:
            invoice_service.create("subscription", {"user_id": user.id, "billing_cycle": 1})

        assert exc_info.value.code == "SUBSCRIPTION_NOT_ACTIVE"
        assert db.execute(select(Invoice)).scalars().all() == []

    @pytest.mark.parametrize(
        "status", [SubscriptionStatus.CANCELLED, SubscriptionStatus.COMPLETED, SubscriptionStatus.DOWNGRADED]
    )
    def test_inactive_program_is_not_billed(self, invoice_service, make_user, status):
        member = active_member(make_user, subscription_status=status.value)

        with pytest.raises(BusinessRuleException) as exc_info:
            invoice_service.create("subscription", {"user_id": member.id, "billing_cycle": 1})
        assert exc_info.value.code == "SUBSCRIPTION_NOT_ACTIVE"


class TestCustomInvoices:
    def test_custom_invoice(self, db, invoice_service, user):
        result = invoice_service.create("custom", custom_context(user, amount="42.50"))

        invoice = result.invoice
        assert invoice.total_amount == Decimal("42.50")
        assert invoice.description == "Meal plan review"
        assert invoice.appointment_id is None
        assert result.payment_handle is not None and result.payment_handle.mock is True

    def test_zero_amount_is_stored_paid(self, db, invoice_service, user):
        invoice = invoice_service.create("custom", custom_context(user, amount="0")).invoice

        assert invoice.status == InvoiceStatus.PAID.value
        assert invoice.payment_url is None
        assert queued_events(db, to_email=user.email) == ["invoice-generated"]

    def test_negative_amount_rejected(self, invoice_service, user):
        with pytest.raises(ValidationException) as exc_info:
            invoice_service.create("custom", custom_context(user, amount="-1"))
        assert exc_info.value.code == "INVALID_AMOUNT"

    def test_custom_invoice_for_invoiced_appointment_returns_existing(
        self, invoice_service, make_appointment, user
    ):
        appointment = make_appointment(user, status=DONE)
        session = invoice_service.create("session", {"appointment_id": appointment.id})

        custom = invoice_service.create("custom", custom_context(user, appointment_id=appointment.id))

        assert custom.created is False
        assert custom.invoice_id == session.invoice_id

    def test_payment_failure_writes_nothing(self, db, invoice_service, stripe_service, monkeypatch, user):
        def refuse(**kwargs):
            raise UpstreamCollaboratorException("payment", "card network down")

        monkeypatch.setattr(stripe_service, "create_payment_handle", refuse)

        with pytest.raises(UpstreamCollaboratorException):
            invoice_service.create("custom", custom_context(user))

        assert db.execute(select(Invoice)).scalars().all() == []
        assert queued_entries(db) == []


class TestReissue:
    def test_reissue_credits_original_and_links_replacement(self, db, invoice_service, user):
        original = invoice_service.create("custom", custom_context(user, amount="85")).invoice

        result = invoice_service.reissue(original.id, "60", reason="Discount agreed")

        db.refresh(original)
        replacement = result.invoice
        assert original.status == InvoiceStatus.CREDITED.value
        assert original.credit_note_number == f"CN-{original.invoice_number}"
        assert original.credited_at is not None
        assert replacement.id != original.id
        assert replacement.total_amount == Decimal("60")
        assert replacement.original_invoice_id == original.id
        assert replacement.original_amount == Decimal("85")
        assert replacement.is_reissued is True
        assert replacement.reissue_reason == "Discount agreed"
        assert replacement.description.endswith("(Reissued: Discount agreed)")
        assert queued_events(db, to_email=user.email) == ["invoice-generated", "invoice-generated"]

    def test_default_reason_depends_on_amount(self, invoice_service, user):
        original = invoice_service.create("custom", custom_context(user, amount="85")).invoice

        replacement = invoice_service.reissue(original.id, "85").invoice

        assert replacement.reissue_reason == "Invoice correction"

    def test_appointment_invoice_can_be_replaced(self, invoice_service, make_appointment, user):
        appointment = make_appointment(user, status=DONE)
        original = invoice_service.create("session", {"appointment_id": appointment.id}).invoice

        replacement = invoice_service.reissue(original.id, "50").invoice

        assert replacement.appointment_id == appointment.id
        assert replacement.invoice_type == InvoiceType.SESSION.value

    def test_replacement_keeps_appointment_charges(self, invoice_service, make_appointment, user):
        appointment = make_appointment(user, status=DONE)
        original = invoice_service.create("session", {"appointment_id": appointment.id}).invoice
        replacement = invoice_service.reissue(original.id, "40").invoice

        again = invoice_service.create("session", {"appointment_id": appointment.id})

        assert replacement.charges == ["session"]
        assert again.created is False
        assert again.invoice_id == replacement.id

    def test_reissue_withdraws_original_payment_intent(self, invoice_service, stripe_service, monkeypatch, user):
        cancelled = []
        monkeypatch.setattr(stripe_service, "cancel_payment_handle", cancelled.append)
        original = invoice_service.create("custom", custom_context(user)).invoice

        replacement = invoice_service.reissue(original.id, "60").invoice

        assert cancelled == [original.stripe_payment_intent_id]
        assert replacement.stripe_payment_intent_id != original.stripe_payment_intent_id

    def test_credited_invoice_cannot_be_reissued(self, invoice_service, user):
        original = invoice_service.create("custom", custom_context(user)).invoice
        invoice_service.reissue(original.id, "60")

        with pytest.raises(BusinessRuleException) as exc_info:
            invoice_service.reissue(original.id, "50")
        assert exc_info.value.code == "INVOICE_CREDITED"

    def test_paid_invoice_cannot_be_reissued(self, invoice_service, user):
        original = invoice_service.create("custom", custom_context(user)).invoice
        invoice_service.mark_paid(invoice_id=original.id)

        with pytest.raises(BusinessRuleException) as exc_info:
            invoice_service.reissue(original.id, "50")
        assert exc_info.value.code == "INVOICE_PAID"

    def test_credited_invoice_is_frozen(self, db, invoice_service, user):
        original = invoice_service.create("custom", custom_context(user)).invoice
        invoice_service.reissue(original.id, "60")
        db.refresh(original)

        original.description = "edited"
        with pytest.raises(BusinessRuleException):
            db.flush()
        db.rollback()

    def test_unknown_invoice(self, invoice_service):
        with pytest.raises(NotFoundException):
            invoice_service.reissue("missing", "10")


class TestPayments:
    def test_mark_paid_is_idempotent(self, db, invoice_service, user):
        invoice = invoice_service.create("custom", custom_context(user)).invoice

        first = invoice_service.mark_paid(invoice_number=invoice.invoice_number)
        second = invoice_service.mark_paid(invoice_id=invoice.id)

        assert first.status == InvoiceStatus.PAID.value
        assert second.paid_at == first.paid_at
        assert queued_events(db, to_email=settings.admin_email) == ["admin-payment-received"]

    def test_mark_paid_by_payment_intent(self, invoice_service, user):
        invoice = invoice_service.create("custom", custom_context(user)).invoice

        paid = invoice_service.mark_paid(payment_intent_id=invoice.stripe_payment_intent_id)

        assert paid.id == invoice.id
        assert paid.status == InvoiceStatus.PAID.value

    def test_credited_invoice_cannot_be_paid(self, invoice_service, user):
        original = invoice_service.create("custom", custom_context(user)).invoice
        invoice_service.reissue(original.id, "60")

        with pytest.raises(BusinessRuleException) as exc_info:
            invoice_service.mark_paid(payment_intent_id=original.stripe_payment_intent_id)
        assert exc_info.value.code == "INVOICE_CREDITED"

    def test_mark_paid_needs_a_reference(self, invoice_service):
        with pytest.raises(ValidationException):
            invoice_service.mark_paid()

    def test_processing_moves_unpaid_to_pending(self, invoice_service, user):
        invoice = invoice_service.create("custom", custom_context(user)).invoice

        updated = invoice_service.mark_processing(invoice.stripe_payment_intent_id)

        assert updated.status == InvoiceStatus.PENDING.value
        assert invoice_service.mark_processing("pi_unknown") is None

    def test_payment_reminder(self, db, invoice_service, user):
        invoice = invoice_service.create("custom", custom_context(user)).invoice

        invoice_service.send_payment_reminder(invoice.id)

        assert sorted(queued_events(db, to_email=user.email)) == ["invoice-generated", "payment-reminder"]

    def test_no_reminder_for_paid_invoice(self, invoice_service, user):
        invoice = invoice_service.create("custom", custom_context(user)).invoice
        invoice_service.mark_paid(invoice_id=invoice.id)

        with pytest.raises(BusinessRuleException) as exc_info:
            invoice_service.send_payment_reminder(invoice.id)
        assert exc_info.value.code == "INVOICE_NOT_OPEN"


class TestQueries:
    def test_list_for_user_and_unpaid(self, invoice_service, make_user, user):
        mine = invoice_service.create("custom", custom_context(user)).invoice
        other = make_user()
        theirs = invoice_service.create("custom", custom_context(other, amount="10")).invoice
        invoice_service.mark_paid(invoice_id=theirs.id)

        assert [i.id for i in invoice_service.list_for_user(user.id)] == [mine.id]
        assert [i.id for i in invoice_service.list_unpaid()] == [mine.id]
        assert invoice_service.get_by_number(mine.invoice_number).id == mine.id

    def test_get_unknown_number(self, invoice_service):
        with pytest.raises(NotFoundException):
            invoice_service.get_by_number("INV-00000000-XXXX")
