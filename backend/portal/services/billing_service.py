# backend/portal/services/billing_service.py
"""
Complete Program subscription billing.

A Complete Program runs for ``max_billing_cycles`` calendar months. Cycle 1
is invoiced when the program starts; the daily sweep bills every following
cycle once its ``next_billing_date`` has come. Scheduled downgrades are
applied before billing so a client leaving the program is never billed for
the month they left in.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.exceptions import BusinessRuleException, NotFoundException, ValidationException
from ..core.timezone_utils import add_months, ensure_aware, practice_today, utc_now
from ..models.invoice import InvoiceType
from ..models.user import ServicePlan, SubscriptionStatus, User
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.invoice_repository import InvoiceRepository
from ..repositories.user_repository import UserRepository
from .base import BaseService
from .invoice_service import InvoiceResult, InvoiceService, to_amount
from .notification_service import NotificationService, Recipient
from .template_registry import MailEvent

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BillingAdvanceResult:
    invoice_created: bool
    new_cycle: int
    new_next_billing_date: Optional[date]
    invoice_id: Optional[str] = None


@dataclass(frozen=True)
class ProgramEnrollment:
    user: User
    invoice: InvoiceResult


def _empty_summary() -> Dict[str, Any]:
    return {"processed": 0, "invoices_created": 0, "completed": 0, "downgraded": 0, "errors": 0}


class SubscriptionBillingService(BaseService):
    """
    Billing cycle tracker and downgrade processor.

    ``advance_if_due`` and ``apply_downgrade_if_due`` work inside the
    caller's transaction; the sweeps commit once per user so one bad record
    never blocks the others.
    """

    def __init__(
        self,
        db: Session,
        invoice_service: Optional[InvoiceService] = None,
        notification_service: Optional[NotificationService] = None,
    ) -> None:
        super().__init__(db)
        self.user_repository = UserRepository(db)
        self.invoice_repository = InvoiceRepository(db)
        self.notifications = notification_service or NotificationService(db)
        self.invoices = invoice_service or InvoiceService(db, notification_service=self.notifications)

    # Enrollment

    @BaseService.measure_operation("start_complete_program")
    def start_complete_program(
        self,
        user_id: str,
        monthly_amount: Any = None,
        start_date: Optional[date] = None,
    ) -> ProgramEnrollment:
        """
        Put a client on the Complete Program and bill the first month.

        Raises:
            NotFoundException: unknown user
            ValidationException: non-positive monthly amount
            BusinessRuleException: the client already has an active program
        """
        amount = to_amount(
            settings.complete_program_monthly_amount if monthly_amount is None else monthly_amount,
            field="monthly_amount",
        )
        if amount <= 0:
            raise ValidationException("monthly_amount must be positive", code="INVALID_AMOUNT")
        start = start_date or practice_today()

        with self.transaction():
            user = self._require_user(user_id)
            if user.is_complete_program and user.has_active_subscription:
                raise BusinessRuleException(
                    "Client already has an active Complete Program",
                    code="SUBSCRIPTION_ALREADY_ACTIVE",
                    details={"user_id": user.id, "current_billing_cycle": user.current_billing_cycle},
                )

            max_cycles = settings.max_billing_cycles
            user.service_plan = ServicePlan.COMPLETE_PROGRAM.value
            user.subscription_status = SubscriptionStatus.ACTIVE.value
            user.monthly_amount = amount
            user.max_billing_cycles = max_cycles
            user.current_billing_cycle = 1
            user.program_start_date = start
            user.program_end_date = add_months(start, max_cycles)
            user.next_billing_date = add_months(start, 1)
            user.subscription_cancelled_at = None
            user.planned_downgrade = False
            user.downgrade_effective_date = None
            user.downgrade_executed_at = None
            self.user_repository.flush()

            result = self.invoices.create_subscription_invoice(user, 1, start)
            self.notifications.notify_admin(
                MailEvent.PLAN_UPGRADE,
                {
                    "client_name": user.name,
                    "client_email": user.email,
                    "monthly_amount": amount,
                    "max_billing_cycles": max_cycles,
                    "program_start_date": start,
                },
            )

        self.log_operation(
            "complete_program_started",
            user_id=user.id,
            monthly_amount=str(amount),
            invoice_id=result.invoice_id,
        )
        return ProgramEnrollment(user=user, invoice=result)

    @BaseService.measure_operation("schedule_downgrade")
    def schedule_downgrade(self, user_id: str, effective_date: Optional[date] = None) -> User:
        """Plan a switch to pay-as-you-go; defaults to the next billing date."""
        with self.transaction():
            user = self._require_user(user_id)
            if not user.is_complete_program:
                raise BusinessRuleException(
                    "Only Complete Program clients can be downgraded",
                    code="NOT_ON_COMPLETE_PROGRAM",
                    details={"user_id": user.id, "service_plan": user.service_plan},
                )
            effective = effective_date or user.next_billing_date or practice_today()
            if effective < practice_today():
                raise ValidationException(
                    "Downgrade effective date cannot be in the past",
                    code="INVALID_EFFECTIVE_DATE",
                    details={"effective_date": effective.isoformat()},
                )
            user.planned_downgrade = True
            user.downgrade_effective_date = effective
            self.user_repository.flush()

        self.log_operation("downgrade_scheduled", user_id=user.id, effective_date=effective.isoformat())
        return user

    @BaseService.measure_operation("cancel_subscription")
    def cancel_subscription(self, user_id: str) -> User:
        """Stop the program; invoices already issued stay as they are."""
        with self.transaction():
            user = self._require_user(user_id)
            if not user.has_active_subscription:
                raise BusinessRuleException(
                    f"Subscription is '{user.subscription_status}', nothing to cancel",
                    code="SUBSCRIPTION_NOT_ACTIVE",
                    details={"user_id": user.id, "subscription_status": user.subscription_status},
                )
            user.subscription_status = SubscriptionStatus.CANCELLED.value
            user.subscription_cancelled_at = utc_now()
            user.next_billing_date = None
            user.planned_downgrade = False
            user.downgrade_effective_date = None
            self.user_repository.flush()

        self.log_operation("subscription_cancelled", user_id=user.id)
        return user

    # Tracker (caller owns the transaction)

    def advance_if_due(self, user: User, now: Optional[datetime] = None) -> Optional[BillingAdvanceResult]:
        """
        Bill the next cycle when it is due.

        Returns ``None`` when nothing happened. A user on the last cycle is
        marked ``completed`` instead.
        """
        if not user.is_complete_program or not user.has_active_subscription:
            return None

        max_cycles = user.max_billing_cycles or settings.max_billing_cycles
        current_cycle = user.current_billing_cycle or 0
        if current_cycle >= max_cycles:
            user.subscription_status = SubscriptionStatus.COMPLETED.value
            user.next_billing_date = None
            self.user_repository.flush()
            self.log_operation("subscription_completed", user_id=user.id, billing_cycle=current_cycle)
            return None

        today = practice_today(now)
        if user.planned_downgrade or user.next_billing_date is None or user.next_billing_date > today:
            return None

        next_cycle = current_cycle + 1
        billing_date = user.next_billing_date
        result = self.invoices.create_subscription_invoice(user, next_cycle, billing_date)

        if user.program_start_date is not None:
            user.next_billing_date = add_months(user.program_start_date, next_cycle)
        else:
            user.next_billing_date = add_months(billing_date, 1)
        user.current_billing_cycle = next_cycle
        self.user_repository.flush()

        self.log_operation(
            "billing_cycle_advanced",
            user_id=user.id,
            billing_cycle=next_cycle,
            invoice_id=result.invoice_id,
            invoice_created=result.created,
        )
        return BillingAdvanceResult(
            invoice_created=result.created,
            new_cycle=next_cycle,
            new_next_billing_date=user.next_billing_date,
            invoice_id=result.invoice_id,
        )

    def apply_downgrade_if_due(self, user: User, now: Optional[datetime] = None) -> bool:
        """Convert a user with an elapsed planned downgrade to pay-as-you-go."""
        if not user.planned_downgrade or user.downgrade_effective_date is None:
            return False
        if user.downgrade_effective_date > practice_today(now):
            return False

        effective = user.downgrade_effective_date
        user.service_plan = ServicePlan.PAY_AS_YOU_GO.value
        user.subscription_status = SubscriptionStatus.DOWNGRADED.value
        user.clear_program_fields()
        user.downgrade_executed_at = ensure_aware(now) if now is not None else utc_now()
        self.user_repository.flush()

        self.notifications.enqueue(
            MailEvent.PLAN_DOWNGRADE_NOTIFICATION,
            Recipient(user.email, user.name),
            {"effective_date": effective},
        )
        self.log_operation("plan_downgraded", user_id=user.id, effective_date=effective.isoformat())
        return True

    # Sweeps

    @BaseService.measure_operation("run_monthly_billing")
    def run_monthly_billing(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Downgrade-then-advance for every active Complete Program client."""
        summary = _empty_summary()
        for user_id in [u.id for u in self.user_repository.list_active_complete_program()]:
            summary["processed"] += 1
            try:
                with self.transaction():
                    user = self.user_repository.get_for_update(user_id)
                    if user is None:
                        continue
                    if self.apply_downgrade_if_due(user, now):
                        summary["downgraded"] += 1
                        prometheus_metrics.inc_sweep_record("monthly_billing", "downgraded")
                        continue
                    was_active = user.has_active_subscription
                    result = self.advance_if_due(user, now)
                    if result is not None and result.invoice_created:
                        summary["invoices_created"] += 1
                        prometheus_metrics.inc_sweep_record("monthly_billing", "invoiced")
                    elif was_active and user.subscription_status == SubscriptionStatus.COMPLETED.value:
                        summary["completed"] += 1
                        prometheus_metrics.inc_sweep_record("monthly_billing", "completed")
            except Exception as exc:
                summary["errors"] += 1
                prometheus_metrics.inc_sweep_record("monthly_billing", "error")
                self.logger.error(f"Monthly billing failed for user {user_id}: {exc}", exc_info=True)

        self.logger.info(f"Monthly billing sweep finished: {summary}")
        return summary

    @BaseService.measure_operation("run_downgrade_sweep")
    def run_downgrade_sweep(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        summary = _empty_summary()
        for user_id in [u.id for u in self.user_repository.list_due_downgrades(practice_today(now))]:
            summary["processed"] += 1
            try:
                with self.transaction():
                    user = self.user_repository.get_for_update(user_id)
                    if user is not None and self.apply_downgrade_if_due(user, now):
                        summary["downgraded"] += 1
                        prometheus_metrics.inc_sweep_record("downgrades", "downgraded")
            except Exception as exc:
                summary["errors"] += 1
                prometheus_metrics.inc_sweep_record("downgrades", "error")
                self.logger.error(f"Downgrade failed for user {user_id}: {exc}", exc_info=True)

        self.logger.info(f"Downgrade sweep finished: {summary}")
        return summary

    # Queries

    def billing_status(self, user_id: str) -> Dict[str, Any]:
        """Subscription snapshot for the client dashboard."""
        user = self._require_user(user_id)
        invoices = [
            invoice
            for invoice in self.invoice_repository.list_for_user(user.id)
            if invoice.invoice_type == InvoiceType.SUBSCRIPTION.value
        ]
        monthly: Optional[Decimal] = Decimal(user.monthly_amount) if user.monthly_amount is not None else None
        return {
            "user_id": user.id,
            "service_plan": user.service_plan,
            "subscription_status": user.subscription_status,
            "current_billing_cycle": user.current_billing_cycle,
            "max_billing_cycles": user.max_billing_cycles,
            "monthly_amount": monthly,
            "next_billing_date": user.next_billing_date,
            "program_start_date": user.program_start_date,
            "program_end_date": user.program_end_date,
            "planned_downgrade": bool(user.planned_downgrade),
            "downgrade_effective_date": user.downgrade_effective_date,
            "subscription_invoices": invoices,
        }

    def _require_user(self, user_id: str) -> User:
        user = self.user_repository.get_for_update(user_id) if user_id else None
        if user is None:
            raise NotFoundException(f"User {user_id} not found", code="USER_NOT_FOUND")
        return user
